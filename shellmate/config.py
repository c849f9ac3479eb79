"""Configuration file loading and merging for shellmate.

Reads TOML config from ~/.config/shellmate/config.toml (global) and
<base_dir>/shellmate.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "temperature": (int, float),
    "max_iterations": int,
    "max_execution_time": (int, float),
    "command_timeout": (int, float),
    "strict_blocklist": bool,
    "blocked_commands": list,
    "history_file": str,
    "color": bool,
    "quiet": bool,
}

_LIST_OF_STR_KEYS = {"blocked_commands"}

_POSITIVE_KEYS = {"max_iterations", "max_execution_time", "command_timeout"}

PROVIDERS = ("gemini", "openai", "ollama")

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "gemini",
    "model": None,
    "api_key": None,
    "base_url": None,
    "temperature": 0.0,
    "max_iterations": 10,
    "max_execution_time": 120.0,
    "command_timeout": 30.0,
    "strict_blocklist": False,
    "blocked_commands": [],
    "history_file": "~/.shellmate_history",
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "shellmate"
    return Path.home() / ".config" / "shellmate"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _check_value(key: str, value, source: str) -> None:
    """Raise ConfigError unless ``value`` fits the schema entry for ``key``."""
    expected = CONFIG_KEYS[key]
    # TOML booleans are ints to isinstance(); only bool fields may hold them
    wrong_type = not isinstance(value, expected) or (
        isinstance(value, bool) and expected is not bool
    )
    if wrong_type:
        raise ConfigError(
            f"{source}: {key} must be a {_type_name(expected)}, "
            f"not {type(value).__name__}"
        )

    if key in _LIST_OF_STR_KEYS:
        bad = [i for i, item in enumerate(value) if not isinstance(item, str)]
        if bad:
            raise ConfigError(
                f"{source}: {key}[{bad[0]}] must be a string, "
                f"not {type(value[bad[0]]).__name__}"
            )

    if key in _POSITIVE_KEYS and value <= 0:
        raise ConfigError(f"{source}: {key} must be positive, not {value}")

    if key == "provider" and value not in PROVIDERS:
        raise ConfigError(
            f"{source}: provider must be one of {', '.join(PROVIDERS)}, not {value!r}"
        )


def _validate_config(config: dict, source: str) -> None:
    """Check every known key; unknown keys only produce a warning."""
    for key, value in config.items():
        if key in CONFIG_KEYS:
            _check_value(key, value, source)
        else:
            print(
                f"warning: {source}: ignoring unknown config key {key!r}",
                file=sys.stderr,
            )


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve a relative history_file against the config file's directory."""
    if "history_file" in config:
        expanded = Path(config["history_file"]).expanduser()
        if not expanded.is_absolute():
            expanded = config_dir / expanded
        config["history_file"] = str(expanded)


def _warn_committed_api_key(config: dict, config_path: Path) -> None:
    """A project config holding api_key inside a git checkout is easy to commit."""
    if "api_key" in config and any(
        (folder / ".git").exists() for folder in config_path.parents
    ):
        print(
            f"warning: {config_path} sets api_key inside a git repository; "
            "export the provider's API key variable instead so it stays out of commits",
            file=sys.stderr,
        )


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{label}: cannot read file: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with only the keys actually set in config files
    (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "shellmate.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _warn_committed_api_key(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Values still equal to _UNSET take the config value, and whatever is
    left unset afterwards gets the hardcoded default.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # Single config key controls the mutually exclusive --color/--no-color pair
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# shellmate configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/shellmate.toml' if project else '~/.config/shellmate/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "gemini"            # "gemini" | "openai" | "ollama"',
        '# model = "gemini-2.5-flash"',
        "# api_key = \"...\"                # prefer env vars; this is a fallback",
        '# base_url = "http://localhost:11434"',
        "# temperature = 0",
        "",
        "# --- Turn bounds ---",
        "# max_iterations = 10",
        "# max_execution_time = 120     # seconds per turn",
        "# command_timeout = 30         # seconds per shell command",
        "",
        "# --- Shell command gate ---",
        "# strict_blocklist = false     # also block mkdir and touch",
        '# blocked_commands = ["curl"]',
        "",
        "# --- UI ---",
        '# history_file = "~/.shellmate_history"',
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
