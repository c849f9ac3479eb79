"""Tests for shellmate.config: TOML loading, validation and CLI merging."""

import argparse
import tomllib

import pytest

from shellmate.config import (
    _UNSET,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
)
from shellmate.errors import ConfigError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "provider": _UNSET,
        "model": _UNSET,
        "api_key": _UNSET,
        "base_url": _UNSET,
        "temperature": _UNSET,
        "max_iterations": _UNSET,
        "max_execution_time": _UNSET,
        "command_timeout": _UNSET,
        "strict_blocklist": _UNSET,
        "history_file": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture
def global_dir(tmp_path, monkeypatch):
    path = tmp_path / "xdg"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(path))
    return path / "shellmate"


@pytest.fixture
def project(tmp_path):
    path = tmp_path / "project"
    path.mkdir()
    return path


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_empty(self, global_dir, project):
        assert load_config(project) == {}

    def test_global_only(self, global_dir, project):
        _write_toml(global_dir / "config.toml", 'provider = "openai"\n')
        assert load_config(project)["provider"] == "openai"

    def test_project_only(self, global_dir, project):
        _write_toml(project / "shellmate.toml", "max_iterations = 5\n")
        assert load_config(project) == {"max_iterations": 5}

    def test_project_overrides_global(self, global_dir, project):
        _write_toml(
            global_dir / "config.toml", 'provider = "openai"\nmax_iterations = 3\n'
        )
        _write_toml(project / "shellmate.toml", 'provider = "ollama"\n')
        result = load_config(project)
        assert result["provider"] == "ollama"
        assert result["max_iterations"] == 3

    def test_invalid_toml(self, global_dir, project):
        _write_toml(project / "shellmate.toml", "provider = \n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(project)

    def test_unknown_key_warns_and_is_dropped(self, global_dir, project, capsys):
        _write_toml(project / "shellmate.toml", "frobnicate = 1\nquiet = true\n")
        result = load_config(project)
        assert result == {"quiet": True}
        assert "unknown config key 'frobnicate'" in capsys.readouterr().err


class TestValidation:
    def test_wrong_type(self, global_dir, project):
        _write_toml(project / "shellmate.toml", 'max_iterations = "ten"\n')
        with pytest.raises(ConfigError, match="max_iterations"):
            load_config(project)

    def test_bool_rejected_for_int(self, global_dir, project):
        _write_toml(project / "shellmate.toml", "max_iterations = true\n")
        with pytest.raises(ConfigError, match="not bool"):
            load_config(project)

    def test_int_accepted_for_float(self, global_dir, project):
        _write_toml(project / "shellmate.toml", "max_execution_time = 60\n")
        assert load_config(project)["max_execution_time"] == 60

    @pytest.mark.parametrize(
        "key", ["max_iterations", "max_execution_time", "command_timeout"]
    )
    def test_bounds_must_be_positive(self, global_dir, project, key):
        _write_toml(project / "shellmate.toml", f"{key} = 0\n")
        with pytest.raises(ConfigError, match="must be positive"):
            load_config(project)

    def test_unknown_provider(self, global_dir, project):
        _write_toml(project / "shellmate.toml", 'provider = "mystery"\n')
        with pytest.raises(ConfigError, match="provider"):
            load_config(project)

    def test_blocked_commands_must_be_strings(self, global_dir, project):
        _write_toml(project / "shellmate.toml", 'blocked_commands = ["curl", 3]\n')
        with pytest.raises(ConfigError, match=r"blocked_commands\[1\]"):
            load_config(project)


class TestPathResolution:
    def test_relative_history_file_resolved_against_config_dir(
        self, global_dir, project
    ):
        _write_toml(project / "shellmate.toml", 'history_file = "hist.txt"\n')
        assert load_config(project)["history_file"] == str(project.resolve() / "hist.txt")

    def test_absolute_history_file_kept(self, global_dir, project, tmp_path):
        target = tmp_path / "elsewhere" / "hist"
        _write_toml(project / "shellmate.toml", f'history_file = "{target}"\n')
        assert load_config(project)["history_file"] == str(target)


# ===========================================================================
# Merging into argparse
# ===========================================================================


class TestApplyConfigToArgs:
    def test_defaults_fill_unset(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.provider == "gemini"
        assert args.max_iterations == 10
        assert args.max_execution_time == 120.0
        assert args.command_timeout == 30.0
        assert args.strict_blocklist is False
        assert args.blocked_commands == []
        assert args.history_file == "~/.shellmate_history"
        assert args.model is None

    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"provider": "openai", "max_iterations": 4})
        assert args.provider == "openai"
        assert args.max_iterations == 4

    def test_cli_wins_over_config(self):
        args = _make_args(provider="ollama", max_iterations=2)
        apply_config_to_args(args, {"provider": "openai", "max_iterations": 4})
        assert args.provider == "ollama"
        assert args.max_iterations == 2

    def test_color_true_from_config(self):
        args = _make_args()
        apply_config_to_args(args, {"color": True})
        assert args.color is True
        assert args.no_color is False

    def test_color_false_from_config(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_cli_no_color_beats_config_color(self):
        args = _make_args(no_color=True)
        apply_config_to_args(args, {"color": True})
        assert args.no_color is True
        assert args.color is False


# ===========================================================================
# Template and locations
# ===========================================================================


def test_generate_config_is_valid_toml():
    text = generate_config()
    assert tomllib.loads(text) == {}
    assert "max_iterations" in text
    assert "blocked_commands" in text


def test_generate_config_uncommented_is_valid(global_dir, project):
    lines = []
    for line in generate_config(project=True).splitlines():
        if line.startswith("# ") and "=" in line:
            lines.append(line[2:])
    _write_toml(project / "shellmate.toml", "\n".join(lines) + "\n")
    result = load_config(project)
    assert result["provider"] == "gemini"
    assert result["max_iterations"] == 10


def test_global_config_dir_respects_xdg(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    assert global_config_dir() == tmp_path / "shellmate"


def test_global_config_dir_default(tmp_path, monkeypatch):
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    assert global_config_dir() == tmp_path / ".config" / "shellmate"


class TestApiKeyWarning:
    def test_warns_inside_git_checkout(self, global_dir, project, capsys):
        (project / ".git").mkdir()
        _write_toml(project / "shellmate.toml", 'api_key = "sk-test"\n')
        assert load_config(project)["api_key"] == "sk-test"
        assert "sets api_key inside a git repository" in capsys.readouterr().err

    def test_silent_without_api_key(self, global_dir, project, capsys):
        (project / ".git").mkdir()
        _write_toml(project / "shellmate.toml", "quiet = true\n")
        load_config(project)
        assert "api_key" not in capsys.readouterr().err
