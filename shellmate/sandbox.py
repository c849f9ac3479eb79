"""Path containment and shell command filtering for the tool layer."""

import os
from pathlib import Path

from .errors import CommandBlockedError, OutOfBoundsError

DEFAULT_BLOCKLIST = frozenset({"rm", "del", "sudo", "su", "shutdown", "reboot"})
STRICT_BLOCKLIST = DEFAULT_BLOCKLIST | {"mkdir", "touch"}


def build_blocklist(strict: bool = False, extra=()) -> frozenset[str]:
    """Return the blocklist for the given mode plus any extra names."""
    base = STRICT_BLOCKLIST if strict else DEFAULT_BLOCKLIST
    return base | {name.strip() for name in extra if name.strip()}


class Workspace:
    """Holds the base directory all file tools and shell commands are bound to.

    The base directory only changes through set_base_dir(), which the REPL
    calls between turns. Tools read .base_dir at the point of use.
    """

    def __init__(self, base_dir: str | os.PathLike = "."):
        self._base_dir = _absolute(base_dir)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def set_base_dir(self, path: str | os.PathLike) -> Path:
        """Point the workspace at another directory.

        Relative paths are taken against the current base directory and ``~``
        is expanded. Raises NotADirectoryError (leaving the base directory
        unchanged) when the target is not an existing directory.
        """
        candidate = Path(os.path.expanduser(os.fspath(path)))
        if not candidate.is_absolute():
            candidate = self._base_dir / candidate
        candidate = _absolute(candidate)
        if not candidate.is_dir():
            raise NotADirectoryError(f"not a directory: {path}")
        self._base_dir = candidate
        return candidate

    def resolve(self, requested: str) -> Path:
        return resolve_path(requested, self._base_dir)

    def __repr__(self) -> str:
        return f"Workspace({str(self._base_dir)!r})"


def _absolute(path) -> Path:
    return Path(os.path.normpath(os.path.abspath(os.fspath(path))))


def resolve_path(requested: str, base_dir: str | os.PathLike) -> Path:
    """Resolve ``requested`` against ``base_dir`` without touching the filesystem.

    ``.`` and ``..`` segments are folded lexically and ``~`` is an ordinary
    name. The result must be the base directory itself or lie below it
    component-wise, so ``/base-evil`` never matches ``/base``. Symlinks are
    not followed.

    Raises:
        OutOfBoundsError: If the path is empty or escapes the base directory.
    """
    if not requested or not requested.strip():
        raise OutOfBoundsError("path must not be empty")

    base = _absolute(base_dir)
    joined = os.path.normpath(os.path.join(base, requested))
    resolved = Path(joined)

    if resolved == base or resolved.is_relative_to(base):
        return resolved

    raise OutOfBoundsError(
        f"path {requested!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


def command_name(command: str) -> str:
    """Return the first whitespace-delimited token of a command line."""
    parts = command.split(None, 1)
    return parts[0] if parts else ""


def check_command(command: str, blocklist=DEFAULT_BLOCKLIST) -> None:
    """Reject a command line whose executable name is on the blocklist.

    Only the first token is inspected. Shell operators are not parsed, so
    ``ls && rm -rf /`` passes: this is a name filter, not a sandbox.

    Raises:
        CommandBlockedError: If the command is empty or its name is blocked.
    """
    name = command_name(command)
    if not name:
        raise CommandBlockedError("")
    if name in blocklist:
        raise CommandBlockedError(name)
