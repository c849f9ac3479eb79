"""Tool definitions and implementations for the shellmate agent."""

import json
import logging
import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, fields
from typing import ClassVar

from .errors import (
    ToolError,
    ToolIOError,
    ToolValidationError,
    TurnCanceledError,
)
from .sandbox import DEFAULT_BLOCKLIST, Workspace, check_command, resolve_path

logger = logging.getLogger(__name__)

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": (
                "Read the full contents of a text file. "
                "Use this to inspect code or check what a file contains."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path of the file to read (e.g. ./src/index.py).",
                    },
                },
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": (
                "Create a file or overwrite it with the given content. "
                "Use this to write or modify code."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path of the file to write.",
                    },
                    "content": {
                        "type": "string",
                        "description": "The complete new content of the file.",
                    },
                },
                "required": ["path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "execute_shell_command",
            "description": (
                "Run a shell command in the base directory and return its exit code, "
                "stdout and stderr. Use it for system checks such as ls, pwd or date."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": "The shell command line to run (e.g. ls -la).",
                    },
                },
                "required": ["command"],
            },
        },
    },
]

TOOL_NAMES = tuple(t["function"]["name"] for t in TOOLS)

MAX_STREAM_BYTES = 1024 * 1024  # 1 MB captured per stream
MAX_INLINE_OUTPUT = 50 * 1024  # 50 KB per stream returned to the model
DEFAULT_COMMAND_TIMEOUT = 30
MAX_COMMAND_TIMEOUT = 600
POLL_INTERVAL = 0.1
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


# ---------------------------------------------------------------------------
# Tool requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReadFile:
    path: str

    tool_name: ClassVar[str] = "read_file"


@dataclass(frozen=True)
class WriteFile:
    path: str
    content: str

    tool_name: ClassVar[str] = "write_file"


@dataclass(frozen=True)
class ExecuteShell:
    command: str

    tool_name: ClassVar[str] = "execute_shell_command"


ToolRequest = ReadFile | WriteFile | ExecuteShell

_REQUEST_TYPES: dict[str, type] = {
    cls.tool_name: cls for cls in (ReadFile, WriteFile, ExecuteShell)
}


def parse_tool_request(name: str, raw_args) -> ToolRequest:
    """Validate a model-issued tool call and build the matching request.

    ``raw_args`` is either the JSON string the model produced or an already
    decoded dict. Every declared argument is required and must be a string;
    unknown arguments are rejected.

    Raises:
        ToolValidationError: On unknown tool names or malformed arguments.
    """
    cls = _REQUEST_TYPES.get(name)
    if cls is None:
        raise ToolValidationError(
            f"unknown tool {name!r}. Available tools: {', '.join(TOOL_NAMES)}"
        )

    if isinstance(raw_args, str):
        if not raw_args.strip():
            args = {}
        else:
            try:
                args = json.loads(raw_args)
            except json.JSONDecodeError as e:
                raise ToolValidationError(f"invalid JSON in tool arguments: {e}")
    else:
        args = raw_args

    if not isinstance(args, dict):
        raise ToolValidationError(
            f"arguments for {name} must be a JSON object, got {type(args).__name__}"
        )

    expected = [f.name for f in fields(cls)]
    missing = [key for key in expected if key not in args]
    if missing:
        raise ToolValidationError(
            f"missing required argument(s) for {name}: {', '.join(missing)}"
        )
    unknown = sorted(set(args) - set(expected))
    if unknown:
        raise ToolValidationError(
            f"unexpected argument(s) for {name}: {', '.join(unknown)}"
        )
    for key in expected:
        if not isinstance(args[key], str):
            raise ToolValidationError(
                f"argument {key!r} for {name} must be a string, "
                f"got {type(args[key]).__name__}"
            )

    return cls(**{key: args[key] for key in expected})


# ---------------------------------------------------------------------------
# File tools
# ---------------------------------------------------------------------------


def _read_file(path: str, base_dir) -> str:
    """Read a text file inside the base directory."""
    try:
        resolved = resolve_path(path, base_dir)
        content = _load_text(resolved, path)
    except ToolError as exc:
        return f"error: {exc}"
    return f"[File content - {path}]:\n{content}"


def _load_text(resolved, path: str) -> str:
    try:
        return resolved.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ToolIOError(f"failed to decode {path} as UTF-8: {exc}") from exc
    except FileNotFoundError as exc:
        raise ToolIOError(f"failed to read file: no such file: {path}") from exc
    except (OSError, ValueError) as exc:
        raise ToolIOError(f"failed to read file: {exc}") from exc


def _write_file(path: str, content: str, base_dir) -> str:
    """Create or overwrite a file inside the base directory."""
    data = content.encode("utf-8")
    try:
        resolved = resolve_path(path, base_dir)
        _save_bytes(resolved, data)
    except ToolError as exc:
        return f"error: {exc}"
    return f"Wrote {len(data)} bytes to {path}"


def _save_bytes(resolved, data: bytes) -> None:
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_bytes(data)
    except (OSError, ValueError) as exc:
        raise ToolIOError(f"failed to write file: {exc}") from exc


# ---------------------------------------------------------------------------
# Shell tool
# ---------------------------------------------------------------------------


@dataclass
class ProcessOutcome:
    """What a finished (or killed) child process left behind."""

    exit_code: int | None
    stdout: str
    stderr: str
    canceled: bool = False
    timed_out: bool = False
    truncated: bool = False


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        logger.warning("process %d did not exit after SIGKILL", proc.pid)


class _StreamBuffer:
    """Append-only byte buffer fed by one reader thread."""

    def __init__(self, limit: int = MAX_STREAM_BYTES):
        self.chunks: list[bytes] = []
        self.total = 0
        self.limit = limit
        self.truncated = False

    def feed(self, stream) -> None:
        try:
            while True:
                chunk = stream.read(4096)
                if not chunk:
                    break
                if self.truncated:
                    continue  # keep draining to prevent pipe backpressure
                chunk = chunk[: self.limit - self.total]
                self.chunks.append(chunk)
                self.total += len(chunk)
                if self.total >= self.limit:
                    self.truncated = True
        except (OSError, ValueError):
            pass  # pipe closed/broken after kill

    def text(self) -> str:
        return b"".join(self.chunks).decode("utf-8", errors="replace")


def _capture_process(
    proc: subprocess.Popen, timeout: float, cancel_token=None
) -> ProcessOutcome:
    """Wait for a child process while draining stdout and stderr separately.

    Each stream has its own reader thread and buffer; they are only joined
    once the process has exited. The wait is sliced so that a cancelled
    token or an expired timeout kills the process tree promptly.
    """
    out_buf = _StreamBuffer()
    err_buf = _StreamBuffer()
    readers = [
        threading.Thread(target=out_buf.feed, args=(proc.stdout,), daemon=True),
        threading.Thread(target=err_buf.feed, args=(proc.stderr,), daemon=True),
    ]
    for reader in readers:
        reader.start()

    canceled = False
    timed_out = False
    deadline = time.monotonic() + timeout
    while True:
        try:
            proc.wait(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            pass
        if cancel_token is not None and cancel_token.cancelled:
            canceled = True
            logger.debug("cancelling shell command (pid %d)", proc.pid)
            _kill_process_tree(proc)
            break
        if time.monotonic() >= deadline:
            timed_out = True
            logger.debug("shell command timed out (pid %d)", proc.pid)
            _kill_process_tree(proc)
            break

    for reader in readers:
        reader.join(timeout=2)
    for stream in (proc.stdout, proc.stderr):
        try:
            stream.close()
        except OSError:
            pass

    return ProcessOutcome(
        exit_code=proc.returncode,
        stdout=out_buf.text(),
        stderr=err_buf.text(),
        canceled=canceled,
        timed_out=timed_out,
        truncated=out_buf.truncated or err_buf.truncated,
    )


def _clip(text: str) -> str:
    data = text.encode("utf-8")
    if len(data) <= MAX_INLINE_OUTPUT:
        return text
    clipped = data[:MAX_INLINE_OUTPUT].decode("utf-8", errors="ignore")
    return clipped + "\n[output truncated at 50KB]"


def format_outcome(outcome: ProcessOutcome, timeout: float | None = None) -> str:
    """Render a ProcessOutcome as the text handed back to the model."""
    parts: list[str] = []
    if outcome.timed_out:
        parts.append(f"error: command timed out after {timeout:g}s")
    parts.append(f"Exit code: {outcome.exit_code}")
    stdout = outcome.stdout.strip()
    stderr = outcome.stderr.strip()
    if stdout:
        parts.append(f"STDOUT:\n{_clip(stdout)}")
    if stderr:
        parts.append(f"STDERR:\n{_clip(stderr)}")
    if outcome.truncated:
        parts.append("[output truncated at 1MB]")
    return "\n".join(parts)


def _shell_argv(command: str) -> list[str]:
    if sys.platform == "win32":
        return ["powershell.exe", "-NoProfile", "-Command", command]
    return ["/bin/sh", "-c", command]


def _execute_shell_command(
    command: str,
    base_dir,
    *,
    blocklist=DEFAULT_BLOCKLIST,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
    cancel_token=None,
) -> str:
    """Run a command line through the platform shell inside the base directory.

    Raises:
        TurnCanceledError: If ``cancel_token`` fires while the command runs.
            The process tree has been killed and reaped by then.
    """
    timeout = max(POLL_INTERVAL, min(timeout, MAX_COMMAND_TIMEOUT))
    try:
        check_command(command, blocklist)
        proc = _spawn(command, base_dir, cancel_token)
    except ToolError as exc:
        return f"error: {exc}"

    outcome = _capture_process(proc, timeout, cancel_token)
    if outcome.canceled:
        raise TurnCanceledError(f"command cancelled: {command}")
    return format_outcome(outcome, timeout)


def _spawn(command: str, base_dir, cancel_token=None) -> subprocess.Popen:
    base_path = os.fspath(base_dir)
    if not os.path.isdir(base_path):
        raise ToolIOError(f"base directory is not a directory: {base_path}")

    if cancel_token is not None and cancel_token.cancelled:
        raise TurnCanceledError("cancelled before the command started")

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=base_path,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        return subprocess.Popen(_shell_argv(command), **popen_kwargs)
    except (OSError, ValueError) as e:
        raise ToolIOError(f"failed to start shell command: {e}") from e


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def dispatch(
    request: ToolRequest,
    workspace: Workspace,
    *,
    cancel_token=None,
    blocklist=DEFAULT_BLOCKLIST,
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
) -> str:
    """Route a validated tool request to its implementation.

    The base directory is read from ``workspace`` at call time.

    Returns:
        String result from the tool; failures are ``error: ...`` text.

    Raises:
        TurnCanceledError: If a running shell command was cancelled.
        TypeError: If ``request`` is not one of the declared request types.
    """
    base_dir = workspace.base_dir
    if isinstance(request, ReadFile):
        return _read_file(request.path, base_dir)
    elif isinstance(request, WriteFile):
        return _write_file(request.path, request.content, base_dir)
    elif isinstance(request, ExecuteShell):
        return _execute_shell_command(
            request.command,
            base_dir,
            blocklist=blocklist,
            timeout=command_timeout,
            cancel_token=cancel_token,
        )
    raise TypeError(f"not a tool request: {request!r}")


def invoke_tool(name: str, raw_args, workspace: Workspace, **kwargs) -> str:
    """Validate and run one tool call, always producing a text result."""
    try:
        request = parse_tool_request(name, raw_args)
    except ToolValidationError as exc:
        return f"error: {exc}"
    return dispatch(request, workspace, **kwargs)
