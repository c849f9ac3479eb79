"""Exception hierarchy shared by the tools, the turn executor and the REPL."""


class AgentError(Exception):
    """Raised for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing credentials, bad TOML, etc.)."""


# -- Tool layer: converted to "error: ..." text, never abort a turn ----------


class ToolError(AgentError):
    """Base class for failures that are reported back to the model as text."""


class OutOfBoundsError(ToolError, ValueError):
    """A requested path escapes the base directory."""


class CommandBlockedError(ToolError):
    """A shell command's executable name is on the blocklist."""

    def __init__(self, command_name: str):
        self.command_name = command_name
        if command_name:
            msg = f"command {command_name!r} is blocked for safety reasons"
        else:
            msg = "command is empty"
        super().__init__(msg)


class ToolValidationError(ToolError):
    """A tool request has an unknown name or malformed arguments."""


class ToolIOError(ToolError):
    """An underlying read, write or spawn failed."""


# -- Turn terminating ---------------------------------------------------------


class TurnError(AgentError):
    """Ends the current turn; the REPL reports it and keeps prompting."""


class BoundExceededError(TurnError):
    """The iteration or wall-clock limit of a turn was hit."""


class TurnCanceledError(TurnError):
    """The user interrupted the turn."""


class CollaboratorError(TurnError):
    """The language model call failed or returned something unusable."""
