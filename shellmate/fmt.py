"""Diagnostics for the terminal, written to stderr with Rich.

Answers go to stdout with plain print(). Progress lines here are skipped
under --quiet; warnings and errors always show.
"""

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)

# Turn state -> (marker, style) for the end-of-turn summary
_STATE_STYLES = {
    "done": ("✓", "bold green"),
    "canceled": ("■", "bold yellow"),
    "failed": ("✗", "bold red"),
}

_PREVIEW_LINES = 8


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Rebuild the stderr console for --color / --no-color (auto otherwise)."""
    global _console
    if no_color:
        _console = Console(stderr=True, no_color=True)
    elif color:
        _console = Console(stderr=True, force_terminal=True)
    else:
        _console = Console(stderr=True)


def _emit(*parts: tuple[str, str]) -> None:
    """Print one line assembled from (text, style) pairs."""
    line = Text()
    for text, style in parts:
        line.append(text, style=style)
    _console.print(line)


# -- Turn progress -----------------------------------------------------------


def iteration_header(n: int, max_n: int, token_est: int) -> None:
    _console.print(
        Rule(f"shellmate · step {n} of {max_n} · ~{token_est} tokens", style="cyan")
    )


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "dim green" if finish_reason in ("stop", "tool_calls") else "yellow"
    _emit((f"  model replied after {elapsed:.2f}s ({finish_reason})", style))


def completion(iterations: int, state: str) -> None:
    marker, style = _STATE_STYLES.get(state, ("?", "bold"))
    noun = "tool round" if iterations == 1 else "tool rounds"
    _emit((f"  {marker} turn {state} after {iterations} {noun}", style))


# -- Tool activity -----------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    _emit(("  $ ", "bold magenta"), (name, "magenta"))
    for line in args_json.splitlines():
        _emit((f"      {line}", "dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    _emit((f"  ← {name}", "green"), (f" ({elapsed:.2f}s)", "dim green"))
    lines = preview.splitlines()
    for line in lines[:_PREVIEW_LINES]:
        _emit((f"      {line}", "dim"))
    if len(lines) > _PREVIEW_LINES:
        _emit((f"      ... {len(lines) - _PREVIEW_LINES} more lines", "dim italic"))


def tool_error(name: str, msg: str) -> None:
    _emit((f"  ← {name} ", "bold red"), (msg.removeprefix("error: "), "red"))


def assistant_text(text: str) -> None:
    _emit(("  model: ", "blue"), (text, "italic"))


# -- Conversation ------------------------------------------------------------


def conversation(turns) -> None:
    _console.print(Rule(f"chat history · {len(turns)} turns", style="bold"))
    for i, turn in enumerate(turns, 1):
        _emit((f"[{i}] Human:", "bold"))
        _console.print(Text(turn.human))
        _emit((f"[{i}] AI:", "bold blue"))
        _console.print(Text(turn.assistant))
        _console.print()
    _console.print(Rule(style="bold"))


# -- Messages ----------------------------------------------------------------


def model_info(msg: str) -> None:
    _emit((msg, "cyan"))


def info(msg: str) -> None:
    _emit((msg, "dim"))


def success(msg: str) -> None:
    _emit(("✓ ", "green"), (msg, ""))


def warning(msg: str) -> None:
    _emit(("warning: ", "bold yellow"), (msg, "yellow"))


def error(msg: str) -> None:
    _emit(("error: ", "bold red"), (msg, "red"))


def repl_banner(base_dir: str) -> None:
    _emit(("shellmate", "bold cyan"), (f" working in {base_dir}", "cyan"))
    _emit(
        (
            "/help lists commands, @name attaches a file. Ctrl-C stops a running "
            "turn, Ctrl-D or /exit leaves.",
            "dim",
        )
    )
