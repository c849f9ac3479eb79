"""Interactive loop: meta-commands, file attachments and chat turns."""

import fnmatch
import os
from pathlib import Path

from prompt_toolkit import PromptSession, prompt
from prompt_toolkit.completion import FuzzyWordCompleter
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.shortcuts import confirm

from . import fmt
from .agent import TurnState, run_turn
from .cancel import CancellationController
from .errors import OutOfBoundsError
from .store import CommandHistory, ConversationStore

MAX_ATTACHMENT_CHARS = 1_000_000
IGNORED_DIRS = {".git", "node_modules", ".idea", ".m2", ".shellmate"}
IGNORED_FILES = ("*.env",)


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /list              Print the conversation so far\n"
        "  /save              Save the conversation to a markdown file\n"
        "  /clear             Forget the conversation\n"
        "  /basedir [path]    Show or change the base directory\n"
        "  @<query>           Attach a file and ask a question about it\n"
        "  /exit, /quit       Exit"
    )


def _repl_clear(store: ConversationStore) -> None:
    dropped = store.clear()
    fmt.success(f"chat history cleared ({dropped} turns removed)")


def _repl_list(store: ConversationStore) -> None:
    if not len(store):
        fmt.success("no chat history (0 turns)")
        return
    fmt.conversation(store.snapshot())


def _repl_save(store: ConversationStore, workspace) -> Path | None:
    if not len(store):
        fmt.success("no chat history to save")
        return None
    try:
        path = store.export(workspace.base_dir)
    except (OSError, OutOfBoundsError) as e:
        fmt.error(f"failed to save chat history: {e}")
        return None
    fmt.success(f"chat history saved to {path}")
    return path


def _repl_basedir(arg: str, workspace) -> None:
    arg = arg.strip()
    if not arg:
        fmt.info(f"base directory: {workspace.base_dir}")
        return
    try:
        new_dir = workspace.set_base_dir(arg)
    except OSError as e:
        fmt.error(f"{e}; base directory unchanged ({workspace.base_dir})")
        return
    fmt.success(f"base directory changed to {new_dir}")


# ---------------------------------------------------------------------------
# File attachments
# ---------------------------------------------------------------------------


def list_candidate_files(base_dir) -> list[str]:
    """List files under base_dir as sorted POSIX-style relative paths."""
    base = Path(base_dir)
    found: list[str] = []
    for dirpath, dirs, files in os.walk(base):
        dirs[:] = [d for d in dirs if d not in IGNORED_DIRS]
        for filename in files:
            if any(fnmatch.fnmatch(filename, pat) for pat in IGNORED_FILES):
                continue
            found.append((Path(dirpath) / filename).relative_to(base).as_posix())
    return sorted(found)


def _is_subsequence(needle: str, haystack: str) -> bool:
    it = iter(haystack)
    return all(ch in it for ch in needle)


def filter_candidates(files: list[str], query: str) -> list[str]:
    """Case-insensitive substring match, falling back to subsequence matching."""
    query = query.strip().lower()
    if not query:
        return list(files)
    matches = [f for f in files if query in f.lower()]
    if matches:
        return matches
    return [f for f in files if _is_subsequence(query, f.lower())]


def select_file(candidates: list[str], ask=None) -> str | None:
    """Let the user pick one of ``candidates``; None when nothing is chosen."""
    if not candidates:
        return None
    if len(candidates) == 1:
        return candidates[0]

    if ask is None:

        def ask(message):
            return prompt(
                message,
                completer=FuzzyWordCompleter(candidates),
                complete_while_typing=True,
            )

    shown = candidates[:20]
    listing = "\n".join(f"    {c}" for c in shown)
    if len(candidates) > len(shown):
        listing += f"\n    ... and {len(candidates) - len(shown)} more"
    fmt.info(f"{len(candidates)} matching files:\n{listing}")

    try:
        answer = ask("Select a file to attach: ").strip()
    except (KeyboardInterrupt, EOFError):
        return None
    if not answer:
        return None
    if answer in candidates:
        return answer
    narrowed = filter_candidates(candidates, answer)
    if len(narrowed) == 1:
        return narrowed[0]
    fmt.warning(f"{answer!r} does not match exactly one file")
    return None


def read_attachment(rel_path: str, workspace) -> str:
    """Read an attached file, truncating beyond MAX_ATTACHMENT_CHARS.

    Raises:
        OSError, OutOfBoundsError: If the file cannot be read.
    """
    path = workspace.resolve(rel_path)
    content = path.read_text(encoding="utf-8", errors="replace")
    if len(content) > MAX_ATTACHMENT_CHARS:
        fmt.warning(
            f"{rel_path} is larger than {MAX_ATTACHMENT_CHARS} characters, "
            "only the beginning is attached"
        )
        content = (
            content[:MAX_ATTACHMENT_CHARS]
            + "\n... (file content truncated because it is too long)"
        )
    return content


def build_attachment_input(rel_path: str, content: str, question: str) -> str:
    return (
        "Answer the question using the following file content:\n\n"
        f"[File: {rel_path}]\n```\n{content}\n```\n\n"
        f"[Question]\n{question}"
    )


def _repl_attach(line: str, workspace, ask) -> str | None:
    """Run the ``@query`` flow. Returns the turn input, or None if aborted."""
    query = line.split(None, 1)[0][1:]
    files = list_candidate_files(workspace.base_dir)
    selected = select_file(filter_candidates(files, query), ask=ask)
    if not selected:
        fmt.warning("no file selected")
        return None

    try:
        content = read_attachment(selected, workspace)
    except (OSError, OutOfBoundsError) as e:
        fmt.error(f"failed to read {selected}: {e}")
        return None

    try:
        question = (ask or prompt)(f"Ask a question about '{selected}': ").strip()
    except (KeyboardInterrupt, EOFError):
        question = ""
    if not question:
        fmt.warning("no question entered")
        return None
    return build_attachment_input(selected, content, question)


# ---------------------------------------------------------------------------
# Turns
# ---------------------------------------------------------------------------


def execute_turn(user_input: str, store, workspace, *, llm, turn_kwargs: dict):
    """Run one turn with Ctrl-C bound to its cancellation token and report it."""
    with CancellationController() as token:
        result = run_turn(
            user_input, store, workspace, llm=llm, cancel_token=token, **turn_kwargs
        )

    if result.state is TurnState.DONE:
        print(result.answer)
    elif result.state is TurnState.CANCELED:
        fmt.warning("turn cancelled, nothing was added to the conversation")
    else:
        fmt.error(str(result.error))
    return result


def handle_line(
    line: str,
    store: ConversationStore,
    workspace,
    *,
    llm,
    turn_kwargs: dict,
    ask=None,
) -> bool:
    """Dispatch one input line. Returns False when the session should end."""
    line = line.strip()
    if not line:
        return True

    cmd_parts = line.split(None, 1)
    cmd = cmd_parts[0].lower()
    cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

    if cmd in ("/exit", "/quit"):
        fmt.info("Goodbye!")
        return False
    elif cmd == "/help":
        _repl_help()
    elif cmd == "/clear":
        _repl_clear(store)
    elif cmd == "/list":
        _repl_list(store)
    elif cmd == "/save":
        _repl_save(store, workspace)
    elif cmd == "/basedir":
        _repl_basedir(cmd_arg, workspace)
    elif cmd.startswith("/"):
        fmt.warning(f"unknown command {cmd}, type /help for the list")
    elif line.startswith("@"):
        user_input = _repl_attach(line, workspace, ask)
        if user_input:
            execute_turn(user_input, store, workspace, llm=llm, turn_kwargs=turn_kwargs)
    else:
        execute_turn(line, store, workspace, llm=llm, turn_kwargs=turn_kwargs)
    return True


def _confirm_exit() -> bool:
    try:
        return confirm("Do you really want to quit?")
    except (EOFError, KeyboardInterrupt):
        return True


def repl_loop(
    store: ConversationStore,
    workspace,
    *,
    llm,
    turn_kwargs: dict,
    history_file: str,
    initial_question: str | None = None,
    verbose: bool = True,
) -> None:
    """Interactive read-eval-print loop."""
    session = PromptSession(history=CommandHistory(history_file))
    prompt_text = FormattedText([("bold fg:ansigreen", "shellmate> ")])

    if verbose:
        fmt.repl_banner(str(workspace.base_dir))

    if initial_question:
        if not handle_line(
            initial_question, store, workspace, llm=llm, turn_kwargs=turn_kwargs
        ):
            return

    while True:
        try:
            line = session.prompt(prompt_text)
        except EOFError:
            break
        except KeyboardInterrupt:
            if _confirm_exit():
                break
            continue

        if not handle_line(line, store, workspace, llm=llm, turn_kwargs=turn_kwargs):
            break
