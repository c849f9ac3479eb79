"""Conversation log, markdown export and the REPL command history file."""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from prompt_toolkit.history import History

from . import fmt
from .sandbox import resolve_path

MAX_COMMAND_HISTORY = 100


@dataclass(frozen=True)
class Turn:
    """One completed human/assistant exchange."""

    human: str
    assistant: str
    timestamp: datetime = field(default_factory=datetime.now)


class ConversationStore:
    """Append-only, ordered log of completed turns.

    Only the turn executor appends; ``clear()`` is driven by ``/clear``.
    """

    def __init__(self):
        self._turns: list[Turn] = []

    def append(self, turn: Turn) -> None:
        self._turns.append(turn)

    def snapshot(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def clear(self) -> int:
        """Drop every turn. Returns how many were removed."""
        dropped = len(self._turns)
        self._turns = []
        return dropped

    def __len__(self) -> int:
        return len(self._turns)

    def to_messages(self) -> list[dict]:
        """Render the log as alternating user/assistant chat messages."""
        messages = []
        for turn in self._turns:
            messages.append({"role": "user", "content": turn.human})
            messages.append({"role": "assistant", "content": turn.assistant})
        return messages

    def to_markdown(self, timestamp: str) -> str:
        lines = [f"# Chat history ({timestamp})", ""]
        for turn in self._turns:
            lines += ["**Human:**", turn.human, "", "---", ""]
            lines += ["**AI:**", turn.assistant, "", "---", ""]
        return "\n".join(lines)

    def export(self, base_dir, now: datetime | None = None) -> Path:
        """Write the log to ``chathistory_<YYYYmmddHHMMSS>.md`` under base_dir.

        An existing export is never overwritten: a second save within the
        same second gets a ``_1``, ``_2``, ... suffix.

        Raises:
            OSError: If the file cannot be written.
        """
        timestamp = (now or datetime.now()).strftime("%Y%m%d%H%M%S")
        text = self.to_markdown(timestamp)
        suffix = 0
        while True:
            stem = f"chathistory_{timestamp}"
            if suffix:
                stem += f"_{suffix}"
            path = resolve_path(f"{stem}.md", base_dir)
            try:
                with path.open("x", encoding="utf-8") as f:
                    f.write(text)
            except FileExistsError:
                suffix += 1
                continue
            return path


class CommandHistory(History):
    """prompt_toolkit history backed by a plain newline-delimited file.

    Only the most recent ``max_entries`` lines are kept: loading reads the
    tail of the file, and the file is rewritten down to the cap once it
    grows past it.
    """

    def __init__(self, path, max_entries: int = MAX_COMMAND_HISTORY):
        self.path = Path(path).expanduser()
        self.max_entries = max_entries
        self._entries: list[str] | None = None
        super().__init__()

    def _read_entries(self) -> list[str]:
        if self._entries is None:
            try:
                text = self.path.read_text(encoding="utf-8", errors="replace")
            except FileNotFoundError:
                text = ""
            except OSError as e:
                fmt.warning(f"failed to load command history: {e}")
                text = ""
            lines = [line for line in text.splitlines() if line.strip()]
            self._entries = lines[-self.max_entries :]
        return self._entries

    def entries(self) -> list[str]:
        """Oldest-first copy of the remembered commands."""
        return list(self._read_entries())

    def load_history_strings(self):
        # prompt_toolkit wants newest first
        yield from reversed(self._read_entries())

    def store_string(self, string: str) -> None:
        """Record one command line; write failures only produce a warning."""
        try:
            self._store(string)
        except OSError as e:
            fmt.warning(f"failed to save command history: {e}")

    def _store(self, string: str) -> None:
        entry = " ".join(string.splitlines()).strip()
        if not entry:
            return
        entries = self._read_entries()
        entries.append(entry)
        overflow = len(entries) > self.max_entries
        if overflow:
            del entries[: len(entries) - self.max_entries]

        self.path.parent.mkdir(parents=True, exist_ok=True)
        if overflow or not self.path.exists():
            self.path.write_text("\n".join(entries) + "\n", encoding="utf-8")
        else:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(entry + "\n")
