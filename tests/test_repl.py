"""Tests for the interactive loop: commands, attachments and turn routing."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from shellmate.agent import TurnState
from shellmate.repl import (
    MAX_ATTACHMENT_CHARS,
    build_attachment_input,
    filter_candidates,
    handle_line,
    list_candidate_files,
    read_attachment,
    repl_loop,
    select_file,
)
from shellmate.sandbox import Workspace
from shellmate.store import ConversationStore, Turn


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_text_response(text):
    msg = SimpleNamespace(content=text, tool_calls=None, role="assistant")
    return msg, "stop"


class RecordingLLM:
    def __init__(self, answer="the answer"):
        self.answer = answer
        self.inputs: list[str] = []

    def __call__(self, messages, tools):
        self.inputs.append(messages[-1]["content"])
        return _make_text_response(self.answer)


def _answers(*answers):
    """Stub for the prompt function used by the attachment flow."""
    queue = list(answers)
    asked = []

    def ask(message):
        asked.append(message)
        return queue.pop(0)

    ask.asked = asked
    return ask


@pytest.fixture
def ws(tmp_path):
    return Workspace(tmp_path)


@pytest.fixture
def store():
    return ConversationStore()


def _line(line, store, ws, llm=None, ask=None):
    return handle_line(
        line,
        store,
        ws,
        llm=llm or RecordingLLM(),
        turn_kwargs={"system_prompt": "test"},
        ask=ask,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCommands:
    @pytest.mark.parametrize("cmd", ["/exit", "/quit", "/EXIT", "  /exit  "])
    def test_exit_ends_session(self, cmd, store, ws):
        assert _line(cmd, store, ws) is False

    def test_blank_line_is_ignored(self, store, ws):
        llm = RecordingLLM()
        assert _line("   ", store, ws, llm=llm) is True
        assert llm.inputs == []

    def test_help(self, store, ws, capsys):
        assert _line("/help", store, ws) is True
        assert "/basedir" in capsys.readouterr().err

    def test_unknown_command_does_not_reach_model(self, store, ws, capsys):
        llm = RecordingLLM()
        assert _line("/frobnicate", store, ws, llm=llm) is True
        assert llm.inputs == []
        assert "unknown command /frobnicate" in capsys.readouterr().err

    def test_clear_then_list(self, store, ws, capsys):
        store.append(Turn(human="q", assistant="a"))
        _line("/clear", store, ws)
        assert len(store) == 0
        _line("/list", store, ws)
        err = capsys.readouterr().err
        assert "1 turns removed" in err
        assert "0 turns" in err

    def test_list_prints_turns(self, store, ws, capsys):
        store.append(Turn(human="what is up", assistant="the sky"))
        _line("/list", store, ws)
        err = capsys.readouterr().err
        assert "Human:" in err
        assert "what is up" in err
        assert "the sky" in err

    def test_save_writes_markdown(self, store, ws, tmp_path):
        store.append(Turn(human="hello", assistant="hi"))
        _line("/save", store, ws)
        saved = list(tmp_path.glob("chathistory_*.md"))
        assert len(saved) == 1
        text = saved[0].read_text(encoding="utf-8")
        assert "**Human:**" in text
        assert "**AI:**" in text

    def test_save_empty_history_writes_nothing(self, store, ws, tmp_path):
        _line("/save", store, ws)
        assert list(tmp_path.glob("chathistory_*.md")) == []

    def test_basedir_change(self, store, ws, tmp_path):
        (tmp_path / "sub").mkdir()
        _line("/basedir sub", store, ws)
        assert ws.base_dir == tmp_path / "sub"

    def test_basedir_bad_path_keeps_old(self, store, ws, tmp_path, capsys):
        _line("/basedir nowhere", store, ws)
        assert ws.base_dir == tmp_path
        assert "unchanged" in capsys.readouterr().err

    def test_basedir_without_argument_shows_current(self, store, ws, tmp_path, capsys):
        _line("/basedir", store, ws)
        assert str(tmp_path) in capsys.readouterr().err


# ---------------------------------------------------------------------------
# Chat turns
# ---------------------------------------------------------------------------


class TestChat:
    def test_plain_line_runs_turn(self, store, ws, capsys):
        llm = RecordingLLM("forty-two")
        assert _line("what is the answer?", store, ws, llm=llm) is True
        assert llm.inputs == ["what is the answer?"]
        assert "forty-two" in capsys.readouterr().out
        assert len(store) == 1

    def test_failed_turn_reports_error(self, store, ws, capsys):
        def broken(messages, tools):
            raise RuntimeError("service unavailable")

        _line("hi", store, ws, llm=broken)
        assert "service unavailable" in capsys.readouterr().err
        assert len(store) == 0

    def test_canceled_turn_reports_warning(self, store, ws, capsys):
        fake = SimpleNamespace(state=TurnState.CANCELED, answer=None, error=None)
        with patch("shellmate.repl.run_turn", return_value=fake):
            _line("hi", store, ws)
        assert "cancelled" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------


class TestAttachments:
    def test_list_candidate_files_skips_ignored(self, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "main.py").write_text("x")
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "config").write_text("x")
        (tmp_path / "node_modules").mkdir()
        (tmp_path / "node_modules" / "lib.js").write_text("x")
        (tmp_path / "prod.env").write_text("SECRET=1")
        (tmp_path / "README.md").write_text("x")
        assert list_candidate_files(tmp_path) == ["README.md", "src/main.py"]

    def test_filter_substring(self):
        files = ["src/main.py", "src/util.py", "README.md"]
        assert filter_candidates(files, "MAIN") == ["src/main.py"]

    def test_filter_subsequence_fallback(self):
        files = ["src/main.py", "README.md"]
        assert filter_candidates(files, "smp") == ["src/main.py"]

    def test_filter_empty_query_keeps_all(self):
        assert filter_candidates(["a", "b"], "") == ["a", "b"]

    def test_select_single_candidate_without_asking(self):
        ask = _answers()
        assert select_file(["only.txt"], ask=ask) == "only.txt"
        assert ask.asked == []

    def test_select_from_many(self):
        ask = _answers("b.txt")
        assert select_file(["a.txt", "b.txt"], ask=ask) == "b.txt"

    def test_select_narrowed_by_answer(self):
        ask = _answers("bet")
        assert select_file(["alpha.txt", "beta.txt"], ask=ask) == "beta.txt"

    def test_select_nothing(self):
        assert select_file([], ask=_answers()) is None
        assert select_file(["a", "b"], ask=_answers("")) is None

    def test_read_attachment_truncates(self, ws, tmp_path):
        (tmp_path / "big.txt").write_text("x" * (MAX_ATTACHMENT_CHARS + 10))
        content = read_attachment("big.txt", ws)
        assert content.endswith("(file content truncated because it is too long)")
        assert content.startswith("x" * MAX_ATTACHMENT_CHARS)

    def test_attachment_input_layout(self):
        text = build_attachment_input("a.py", "print(1)", "what does it print?")
        assert "[File: a.py]" in text
        assert "print(1)" in text
        assert text.endswith("[Question]\nwhat does it print?")

    def test_at_query_sends_file_and_question(self, store, ws, tmp_path):
        (tmp_path / "notes.md").write_text("remember the milk")
        (tmp_path / "other.txt").write_text("nothing")
        llm = RecordingLLM()
        ask = _answers("what should I remember?")
        assert _line("@notes", store, ws, llm=llm, ask=ask) is True
        assert len(llm.inputs) == 1
        assert "remember the milk" in llm.inputs[0]
        assert "what should I remember?" in llm.inputs[0]
        assert len(store) == 1

    def test_at_query_without_match_runs_no_turn(self, store, ws, tmp_path, capsys):
        (tmp_path / "a.txt").write_text("x")
        llm = RecordingLLM()
        _line("@zzz", store, ws, llm=llm, ask=_answers())
        assert llm.inputs == []
        assert "no file selected" in capsys.readouterr().err

    @pytest.mark.parametrize("exc", [KeyboardInterrupt, EOFError])
    def test_interrupt_while_selecting_aborts_quietly(
        self, store, ws, tmp_path, exc, capsys
    ):
        (tmp_path / "a1.txt").write_text("x")
        (tmp_path / "a2.txt").write_text("y")
        llm = RecordingLLM()

        def ask(message):
            raise exc()

        assert _line("@a", store, ws, llm=llm, ask=ask) is True
        assert llm.inputs == []
        assert "no file selected" in capsys.readouterr().err

    @pytest.mark.parametrize("exc", [KeyboardInterrupt, EOFError])
    def test_interrupt_while_asking_question_aborts_quietly(
        self, store, ws, tmp_path, exc, capsys
    ):
        (tmp_path / "only.txt").write_text("x")
        llm = RecordingLLM()

        def ask(message):
            raise exc()

        assert _line("@only", store, ws, llm=llm, ask=ask) is True
        assert llm.inputs == []
        assert len(store) == 0
        assert "no question entered" in capsys.readouterr().err

    def test_at_query_empty_question_runs_no_turn(self, store, ws, tmp_path):
        (tmp_path / "a.txt").write_text("x")
        llm = RecordingLLM()
        _line("@a.txt", store, ws, llm=llm, ask=_answers("  "))
        assert llm.inputs == []


# ---------------------------------------------------------------------------
# repl_loop
# ---------------------------------------------------------------------------


class TestReplLoop:
    def _session(self, *inputs):
        session = MagicMock()
        session.prompt.side_effect = list(inputs)
        return session

    def test_eof_exits(self, store, ws, tmp_path):
        session = self._session(EOFError())
        with patch("shellmate.repl.PromptSession", return_value=session):
            repl_loop(
                store,
                ws,
                llm=RecordingLLM(),
                turn_kwargs={"system_prompt": "t"},
                history_file=str(tmp_path / "hist"),
                verbose=False,
            )
        assert session.prompt.call_count == 1

    def test_runs_lines_until_exit(self, store, ws, tmp_path):
        llm = RecordingLLM()
        session = self._session("first", "second", "/exit", "never")
        with patch("shellmate.repl.PromptSession", return_value=session):
            repl_loop(
                store,
                ws,
                llm=llm,
                turn_kwargs={"system_prompt": "t"},
                history_file=str(tmp_path / "hist"),
                verbose=False,
            )
        assert llm.inputs == ["first", "second"]
        assert len(store) == 2

    def test_initial_question_runs_first(self, store, ws, tmp_path):
        llm = RecordingLLM()
        session = self._session(EOFError())
        with patch("shellmate.repl.PromptSession", return_value=session):
            repl_loop(
                store,
                ws,
                llm=llm,
                turn_kwargs={"system_prompt": "t"},
                history_file=str(tmp_path / "hist"),
                initial_question="kick off",
                verbose=False,
            )
        assert llm.inputs == ["kick off"]

    def test_ctrl_c_at_prompt_asks_before_exit(self, store, ws, tmp_path):
        session = self._session(KeyboardInterrupt(), "/exit")
        with (
            patch("shellmate.repl.PromptSession", return_value=session),
            patch("shellmate.repl._confirm_exit", return_value=False) as confirm,
        ):
            repl_loop(
                store,
                ws,
                llm=RecordingLLM(),
                turn_kwargs={"system_prompt": "t"},
                history_file=str(tmp_path / "hist"),
                verbose=False,
            )
        confirm.assert_called_once()
        assert session.prompt.call_count == 2
