"""Tests for REPL mode: argument parsing, the terminal permission prompt, and repl_loop."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tether import agent
from tether.agent import (
    AgentLoop,
    TerminalPermissionSurface,
    _repl_clear,
    _repl_help,
    build_parser,
    parse_permission_answer,
    repl_loop,
)
from tether.executor import ToolRegistry
from tether.report import AgentError
from tether.types import (
    AssistantText,
    PermissionDecision,
    PermissionRequest,
    StreamDone,
    TextDelta,
    UserText,
)


@pytest.fixture(autouse=True)
def _no_tokenizer(monkeypatch):
    monkeypatch.setattr(agent, "estimate_tokens", lambda *a, **k: 0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class EchoModel:
    """Answers every question with 'echo: <last user text>'."""

    def __init__(self):
        self.seen = []

    async def stream(self, messages, tools):
        self.seen.append(messages)
        yield TextDelta(f"echo: {messages[-1]['content']}")
        yield StreamDone("stop")


def _loop(model=None):
    return AgentLoop(model or EchoModel(), ToolRegistry())


def _mock_session(inputs):
    """A PromptSession stand-in whose prompt_async() returns values from inputs."""
    side = []
    for v in inputs:
        if v is EOFError:
            side.append(EOFError())
        elif v is KeyboardInterrupt:
            side.append(KeyboardInterrupt())
        else:
            side.append(v)
    session = MagicMock()
    session.prompt_async = AsyncMock(side_effect=side)
    return session


def _run_repl(tmp_path, loop, inputs, question=None):
    with patch("prompt_toolkit.PromptSession", return_value=_mock_session(inputs)):
        asyncio.run(repl_loop(loop, question, base_dir=str(tmp_path), verbose=False))


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestParser:
    def test_question_optional_with_repl(self):
        args = build_parser().parse_args(["--repl"])
        assert args.repl is True
        assert args.question is None

    def test_question_with_repl(self):
        args = build_parser().parse_args(["--repl", "hello"])
        assert args.question == "hello"

    def test_system_prompt_flags_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--system-prompt", "x", "--no-system-prompt", "q"])

    def test_unknown_provider_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--provider", "acme", "q"])

    def test_question_required_without_repl(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
        monkeypatch.setattr("sys.argv", ["tether", "--base-dir", str(tmp_path)])
        with pytest.raises(SystemExit) as exc_info:
            agent.main()
        assert exc_info.value.code == 2


# ---------------------------------------------------------------------------
# Terminal permission prompt
# ---------------------------------------------------------------------------


class TestParsePermissionAnswer:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("y", PermissionDecision.ALLOW_ONCE),
            ("Yes", PermissionDecision.ALLOW_ONCE),
            ("a", PermissionDecision.ALLOW_ALWAYS),
            ("always", PermissionDecision.ALLOW_ALWAYS),
            ("n", PermissionDecision.DENY),
            ("", PermissionDecision.DENY),
            ("  no  ", PermissionDecision.DENY),
        ],
    )
    def test_answers(self, text, expected):
        assert parse_permission_answer(text) is expected

    def test_unrecognized(self):
        assert parse_permission_answer("maybe") is None


REQUEST = PermissionRequest("perm_1", "bash", '{"command": "ls"}', "run bash: ls")


class TestTerminalPermissionSurface:
    def _ask(self, inputs):
        surface = TerminalPermissionSurface()
        with patch("prompt_toolkit.PromptSession", return_value=_mock_session(inputs)):
            return asyncio.run(surface(REQUEST))

    def test_always(self):
        assert self._ask(["a"]) is PermissionDecision.ALLOW_ALWAYS

    def test_reprompts_on_garbage(self, capsys):
        assert self._ask(["what", "y"]) is PermissionDecision.ALLOW_ONCE

    def test_eof_denies(self):
        assert self._ask([EOFError]) is PermissionDecision.DENY

    def test_ctrl_c_denies(self):
        assert self._ask([KeyboardInterrupt]) is PermissionDecision.DENY

    def test_concurrent_requests_are_serialized(self):
        surface = TerminalPermissionSurface()
        active = []
        overlap = []

        async def slow_prompt(*args, **kwargs):
            active.append(1)
            if len(active) > 1:
                overlap.append(True)
            await asyncio.sleep(0.01)
            active.pop()
            return "y"

        session = MagicMock()
        session.prompt_async = slow_prompt

        async def scenario():
            return await asyncio.gather(surface(REQUEST), surface(REQUEST))

        with patch("prompt_toolkit.PromptSession", return_value=session):
            results = asyncio.run(scenario())
        assert results == [PermissionDecision.ALLOW_ONCE] * 2
        assert overlap == []

    def test_usable_across_event_loops(self):
        surface = TerminalPermissionSurface()
        with patch("prompt_toolkit.PromptSession", return_value=_mock_session(["y", "n"])):
            assert asyncio.run(surface(REQUEST)) is PermissionDecision.ALLOW_ONCE
            assert asyncio.run(surface(REQUEST)) is PermissionDecision.DENY


# ---------------------------------------------------------------------------
# repl_loop
# ---------------------------------------------------------------------------


class TestReplLoop:
    def test_exit_command(self, tmp_path):
        loop = _loop()
        _run_repl(tmp_path, loop, ["/exit"])
        assert len(loop.conversation) == 0

    def test_quit_command(self, tmp_path):
        loop = _loop()
        _run_repl(tmp_path, loop, ["/quit"])
        assert len(loop.conversation) == 0

    def test_eof(self, tmp_path):
        _run_repl(tmp_path, _loop(), [EOFError])

    def test_ctrl_c_at_prompt_exits(self, tmp_path):
        _run_repl(tmp_path, _loop(), [KeyboardInterrupt])

    def test_empty_lines_ignored(self, tmp_path):
        loop = _loop()
        _run_repl(tmp_path, loop, ["", "   ", "/exit"])
        assert len(loop.conversation) == 0

    def test_conversation_persists_across_questions(self, tmp_path, capsys):
        model = EchoModel()
        loop = _loop(model)
        _run_repl(tmp_path, loop, ["first", "second", "/exit"])
        assert loop.conversation.messages == [
            UserText("first"),
            AssistantText("echo: first"),
            UserText("second"),
            AssistantText("echo: second"),
        ]
        assert len(model.seen[1]) == 3

    def test_initial_question(self, tmp_path, capsys):
        loop = _loop()
        _run_repl(tmp_path, loop, ["/exit"], question="hello")
        assert loop.conversation.messages[0] == UserText("hello")

    def test_answer_on_stdout_not_stderr(self, tmp_path, capsys):
        _run_repl(tmp_path, _loop(), ["ping", "/exit"])
        captured = capsys.readouterr()
        assert "echo: ping" in captured.out
        assert "echo: ping" not in captured.err

    def test_history_dir_created(self, tmp_path):
        _run_repl(tmp_path, _loop(), ["/exit"])
        assert (tmp_path / ".tether").is_dir()

    def test_cancelled_question_keeps_repl_running(self, tmp_path, capsys):
        class CancellingModel:
            def __init__(self):
                self.loop = None
                self.calls = 0

            async def stream(self, messages, tools):
                self.calls += 1
                if self.calls == 1:
                    self.loop.cancel()
                    await asyncio.Event().wait()
                yield TextDelta("second try")
                yield StreamDone("stop")

        model = CancellingModel()
        loop = _loop(model)
        model.loop = loop
        _run_repl(tmp_path, loop, ["first", "again", "/exit"])
        captured = capsys.readouterr()
        assert "interrupted" in captured.err
        assert "second try" in captured.out
        assert loop.conversation.messages[-1] == AssistantText("second try")

    def test_agent_error_keeps_repl_running(self, tmp_path, capsys):
        class FlakyModel:
            def __init__(self):
                self.calls = 0

            async def stream(self, messages, tools):
                self.calls += 1
                if self.calls == 1:
                    raise AgentError("LLM call failed: timeout")
                yield TextDelta("recovered")
                yield StreamDone("stop")

        loop = _loop(FlakyModel())
        _run_repl(tmp_path, loop, ["one", "two", "/exit"])
        captured = capsys.readouterr()
        assert "timeout" in captured.err
        assert "recovered" in captured.out


class TestReplCommands:
    def test_help_prints_commands(self, capsys):
        _repl_help()
        err = capsys.readouterr().err
        assert "/clear" in err
        assert "/exit" in err

    def test_help_in_repl(self, tmp_path, capsys):
        loop = _loop()
        _run_repl(tmp_path, loop, ["/help", "/exit"])
        assert "/clear" in capsys.readouterr().err
        assert len(loop.conversation) == 0

    def test_clear_resets_conversation(self, capsys):
        loop = _loop()
        asyncio.run(loop.run_turn("hi"))
        _repl_clear(loop)
        assert len(loop.conversation) == 0
        assert "2 messages removed" in capsys.readouterr().err

    def test_clear_in_repl(self, tmp_path):
        model = EchoModel()
        loop = _loop(model)
        _run_repl(tmp_path, loop, ["first", "/clear", "second", "/exit"])
        assert loop.conversation.messages[0] == UserText("second")
        assert len(model.seen[1]) == 1
