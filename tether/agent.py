import argparse
import asyncio
import os
import signal
import sys
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from importlib import metadata
from pathlib import Path

from . import fmt
from .assembler import ToolCallAssembler
from .config import _UNSET, apply_config_to_args, generate_config, load_config
from .conversation import Conversation, ConversationError, estimate_tokens
from .doom import DoomLoopDetector
from .events import (
    DoomLoopDetected,
    EventEmitter,
    ProtocolErrorReported,
    StepLimitReached,
    StepStarted,
    TurnDone,
)
from .executor import ParallelExecutor, ToolRegistry
from .permission import PermissionGate, PermissionPolicy, PermissionStore
from .provider import (
    PROVIDERS,
    LiteLLMClient,
    ModelClient,
    discover_model,
    resolve_api_key,
)
from .report import AgentError, ConfigError, ReportCollector
from .tools import TOOLS, build_registry
from .types import (
    PermissionDecision,
    PermissionRequest,
    StreamDone,
    TextDelta,
    ToolCall,
    ToolResult,
)

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
DEFAULT_MAX_STEPS = 10

REASON_STEP_LIMIT = "step_limit"
REASON_CANCELLED = "cancelled"

LENGTH_NUDGE = (
    "Your previous response was cut off by the output token limit. "
    "Continue exactly where you stopped."
)
STEP_LIMIT_NOTICE = (
    "Stopped: the step limit of {max_steps} tool rounds was reached "
    "before a final answer."
)


class TurnState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    STREAMING_RESPONSE = "streaming_response"
    BATCH_READY = "batch_ready"
    GATING = "gating"
    EXECUTING = "executing"
    APPENDING = "appending"
    CONTINUE = "continue"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class AgenticSession:
    """Mutable state of one user turn. Only the loop running it writes here."""

    conversation: Conversation
    doom_window: DoomLoopDetector
    max_steps: int = DEFAULT_MAX_STEPS
    steps_taken: int = 0
    state: TurnState = TurnState.AWAITING_MODEL
    abort_reason: str | None = None


@dataclass(frozen=True)
class TurnOutcome:
    state: TurnState
    answer: str | None
    steps_taken: int
    reason: str | None = None

    @property
    def exhausted(self) -> bool:
        return self.reason == REASON_STEP_LIMIT


class _Cancelled(Exception):
    pass


class AgentLoop:
    """Drive model rounds and tool batches until the model stops.

    One step is a streamed model response plus at most one tool batch. The
    conversation and the doom-loop window belong to the loop and carry over
    between turns; ``reset()`` starts both afresh.
    """

    def __init__(
        self,
        client: ModelClient,
        registry: ToolRegistry,
        gate: PermissionGate | None = None,
        *,
        tools: list[dict] | None = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        system_prompt: str | None = None,
        emitter: EventEmitter | None = None,
        doom: DoomLoopDetector | None = None,
        conversation: Conversation | None = None,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.client = client
        self.registry = registry
        self.emitter = emitter or EventEmitter()
        self.gate = gate or PermissionGate(emitter=self.emitter)
        self.executor = ParallelExecutor(registry, emitter=self.emitter)
        self.tools = list(tools or [])
        self.max_steps = max_steps
        self.system_prompt = system_prompt
        self.doom = doom or DoomLoopDetector()
        self.conversation = conversation or Conversation()
        self.session: AgenticSession | None = None
        self._cancel_event: asyncio.Event | None = None
        self._event_loop: asyncio.AbstractEventLoop | None = None

    def reset(self) -> None:
        self.conversation = Conversation()
        self.doom.reset()

    def cancel(self) -> None:
        """Abort the running turn, if any. Safe to call from another thread."""
        event, loop = self._cancel_event, self._event_loop
        if event is None or loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            event.set()
        else:
            loop.call_soon_threadsafe(event.set)

    async def run_turn(
        self, user_text: str, conversation: Conversation | None = None
    ) -> TurnOutcome:
        """Answer one user message, running tool rounds up to max_steps."""
        conversation = conversation if conversation is not None else self.conversation
        if conversation.broken:
            raise AgentError(
                "conversation was left inconsistent by an earlier error; start a new one"
            )
        session = AgenticSession(
            conversation=conversation,
            doom_window=self.doom,
            max_steps=self.max_steps,
        )
        self.session = session
        self._cancel_event = asyncio.Event()
        self._event_loop = asyncio.get_running_loop()
        answer: str | None = None
        try:
            try:
                conversation.append_user_text(user_text)
                while True:
                    session.state = TurnState.AWAITING_MODEL
                    messages = conversation.to_messages(self.system_prompt)
                    tokens = await self._race(
                        asyncio.to_thread(estimate_tokens, messages, self.tools)
                    )
                    self.emitter.emit(
                        StepStarted(session.steps_taken + 1, session.max_steps, tokens)
                    )

                    session.state = TurnState.STREAMING_RESPONSE
                    text, calls, finish_reason = await self._race(self._stream(messages))
                    if text:
                        answer = text

                    session.state = TurnState.BATCH_READY
                    if not calls:
                        if text:
                            conversation.append_assistant_text(text)
                        if finish_reason != "length":
                            return self._finish(session, TurnState.DONE, finish_reason, answer)
                        conversation.append_user_text(LENGTH_NUDGE)
                        if not self._advance(session):
                            return self._step_limit(session, answer)
                        session.state = TurnState.CONTINUE
                        continue

                    session.state = TurnState.GATING
                    tripped = self._check_doom(calls)

                    session.state = TurnState.EXECUTING
                    results = await self._race(
                        self.executor.run(calls, self._authorizer(tripped))
                    )

                    session.state = TurnState.APPENDING
                    if text:
                        conversation.append_assistant_text(text)
                    conversation.append_tool_use(calls)
                    conversation.append_tool_results(results)
                    if not self._advance(session):
                        return self._step_limit(session, answer)
                    session.state = TurnState.CONTINUE
            except ConversationError as e:
                conversation.append_notice(str(e))
                return self._finish(session, TurnState.ABORTED, f"internal error: {e}", answer)
        except _Cancelled:
            return self._finish(session, TurnState.ABORTED, REASON_CANCELLED, answer)
        except asyncio.CancelledError:
            self._finish(session, TurnState.ABORTED, REASON_CANCELLED, answer)
            raise
        except AgentError as e:
            self._finish(session, TurnState.ABORTED, f"error: {e}", answer)
            raise
        except Exception as e:
            self._finish(session, TurnState.ABORTED, f"error: {e}", answer)
            raise AgentError(f"turn failed: {e}") from e
        finally:
            self._cancel_event = None
            self._event_loop = None

    async def _stream(self, messages: list[dict]) -> tuple[str, list[ToolCall], str]:
        assembler = ToolCallAssembler()
        parts: list[str] = []
        finish_reason = None
        async for event in self.client.stream(messages, self.tools):
            if isinstance(event, TextDelta):
                parts.append(event.text)
            elif isinstance(event, StreamDone):
                finish_reason = event.finish_reason
            else:
                assembler.feed(event)
        calls = assembler.finalize()
        for err in assembler.errors:
            self.emitter.emit(ProtocolErrorReported(err.call_id, err.message))
        return "".join(parts), calls, finish_reason or "incomplete"

    async def _race(self, coro):
        """Await coro unless cancel() fires first."""
        if self._cancel_event.is_set():
            coro.close()
            raise _Cancelled()
        work = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise
        if work in done:
            waiter.cancel()
            return work.result()
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        raise _Cancelled()

    def _check_doom(self, calls: list[ToolCall]) -> set[str]:
        tripped = set()
        for call in calls:
            if self.doom.would_trip(call.name, call.arguments):
                tripped.add(call.id)
            self.doom.record(call.name, call.arguments)
        return tripped

    def _authorizer(self, tripped: set[str]):
        async def authorize(call: ToolCall) -> ToolResult | None:
            if call.id in tripped:
                repeats = self.doom.threshold
                self.emitter.emit(DoomLoopDetected(call, repeats))
                blocked = await self.gate.authorize_doom_loop(call, repeats)
                if blocked is not None:
                    return blocked
            return await self.gate.authorize(call)

        return authorize

    def _advance(self, session: AgenticSession) -> bool:
        session.steps_taken += 1
        return session.steps_taken < session.max_steps

    def _step_limit(self, session: AgenticSession, answer: str | None) -> TurnOutcome:
        session.conversation.append_notice(
            STEP_LIMIT_NOTICE.format(max_steps=session.max_steps)
        )
        self.emitter.emit(StepLimitReached(session.max_steps))
        return self._finish(session, TurnState.ABORTED, REASON_STEP_LIMIT, answer)

    def _finish(
        self,
        session: AgenticSession,
        state: TurnState,
        reason: str | None,
        answer: str | None,
    ) -> TurnOutcome:
        session.state = state
        if state is TurnState.ABORTED:
            session.abort_reason = reason
        self.emitter.emit(TurnDone(state.value, session.steps_taken, reason))
        return TurnOutcome(state, answer, session.steps_taken, reason)


# -- Assembly ----------------------------------------------------------------


def build_system_prompt(
    system_prompt: str | None, no_system_prompt: bool
) -> str | None:
    if no_system_prompt:
        return None
    if system_prompt:
        return system_prompt
    content = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
    now = datetime.now().astimezone()
    return content + f"\n\nCurrent date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"


def build_policy(
    base_dir: str,
    permission: dict | None,
    *,
    yolo: bool = False,
    persist_permissions: bool = False,
) -> tuple[PermissionPolicy, PermissionStore | None]:
    store = None
    if persist_permissions:
        try:
            store = PermissionStore(base_dir)
        except ValueError as e:
            raise ConfigError(str(e)) from e
    try:
        policy = PermissionPolicy.from_config(
            permission, approved=store.load() if store else (), yolo=yolo
        )
    except ValueError as e:
        raise ConfigError(f"invalid permission table: {e}") from e
    return policy, store


def build_loop(
    *,
    base_dir: str = ".",
    provider: str = "lmstudio",
    model: str | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
    max_output_tokens: int = 32768,
    temperature: float | None = None,
    top_p: float | None = None,
    seed: int | None = None,
    max_steps: int = DEFAULT_MAX_STEPS,
    system_prompt: str | None = None,
    no_system_prompt: bool = False,
    yolo: bool = False,
    persist_permissions: bool = False,
    permission: dict | None = None,
    surface=None,
    emitter: EventEmitter | None = None,
    policy: PermissionPolicy | None = None,
    store: PermissionStore | None = None,
    verbose: bool = False,
) -> AgentLoop:
    """Wire a litellm client, the built-in tools and a permission gate."""
    if provider not in PROVIDERS:
        raise ConfigError(f"unknown provider {provider!r}")
    if provider == "lmstudio" and not model:
        model = discover_model(base_url, verbose)
    client = LiteLLMClient(
        provider=provider,
        model=model or "",
        api_key=resolve_api_key(provider, api_key),
        base_url=base_url,
        max_output_tokens=max_output_tokens,
        temperature=temperature,
        top_p=top_p,
        seed=seed,
    )
    if policy is None:
        policy, store = build_policy(
            base_dir, permission, yolo=yolo, persist_permissions=persist_permissions
        )
    emitter = emitter or EventEmitter()
    gate = PermissionGate(policy, surface, store=store, emitter=emitter)
    return AgentLoop(
        client,
        build_registry(base_dir, yolo=yolo),
        gate,
        tools=TOOLS,
        max_steps=max_steps,
        system_prompt=build_system_prompt(system_prompt, no_system_prompt),
        emitter=emitter,
    )


# -- Terminal permission prompt ----------------------------------------------


def parse_permission_answer(text: str) -> PermissionDecision | None:
    answer = text.strip().lower()
    if answer in ("y", "yes", "once"):
        return PermissionDecision.ALLOW_ONCE
    if answer in ("a", "always"):
        return PermissionDecision.ALLOW_ALWAYS
    if answer in ("", "n", "no", "deny"):
        return PermissionDecision.DENY
    return None


class TerminalPermissionSurface:
    """Ask on the terminal: y = once, a = always, n (or Ctrl-C/D) = deny.

    Prompts from concurrent calls are shown one at a time.
    """

    def __init__(self):
        self._lock: asyncio.Lock | None = None
        self._lock_loop: asyncio.AbstractEventLoop | None = None

    async def __call__(self, request: PermissionRequest) -> PermissionDecision:
        from prompt_toolkit import PromptSession
        from prompt_toolkit.formatted_text import FormattedText

        loop = asyncio.get_running_loop()
        if self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        async with self._lock:
            fmt.permission_request(request)
            session = PromptSession()
            prompt = FormattedText(
                [("bold fg:ansiyellow", "  allow? [y]es / [a]lways / [N]o: ")]
            )
            while True:
                try:
                    text = await session.prompt_async(prompt)
                except (EOFError, KeyboardInterrupt):
                    return PermissionDecision.DENY
                decision = parse_permission_answer(text)
                if decision is not None:
                    return decision
                fmt.warning("answer y, a or n")


# -- CLI ---------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="tether",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A tool-calling agent with permission-gated, parallel tool execution.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (tether.toml) variant.",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider: lmstudio (local), huggingface, openrouter, or generic (any litellm model string).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (auto-discovered for lmstudio when omitted).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens (default: 32768).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--top-p",
        type=float,
        default=_UNSET,
        help="Top-p (nucleus) sampling (default: provider default).",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=_UNSET,
        help="Random seed for reproducible outputs (model support varies).",
    )

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="System prompt to use instead of the built-in one.",
    )
    prompt_group.add_argument(
        "--no-system-prompt",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Omit the system message entirely.",
    )

    parser.add_argument(
        "-q",
        "--quiet",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--max-steps",
        type=int,
        default=_UNSET,
        help=f"Maximum tool rounds per question (default: {DEFAULT_MAX_STEPS}).",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Base directory for file tools (default: current directory).",
    )
    parser.add_argument(
        "--yolo",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Allow every tool without asking and lift the file sandbox.",
    )
    parser.add_argument(
        "--persist-permissions",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Remember 'always' answers in .tether/permissions.json.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("tether")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")
    if args.system_prompt and args.no_system_prompt:
        parser.error("--system-prompt and --no-system-prompt are mutually exclusive")
    if args.max_steps < 1:
        parser.error("--max-steps must be at least 1")

    fmt.init(color=args.color, no_color=args.no_color)

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, error_message=None):
        if not report:
            return
        data = report.build_report(
            task=args.question or "",
            model=getattr(args, "_resolved_model_id", None) or args.model or "unknown",
            provider=args.provider,
            settings={
                "max_steps": args.max_steps,
                "max_output_tokens": args.max_output_tokens,
                "temperature": args.temperature,
                "top_p": args.top_p,
                "seed": args.seed,
                "yolo": args.yolo,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            error_message=error_message,
        )
        try:
            report.write(args.report, data)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        _run_main(args, report, _write_report)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)


def _run_main(args, report, _write_report):
    emitter = EventEmitter()
    if args.verbose:
        emitter.subscribe(fmt.listener)
    if report:
        emitter.subscribe(report)

    loop = build_loop(
        base_dir=args.base_dir,
        provider=args.provider,
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
        max_output_tokens=args.max_output_tokens,
        temperature=args.temperature,
        top_p=args.top_p,
        seed=args.seed,
        max_steps=args.max_steps,
        system_prompt=args.system_prompt,
        no_system_prompt=args.no_system_prompt,
        yolo=args.yolo,
        persist_permissions=args.persist_permissions,
        permission=args.permission,
        surface=TerminalPermissionSurface(),
        emitter=emitter,
        verbose=args.verbose,
    )
    args._resolved_model_id = getattr(loop.client, "model_str", None)

    if args.repl:
        asyncio.run(repl_loop(loop, args.question, base_dir=args.base_dir, verbose=args.verbose))
        return

    try:
        outcome = asyncio.run(loop.run_turn(args.question))
    except KeyboardInterrupt:
        fmt.warning("interrupted, question aborted.")
        _write_report("interrupted", exit_code=130, error_message=REASON_CANCELLED)
        sys.exit(130)

    if outcome.answer is not None:
        print(outcome.answer)
    if outcome.state is TurnState.DONE:
        _write_report("success", answer=outcome.answer, exit_code=0)
        return
    if outcome.exhausted:
        _write_report("exhausted", answer=outcome.answer, exit_code=2)
        fmt.warning("step limit reached, agent stopped.")
        sys.exit(2)
    _write_report("aborted", answer=outcome.answer, exit_code=1, error_message=outcome.reason)
    fmt.error(f"turn aborted: {outcome.reason}")
    sys.exit(1)


# -- REPL --------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Start a new conversation\n"
        "  /exit, /quit       Exit the REPL\n"
        "Ctrl-C during a question cancels it."
    )


def _repl_clear(loop: AgentLoop) -> None:
    dropped = len(loop.conversation)
    loop.reset()
    fmt.info(f"context cleared ({dropped} messages removed)")


async def _repl_turn(loop: AgentLoop, question: str) -> None:
    event_loop = asyncio.get_running_loop()
    try:
        event_loop.add_signal_handler(signal.SIGINT, loop.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        outcome = await loop.run_turn(question)
    except AgentError as e:
        fmt.error(str(e))
        return
    finally:
        if installed:
            event_loop.remove_signal_handler(signal.SIGINT)

    if outcome.reason == REASON_CANCELLED:
        fmt.warning("interrupted, question aborted.")
        return
    if outcome.answer is not None:
        print(outcome.answer)
    if outcome.exhausted:
        fmt.warning("step limit reached for this question.")
    elif outcome.state is TurnState.ABORTED:
        fmt.error(f"turn aborted: {outcome.reason}")


async def repl_loop(
    loop: AgentLoop,
    question: str | None = None,
    *,
    base_dir: str = ".",
    verbose: bool = True,
) -> None:
    """Interactive read-eval-print loop sharing one conversation."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(base_dir, ".tether", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "tether> ")])

    if verbose:
        fmt.repl_banner()

    if question:
        await _repl_turn(loop, question)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = await session.prompt_async(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd = line.split(None, 1)[0].lower()
        if cmd == "/help":
            _repl_help()
            continue
        if cmd == "/clear":
            _repl_clear(loop)
            continue

        await _repl_turn(loop, line)


if __name__ == "__main__":
    main()
