"""Public library API for tether: Session class and Result dataclass."""

import asyncio
from dataclasses import dataclass

from .events import EventEmitter
from .report import ReportCollector


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    exhausted: bool
    state: str
    messages: list[dict]
    report: dict | None


class Session:
    """Programmatic interface to the tether agent loop.

    Stores configuration as plain attributes. Call .run() for single-shot
    questions or .ask() for multi-turn conversations. Permission answers are
    shared between both: an ``always`` given once holds for the session.

    ``surface`` is an async callable taking a PermissionRequest and returning
    a PermissionDecision; without one, tools set to ``ask`` are denied.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "lmstudio",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_steps: int = 10,
        max_output_tokens: int = 32768,
        temperature: float | None = None,
        top_p: float | None = None,
        seed: int | None = None,
        yolo: bool = False,
        verbose: bool = False,
        system_prompt: str | None = None,
        no_system_prompt: bool = False,
        persist_permissions: bool = False,
        permission: dict | None = None,
        surface=None,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_steps = max_steps
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.seed = seed
        self.yolo = yolo
        self.verbose = verbose
        self.system_prompt = system_prompt
        self.no_system_prompt = no_system_prompt
        self.persist_permissions = persist_permissions
        self.permission = dict(permission or {})
        self.surface = surface

        # Setup state (cached after first _setup())
        self._setup_done = False
        self._model_id: str | None = None
        self._policy = None
        self._store = None
        self._emitter = EventEmitter()

        # Conversation loop for ask() mode
        self._conv_loop = None

    def _setup(self) -> None:
        """Resolve the model and permission policy once."""
        if self._setup_done:
            return

        from .agent import build_policy
        from .provider import discover_model

        self._model_id = self.model
        if self.provider == "lmstudio" and not self._model_id:
            self._model_id = discover_model(self.base_url, self.verbose)

        self._policy, self._store = build_policy(
            self.base_dir,
            self.permission,
            yolo=self.yolo,
            persist_permissions=self.persist_permissions,
        )

        if self.verbose:
            from . import fmt

            fmt.init()
            self._emitter.subscribe(fmt.listener)

        self._setup_done = True

    def _new_loop(self):
        from .agent import build_loop

        return build_loop(
            base_dir=self.base_dir,
            provider=self.provider,
            model=self._model_id,
            api_key=self.api_key,
            base_url=self.base_url,
            max_output_tokens=self.max_output_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
            seed=self.seed,
            max_steps=self.max_steps,
            system_prompt=self.system_prompt,
            no_system_prompt=self.no_system_prompt,
            yolo=self.yolo,
            surface=self.surface,
            emitter=self._emitter,
            policy=self._policy,
            store=self._store,
            verbose=self.verbose,
        )

    def run(self, question: str, *, report: bool = False) -> Result:
        """Single-shot: run a question with fresh state. Each call is independent."""
        self._setup()
        loop = self._new_loop()

        collector = ReportCollector() if report else None
        if collector:
            self._emitter.subscribe(collector)
        try:
            outcome = asyncio.run(loop.run_turn(question))
        finally:
            if collector:
                self._emitter.unsubscribe(collector)

        report_dict = None
        if collector:
            report_dict = collector.build_report(
                task=question,
                model=self._model_id or "unknown",
                provider=self.provider,
                settings={
                    "max_steps": self.max_steps,
                    "max_output_tokens": self.max_output_tokens,
                    "temperature": self.temperature,
                    "top_p": self.top_p,
                    "seed": self.seed,
                    "yolo": self.yolo,
                },
                outcome=_outcome_label(outcome),
                answer=outcome.answer,
                exit_code=_exit_code(outcome),
                error_message=None if outcome.state.value == "done" else outcome.reason,
            )

        return _result(loop, outcome, report_dict)

    def ask(self, question: str) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        self._setup()
        if self._conv_loop is None:
            self._conv_loop = self._new_loop()
        outcome = asyncio.run(self._conv_loop.run_turn(question))
        return _result(self._conv_loop, outcome, None)

    def reset(self) -> None:
        """Clear conversation state without invalidating setup. Next ask() starts fresh."""
        self._conv_loop = None


def _outcome_label(outcome) -> str:
    if outcome.state.value == "done":
        return "success"
    return "exhausted" if outcome.exhausted else "aborted"


def _exit_code(outcome) -> int:
    if outcome.state.value == "done":
        return 0
    return 2 if outcome.exhausted else 1


def _result(loop, outcome, report: dict | None) -> Result:
    return Result(
        answer=outcome.answer,
        exhausted=outcome.exhausted,
        state=outcome.state.value,
        messages=loop.conversation.to_messages(loop.system_prompt),
        report=report,
    )
