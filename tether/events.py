"""Lifecycle events published by the agent loop for presentation layers.

Events are observational. Nothing in the loop waits on a listener, and a
listener that raises is logged and skipped.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .types import PermissionRequest, ToolCall, ToolResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepStarted:
    step: int
    max_steps: int
    token_estimate: int


@dataclass(frozen=True)
class CallStarted:
    call: ToolCall


@dataclass(frozen=True)
class CallFinished:
    call: ToolCall
    result: ToolResult
    elapsed: float


@dataclass(frozen=True)
class PermissionRequested:
    request: PermissionRequest


@dataclass(frozen=True)
class DoomLoopDetected:
    call: ToolCall
    repeats: int


@dataclass(frozen=True)
class ProtocolErrorReported:
    call_id: str
    message: str


@dataclass(frozen=True)
class StepLimitReached:
    max_steps: int


@dataclass(frozen=True)
class TurnDone:
    state: str
    steps: int
    reason: str | None = None


Listener = Callable[[object], None]


class EventEmitter:
    """Fan events out to registered listeners."""

    def __init__(self, listeners: list[Listener] | None = None):
        self._listeners: list[Listener] = list(listeners or [])

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: object) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "event listener %r failed on %s", listener, type(event).__name__
                )
