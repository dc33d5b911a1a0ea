"""Reassemble streamed tool-call fragments into complete calls.

Models stream tool calls as a start marker, any number of argument chunks, and
an end marker, keyed by a correlation id. Several calls may be open at once.
Arguments are concatenated verbatim and never parsed here: malformed JSON is
the executor's problem, not the assembler's.

Protocol violations never raise. They are collected in ``errors`` and the
offending call is dropped.
"""

import logging
from dataclasses import dataclass

from .types import CallArgumentDelta, CallEnd, CallStart, ToolCall

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProtocolError:
    """A malformed or unterminated tool-call stream for one id."""

    call_id: str
    message: str


class ToolCallAssembler:
    """Buffer fragments per correlation id until each call is closed."""

    def __init__(self) -> None:
        self._names: dict[str, str] = {}
        self._buffers: dict[str, list[str]] = {}
        self._order: list[str] = []
        self._closed: set[str] = set()
        self.errors: list[ProtocolError] = []

    def feed(self, event) -> None:
        """Route a stream event. Events unrelated to tool calls are ignored."""
        if isinstance(event, CallStart):
            self.start(event.id, event.name)
        elif isinstance(event, CallArgumentDelta):
            self.delta(event.id, event.chunk)
        elif isinstance(event, CallEnd):
            self.end(event.id)

    def start(self, call_id: str, name: str) -> None:
        if call_id in self._buffers:
            self._error(call_id, "duplicate start for an open or finished call")
            return
        self._names[call_id] = name
        self._buffers[call_id] = []
        self._order.append(call_id)

    def delta(self, call_id: str, chunk: str) -> None:
        if call_id not in self._buffers:
            self._error(call_id, "argument fragment for unknown call")
            return
        if call_id in self._closed:
            self._error(call_id, "argument fragment after call end")
            return
        if chunk:
            self._buffers[call_id].append(chunk)

    def end(self, call_id: str) -> None:
        if call_id not in self._buffers:
            self._error(call_id, "end for unknown call")
            return
        if call_id in self._closed:
            self._error(call_id, "duplicate end")
            return
        self._closed.add(call_id)

    def finalize(self) -> list[ToolCall]:
        """Return completed calls in start order; discard everything else."""
        calls: list[ToolCall] = []
        for call_id in self._order:
            name = self._names[call_id]
            if call_id not in self._closed:
                self._error(call_id, f"call {name or '?'!r} never terminated, discarded")
                continue
            if not name:
                self._error(call_id, "call has no tool name, discarded")
                continue
            calls.append(
                ToolCall(id=call_id, name=name, arguments="".join(self._buffers[call_id]))
            )
        self._names.clear()
        self._buffers.clear()
        self._order.clear()
        self._closed.clear()
        return calls

    def _error(self, call_id: str, message: str) -> None:
        logger.debug("tool call %s: %s", call_id, message)
        self.errors.append(ProtocolError(call_id, message))
