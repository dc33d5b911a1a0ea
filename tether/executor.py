"""Tool registry and concurrent batch execution.

Every call in a batch runs in its own task. A call that fails in any way
(bad JSON, unknown tool, a tool raising) yields an error result for that call
alone; the batch finishes only once every call has a result, and results come
back in the order the calls were given.
"""

import asyncio
import json
import time
from collections.abc import Awaitable, Callable

from .events import CallFinished, CallStarted, EventEmitter
from .types import ToolCall, ToolResult

MAX_OUTPUT_SIZE = 50 * 1024  # 50 KB
MAX_OUTPUT_LINES = 2000

ToolFunction = Callable[[dict], str]
Authorizer = Callable[[ToolCall], Awaitable[ToolResult | None]]


class ToolError(Exception):
    """A tool failed; the message is shown to the model."""


class UnknownToolError(ToolError):
    pass


def truncate_output(output: str) -> tuple[str, bool]:
    """Cap output at MAX_OUTPUT_LINES lines and MAX_OUTPUT_SIZE bytes."""
    lines = output.split("\n")
    if len(lines) > MAX_OUTPUT_LINES:
        kept = "\n".join(lines[:MAX_OUTPUT_LINES])
        return (
            kept
            + f"\n\n[Output truncated: {MAX_OUTPUT_LINES} lines shown of {len(lines)} total]",
            True,
        )

    total = len(output.encode("utf-8"))
    if total > MAX_OUTPUT_SIZE:
        kept_lines: list[str] = []
        size = 0
        for line in lines:
            line_size = len(line.encode("utf-8")) + (1 if kept_lines else 0)
            if size + line_size > MAX_OUTPUT_SIZE:
                break
            kept_lines.append(line)
            size += line_size
        return (
            "\n".join(kept_lines)
            + f"\n\n[Output truncated: {size} bytes shown of {total} total]",
            True,
        )

    return output, False


class ToolRegistry:
    """Name -> tool function lookup.

    Tool functions take the parsed argument object and return text. They
    report failures by raising ToolError (any other exception is treated the
    same way by the executor).
    """

    def __init__(self, tools: dict[str, ToolFunction] | None = None):
        self._tools: dict[str, ToolFunction] = dict(tools or {})

    def register(self, name: str, func: ToolFunction) -> None:
        self._tools[name] = func

    def names(self) -> list[str]:
        return sorted(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def execute(self, name: str, arguments: str) -> str:
        func = self._tools.get(name)
        if func is None:
            available = ", ".join(self.names()) or "none"
            raise UnknownToolError(f"unknown tool {name!r} (available: {available})")
        try:
            args = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError as e:
            raise ToolError(f"invalid JSON in tool arguments: {e}") from e
        if not isinstance(args, dict):
            raise ToolError(
                f"tool arguments must be a JSON object, got {type(args).__name__}"
            )
        return func(args)


class ParallelExecutor:
    """Run a batch of tool calls concurrently against a registry."""

    def __init__(self, registry: ToolRegistry, *, emitter: EventEmitter | None = None):
        self.registry = registry
        self.emitter = emitter or EventEmitter()

    async def execute(self, calls: list[ToolCall]) -> list[ToolResult]:
        """Execute already-approved calls."""
        return await self.run(calls)

    async def run(
        self, calls: list[ToolCall], authorize: Authorizer | None = None
    ) -> list[ToolResult]:
        """Authorize and execute each call in its own task.

        ``authorize`` returns None to let a call through, or a result to use
        in place of running it. Calls let through start executing right away,
        even while siblings are still waiting for a decision.
        """
        tasks = [asyncio.create_task(self._run_one(call, authorize)) for call in calls]
        try:
            return list(await asyncio.gather(*tasks))
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _run_one(self, call: ToolCall, authorize: Authorizer | None) -> ToolResult:
        if authorize is not None:
            try:
                blocked = await authorize(call)
            except Exception as e:
                blocked = ToolResult(call.id, f"permission check failed: {e}", True)
            if blocked is not None:
                self.emitter.emit(CallFinished(call, blocked, 0.0))
                return blocked

        self.emitter.emit(CallStarted(call))
        t0 = time.monotonic()
        try:
            output = await asyncio.to_thread(
                self.registry.execute, call.name, call.arguments
            )
        except Exception as e:
            result = ToolResult(call.id, str(e) or type(e).__name__, True)
        else:
            if not isinstance(output, str):
                output = "" if output is None else str(output)
            output, _ = truncate_output(output)
            result = ToolResult(call.id, output, False)
        self.emitter.emit(CallFinished(call, result, time.monotonic() - t0))
        return result
