"""JSON run reports and the reportable error hierarchy."""

import json
from datetime import datetime, timezone

from .events import (
    CallFinished,
    DoomLoopDetected,
    PermissionRequested,
    ProtocolErrorReported,
    StepLimitReached,
    StepStarted,
    TurnDone,
)


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad permission table, etc.)."""


class ReportCollector:
    """Accumulates lifecycle events during a run for JSON report output.

    Subscribe the instance itself as an event listener.
    """

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.permission_requests = 0
        self.doom_loops = 0
        self.protocol_errors = 0
        self.total_tool_time = 0.0
        self.max_step_seen = 0
        self.step_limit_hit = False
        self._step = 0

    def __call__(self, event: object) -> None:
        if isinstance(event, StepStarted):
            self._step = event.step
            self.max_step_seen = max(self.max_step_seen, event.step)
            self.events.append(
                {
                    "step": event.step,
                    "type": "step",
                    "prompt_tokens_est": event.token_estimate,
                }
            )
        elif isinstance(event, CallFinished):
            self.record_tool_call(
                event.call.name,
                not event.result.is_error,
                event.elapsed,
                len(event.result.output),
                error=event.result.output if event.result.is_error else None,
            )
        elif isinstance(event, PermissionRequested):
            self.permission_requests += 1
            self.events.append(
                {
                    "step": self._step,
                    "type": "permission_request",
                    "tool": event.request.tool_name,
                }
            )
        elif isinstance(event, DoomLoopDetected):
            self.doom_loops += 1
            self.events.append(
                {"step": self._step, "type": "doom_loop", "tool": event.call.name}
            )
        elif isinstance(event, ProtocolErrorReported):
            self.protocol_errors += 1
            self.events.append(
                {
                    "step": self._step,
                    "type": "protocol_error",
                    "call_id": event.call_id,
                    "message": event.message,
                }
            )
        elif isinstance(event, StepLimitReached):
            self.step_limit_hit = True
            self.events.append({"step": self._step, "type": "step_limit"})
        elif isinstance(event, TurnDone):
            self.events.append(
                {"step": self._step, "type": "turn_done", "state": event.state}
            )

    def record_tool_call(
        self,
        name: str,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "step": self._step,
            "type": "tool_call",
            "name": name,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "steps": self.max_step_seen,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "permission_requests": self.permission_requests,
                "doom_loops": self.doom_loops,
                "protocol_errors": self.protocol_errors,
                "step_limit_hit": self.step_limit_hit,
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def write(self, path: str, report: dict):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)
            f.write("\n")
