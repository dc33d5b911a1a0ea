"""Permission policy and gate for tool execution.

Each tool name maps to allow, ask, or deny. ``ask`` suspends only the call
being gated while a decision comes back from the permission surface; an
``always`` answer upgrades the policy entry to ``allow`` on the spot.
"""

import asyncio
import json
import threading
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from pathlib import Path

from . import fmt
from .events import EventEmitter, PermissionRequested
from .types import (
    PermissionAction,
    PermissionDecision,
    PermissionRequest,
    ToolCall,
    ToolResult,
)

DOOM_LOOP = "doom_loop"
DENIED_OUTPUT = "permission denied"
MAX_ARG_PREVIEW = 100

DEFAULT_PERMISSIONS: dict[str, PermissionAction] = {
    "read": PermissionAction.ALLOW,
    "write": PermissionAction.ASK,
    "edit": PermissionAction.ASK,
    "bash": PermissionAction.ASK,
    "glob": PermissionAction.ALLOW,
    "grep": PermissionAction.ALLOW,
    "question": PermissionAction.ALLOW,
    "todowrite": PermissionAction.ALLOW,
    "todoread": PermissionAction.ALLOW,
    "webfetch": PermissionAction.ASK,
    DOOM_LOOP: PermissionAction.ASK,
}

# An async callable, or an object with an async request_decision() method.
PermissionSurface = Callable[[PermissionRequest], Awaitable[PermissionDecision]]


def parse_action(value) -> PermissionAction:
    """Coerce a config value to an action.

    Accepts a plain string or a table of pattern -> action, in which case the
    first action is used (patterns are not matched individually).
    """
    if isinstance(value, dict):
        if not value:
            raise ValueError("empty permission table")
        value = next(iter(value.values()))
    if isinstance(value, PermissionAction):
        return value
    if not isinstance(value, str):
        raise ValueError(f"expected 'allow', 'ask' or 'deny', got {value!r}")
    try:
        return PermissionAction(value.lower())
    except ValueError:
        raise ValueError(f"expected 'allow', 'ask' or 'deny', got {value!r}") from None


class PermissionPolicy:
    """Tool name -> action table, safe to update from any thread."""

    def __init__(
        self,
        overrides: Mapping[str, object] | None = None,
        *,
        default: PermissionAction = PermissionAction.ASK,
    ):
        self._lock = threading.Lock()
        self._rules: dict[str, PermissionAction] = dict(DEFAULT_PERMISSIONS)
        self.default = default
        for name, value in (overrides or {}).items():
            self._rules[name] = parse_action(value)

    @classmethod
    def from_config(
        cls,
        table: Mapping[str, object] | None = None,
        *,
        approved: Iterable[str] = (),
        yolo: bool = False,
    ) -> "PermissionPolicy":
        """Build a policy: defaults, then saved approvals, then config entries."""
        policy = cls()
        if yolo:
            for name, action in list(policy.snapshot().items()):
                if action is PermissionAction.ASK:
                    policy.set(name, PermissionAction.ALLOW)
            policy.default = PermissionAction.ALLOW
        for name in approved:
            policy.upgrade(name)
        for name, value in (table or {}).items():
            policy.set(name, parse_action(value))
        return policy

    def evaluate(self, tool_name: str) -> PermissionAction:
        with self._lock:
            return self._rules.get(tool_name, self.default)

    def set(self, tool_name: str, action: PermissionAction) -> None:
        with self._lock:
            self._rules[tool_name] = action

    def upgrade(self, tool_name: str) -> bool:
        """Switch an ``ask`` entry to ``allow``. Returns True if it changed."""
        with self._lock:
            if self._rules.get(tool_name, self.default) is not PermissionAction.ASK:
                return False
            self._rules[tool_name] = PermissionAction.ALLOW
            return True

    def snapshot(self) -> dict[str, PermissionAction]:
        with self._lock:
            return dict(self._rules)


def _safe_permissions_path(base_dir: str) -> Path:
    """Build the approvals path, verify it resolves inside base_dir."""
    base = Path(base_dir).resolve()
    path = (Path(base_dir) / ".tether" / "permissions.json").resolve()
    if not path.is_relative_to(base):
        raise ValueError(f"permissions path {path} escapes base directory {base}")
    return path


class PermissionStore:
    """Tool names approved with ``always``, saved in <base_dir>/.tether/."""

    def __init__(self, base_dir: str):
        self.path = _safe_permissions_path(base_dir)

    def load(self) -> list[str]:
        if not self.path.is_file():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            fmt.warning(f"ignoring unreadable {self.path}: {e}")
            return []
        if not isinstance(data, list) or not all(isinstance(n, str) for n in data):
            fmt.warning(f"ignoring {self.path}: expected a JSON list of tool names")
            return []
        return data

    def add(self, tool_name: str) -> None:
        names = self.load()
        if tool_name in names:
            return
        names.append(tool_name)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(names, indent=2) + "\n", encoding="utf-8")
        except OSError as e:
            fmt.warning(f"failed to save permission for {tool_name!r}: {e}")


def _preview(arguments: str) -> str:
    if len(arguments) > MAX_ARG_PREVIEW:
        return arguments[:MAX_ARG_PREVIEW] + "..."
    return arguments


class PermissionGate:
    """Decide whether each tool call may run.

    ``authorize`` returns None for a call that may proceed, or the error
    result to hand back to the model instead of running it.
    """

    def __init__(
        self,
        policy: PermissionPolicy | None = None,
        surface: PermissionSurface | None = None,
        *,
        store: PermissionStore | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.policy = policy or PermissionPolicy()
        self.surface = surface
        self.store = store
        self.emitter = emitter or EventEmitter()
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_loop: asyncio.AbstractEventLoop | None = None

    def evaluate(self, tool_name: str) -> PermissionAction:
        return self.policy.evaluate(tool_name)

    async def authorize(self, call: ToolCall) -> ToolResult | None:
        return await self._authorize(
            call.name,
            call,
            f"Execute {call.name!r} with arguments: {_preview(call.arguments)}",
            DENIED_OUTPUT,
        )

    async def authorize_doom_loop(self, call: ToolCall, repeats: int) -> ToolResult | None:
        return await self._authorize(
            DOOM_LOOP,
            call,
            f"Doom loop detected: {call.name!r} called {repeats} times "
            "with identical arguments",
            f"{DENIED_OUTPUT}: {call.name!r} was called {repeats} times in a row "
            "with identical arguments. Do not repeat this call; try a different approach.",
        )

    async def _authorize(
        self, key: str, call: ToolCall, description: str, denied_output: str
    ) -> ToolResult | None:
        denied = ToolResult(call_id=call.id, output=denied_output, is_error=True)
        action = self.policy.evaluate(key)
        if action is PermissionAction.ALLOW:
            return None
        if action is PermissionAction.DENY:
            return denied

        # One prompt per key at a time; a sibling's "always" skips the next one.
        async with self._lock_for(key):
            action = self.policy.evaluate(key)
            if action is PermissionAction.ALLOW:
                return None
            if action is PermissionAction.DENY:
                return denied
            try:
                decision = await self._request(key, call, description)
            except Exception as e:
                return ToolResult(
                    call_id=call.id,
                    output=f"permission request failed: {e}",
                    is_error=True,
                )
            if decision is PermissionDecision.ALLOW_ALWAYS:
                self._grant_always(key)

        return None if decision.allowed else denied

    async def _request(
        self, key: str, call: ToolCall, description: str
    ) -> PermissionDecision:
        if self.surface is None:
            return PermissionDecision.DENY
        request = PermissionRequest(
            id=f"perm_{uuid.uuid4().hex[:12]}",
            tool_name=key,
            arguments=call.arguments,
            description=description,
        )
        self.emitter.emit(PermissionRequested(request))
        ask = getattr(self.surface, "request_decision", self.surface)
        return PermissionDecision(await ask(request))

    def _grant_always(self, key: str) -> None:
        if self.policy.upgrade(key) and self.store is not None:
            self.store.add(key)

    def _lock_for(self, key: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._locks_loop is not loop:
            self._locks = {}
            self._locks_loop = loop
        return self._locks.setdefault(key, asyncio.Lock())
