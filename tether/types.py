"""Value types shared by the tool-execution engine."""

from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class ToolCall:
    """A completed tool invocation. Arguments stay raw until execution."""

    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    output: str
    is_error: bool = False


# -- Stream events -----------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class CallStart:
    id: str
    name: str


@dataclass(frozen=True)
class CallArgumentDelta:
    id: str
    chunk: str


@dataclass(frozen=True)
class CallEnd:
    id: str


@dataclass(frozen=True)
class StreamDone:
    finish_reason: str


StreamEvent = TextDelta | CallStart | CallArgumentDelta | CallEnd | StreamDone


# -- Permissions -------------------------------------------------------------


class PermissionAction(str, Enum):
    """Policy for a tool name. Values match the config file spelling."""

    ALLOW = "allow"
    ASK = "ask"
    DENY = "deny"


class PermissionDecision(str, Enum):
    """Answer to a permission request."""

    ALLOW_ONCE = "once"
    ALLOW_ALWAYS = "always"
    DENY = "deny"

    @property
    def allowed(self) -> bool:
        return self is not PermissionDecision.DENY


@dataclass(frozen=True)
class PermissionRequest:
    id: str
    tool_name: str
    arguments: str
    description: str


# -- Conversation messages ---------------------------------------------------


@dataclass(frozen=True)
class UserText:
    text: str


@dataclass(frozen=True)
class AssistantText:
    text: str


@dataclass(frozen=True)
class AssistantToolUse:
    calls: tuple[ToolCall, ...]


@dataclass(frozen=True)
class UserToolResult:
    results: tuple[ToolResult, ...]


ConversationMessage = UserText | AssistantText | AssistantToolUse | UserToolResult
