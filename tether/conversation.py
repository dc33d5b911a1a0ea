"""Conversation history and its rendering to chat-completion messages."""

import json
import logging
from collections import Counter
from functools import lru_cache

import tiktoken

from .types import (
    AssistantText,
    AssistantToolUse,
    ConversationMessage,
    ToolCall,
    ToolResult,
    UserText,
    UserToolResult,
)

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _encoder():
    # The BPE file is fetched on first use; without it there is no estimate.
    try:
        return tiktoken.get_encoding("cl100k_base")
    except Exception as e:
        logger.debug("tiktoken encoding unavailable: %s", e)
        return None


class ConversationError(Exception):
    """The history would break the call/result pairing the provider requires."""


class Conversation:
    """Append-only message history owned by a single agent loop.

    Every tool use must be answered by a result message covering exactly its
    call ids before anything else is appended.
    """

    def __init__(self, messages: list[ConversationMessage] | None = None):
        self.messages: list[ConversationMessage] = list(messages or [])
        self.broken = False
        self._pending: tuple[str, ...] | None = None

    def __len__(self) -> int:
        return len(self.messages)

    @property
    def awaiting_results(self) -> bool:
        return self._pending is not None

    def append_user_text(self, text: str) -> None:
        self._require_answered("user text")
        self.messages.append(UserText(text))

    def append_assistant_text(self, text: str) -> None:
        self._require_answered("assistant text")
        self.messages.append(AssistantText(text))

    def append_tool_use(self, calls: list[ToolCall]) -> None:
        self._require_answered("tool use")
        if not calls:
            raise ConversationError("tool use message must contain at least one call")
        ids = tuple(call.id for call in calls)
        duplicates = sorted(i for i, n in Counter(ids).items() if n > 1)
        if duplicates:
            raise ConversationError(f"duplicate tool call ids in tool use: {duplicates}")
        self.messages.append(AssistantToolUse(tuple(calls)))
        self._pending = ids

    def append_tool_results(self, results: list[ToolResult]) -> None:
        if self._pending is None:
            raise ConversationError("tool results appended without a preceding tool use")
        expected = Counter(self._pending)
        got = Counter(r.call_id for r in results)
        if got != expected:
            missing = sorted((expected - got).elements())
            extra = sorted((got - expected).elements())
            raise ConversationError(
                "tool results do not match tool calls: "
                f"missing={missing} unexpected={extra}"
            )
        self.messages.append(UserToolResult(tuple(results)))
        self._pending = None

    def append_notice(self, text: str) -> None:
        """Append a terminal assistant notice, even mid-exchange.

        An unanswered tool use leaves the history unusable for another model
        call, so the conversation is marked broken in that case.
        """
        if self._pending is not None:
            self.broken = True
        self.messages.append(AssistantText(text))

    def last_assistant_text(self) -> str | None:
        for msg in reversed(self.messages):
            if isinstance(msg, AssistantText) and msg.text:
                return msg.text
        return None

    def _require_answered(self, what: str) -> None:
        if self._pending is not None:
            raise ConversationError(
                f"cannot append {what}: tool calls {list(self._pending)} have no results"
            )

    def to_messages(self, system_prompt: str | None = None) -> list[dict]:
        """Render to the OpenAI chat shape litellm accepts."""
        out: list[dict] = []
        if system_prompt is not None:
            out.append({"role": "system", "content": system_prompt})
        i = 0
        while i < len(self.messages):
            msg = self.messages[i]
            if isinstance(msg, UserText):
                out.append({"role": "user", "content": msg.text})
            elif isinstance(msg, AssistantText):
                nxt = self.messages[i + 1] if i + 1 < len(self.messages) else None
                if isinstance(nxt, AssistantToolUse):
                    out.append(_assistant_message(msg.text, nxt.calls))
                    i += 1
                else:
                    out.append({"role": "assistant", "content": msg.text})
            elif isinstance(msg, AssistantToolUse):
                out.append(_assistant_message(None, msg.calls))
            elif isinstance(msg, UserToolResult):
                for result in msg.results:
                    out.append(
                        {
                            "role": "tool",
                            "tool_call_id": result.call_id,
                            "content": _result_content(result),
                        }
                    )
            i += 1
        return out


def _assistant_message(text: str | None, calls: tuple[ToolCall, ...]) -> dict:
    return {
        "role": "assistant",
        "content": text or None,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments},
            }
            for call in calls
        ],
    }


def _result_content(result: ToolResult) -> str:
    if result.is_error and not result.output.startswith("error:"):
        return f"error: {result.output}"
    return result.output


def estimate_tokens(messages: list[dict], tools: list | None = None) -> int:
    """Count tokens across rendered messages using tiktoken.

    Returns 0 when the encoding cannot be loaded.
    """
    encoder = _encoder()
    if encoder is None:
        return 0
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += len(encoder.encode(content))
    if tools:
        total += len(encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total
