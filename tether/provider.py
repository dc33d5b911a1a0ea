"""Model clients: the event stream the agent loop consumes.

The loop only needs ``stream(messages, tools)``, an async iterator of
TextDelta / CallStart / CallArgumentDelta / CallEnd / StreamDone events.
LiteLLMClient produces that from an OpenAI-style streamed completion.
"""

import json
import os
import urllib.error
import urllib.request
from collections.abc import AsyncIterator, Iterator
from typing import Protocol

from . import fmt
from .report import AgentError, ConfigError
from .types import (
    CallArgumentDelta,
    CallEnd,
    CallStart,
    StreamDone,
    StreamEvent,
    TextDelta,
)

PROVIDERS = ("lmstudio", "huggingface", "openrouter", "generic")
LMSTUDIO_DEFAULT_URL = "http://127.0.0.1:1234"

_API_KEY_ENV = {
    "huggingface": "HF_TOKEN",
    "openrouter": "OPENROUTER_API_KEY",
}


class ModelClient(Protocol):
    def stream(self, messages: list[dict], tools: list[dict]) -> AsyncIterator[StreamEvent]: ...


def resolve_api_key(provider: str, api_key: str | None) -> str | None:
    """Explicit key first, then the provider's env var."""
    if api_key:
        return api_key
    env = _API_KEY_ENV.get(provider)
    if env is None:
        return None
    key = os.environ.get(env)
    if not key:
        raise ConfigError(f"api_key or {env} env var required for {provider} provider")
    return key


def discover_model(base_url: str | None, verbose: bool) -> str:
    """Query LM Studio's native API to find the currently loaded LLM."""
    base_url = base_url or LMSTUDIO_DEFAULT_URL
    url = f"{base_url}/api/v1/models"
    if verbose:
        fmt.info(f"Querying {url} for loaded models...")

    try:
        req = urllib.request.Request(url)
        with urllib.request.urlopen(req, timeout=10) as resp:
            data = json.loads(resp.read().decode())
    except urllib.error.URLError as e:
        raise AgentError(f"could not connect to LM Studio at {base_url}: {e}") from e
    except json.JSONDecodeError as e:
        raise AgentError(f"invalid JSON from {url}: {e}") from e

    # "data" on the OpenAI-compatible API, "models" on the native one
    entries = data.get("data") or data.get("models") or []
    for entry in entries:
        if entry.get("type") == "llm" and entry.get("loaded_instances"):
            model_key = entry.get("id", entry.get("key"))
            if verbose:
                fmt.info(f"Discovered loaded model: {model_key}")
            return model_key

    raise AgentError(
        "no loaded LLM found in LM Studio. "
        "Load a model in LM Studio or use --model to specify one."
    )


def resolve_model(
    provider: str, model_id: str, base_url: str | None, api_key: str | None
) -> tuple[str, dict]:
    """Map a provider and model id to a litellm model string and call kwargs."""
    if not model_id:
        raise ConfigError(f"a model is required for provider {provider!r}")
    if provider == "lmstudio":
        api_base = base_url or LMSTUDIO_DEFAULT_URL
        return f"openai/{model_id}", {
            "api_base": f"{api_base}/v1",
            "api_key": api_key or "lm-studio",
        }
    if provider == "huggingface":
        bare_id = model_id.removeprefix("huggingface/")
        if "/" not in bare_id:
            raise ConfigError(
                "HuggingFace model must be in org/model format (e.g. zai-org/GLM-5)"
            )
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
        return f"huggingface/{bare_id}", kwargs
    if provider == "openrouter":
        # Only strip a doubled prefix; "openrouter/free" is a real model id.
        bare_id = (
            model_id[len("openrouter/") :]
            if model_id.startswith("openrouter/openrouter/")
            else model_id
        )
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
        return f"openrouter/{bare_id}", kwargs
    if provider == "generic":
        kwargs = {}
        if api_key:
            kwargs["api_key"] = api_key
        if base_url:
            kwargs["api_base"] = base_url
        return model_id, kwargs
    raise ConfigError(f"unknown provider {provider!r}")


def _get(obj, name):
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


class ChunkTranslator:
    """Turn streamed chat-completion chunks into loop events.

    OpenAI-style streams key tool-call fragments by ``index`` and carry the
    id and name only on the first fragment. They have no explicit end marker,
    so every open call is closed when a finish reason arrives. A stream cut
    off before that leaves its calls open.
    """

    def __init__(self):
        self._calls: dict = {}
        self._ended = False
        self.finish_reason: str | None = None

    def feed(self, chunk) -> Iterator[StreamEvent]:
        choices = _get(chunk, "choices") or []
        if not choices:
            return
        choice = choices[0]
        delta = _get(choice, "delta")
        if delta is not None:
            text = _get(delta, "content")
            if text:
                yield TextDelta(text)
            for tc in _get(delta, "tool_calls") or []:
                yield from self._feed_tool_call(tc)
        finish_reason = _get(choice, "finish_reason")
        if finish_reason and not self._ended:
            self.finish_reason = finish_reason
            yield from self._end_all()

    def close(self) -> Iterator[StreamEvent]:
        yield StreamDone(self.finish_reason or "incomplete")

    def _feed_tool_call(self, tc) -> Iterator[StreamEvent]:
        index = _get(tc, "index")
        call_id = _get(tc, "id")
        fn = _get(tc, "function")
        name = _get(fn, "name") if fn is not None else None
        args = _get(fn, "arguments") if fn is not None else None

        key = index if index is not None else call_id
        state = self._calls.get(key)
        if state is None:
            state = {
                "id": call_id or f"call_{index}",
                "name": name,
                "started": False,
                "pending": [],
            }
            self._calls[key] = state
        elif name and not state["name"]:
            state["name"] = name

        if not state["started"] and state["name"]:
            state["started"] = True
            yield CallStart(state["id"], state["name"])
            if state["pending"]:
                yield CallArgumentDelta(state["id"], "".join(state["pending"]))
                state["pending"].clear()
        if args:
            if state["started"]:
                yield CallArgumentDelta(state["id"], args)
            else:
                state["pending"].append(args)

    def _end_all(self) -> Iterator[StreamEvent]:
        self._ended = True
        for state in self._calls.values():
            if not state["started"]:
                # Never named: let the assembler report and drop it.
                yield CallStart(state["id"], "")
            yield CallEnd(state["id"])


class LiteLLMClient:
    """Streams completions through litellm."""

    def __init__(
        self,
        *,
        provider: str = "lmstudio",
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int = 32768,
        temperature: float | None = None,
        top_p: float | None = None,
        seed: int | None = None,
    ):
        self.provider = provider
        self.model_str, self._kwargs = resolve_model(provider, model, base_url, api_key)
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.seed = seed

    async def stream(self, messages: list[dict], tools: list[dict]) -> AsyncIterator[StreamEvent]:
        import litellm

        litellm.suppress_debug_info = True

        completion_kwargs = dict(
            model=self.model_str,
            messages=messages,
            max_tokens=self.max_output_tokens,
            stream=True,
            **self._kwargs,
        )
        if tools:
            completion_kwargs["tools"] = tools
            completion_kwargs["tool_choice"] = "auto"
        for key, val in [
            ("temperature", self.temperature),
            ("top_p", self.top_p),
            ("seed", self.seed),
        ]:
            if val is not None:
                completion_kwargs[key] = val

        try:
            response = await litellm.acompletion(**completion_kwargs)
        except Exception as e:
            raise AgentError(f"LLM call failed: {e}") from e

        translator = ChunkTranslator()
        try:
            async for chunk in response:
                for event in translator.feed(chunk):
                    yield event
        except Exception as e:
            raise AgentError(f"LLM stream failed: {e}") from e
        for event in translator.close():
            yield event
