"""OpenAI chat-completions adapter.

One implementation for every provider that speaks the chat-completions
shape: OpenAI itself plus DeepSeek, GLM, MiniMax, Qwen, Kimi and local
OpenAI-compatible servers. Streaming goes through the official SDK
(``AsyncOpenAI``), which also handles 429 backoff.
"""

import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional, Sequence

import openai
from openai import AsyncOpenAI

from agent.messages import Message, ToolDefinition
from agent.model_adapter import (
    RATE_LIMIT_MAX_RETRIES,
    ModelAdapter,
    ProviderConfig,
    StreamChunk,
    finalize_calls,
)
from forge_constants import OPENAI_BASE_URL
from tools.mcp_client import sanitize_error

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 600.0


def _normalize_base_url(base_url: Optional[str]) -> str:
    base = (base_url or OPENAI_BASE_URL).rstrip("/")
    # The SDK appends the endpoint itself
    for suffix in ("/chat/completions", "/completions"):
        if base.endswith(suffix):
            return base[: -len(suffix)]
    return base


def _default_client(config: ProviderConfig) -> AsyncOpenAI:
    return AsyncOpenAI(
        api_key=config.api_key or "not-needed",
        base_url=_normalize_base_url(config.base_url),
        max_retries=RATE_LIMIT_MAX_RETRIES,
        timeout=REQUEST_TIMEOUT,
    )


def build_request_kwargs(
    messages: Sequence[Message],
    config: ProviderConfig,
    tools: Optional[Sequence[ToolDefinition]] = None,
) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {
        "model": config.model,
        "messages": [m.to_openai() for m in messages],
        "stream": True,
        "max_tokens": config.max_tokens,
        "temperature": config.temperature,
    }
    if tools:
        kwargs["tools"] = [t.to_openai() for t in tools]
    return kwargs


class OpenAICompatibleAdapter(ModelAdapter):
    """Streams chat completions and reassembles indexed tool-call deltas."""

    def __init__(self, client_factory: Optional[Callable[[ProviderConfig], Any]] = None):
        self._client_factory = client_factory or _default_client

    async def stream(
        self,
        messages: Sequence[Message],
        config: ProviderConfig,
        tools: Optional[Sequence[ToolDefinition]] = None,
    ) -> AsyncIterator[StreamChunk]:
        client = self._client_factory(config)
        chunks = self._stream_with(client, messages, config, tools)
        try:
            async for chunk in chunks:
                yield chunk
        finally:
            await chunks.aclose()
            await client.close()

    async def _stream_with(self, client, messages, config, tools):
        kwargs = build_request_kwargs(messages, config, tools)
        logger.debug(
            "chat.completions request: model=%s messages=%d tools=%d",
            config.model, len(kwargs["messages"]), len(kwargs.get("tools", [])),
        )

        try:
            response = await client.chat.completions.create(**kwargs)
        except openai.APIStatusError as e:
            yield StreamChunk.failure(
                f"API error {e.status_code}: {sanitize_error(str(e.message))}"
            )
            return
        except openai.APIError as e:
            yield StreamChunk.failure(f"Request failed: {sanitize_error(str(e))}")
            return

        # index -> {"id", "name", "args": [fragments]}
        pending: Dict[int, Dict[str, Any]] = {}
        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is None:
                    continue

                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    yield StreamChunk.thinking_delta(reasoning)
                if delta.content:
                    yield StreamChunk.text_delta(delta.content)

                for tc in delta.tool_calls or []:
                    idx = tc.index if tc.index is not None else 0
                    entry = pending.setdefault(idx, {"id": "", "name": "", "args": []})
                    if tc.id:
                        entry["id"] = tc.id
                    if tc.function is not None:
                        if tc.function.name:
                            entry["name"] = tc.function.name
                        if tc.function.arguments:
                            entry["args"].append(tc.function.arguments)
        except openai.APIError as e:
            yield StreamChunk.failure(f"Stream interrupted: {sanitize_error(str(e))}")
            return
        finally:
            await response.close()

        for call in finalize_calls(pending):
            yield StreamChunk.call(call)
        yield StreamChunk.done()
