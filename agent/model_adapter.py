"""Model adapter contract shared by every provider implementation.

An adapter turns ``(messages, ProviderConfig, tools)`` into a finite async
stream of ``StreamChunk`` objects. Adapters never raise for provider failures:
HTTP and SDK errors become a single ``error`` chunk so the orchestrator can
decide between compaction, retry and failure.

Also holds the helpers the HTTP-based adapters share: 429 backoff and
server-sent-event line parsing.
"""

import asyncio
import logging
import random
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from agent.messages import Message, ToolCall, ToolDefinition

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096
DEFAULT_TEMPERATURE = 0.7

# 429 backoff
RATE_LIMIT_MAX_RETRIES = 5
RATE_LIMIT_BASE_DELAY = 5.0
RATE_LIMIT_MAX_DELAY = 60.0

CHUNK_KINDS = ("text", "thinking", "tool_call", "error", "done")

_CONTEXT_OVERFLOW_PATTERNS = [
    r"context[_ ]length",
    r"context window",
    r"maximum context",
    r"prompt is too long",
    r"too many tokens",
    r"token limit",
    r"input is too long",
    r"reduce the length",
]


@dataclass
class ProviderConfig:
    """Connection settings for the active model."""

    provider: str
    model: str
    api_key: str = ""
    base_url: Optional[str] = None
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    context_length: Optional[int] = None


@dataclass(frozen=True)
class StreamChunk:
    kind: str
    text: str = ""
    tool_call: Optional[ToolCall] = None
    error: Optional[str] = None

    def __post_init__(self):
        if self.kind not in CHUNK_KINDS:
            raise ValueError(f"invalid chunk kind: {self.kind!r}")

    @classmethod
    def text_delta(cls, text: str) -> "StreamChunk":
        return cls(kind="text", text=text)

    @classmethod
    def thinking_delta(cls, text: str) -> "StreamChunk":
        return cls(kind="thinking", text=text)

    @classmethod
    def call(cls, tool_call: ToolCall) -> "StreamChunk":
        return cls(kind="tool_call", tool_call=tool_call)

    @classmethod
    def failure(cls, error: str) -> "StreamChunk":
        return cls(kind="error", error=error)

    @classmethod
    def done(cls) -> "StreamChunk":
        return cls(kind="done")


class ModelAdapter(ABC):
    """Provider-neutral streaming interface.

    The returned iterator is lazy and finite: it ends after a ``done`` or
    ``error`` chunk. Callers may ``aclose()`` it early to abort the request.
    """

    @abstractmethod
    def stream(
        self,
        messages: Sequence[Message],
        config: ProviderConfig,
        tools: Optional[Sequence[ToolDefinition]] = None,
    ) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError


def looks_like_context_overflow(error: Optional[str]) -> bool:
    """Heuristic match for provider "prompt too large" errors."""
    if not error:
        return False
    lowered = error.lower()
    return any(re.search(p, lowered) for p in _CONTEXT_OVERFLOW_PATTERNS)


def retry_delay(
    attempt: int,
    retry_after: Optional[str] = None,
    base_delay: float = RATE_LIMIT_BASE_DELAY,
    max_delay: float = RATE_LIMIT_MAX_DELAY,
    jitter: Optional[float] = None,
) -> float:
    """Seconds to wait before retry number ``attempt + 1``.

    Exponential from ``base_delay`` capped at ``max_delay``; an integer
    ``Retry-After`` header replaces the computed value. Up to one second of
    jitter is added.
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    if retry_after:
        try:
            delay = float(int(retry_after.strip()))
        except ValueError:
            pass
    if jitter is None:
        jitter = random.random()
    return delay + jitter


async def post_with_retry(
    client: httpx.AsyncClient,
    url: str,
    *,
    json_body: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, str]] = None,
    max_retries: int = RATE_LIMIT_MAX_RETRIES,
    sleep=asyncio.sleep,
) -> httpx.Response:
    """POST with streaming enabled, retrying on HTTP 429.

    Returns the open response; the caller must ``aclose()`` it. After
    ``max_retries`` the final 429 response is returned as-is.
    """
    attempt = 0
    while True:
        request = client.build_request(
            "POST", url, json=json_body, headers=headers, params=params
        )
        response = await client.send(request, stream=True)
        if response.status_code != 429 or attempt >= max_retries:
            return response
        delay = retry_delay(attempt, response.headers.get("Retry-After"))
        await response.aclose()
        logger.warning(
            "Rate limited by %s (429), retry %d/%d in %.1fs",
            httpx.URL(url).host, attempt + 1, max_retries, delay,
        )
        await sleep(delay)
        attempt += 1


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the payload of every ``data:`` line of an SSE response."""
    async for line in response.aiter_lines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        yield line[5:].lstrip()


async def read_error_body(response: httpx.Response, limit: int = 2000) -> str:
    body = await response.aread()
    return body.decode("utf-8", errors="replace")[:limit]


def finalize_calls(pending: Dict[int, Dict[str, Any]]) -> List[ToolCall]:
    """Turn index-keyed partial calls into ToolCalls, in index order."""
    calls = []
    for idx in sorted(pending):
        entry = pending[idx]
        if not entry["name"]:
            continue
        calls.append(ToolCall(
            id=entry["id"],
            name=entry["name"],
            arguments_json="".join(entry["args"]) or "{}",
        ))
    return calls
