"""Anthropic Messages API adapter (native ``/v1/messages`` over SSE).

Request conversion rules:
  - the system message moves to the top-level ``system`` field
  - assistant tool calls become ``tool_use`` blocks
  - tool results become ``tool_result`` blocks inside user turns
  - adjacent same-role turns are merged (the API requires strict
    user/assistant alternation) and the first turn is forced to ``user``
  - data-URL images become base64 ``image`` blocks

Tool-call arguments are streamed as ``input_json_delta`` fragments and are
concatenated verbatim, so the assembled string is exactly what the model
produced.
"""

import json
import logging
import re
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

import httpx

from agent.messages import Message, ToolCall, ToolDefinition
from agent.model_adapter import (
    ModelAdapter,
    ProviderConfig,
    StreamChunk,
    iter_sse_data,
    post_with_retry,
    read_error_body,
)
from forge_constants import ANTHROPIC_BASE_URL
from tools.mcp_client import sanitize_error

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
CONTINUE_PLACEHOLDER = "(continue)"

_DATA_URL_RE = re.compile(r"^data:(image/[\w.+-]+);base64,(.+)$", re.DOTALL)


def messages_url(base_url: Optional[str]) -> str:
    base = (base_url or ANTHROPIC_BASE_URL).rstrip("/")
    if base.endswith("/messages"):
        return base
    if base.endswith("/v1"):
        return f"{base}/messages"
    return f"{base}/v1/messages"


def _tool_use_input(arguments_json: str) -> Dict[str, Any]:
    try:
        decoded = json.loads(arguments_json or "{}")
    except json.JSONDecodeError:
        return {"raw": arguments_json}
    return decoded if isinstance(decoded, dict) else {"raw": arguments_json}


def _convert_message(m: Message) -> Dict[str, Any]:
    if m.role == "tool":
        return {
            "role": "user",
            "content": [{
                "type": "tool_result",
                "tool_use_id": m.tool_call_id,
                "content": m.content or "(empty)",
            }],
        }
    if m.role == "assistant" and m.tool_calls:
        blocks: List[Dict[str, Any]] = []
        if m.content:
            blocks.append({"type": "text", "text": m.content})
        for tc in m.tool_calls:
            blocks.append({
                "type": "tool_use",
                "id": tc.id,
                "name": tc.name,
                "input": _tool_use_input(tc.arguments_json),
            })
        return {"role": "assistant", "content": blocks}
    if m.role == "user" and m.images:
        blocks = []
        for url in m.images:
            match = _DATA_URL_RE.match(url)
            if match:
                blocks.append({
                    "type": "image",
                    "source": {"type": "base64", "media_type": match.group(1), "data": match.group(2)},
                })
            else:
                blocks.append({"type": "image", "source": {"type": "url", "url": url}})
        blocks.append({"type": "text", "text": m.content or "..."})
        return {"role": "user", "content": blocks}
    return {"role": m.role, "content": m.content or "..."}


def _as_blocks(content) -> List[Dict[str, Any]]:
    if isinstance(content, list):
        return list(content)
    return [{"type": "text", "text": str(content)}]


def _merge_alternating(turns: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    merged: List[Dict[str, Any]] = []
    for turn in turns:
        if merged and merged[-1]["role"] == turn["role"]:
            last = merged[-1]
            if isinstance(last["content"], str) and isinstance(turn["content"], str):
                last["content"] = f"{last['content']}\n{turn['content']}"
            else:
                last["content"] = _as_blocks(last["content"]) + _as_blocks(turn["content"])
        else:
            merged.append(dict(turn))
    if merged and merged[0]["role"] != "user":
        merged.insert(0, {"role": "user", "content": CONTINUE_PLACEHOLDER})
    return merged


def build_anthropic_body(
    messages: Sequence[Message],
    config: ProviderConfig,
    tools: Optional[Sequence[ToolDefinition]] = None,
) -> Dict[str, Any]:
    system = next((m.content for m in messages if m.role == "system"), "")
    turns = [_convert_message(m) for m in messages if m.role != "system"]
    body: Dict[str, Any] = {
        "model": config.model,
        "max_tokens": config.max_tokens,
        "temperature": config.temperature,
        "messages": _merge_alternating(turns),
        "stream": True,
    }
    if system:
        body["system"] = system
    if tools:
        body["tools"] = [
            {"name": t.name, "description": t.description, "input_schema": t.parameters}
            for t in tools
        ]
    return body


def _default_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(600.0, connect=30.0))


class AnthropicAdapter(ModelAdapter):
    """Streams the native Messages API with ``httpx``."""

    def __init__(self, client_factory: Optional[Callable[[], httpx.AsyncClient]] = None):
        self._client_factory = client_factory or _default_client

    async def stream(
        self,
        messages: Sequence[Message],
        config: ProviderConfig,
        tools: Optional[Sequence[ToolDefinition]] = None,
    ) -> AsyncIterator[StreamChunk]:
        url = messages_url(config.base_url)
        body = build_anthropic_body(messages, config, tools)
        headers = {
            "content-type": "application/json",
            "x-api-key": config.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        logger.debug(
            "Anthropic request: %s turns=%d tools=%d",
            url, len(body["messages"]), len(body.get("tools", [])),
        )

        async with self._client_factory() as client:
            try:
                response = await post_with_retry(client, url, json_body=body, headers=headers)
            except httpx.HTTPError as e:
                yield StreamChunk.failure(f"Anthropic request failed: {sanitize_error(str(e))}")
                return

            try:
                if response.status_code >= 400:
                    detail = await read_error_body(response)
                    yield StreamChunk.failure(
                        f"Anthropic API error {response.status_code}: {sanitize_error(detail)}"
                    )
                    return
                async for chunk in self._parse_stream(response):
                    yield chunk
            except httpx.HTTPError as e:
                yield StreamChunk.failure(f"Anthropic stream interrupted: {sanitize_error(str(e))}")
            finally:
                await response.aclose()

    async def _parse_stream(self, response: httpx.Response) -> AsyncIterator[StreamChunk]:
        block_type = ""
        call_id = ""
        call_name = ""
        call_args: List[str] = []

        async for data in iter_sse_data(response):
            try:
                event = json.loads(data)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed SSE payload: %s", data[:200])
                continue

            etype = event.get("type")
            if etype == "content_block_start":
                block = event.get("content_block") or {}
                block_type = block.get("type", "")
                if block_type == "tool_use":
                    call_id = block.get("id", "")
                    call_name = block.get("name", "")
                    call_args = []
            elif etype == "content_block_delta":
                delta = event.get("delta") or {}
                dtype = delta.get("type")
                if dtype == "text_delta" and delta.get("text"):
                    yield StreamChunk.text_delta(delta["text"])
                elif dtype == "thinking_delta" and delta.get("thinking"):
                    yield StreamChunk.thinking_delta(delta["thinking"])
                elif dtype == "input_json_delta":
                    call_args.append(delta.get("partial_json", ""))
            elif etype == "content_block_stop":
                if block_type == "tool_use" and call_name:
                    yield StreamChunk.call(ToolCall(
                        id=call_id,
                        name=call_name,
                        arguments_json="".join(call_args) or "{}",
                    ))
                block_type, call_id, call_name, call_args = "", "", "", []
            elif etype == "error":
                err = event.get("error") or {}
                yield StreamChunk.failure(
                    f"Anthropic stream error: {err.get('type', 'error')}: "
                    f"{sanitize_error(str(err.get('message', '')))}"
                )
                return
            elif etype == "message_stop":
                yield StreamChunk.done()
                return

        # Stream ended without message_stop
        if block_type == "tool_use" and call_name:
            yield StreamChunk.call(ToolCall(
                id=call_id, name=call_name, arguments_json="".join(call_args) or "{}",
            ))
        yield StreamChunk.done()
