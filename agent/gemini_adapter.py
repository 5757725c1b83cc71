"""Google Gemini adapter (``:streamGenerateContent`` over SSE).

Gemini has no tool-call ids: a ``functionResponse`` is matched to its
``functionCall`` by name. The adapter therefore synthesizes ids for the
calls it streams back and, when sending history, resolves each tool
result's ``tool_call_id`` to the function name recorded on the preceding
assistant turn.
"""

import json
import logging
import uuid
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
from forge_constants import GEMINI_BASE_URL
from tools.mcp_client import sanitize_error

logger = logging.getLogger(__name__)


def stream_url(base_url: Optional[str], model: str) -> str:
    base = (base_url or GEMINI_BASE_URL).rstrip("/")
    if "/v1beta" not in base:
        base = f"{base}/v1beta"
    return f"{base}/models/{model}:streamGenerateContent"


def _function_args(arguments_json: str) -> Dict[str, Any]:
    try:
        decoded = json.loads(arguments_json or "{}")
    except json.JSONDecodeError:
        return {}
    return decoded if isinstance(decoded, dict) else {}


def build_gemini_body(
    messages: Sequence[Message],
    config: ProviderConfig,
    tools: Optional[Sequence[ToolDefinition]] = None,
) -> Dict[str, Any]:
    system = next((m.content for m in messages if m.role == "system"), "")
    call_names: Dict[str, str] = {}
    contents: List[Dict[str, Any]] = []

    for m in messages:
        if m.role == "system":
            continue
        if m.role == "tool":
            part = {
                "functionResponse": {
                    "name": call_names.get(m.tool_call_id, m.tool_call_id),
                    "response": {"result": m.content},
                }
            }
            last = contents[-1] if contents else None
            # Results of one parallel turn go back in a single user content
            if last and last["role"] == "user" and all("functionResponse" in p for p in last["parts"]):
                last["parts"].append(part)
            else:
                contents.append({"role": "user", "parts": [part]})
        elif m.role == "assistant":
            parts: List[Dict[str, Any]] = []
            if m.content:
                parts.append({"text": m.content})
            for tc in m.tool_calls:
                call_names[tc.id] = tc.name
                parts.append({"functionCall": {"name": tc.name, "args": _function_args(tc.arguments_json)}})
            contents.append({"role": "model", "parts": parts or [{"text": ""}]})
        else:
            parts = [{"text": m.content}]
            for url in m.images:
                if url.startswith("data:") and ";base64," in url:
                    header, data = url.split(";base64,", 1)
                    parts.append({"inlineData": {"mimeType": header[5:], "data": data}})
            contents.append({"role": "user", "parts": parts})

    body: Dict[str, Any] = {
        "contents": contents,
        "generationConfig": {
            "maxOutputTokens": config.max_tokens,
            "temperature": config.temperature,
        },
    }
    if system:
        body["systemInstruction"] = {"parts": [{"text": system}]}
    if tools:
        body["tools"] = [{
            "functionDeclarations": [
                {"name": t.name, "description": t.description, "parameters": t.parameters}
                for t in tools
            ]
        }]
    return body


def _default_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(600.0, connect=30.0))


class GeminiAdapter(ModelAdapter):

    def __init__(self, client_factory: Optional[Callable[[], httpx.AsyncClient]] = None):
        self._client_factory = client_factory or _default_client

    async def stream(
        self,
        messages: Sequence[Message],
        config: ProviderConfig,
        tools: Optional[Sequence[ToolDefinition]] = None,
    ) -> AsyncIterator[StreamChunk]:
        url = stream_url(config.base_url, config.model)
        body = build_gemini_body(messages, config, tools)
        params = {"alt": "sse", "key": config.api_key}

        async with self._client_factory() as client:
            try:
                response = await post_with_retry(client, url, json_body=body, params=params)
            except httpx.HTTPError as e:
                yield StreamChunk.failure(f"Gemini request failed: {sanitize_error(str(e))}")
                return

            try:
                if response.status_code >= 400:
                    detail = await read_error_body(response)
                    yield StreamChunk.failure(
                        f"Gemini API error {response.status_code}: {sanitize_error(detail)}"
                    )
                    return
                async for chunk in self._parse_stream(response):
                    yield chunk
            except httpx.HTTPError as e:
                yield StreamChunk.failure(f"Gemini stream interrupted: {sanitize_error(str(e))}")
            finally:
                await response.aclose()

    async def _parse_stream(self, response: httpx.Response) -> AsyncIterator[StreamChunk]:
        calls: List[ToolCall] = []
        async for data in iter_sse_data(response):
            try:
                event = json.loads(data)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed SSE payload: %s", data[:200])
                continue
            if "error" in event:
                err = event["error"] or {}
                yield StreamChunk.failure(
                    f"Gemini stream error: {sanitize_error(str(err.get('message', err)))}"
                )
                return

            candidates = event.get("candidates") or []
            if not candidates:
                continue
            for part in (candidates[0].get("content") or {}).get("parts") or []:
                if part.get("text"):
                    if part.get("thought"):
                        yield StreamChunk.thinking_delta(part["text"])
                    else:
                        yield StreamChunk.text_delta(part["text"])
                fn = part.get("functionCall")
                if fn and fn.get("name"):
                    calls.append(ToolCall(
                        id=f"call_{uuid.uuid4().hex[:12]}",
                        name=fn["name"],
                        arguments_json=json.dumps(fn.get("args") or {}, ensure_ascii=False),
                    ))

        for call in calls:
            yield StreamChunk.call(call)
        yield StreamChunk.done()
