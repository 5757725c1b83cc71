"""Tests for the model adapters.

Covers:
  - Shared helpers: overflow detection, retry delay, 429 retry loop, SSE parsing
  - OpenAI-compatible adapter: text, reasoning, indexed tool-call fragments,
    API errors surfaced as an error chunk, client cleanup
  - Anthropic adapter: body conversion (system hoist, tool_use/tool_result,
    alternation), SSE parsing, HTTP errors
  - Gemini adapter: body conversion (name-matched functionResponse), synthesized
    call ids, SSE parsing

HTTP adapters are driven through httpx.MockTransport; the OpenAI adapter gets a
fake SDK client via its client factory.

Run with:
    python -m pytest tests/agent/test_model_adapters.py -v
"""

import json
from types import SimpleNamespace

import httpx
import openai
import pytest

from agent.anthropic_adapter import AnthropicAdapter, build_anthropic_body, messages_url
from agent.gemini_adapter import GeminiAdapter, build_gemini_body, stream_url
from agent.messages import Message, ToolCall, ToolDefinition
from agent.model_adapter import (
    ProviderConfig,
    StreamChunk,
    finalize_calls,
    looks_like_context_overflow,
    post_with_retry,
    retry_delay,
)
from agent.openai_adapter import (
    OpenAICompatibleAdapter,
    _normalize_base_url,
    build_request_kwargs,
)


async def _collect(stream):
    return [chunk async for chunk in stream]


def _sse(*events):
    body = "".join(f"data: {json.dumps(e)}\n\n" for e in events)
    return body.encode("utf-8")


def _client_factory(handler):
    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


TOOLS = [ToolDefinition("read_file", "Read a file", {"type": "object", "properties": {"path": {"type": "string"}}})]


# =========================================================================
# Shared helpers
# =========================================================================

class TestSharedHelpers:
    @pytest.mark.parametrize("message", [
        "This model's maximum context length is 128000 tokens",
        "prompt is too long: 210000 tokens > 200000 maximum",
        "Request exceeds the context window",
        "input is too long for requested model",
    ])
    def test_overflow_detected(self, message):
        assert looks_like_context_overflow(message)

    @pytest.mark.parametrize("message", [None, "", "rate limit exceeded", "invalid api key"])
    def test_non_overflow(self, message):
        assert not looks_like_context_overflow(message)

    def test_retry_delay_exponential_and_capped(self):
        assert retry_delay(0, jitter=0) == 5.0
        assert retry_delay(2, jitter=0) == 20.0
        assert retry_delay(10, jitter=0) == 60.0

    def test_retry_after_header_wins(self):
        assert retry_delay(3, retry_after="7", jitter=0) == 7.0
        assert retry_delay(0, retry_after="soon", jitter=0) == 5.0

    def test_finalize_calls_orders_by_index_and_skips_nameless(self):
        pending = {
            1: {"id": "b", "name": "grep", "args": ['{"pattern"', ': "x"}']},
            0: {"id": "a", "name": "read_file", "args": []},
            2: {"id": "c", "name": "", "args": ["{}"]},
        }
        calls = finalize_calls(pending)
        assert [c.id for c in calls] == ["a", "b"]
        assert calls[0].arguments_json == "{}"
        assert calls[1].arguments_json == '{"pattern": "x"}'

    def test_stream_chunk_kind_validated(self):
        with pytest.raises(ValueError):
            StreamChunk(kind="bogus")

    @pytest.mark.asyncio
    async def test_post_with_retry_retries_429(self):
        attempts = []
        slept = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(429, headers={"Retry-After": "2"})
            return httpx.Response(200, content=b"ok")

        async def fake_sleep(seconds):
            slept.append(seconds)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            response = await post_with_retry(
                client, "https://api.example.com/v1/x", json_body={"a": 1}, sleep=fake_sleep,
            )
            await response.aread()
            await response.aclose()

        assert response.status_code == 200
        assert len(attempts) == 3
        assert len(slept) == 2
        assert all(2.0 <= s < 3.0 for s in slept)

    @pytest.mark.asyncio
    async def test_post_with_retry_gives_up(self):
        async def fake_sleep(seconds):
            pass

        handler = lambda request: httpx.Response(429)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            response = await post_with_retry(
                client, "https://api.example.com/v1/x", json_body={}, max_retries=2, sleep=fake_sleep,
            )
            await response.aclose()
        assert response.status_code == 429


# =========================================================================
# OpenAI-compatible
# =========================================================================

def _delta(content=None, tool_calls=None, reasoning=None):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(
        content=content, tool_calls=tool_calls, reasoning_content=reasoning,
    ))])


def _tc(index, id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


class FakeOpenAIStream:
    def __init__(self, chunks):
        self._chunks = list(chunks)
        self.closed = False

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for chunk in self._chunks:
            yield chunk

    async def close(self):
        self.closed = True


class FakeOpenAIClient:
    def __init__(self, chunks=None, error=None):
        self.stream = FakeOpenAIStream(chunks or [])
        self.error = error
        self.requests = []
        self.closed = False
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.stream

    async def close(self):
        self.closed = True


class TestOpenAIAdapter:
    config = ProviderConfig(provider="openai", model="gpt-4o", api_key="sk-test")

    def test_base_url_normalized(self):
        assert _normalize_base_url("https://x.example/v1/chat/completions") == "https://x.example/v1"
        assert _normalize_base_url("https://x.example/v1/") == "https://x.example/v1"

    def test_request_kwargs(self):
        kwargs = build_request_kwargs([Message.user("hi")], self.config, TOOLS)
        assert kwargs["stream"] is True
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]
        assert kwargs["tools"][0]["function"]["name"] == "read_file"

    def test_no_tools_key_without_tools(self):
        assert "tools" not in build_request_kwargs([Message.user("hi")], self.config)

    @pytest.mark.asyncio
    async def test_streams_text_reasoning_and_reassembled_calls(self):
        client = FakeOpenAIClient([
            _delta(reasoning="thinking..."),
            _delta(content="Let me "),
            _delta(content="look."),
            _delta(tool_calls=[_tc(0, id="call_a", name="read_file", arguments='{"pa')]),
            _delta(tool_calls=[_tc(1, id="call_b", name="grep", arguments='{"pattern": "x"}')]),
            _delta(tool_calls=[_tc(0, arguments='th": "a.py"}')]),
            SimpleNamespace(choices=[]),
        ])
        adapter = OpenAICompatibleAdapter(client_factory=lambda cfg: client)
        chunks = await _collect(adapter.stream([Message.user("hi")], self.config, TOOLS))

        kinds = [c.kind for c in chunks]
        assert kinds == ["thinking", "text", "text", "tool_call", "tool_call", "done"]
        assert chunks[3].tool_call == ToolCall("call_a", "read_file", '{"path": "a.py"}')
        assert chunks[4].tool_call.id == "call_b"
        assert client.stream.closed
        assert client.closed

    @pytest.mark.asyncio
    async def test_api_error_becomes_error_chunk(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        error = openai.APIStatusError(
            "This model's maximum context length is 128000 tokens",
            response=httpx.Response(400, request=request),
            body=None,
        )
        client = FakeOpenAIClient(error=error)
        adapter = OpenAICompatibleAdapter(client_factory=lambda cfg: client)
        chunks = await _collect(adapter.stream([Message.user("hi")], self.config))

        assert len(chunks) == 1
        assert chunks[0].kind == "error"
        assert "400" in chunks[0].error
        assert looks_like_context_overflow(chunks[0].error)
        assert client.closed

    @pytest.mark.asyncio
    async def test_early_close_releases_client(self):
        client = FakeOpenAIClient([_delta(content="a"), _delta(content="b")])
        adapter = OpenAICompatibleAdapter(client_factory=lambda cfg: client)
        stream = adapter.stream([Message.user("hi")], self.config)
        first = await stream.__anext__()
        await stream.aclose()
        assert first.text == "a"
        assert client.closed


# =========================================================================
# Anthropic
# =========================================================================

class TestAnthropicBody:
    config = ProviderConfig(provider="anthropic", model="claude-sonnet-4", api_key="k", max_tokens=1024)

    def test_messages_url(self):
        assert messages_url(None) == "https://api.anthropic.com/v1/messages"
        assert messages_url("https://proxy.example/v1") == "https://proxy.example/v1/messages"
        assert messages_url("https://proxy.example/v1/messages") == "https://proxy.example/v1/messages"

    def test_system_hoisted_and_tools_converted(self):
        body = build_anthropic_body([Message.system("be nice"), Message.user("hi")], self.config, TOOLS)
        assert body["system"] == "be nice"
        assert body["messages"] == [{"role": "user", "content": "hi"}]
        assert body["tools"][0]["input_schema"]["type"] == "object"
        assert body["max_tokens"] == 1024

    def test_tool_round_trip_shapes(self):
        messages = [
            Message.user("read a.py"),
            Message.assistant("sure", [ToolCall("t1", "read_file", '{"path": "a.py"}')]),
            Message.tool("t1", "print(1)"),
        ]
        body = build_anthropic_body(messages, self.config)
        assistant = body["messages"][1]
        assert assistant["content"][1] == {
            "type": "tool_use", "id": "t1", "name": "read_file", "input": {"path": "a.py"},
        }
        result = body["messages"][2]
        assert result["role"] == "user"
        assert result["content"][0]["tool_use_id"] == "t1"

    def test_parallel_results_merged_into_one_user_turn(self):
        messages = [
            Message.user("go"),
            Message.assistant("", [ToolCall("a", "t"), ToolCall("b", "t")]),
            Message.tool("a", "1"),
            Message.tool("b", "2"),
        ]
        body = build_anthropic_body(messages, self.config)
        roles = [m["role"] for m in body["messages"]]
        assert roles == ["user", "assistant", "user"]
        assert len(body["messages"][2]["content"]) == 2

    def test_first_turn_forced_to_user(self):
        body = build_anthropic_body([Message.assistant("hello")], self.config)
        assert body["messages"][0]["role"] == "user"

    def test_data_url_image(self):
        body = build_anthropic_body([Message.user("see", images=["data:image/png;base64,AAAA"])], self.config)
        image = body["messages"][0]["content"][0]
        assert image["source"] == {"type": "base64", "media_type": "image/png", "data": "AAAA"}


class TestAnthropicStream:
    config = ProviderConfig(provider="anthropic", model="claude-sonnet-4", api_key="sk-ant-key")

    @pytest.mark.asyncio
    async def test_parses_text_thinking_and_tool_use(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, content=_sse(
                {"type": "message_start", "message": {}},
                {"type": "content_block_start", "index": 0, "content_block": {"type": "thinking"}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "hmm"}},
                {"type": "content_block_stop", "index": 0},
                {"type": "content_block_start", "index": 1, "content_block": {"type": "text"}},
                {"type": "content_block_delta", "index": 1, "delta": {"type": "text_delta", "text": "Reading."}},
                {"type": "content_block_stop", "index": 1},
                {"type": "content_block_start", "index": 2,
                 "content_block": {"type": "tool_use", "id": "toolu_1", "name": "read_file"}},
                {"type": "content_block_delta", "index": 2,
                 "delta": {"type": "input_json_delta", "partial_json": '{"path": '}},
                {"type": "content_block_delta", "index": 2,
                 "delta": {"type": "input_json_delta", "partial_json": '"a.py"}'}},
                {"type": "content_block_stop", "index": 2},
                {"type": "message_stop"},
            ))

        adapter = AnthropicAdapter(client_factory=_client_factory(handler))
        chunks = await _collect(adapter.stream([Message.user("hi")], self.config, TOOLS))

        assert [c.kind for c in chunks] == ["thinking", "text", "tool_call", "done"]
        assert chunks[2].tool_call == ToolCall("toolu_1", "read_file", '{"path": "a.py"}')
        request = seen[0]
        assert request.headers["x-api-key"] == "sk-ant-key"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert json.loads(request.content)["stream"] is True

    @pytest.mark.asyncio
    async def test_http_error_becomes_error_chunk(self):
        handler = lambda request: httpx.Response(
            400, json={"error": {"type": "invalid_request_error", "message": "prompt is too long"}},
        )
        adapter = AnthropicAdapter(client_factory=_client_factory(handler))
        chunks = await _collect(adapter.stream([Message.user("hi")], self.config))
        assert len(chunks) == 1
        assert chunks[0].kind == "error"
        assert "400" in chunks[0].error
        assert looks_like_context_overflow(chunks[0].error)

    @pytest.mark.asyncio
    async def test_stream_error_event(self):
        handler = lambda request: httpx.Response(200, content=_sse(
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        ))
        adapter = AnthropicAdapter(client_factory=_client_factory(handler))
        chunks = await _collect(adapter.stream([Message.user("hi")], self.config))
        assert [c.kind for c in chunks] == ["error"]
        assert "overloaded_error" in chunks[0].error

    @pytest.mark.asyncio
    async def test_connection_error_becomes_error_chunk(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter = AnthropicAdapter(client_factory=_client_factory(handler))
        chunks = await _collect(adapter.stream([Message.user("hi")], self.config))
        assert chunks[0].kind == "error"
        assert "connection refused" in chunks[0].error


# =========================================================================
# Gemini
# =========================================================================

class TestGemini:
    config = ProviderConfig(provider="gemini", model="gemini-2.5-flash", api_key="AIzaTestKey")

    def test_stream_url(self):
        assert stream_url("https://generativelanguage.googleapis.com", "gemini-2.5-flash") == (
            "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash:streamGenerateContent"
        )

    def test_function_response_matched_by_name(self):
        messages = [
            Message.system("sys"),
            Message.user("go"),
            Message.assistant("", [ToolCall("c1", "read_file", '{"path": "a"}'), ToolCall("c2", "grep", "{}")]),
            Message.tool("c1", "A"),
            Message.tool("c2", "B"),
        ]
        body = build_gemini_body(messages, self.config, TOOLS)
        assert body["systemInstruction"] == {"parts": [{"text": "sys"}]}
        model_turn = body["contents"][1]
        assert model_turn["role"] == "model"
        assert model_turn["parts"][0] == {"functionCall": {"name": "read_file", "args": {"path": "a"}}}
        responses = body["contents"][2]["parts"]
        assert [p["functionResponse"]["name"] for p in responses] == ["read_file", "grep"]
        assert body["tools"][0]["functionDeclarations"][0]["name"] == "read_file"

    @pytest.mark.asyncio
    async def test_stream_synthesizes_call_ids(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, content=_sse(
                {"candidates": [{"content": {"parts": [{"text": "plan", "thought": True}]}}]},
                {"candidates": [{"content": {"parts": [{"text": "Looking"}]}}]},
                {"candidates": [{"content": {"parts": [
                    {"functionCall": {"name": "read_file", "args": {"path": "a.py"}}},
                    {"functionCall": {"name": "read_file", "args": {"path": "b.py"}}},
                ]}}]},
            ))

        adapter = GeminiAdapter(client_factory=_client_factory(handler))
        chunks = await _collect(adapter.stream([Message.user("hi")], self.config, TOOLS))

        assert [c.kind for c in chunks] == ["thinking", "text", "tool_call", "tool_call", "done"]
        ids = {chunks[2].tool_call.id, chunks[3].tool_call.id}
        assert len(ids) == 2
        assert all(i.startswith("call_") for i in ids)
        assert json.loads(chunks[3].tool_call.arguments_json) == {"path": "b.py"}
        assert seen[0].url.params["alt"] == "sse"

    @pytest.mark.asyncio
    async def test_error_event(self):
        handler = lambda request: httpx.Response(200, content=_sse({"error": {"message": "quota exceeded"}}))
        adapter = GeminiAdapter(client_factory=_client_factory(handler))
        chunks = await _collect(adapter.stream([Message.user("hi")], self.config))
        assert [c.kind for c in chunks] == ["error"]
        assert "quota exceeded" in chunks[0].error
