"""Tests for agent.orchestrator -- the ReAct loop.

A scripted ModelAdapter replays canned chunk sequences, one per model
invocation, and records what it was sent. Tools run through a real
ToolExecutor over a private registry.

Covers:
  - Direct answers and tool round trips (iteration counting, result order)
  - Iteration budget
  - Context overflow: compaction retry, then failure
  - Model errors and adapters that raise
  - Missing call ids synthesized; duplicate ids abort the session
  - Cancellation while streaming and while tools run
  - Session persistence, resume and compaction summaries
  - Progress events

Run with:
    python -m pytest tests/agent/test_orchestrator.py -v
"""

import asyncio
import json

import pytest

from agent.context_memory import HISTORY_CLEARED_NOTICE
from agent.messages import Message, ToolCall
from agent.model_adapter import ModelAdapter, ProviderConfig, StreamChunk
from agent.orchestrator import (
    STOP_CANCELLED,
    STOP_COMPLETED,
    STOP_CONTEXT_OVERFLOW,
    STOP_MAX_ITERATIONS,
    STOP_MODEL_ERROR,
    STOP_PROTOCOL_VIOLATION,
    AgentState,
    Orchestrator,
)
from agent.session_store import InMemorySessionStore, JsonSessionStore
from agent.tool_executor import CANCELLED_MESSAGE, ToolExecutor
from tools.registry import ToolRegistry

OVERFLOW_ERROR = "API error 400: This model's maximum context length is 128000 tokens"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class ScriptedAdapter(ModelAdapter):
    """Replays one chunk list per invocation. A float entry sleeps that long."""

    def __init__(self, *turns, default=None):
        self.turns = list(turns)
        self.default = default
        self.requests = []

    async def stream(self, messages, config, tools=None):
        self.requests.append({"messages": list(messages), "tools": list(tools or [])})
        if self.turns:
            script = self.turns.pop(0)
        elif self.default is not None:
            script = self.default
        else:
            script = answer("(script exhausted)")
        for item in script:
            if isinstance(item, float):
                await asyncio.sleep(item)
                continue
            yield item


class RaisingAdapter(ModelAdapter):
    async def stream(self, messages, config, tools=None):
        raise RuntimeError("adapter bug")
        yield  # pragma: no cover


def answer(text):
    return [StreamChunk.text_delta(text), StreamChunk.done()]


def calls(*tool_calls, text=""):
    chunks = [StreamChunk.text_delta(text)] if text else []
    chunks.extend(StreamChunk.call(tc) for tc in tool_calls)
    chunks.append(StreamChunk.done())
    return chunks


def echo_call(call_id, text):
    return ToolCall(call_id, "echo", json.dumps({"text": text}))


@pytest.fixture()
def registry():
    reg = ToolRegistry()
    reg.register(
        "echo", "test",
        {"description": "Echo text", "parameters": {
            "type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"],
        }},
        lambda args, ctx: f"echo: {args['text']}",
    )
    return reg


@pytest.fixture()
def config():
    return ProviderConfig(provider="openai", model="gpt-4o", api_key="test", context_length=100_000)


@pytest.fixture()
def make_orchestrator(registry, config, tmp_path):
    def _make(adapter, **kwargs):
        executor = kwargs.pop("executor", None) or ToolExecutor(registry, project_root=tmp_path)
        return Orchestrator(adapter, kwargs.pop("config", config), executor=executor, **kwargs)
    return _make


def _roles(messages):
    return [m.role for m in messages]


# =========================================================================
# Basic loop
# =========================================================================

class TestLoop:
    @pytest.mark.asyncio
    async def test_direct_answer(self, make_orchestrator):
        adapter = ScriptedAdapter(answer("Hello!"))
        result = await make_orchestrator(adapter).run("hi")

        assert result.completed
        assert result.state == AgentState.DONE
        assert result.final_response == "Hello!"
        assert result.iterations == 1
        assert _roles(result.messages) == ["system", "user", "assistant"]

    @pytest.mark.asyncio
    async def test_tool_round_trip_counts_two_iterations(self, make_orchestrator):
        adapter = ScriptedAdapter(calls(echo_call("c1", "ping"), text="Checking."), answer("Got it."))
        result = await make_orchestrator(adapter).run("ping the echo tool")

        assert result.stop_reason == STOP_COMPLETED
        assert result.iterations == 2
        assert _roles(result.messages) == ["system", "user", "assistant", "tool", "assistant"]
        assert result.messages[3] == Message.tool("c1", "echo: ping")
        assert [r.output for r in result.tool_results] == ["echo: ping"]
        # the second request carries the tool result
        assert adapter.requests[1]["messages"][-1] == Message.tool("c1", "echo: ping")
        assert [t.name for t in adapter.requests[0]["tools"]] == ["echo"]

    @pytest.mark.asyncio
    async def test_parallel_results_in_proposal_order(self, make_orchestrator):
        adapter = ScriptedAdapter(
            calls(echo_call("a", "1"), ToolCall("b", "unknown_tool", "{}"), echo_call("c", "3")),
            answer("done"),
        )
        result = await make_orchestrator(adapter).run("go")

        tool_messages = [m for m in result.messages if m.role == "tool"]
        assert [m.tool_call_id for m in tool_messages] == ["a", "b", "c"]
        assert tool_messages[1].content == "Error: unknown tool 'unknown_tool'"
        assert result.completed

    @pytest.mark.asyncio
    async def test_system_prompt_first(self, make_orchestrator):
        adapter = ScriptedAdapter(answer("ok"))
        await make_orchestrator(adapter, rules=["Never use tabs"], system_message="EXTRA").run("hi")
        system = adapter.requests[0]["messages"][0]
        assert system.role == "system"
        assert "Never use tabs" in system.content
        assert "EXTRA" in system.content

    @pytest.mark.asyncio
    async def test_user_images_forwarded(self, make_orchestrator):
        adapter = ScriptedAdapter(answer("a cat"))
        await make_orchestrator(adapter).run("what is this?", images=["data:image/png;base64,AA"])
        assert adapter.requests[0]["messages"][-1].images == ("data:image/png;base64,AA",)

    def test_run_sync(self, make_orchestrator):
        result = make_orchestrator(ScriptedAdapter(answer("sync ok"))).run_sync("hi")
        assert result.final_response == "sync ok"

    def test_max_iterations_must_be_positive(self, make_orchestrator):
        with pytest.raises(ValueError):
            make_orchestrator(ScriptedAdapter(), max_iterations=0)


# =========================================================================
# Stop conditions
# =========================================================================

class TestStopConditions:
    @pytest.mark.asyncio
    async def test_max_iterations(self, make_orchestrator):
        adapter = ScriptedAdapter(default=calls(ToolCall("", "echo", '{"text": "again"}'), text="still working"))
        result = await make_orchestrator(adapter, max_iterations=3).run("loop forever")

        assert result.stop_reason == STOP_MAX_ITERATIONS
        assert result.state == AgentState.FAILED
        assert result.iterations == 3
        assert len(adapter.requests) == 3
        assert result.final_response == "still working"
        # every proposed call was answered
        assert _roles(result.messages)[-1] == "tool"

    @pytest.mark.asyncio
    async def test_overflow_retried_once_with_smaller_budget(self, make_orchestrator):
        adapter = ScriptedAdapter([StreamChunk.failure(OVERFLOW_ERROR)], answer("fits now"))
        history = [Message.user("x" * 3000), Message.assistant("y" * 3000)] * 10
        config = ProviderConfig(provider="openai", model="gpt-4o", context_length=40_000)
        result = await make_orchestrator(adapter, config=config).run("continue", history=history)

        assert result.completed
        assert result.iterations == 1
        assert len(adapter.requests) == 2
        assert len(adapter.requests[1]["messages"]) < len(adapter.requests[0]["messages"])

    @pytest.mark.asyncio
    async def test_overflow_twice_fails(self, make_orchestrator):
        adapter = ScriptedAdapter(default=[StreamChunk.failure(OVERFLOW_ERROR)])
        result = await make_orchestrator(adapter).run("hi")
        assert result.stop_reason == STOP_CONTEXT_OVERFLOW
        assert result.state == AgentState.FAILED
        assert len(adapter.requests) == 2

    @pytest.mark.asyncio
    async def test_model_error(self, make_orchestrator):
        adapter = ScriptedAdapter([StreamChunk.text_delta("partial"), StreamChunk.failure("API error 401: invalid key")])
        result = await make_orchestrator(adapter).run("hi")
        assert result.stop_reason == STOP_MODEL_ERROR
        assert "401" in result.error
        assert len(adapter.requests) == 1

    @pytest.mark.asyncio
    async def test_adapter_exception_is_model_error(self, make_orchestrator):
        result = await make_orchestrator(RaisingAdapter()).run("hi")
        assert result.stop_reason == STOP_MODEL_ERROR
        assert "adapter bug" in result.error


# =========================================================================
# Call ids and transcript integrity
# =========================================================================

class TestCallIds:
    @pytest.mark.asyncio
    async def test_missing_ids_synthesized(self, make_orchestrator):
        adapter = ScriptedAdapter(
            calls(ToolCall("", "echo", '{"text": "a"}'), ToolCall("", "echo", '{"text": "b"}')),
            answer("ok"),
        )
        result = await make_orchestrator(adapter).run("go")

        assistant = result.messages[2]
        ids = [c.id for c in assistant.tool_calls]
        assert ids[0].startswith("call_1_0_")
        assert ids[1].startswith("call_1_1_")
        assert [m.tool_call_id for m in result.messages if m.role == "tool"] == ids

    @pytest.mark.asyncio
    async def test_duplicate_ids_abort(self, make_orchestrator):
        adapter = ScriptedAdapter(calls(echo_call("dup", "a"), echo_call("dup", "b")))
        result = await make_orchestrator(adapter).run("go")
        assert result.stop_reason == STOP_PROTOCOL_VIOLATION
        assert result.state == AgentState.FAILED
        assert "duplicate" in result.error

    @pytest.mark.asyncio
    async def test_unanswered_call_in_history_aborts_before_model(self, make_orchestrator):
        adapter = ScriptedAdapter(answer("never"))
        history = [Message.user("old"), Message.assistant("", [echo_call("orphan", "x")])]
        result = await make_orchestrator(adapter).run("new question", history=history)
        assert result.stop_reason == STOP_PROTOCOL_VIOLATION
        assert adapter.requests == []


# =========================================================================
# Cancellation
# =========================================================================

class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_while_streaming(self, make_orchestrator):
        adapter = ScriptedAdapter([StreamChunk.text_delta("thinking about it"), 5.0, StreamChunk.done()])
        orchestrator = make_orchestrator(adapter)
        asyncio.get_running_loop().call_later(0.1, orchestrator.cancel, "user pressed ctrl-c")

        result = await asyncio.wait_for(orchestrator.run("hi"), timeout=3)

        assert result.stop_reason == STOP_CANCELLED
        assert result.state == AgentState.FAILED
        assert "ctrl-c" in result.error
        assert _roles(result.messages) == ["system", "user"]

    @pytest.mark.asyncio
    async def test_cancel_while_tools_run(self, registry, make_orchestrator):
        def blocker(args, ctx):
            ctx.cancel_token.wait(5)
            return "finished anyway"

        registry.register("block", "test", {"parameters": {"type": "object", "properties": {}}}, blocker)
        adapter = ScriptedAdapter(calls(ToolCall("b1", "block", "{}"), echo_call("e1", "fast")), answer("never"))
        store = InMemorySessionStore()
        orchestrator = make_orchestrator(adapter, session_store=store, session_id="s1")
        asyncio.get_running_loop().call_later(0.2, orchestrator.cancel)

        result = await asyncio.wait_for(orchestrator.run("go"), timeout=3)

        assert result.stop_reason == STOP_CANCELLED
        tool_messages = [m for m in result.messages if m.role == "tool"]
        assert [m.tool_call_id for m in tool_messages] == ["b1", "e1"]
        assert all(m.content == CANCELLED_MESSAGE for m in tool_messages)
        assert len(adapter.requests) == 1
        # the persisted history can be resumed
        assert store.load_history("s1") == result.messages[1:]


# =========================================================================
# Persistence
# =========================================================================

class TestPersistence:
    @pytest.mark.asyncio
    async def test_messages_persisted_and_resumed(self, make_orchestrator):
        store = InMemorySessionStore()
        first = make_orchestrator(
            ScriptedAdapter(calls(echo_call("c1", "x")), answer("first answer")),
            session_store=store, session_id="s1",
        )
        result = await first.run("first question")
        assert store.load_history("s1") == result.messages[1:]

        adapter = ScriptedAdapter(answer("second answer"))
        second = make_orchestrator(adapter, session_store=store, session_id="s1")
        await second.run("second question")

        sent = adapter.requests[0]["messages"]
        assert [m.content for m in sent if m.role == "user"] == ["first question", "second question"]
        assert len(store.load_history("s1")) == len(result.messages[1:]) + 2

    @pytest.mark.asyncio
    async def test_compaction_records_summary(self, make_orchestrator):
        store = InMemorySessionStore()
        config = ProviderConfig(provider="openai", model="gpt-4o", context_length=500)
        history = [Message.user("u" * 300), Message.assistant("a" * 300)] * 5
        adapter = ScriptedAdapter(answer("ok"))
        result = await make_orchestrator(
            adapter, config=config, session_store=store, session_id="s1",
        ).run("latest", history=history)

        assert result.completed
        assert len(adapter.requests[0]["messages"]) < len(history) + 2
        summaries = store.summaries("s1")
        assert len(summaries) == 1
        assert "dropped from the model context" in summaries[0]

    @pytest.mark.asyncio
    async def test_store_write_failure_does_not_abort(self, make_orchestrator):
        class FailingStore(InMemorySessionStore):
            def append_message(self, session_id, message):
                raise OSError("disk full")

        result = await make_orchestrator(
            ScriptedAdapter(answer("ok")), session_store=FailingStore(), session_id="s1",
        ).run("hi")
        assert result.completed

    @pytest.mark.asyncio
    async def test_summary_counts_every_dropped_message(self, make_orchestrator):
        store = InMemorySessionStore()
        config = ProviderConfig(provider="openai", model="gpt-4o", context_length=1)
        history = [Message.user("u" * 300), Message.assistant("a" * 300)] * 2
        adapter = ScriptedAdapter(answer("ok"))
        result = await make_orchestrator(
            adapter, config=config, session_store=store, session_id="s1",
        ).run("latest", history=history)

        assert result.completed
        sent = adapter.requests[0]["messages"]
        assert sent[-1].content == HISTORY_CLEARED_NOTICE
        # four history messages plus the new user turn
        assert store.summaries("s1")[0].startswith("5 earlier message(s)")

    @pytest.mark.asyncio
    async def test_unusable_session_id_does_not_abort(self, make_orchestrator, tmp_path):
        store = JsonSessionStore(tmp_path / "sessions")
        result = await make_orchestrator(
            ScriptedAdapter(answer("ok")), session_store=store, session_id="my session",
        ).run("hi")
        assert result.completed
        assert result.final_response == "ok"
        assert not (tmp_path / "sessions").exists() or not list((tmp_path / "sessions").iterdir())

    @pytest.mark.asyncio
    async def test_history_load_failure_starts_fresh(self, make_orchestrator):
        class UnreadableStore(InMemorySessionStore):
            def load_history(self, session_id):
                raise OSError("permission denied")

        adapter = ScriptedAdapter(answer("ok"))
        result = await make_orchestrator(
            adapter, session_store=UnreadableStore(), session_id="s1",
        ).run("hi")
        assert result.completed
        assert [m.content for m in adapter.requests[0]["messages"] if m.role == "user"] == ["hi"]



# =========================================================================
# Events
# =========================================================================

class TestEvents:
    @pytest.mark.asyncio
    async def test_event_stream(self, make_orchestrator):
        events = []
        adapter = ScriptedAdapter(
            [StreamChunk.thinking_delta("hmm"), StreamChunk.call(echo_call("c1", "x")), StreamChunk.done()],
            answer("done"),
        )
        await make_orchestrator(adapter, event_callback=lambda kind, payload: events.append((kind, payload))).run("go")

        kinds = [k for k, _ in events]
        assert "thinking" in kinds
        assert kinds.index("tool_call") < kinds.index("tool_result")
        states = [p for k, p in events if k == "state"]
        assert "executing_tools" in states
        assert states[-1] == "done"
        assert ("text", "done") in events

    @pytest.mark.asyncio
    async def test_callback_errors_ignored(self, make_orchestrator):
        def explode(kind, payload):
            raise RuntimeError("ui crashed")

        result = await make_orchestrator(ScriptedAdapter(answer("ok")), event_callback=explode).run("hi")
        assert result.completed
