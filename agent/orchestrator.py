"""ReAct loop driving one agent session.

    PLANNING -> AWAITING_MODEL -> EXECUTING_TOOLS -> PLANNING -> ... -> DONE
                              \\-> FAILED

Each model invocation is one iteration. The model either answers (the
session is DONE) or proposes tool calls; those run concurrently through the
ToolExecutor and their results are appended in proposal order before the
next iteration. The loop ends on a final answer, on the iteration budget,
on an unrecoverable model error, on cancellation, or when the transcript
would become malformed.

Usage:
    orchestrator = Orchestrator(adapter, provider_config, executor=executor,
                                skills=skills, rules=rules)
    result = await orchestrator.run("Add a --dry-run flag to the CLI")
    print(result.stop_reason, result.final_response)
"""

import asyncio
import dataclasses
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from agent.cancellation import CancelledByUser, CancelToken, race_cancel
from agent.context_memory import HISTORY_CLEARED_NOTICE, trim
from agent.messages import Message, ToolCall, ToolInvocationResult
from agent.model_adapter import ModelAdapter, ProviderConfig, looks_like_context_overflow
from agent.model_router import context_length_for
from agent.prompt_assembler import PromptAssembler
from agent.session_store import SessionStore
from agent.tool_executor import ToolExecutor, cancelled_result
from agent.transcript import Transcript, TranscriptError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 50


class AgentState(str, enum.Enum):
    PLANNING = "planning"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    FAILED = "failed"


STOP_COMPLETED = "completed"
STOP_MAX_ITERATIONS = "max_iterations"
STOP_CONTEXT_OVERFLOW = "context_overflow"
STOP_MODEL_ERROR = "model_error"
STOP_CANCELLED = "cancelled"
STOP_PROTOCOL_VIOLATION = "protocol_violation"


@dataclass
class AgentResult:
    final_response: str
    state: AgentState
    stop_reason: str
    iterations: int
    messages: List[Message] = field(default_factory=list)
    error: Optional[str] = None
    tool_results: List[ToolInvocationResult] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.stop_reason == STOP_COMPLETED


@dataclass
class _TurnOutput:
    text: List[str] = field(default_factory=list)
    thinking: List[str] = field(default_factory=list)
    calls: List[ToolCall] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def content(self) -> str:
        return "".join(self.text)


class _SessionAborted(Exception):
    def __init__(self, stop_reason: str, error: str):
        super().__init__(error)
        self.stop_reason = stop_reason
        self.error = error


class Orchestrator:
    """Runs the reasoning loop for one session.

    Args:
        adapter: Model adapter for the active provider.
        config: Provider settings passed to every adapter call.
        executor: Tool executor (built-ins plus protocol tools).
        skills: Loaded SkillContent objects included in the system prompt.
        rules: User rules included as a numbered list.
        max_iterations: Model invocations allowed per run.
        session_store: Optional persistence collaborator.
        session_id: Session key for the store.
        event_callback: Optional ``callback(kind, payload)`` for progress
            events: text, thinking, tool_call, tool_result, state.
        prompt_assembler: Prompt assembler; one is created for the
            executor's project root when omitted.
        system_message: Extra system text placed after the identity block.
        cancel_token: Token shared with tools; a fresh one when omitted.
    """

    def __init__(
        self,
        adapter: ModelAdapter,
        config: ProviderConfig,
        *,
        executor: ToolExecutor,
        skills: Sequence = (),
        rules: Sequence[str] = (),
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        session_store: Optional[SessionStore] = None,
        session_id: Optional[str] = None,
        event_callback: Optional[Callable[[str, Any], None]] = None,
        prompt_assembler: Optional[PromptAssembler] = None,
        system_message: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.adapter = adapter
        self.config = config
        self.executor = executor
        self.skills = list(skills)
        self.rules = list(rules)
        self.max_iterations = max_iterations
        self.session_store = session_store
        self.session_id = session_id
        self.event_callback = event_callback
        self.prompt_assembler = prompt_assembler or PromptAssembler(
            project_root=str(executor.project_root)
        )
        self.system_message = system_message
        self.cancel_token = cancel_token or CancelToken()
        self.state = AgentState.PLANNING
        self._budget_divisor = 1
        self._evicted_reported = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self, reason: str = "cancelled by user") -> None:
        self.cancel_token.cancel(reason)

    def invalidate_prompt(self) -> None:
        """Force the system prompt to be rebuilt on the next run."""
        self.prompt_assembler.invalidate()

    def run_sync(self, user_message: str, **kwargs) -> AgentResult:
        return asyncio.run(self.run(user_message, **kwargs))

    async def run(
        self,
        user_message: str,
        history: Optional[Sequence[Message]] = None,
        images: Optional[List[str]] = None,
    ) -> AgentResult:
        """Run the loop until a final answer or a stop condition."""
        started = time.monotonic()
        transcript = Transcript()
        tool_results: List[ToolInvocationResult] = []
        iterations = 0
        last_text = ""

        def _result(state, stop_reason, final="", error=None):
            self._set_state(state)
            logger.info(
                "Session %s finished: %s after %d iteration(s) in %.2fs",
                self.session_id or "-", stop_reason, iterations, time.monotonic() - started,
            )
            return AgentResult(
                final_response=final,
                state=state,
                stop_reason=stop_reason,
                iterations=iterations,
                messages=transcript.messages,
                error=error,
                tool_results=tool_results,
            )

        self._set_state(AgentState.PLANNING)
        tools = self.executor.definitions()
        system_prompt = self.prompt_assembler.build(
            tool_names=[t.name for t in tools],
            rules=self.rules,
            skills=self.skills,
            system_message=self.system_message,
        )

        if history is None and self.session_store is not None and self.session_id:
            try:
                history = self.session_store.load_history(self.session_id)
            except (OSError, ValueError) as e:
                logger.warning(
                    "Could not load history for session %s, starting fresh: %s", self.session_id, e
                )
                history = None

        try:
            transcript.append(Message.system(system_prompt))
            for msg in history or ():
                if msg.role != "system":
                    transcript.append(msg)
            self._record(transcript, Message.user(user_message, images))
        except TranscriptError as e:
            logger.error("Session history is malformed: %s", e)
            return _result(AgentState.FAILED, STOP_PROTOCOL_VIOLATION, error=str(e))

        try:
            while True:
                if iterations >= self.max_iterations:
                    notice = f"Stopped after reaching the maximum of {self.max_iterations} iterations."
                    logger.warning("Session %s: %s", self.session_id or "-", notice)
                    return _result(AgentState.FAILED, STOP_MAX_ITERATIONS, final=last_text, error=notice)

                iterations += 1
                turn = await self._model_turn(transcript, tools, iterations)
                last_text = turn.content or last_text

                calls = self._with_ids(turn.calls, iterations)
                self._record(transcript, Message.assistant(turn.content, calls))
                if not calls:
                    return _result(AgentState.DONE, STOP_COMPLETED, final=turn.content)

                self._set_state(AgentState.EXECUTING_TOOLS)
                results = await self._execute(calls)
                for result in results:
                    self._record(transcript, result.to_message())
                    tool_results.append(result)
                self.cancel_token.raise_if_cancelled()
                self._set_state(AgentState.PLANNING)

        except CancelledByUser as e:
            self._answer_pending(transcript)
            logger.info("Session %s cancelled: %s", self.session_id or "-", e)
            return _result(AgentState.FAILED, STOP_CANCELLED, final=last_text, error=str(e))
        except _SessionAborted as e:
            return _result(AgentState.FAILED, e.stop_reason, final=last_text, error=e.error)
        except TranscriptError as e:
            logger.error("Transcript violation, aborting session: %s", e)
            return _result(AgentState.FAILED, STOP_PROTOCOL_VIOLATION, final=last_text, error=str(e))

    # ------------------------------------------------------------------
    # Model turn
    # ------------------------------------------------------------------

    def _context_view(self, transcript: Transcript) -> List[Message]:
        max_tokens = max(1, context_length_for(self.config) // self._budget_divisor)
        full = transcript.messages
        view = trim(full, max_tokens)
        # a cleared-history notice stands in for an empty suffix and is not a kept message
        if view and view[-1].content == HISTORY_CLEARED_NOTICE:
            kept = 0
        else:
            kept = sum(1 for m in view if m.role != "system")
        evicted = sum(1 for m in full if m.role != "system") - kept
        if evicted > self._evicted_reported:
            self._evicted_reported = evicted
            logger.info("Compacted history: %d message(s) outside the %d-token budget", evicted, max_tokens)
            if self.session_store is not None and self.session_id:
                try:
                    self.session_store.save_summary(
                        self.session_id,
                        f"{evicted} earlier message(s) were dropped from the model context "
                        f"to fit a {max_tokens}-token budget.",
                    )
                except (OSError, ValueError) as e:
                    logger.warning("Failed to save summary for session %s: %s", self.session_id, e)
        return view

    async def _model_turn(self, transcript: Transcript, tools, iteration: int) -> _TurnOutput:
        transcript.assert_complete()
        retried_overflow = False
        while True:
            self._set_state(AgentState.AWAITING_MODEL)
            messages = self._context_view(transcript)
            start = time.monotonic()
            try:
                turn = await self._stream(messages, tools)
            except CancelledByUser:
                raise
            except Exception as e:
                logger.exception("Model adapter raised instead of reporting an error chunk")
                raise _SessionAborted(STOP_MODEL_ERROR, f"{type(e).__name__}: {e}")
            logger.info(
                "Turn %d: %d chars, %d tool call(s) in %.2fs",
                iteration, len(turn.content), len(turn.calls), time.monotonic() - start,
            )
            if turn.error is None:
                return turn

            if looks_like_context_overflow(turn.error) and not retried_overflow:
                retried_overflow = True
                self._budget_divisor = 2
                logger.warning("Context overflow reported by provider; compacting to half budget and retrying")
                continue
            if looks_like_context_overflow(turn.error):
                raise _SessionAborted(STOP_CONTEXT_OVERFLOW, turn.error)
            logger.error("Model error: %s", turn.error)
            raise _SessionAborted(STOP_MODEL_ERROR, turn.error)

    async def _stream(self, messages: List[Message], tools) -> _TurnOutput:
        turn = _TurnOutput()
        stream = self.adapter.stream(messages, self.config, tools)
        try:
            await race_cancel(self._consume(stream, turn), self.cancel_token)
        finally:
            await stream.aclose()
        return turn

    async def _consume(self, stream, turn: _TurnOutput) -> None:
        async for chunk in stream:
            if chunk.kind == "text":
                turn.text.append(chunk.text)
                self._emit("text", chunk.text)
            elif chunk.kind == "thinking":
                turn.thinking.append(chunk.text)
                self._emit("thinking", chunk.text)
            elif chunk.kind == "tool_call":
                turn.calls.append(chunk.tool_call)
            elif chunk.kind == "error":
                turn.error = chunk.error or "unknown model error"
                return
            elif chunk.kind == "done":
                return

    @staticmethod
    def _with_ids(calls: List[ToolCall], iteration: int) -> List[ToolCall]:
        fixed = []
        for idx, call in enumerate(calls):
            if not call.id:
                call = dataclasses.replace(call, id=f"call_{iteration}_{idx}_{uuid.uuid4().hex[:8]}")
            fixed.append(call)
        return fixed

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _execute(self, calls: List[ToolCall]) -> List[ToolInvocationResult]:
        for call in calls:
            self._emit("tool_call", call)
        results = await self.executor.execute_all(calls, self.cancel_token)
        if self.cancel_token.cancelled:
            # Whatever finished after the token fired is discarded
            return [cancelled_result(call) for call in calls]
        for result in results:
            self._emit("tool_result", result)
        return results

    def _answer_pending(self, transcript: Transcript) -> None:
        """Close out unanswered calls so the persisted history stays well-formed."""
        pending = set(transcript.pending_call_ids())
        if not pending:
            return
        for msg in reversed(transcript.messages):
            if msg.role == "assistant" and msg.tool_calls:
                for call in msg.tool_calls:
                    if call.id in pending:
                        self._record(transcript, cancelled_result(call).to_message())
                break

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record(self, transcript: Transcript, message: Message) -> None:
        transcript.append(message)
        if self.session_store is None or not self.session_id:
            return
        try:
            self.session_store.append_message(self.session_id, message)
        except (OSError, ValueError) as e:
            logger.warning("Failed to persist message for session %s: %s", self.session_id, e)

    def _set_state(self, state: AgentState) -> None:
        if state != self.state:
            logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state
        self._emit("state", state.value)

    def _emit(self, kind: str, payload) -> None:
        if self.event_callback is None:
            return
        try:
            self.event_callback(kind, payload)
        except Exception as e:
            logger.debug("Event callback error (%s): %s", kind, e)
