"""In-memory conversation transcript with tool-call correlation checks.

The transcript is append-only. It rejects tool results that answer an unknown
call or answer a call twice, and it refuses to hand history to the model while
a proposed call is still unanswered. Such violations are programming errors
in the loop, so they raise ``TranscriptError`` instead of being repaired.
"""

from typing import Dict, Iterable, List, Optional

from agent.messages import Message


class TranscriptError(Exception):
    """Raised when the conversation would become malformed."""


class Transcript:
    """Ordered, append-only message list owned by one orchestrator session."""

    def __init__(self, messages: Optional[Iterable[Message]] = None):
        self._messages: List[Message] = []
        # call id -> True once answered
        self._calls: Dict[str, bool] = {}
        for msg in messages or ():
            self.append(msg)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(self._messages)

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def append(self, message: Message) -> Message:
        if message.role == "assistant" and message.tool_calls:
            self._register_calls(message)
        elif message.role == "tool":
            self._answer(message.tool_call_id)
        self._messages.append(message)
        return message

    def extend(self, messages: Iterable[Message]) -> None:
        for msg in messages:
            self.append(msg)

    def pending_call_ids(self) -> List[str]:
        return [call_id for call_id, answered in self._calls.items() if not answered]

    def assert_complete(self) -> None:
        """Every proposed call must be answered before the next model turn."""
        pending = self.pending_call_ids()
        if pending:
            raise TranscriptError(
                f"{len(pending)} tool call(s) left unanswered before the next "
                f"model invocation: {', '.join(pending)}"
            )

    def _register_calls(self, message: Message) -> None:
        self.assert_complete()
        for call in message.tool_calls:
            if not call.id:
                raise TranscriptError(f"tool call '{call.name}' has no id")
            if call.id in self._calls:
                raise TranscriptError(f"duplicate tool call id '{call.id}'")
            self._calls[call.id] = False

    def _answer(self, call_id: str) -> None:
        if call_id not in self._calls:
            raise TranscriptError(
                f"tool result '{call_id}' does not match any prior tool call"
            )
        if self._calls[call_id]:
            raise TranscriptError(f"tool call '{call_id}' was answered twice")
        self._calls[call_id] = True
