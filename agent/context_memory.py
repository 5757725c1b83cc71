"""Token budget estimation and history compaction.

Pure functions with no orchestrator dependency. The estimate is a rough
characters-per-token heuristic: no tokenizer is loaded, so it works the same
for every provider.
"""

import math
from dataclasses import dataclass
from typing import List, Sequence

from agent.messages import Message

# Mixed Latin/CJK text averages about 3 characters per token; pure English is
# closer to 4, so this over-estimates slightly.
CHARS_PER_TOKEN = 3

# Fraction of the window history may use; the rest is left for the response.
HISTORY_BUDGET_RATIO = 0.8

# Flat per-call overhead for tool-call metadata (name, id, JSON framing).
TOOL_CALL_OVERHEAD_TOKENS = 20

HISTORY_CLEARED_NOTICE = (
    "[Earlier conversation history was cleared to fit the model's context "
    "window. Ask the user to restate anything important that is missing.]"
)


def estimate_message_tokens(message: Message) -> int:
    chars = len(message.content or "")
    for call in message.tool_calls:
        chars += len(call.name) + len(call.arguments_json or "")
    tokens = math.ceil(chars / CHARS_PER_TOKEN)
    return tokens + TOOL_CALL_OVERHEAD_TOKENS * len(message.tool_calls)


def estimate_tokens(messages: Sequence[Message]) -> int:
    """Rough token estimate for a message list."""
    return sum(estimate_message_tokens(m) for m in messages)


@dataclass(frozen=True)
class ConversationBudget:
    max_tokens: int

    @property
    def threshold(self) -> int:
        return int(self.max_tokens * HISTORY_BUDGET_RATIO)

    def estimated_tokens(self, messages: Sequence[Message]) -> int:
        return estimate_tokens(messages)

    def fits(self, messages: Sequence[Message]) -> bool:
        return self.estimated_tokens(messages) <= self.threshold


def trim(messages: Sequence[Message], max_tokens: int) -> List[Message]:
    """Return the longest recent suffix of *messages* that fits the budget.

    The system message (if any) is always kept and is not charged against the
    budget. Non-system messages are accumulated newest-first until the running
    total would exceed ``HISTORY_BUDGET_RATIO * max_tokens``; everything older
    is evicted. Order is preserved.

    A suffix may not open with tool results whose proposing assistant turn
    was evicted, so those are dropped as well. If nothing survives, the
    result is the system message plus a notice that history was cleared.
    """
    system = [m for m in messages if m.role == "system"][:1]
    rest = [m for m in messages if m.role != "system"]
    budget = ConversationBudget(max_tokens)

    kept_from = len(rest)
    total = 0
    for i in range(len(rest) - 1, -1, -1):
        cost = estimate_message_tokens(rest[i])
        if total + cost > budget.threshold:
            break
        total += cost
        kept_from = i

    while kept_from < len(rest) and rest[kept_from].role == "tool":
        kept_from += 1

    kept = rest[kept_from:]
    if not kept and rest:
        return system + [Message.user(HISTORY_CLEARED_NOTICE)]
    return system + kept
