"""Canonical conversation data model.

Every component speaks these shapes. Model adapters translate them to and from
provider wire formats; the orchestrator, executor and session store never see
provider-specific dictionaries.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

ROLES = ("system", "user", "assistant", "tool")


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation proposed by the model.

    ``arguments_json`` is kept exactly as the model produced it so the
    assistant turn can be replayed to the provider unchanged.
    """

    id: str
    name: str
    arguments_json: str = "{}"

    def arguments(self) -> Dict[str, Any]:
        """Decode the argument payload. Raises ValueError when malformed."""
        raw = self.arguments_json.strip() if self.arguments_json else ""
        if not raw:
            return {}
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"arguments are not valid JSON: {e}") from e
        if not isinstance(decoded, dict):
            raise ValueError(
                f"arguments must be a JSON object, got {type(decoded).__name__}"
            )
        return decoded

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }


@dataclass(frozen=True)
class Message:
    """One immutable turn of the conversation."""

    role: str
    content: str = ""
    images: Tuple[str, ...] = ()
    tool_call_id: Optional[str] = None
    tool_calls: Tuple[ToolCall, ...] = ()

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"invalid message role: {self.role!r}")
        if self.images and self.role != "user":
            raise ValueError("only user messages may carry images")
        if self.tool_call_id and self.role != "tool":
            raise ValueError("tool_call_id is only valid on tool messages")
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages require a tool_call_id")
        if self.tool_calls and self.role != "assistant":
            raise ValueError("only assistant messages may propose tool calls")

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str, images: Optional[List[str]] = None) -> "Message":
        return cls(role="user", content=content, images=tuple(images or ()))

    @classmethod
    def assistant(cls, content: str = "", tool_calls: Optional[List[ToolCall]] = None) -> "Message":
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls or ()))

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "Message":
        return cls(role="tool", content=content, tool_call_id=tool_call_id)

    def to_openai(self) -> Dict[str, Any]:
        """Render in the OpenAI chat-completions message shape."""
        msg: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.images:
            parts: List[Dict[str, Any]] = [{"type": "text", "text": self.content}]
            for url in self.images:
                parts.append({"type": "image_url", "image_url": {"url": url}})
            msg["content"] = parts
        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]
        return msg

    def to_dict(self) -> Dict[str, Any]:
        """Plain serializable form (used by the session store)."""
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.images:
            data["images"] = list(self.images)
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            data["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        tool_calls = []
        for tc in data.get("tool_calls") or []:
            func = tc.get("function", {})
            tool_calls.append(ToolCall(
                id=tc.get("id", ""),
                name=func.get("name", ""),
                arguments_json=func.get("arguments", "{}"),
            ))
        content = data.get("content") or ""
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") for part in content if isinstance(part, dict)
            )
        return cls(
            role=data["role"],
            content=content,
            images=tuple(data.get("images") or ()),
            tool_call_id=data.get("tool_call_id"),
            tool_calls=tuple(tool_calls),
        )


@dataclass(frozen=True)
class ToolDefinition:
    """A capability offered to the model."""

    name: str
    description: str
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class ToolInvocationResult:
    """Outcome of one tool call. Produced for every call, failed or not."""

    tool_call_id: str
    tool_name: str
    output: str
    failed: bool = False
    error_detail: Optional[str] = None
    duration: float = 0.0

    def to_message(self) -> Message:
        return Message.tool(self.tool_call_id, self.output)
