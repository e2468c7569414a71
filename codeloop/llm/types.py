"""Conversation and tool-call value types shared across the agent core."""

import json
from dataclasses import dataclass, field
from typing import Any

from pydantic import JsonValue


ROLES = ("system", "user", "assistant", "tool")


@dataclass
class ToolCallRef:
    """Tool call as recorded on an assistant message (arguments kept serialized)."""

    id: str
    name: str
    arguments: str = "{}"
    type: str = "function"


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_call_id: str | None = None
    tool_calls: list[ToolCallRef] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unsupported message role: {self.role!r}")
        if self.content is None:
            self.content = ""

    def to_payload(self) -> dict[str, Any]:
        """Convert to an OpenAI chat-completions message object."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.role == "tool" and self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": ref.id,
                    "type": ref.type,
                    "function": {"name": ref.name, "arguments": ref.arguments},
                }
                for ref in self.tool_calls
            ]
        return payload


@dataclass
class ToolCall:
    """A tool call from the LLM.

    ``arguments`` holds decoded JSON values (str, int, float, bool, None,
    list, dict) so calls survive a serialize/deserialize round trip.
    """

    id: str
    name: str
    arguments: dict[str, JsonValue] = field(default_factory=dict)

    def to_ref(self) -> ToolCallRef:
        """Serialize for the assistant turn recorded in history."""
        return ToolCallRef(
            id=self.id,
            name=self.name,
            arguments=json.dumps(self.arguments or {}, ensure_ascii=False),
        )


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema

    def to_payload(self) -> dict[str, Any]:
        """Convert to an OpenAI function-tool object."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or "",
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }
