"""Step events produced by the agent loop for the caller to render."""

from dataclasses import dataclass
from enum import Enum

from codeloop.llm.types import ToolCall
from codeloop.tools.registry import ToolResult


class StepType(str, Enum):
    TEXT_CHUNK = "text_chunk"
    TOOL_START = "tool_start"
    TOOL_RESULT = "tool_result"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_STEP_TYPES = frozenset({StepType.COMPLETE, StepType.ERROR})


@dataclass(frozen=True)
class AgentStep:
    """One observable event of a running task.

    ``text`` carries the chunk, the final answer or the error message;
    ``tool_call`` and ``result`` are set for tool steps.
    """

    type: StepType
    text: str = ""
    tool_call: ToolCall | None = None
    result: ToolResult | None = None

    @classmethod
    def text_chunk(cls, text: str) -> "AgentStep":
        return cls(type=StepType.TEXT_CHUNK, text=text)

    @classmethod
    def tool_start(cls, call: ToolCall) -> "AgentStep":
        return cls(type=StepType.TOOL_START, tool_call=call)

    @classmethod
    def tool_result(cls, call: ToolCall, result: ToolResult) -> "AgentStep":
        return cls(type=StepType.TOOL_RESULT, tool_call=call, result=result)

    @classmethod
    def complete(cls, final_text: str | None) -> "AgentStep":
        return cls(type=StepType.COMPLETE, text=final_text or "")

    @classmethod
    def error(cls, message: str) -> "AgentStep":
        return cls(type=StepType.ERROR, text=message)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_STEP_TYPES
