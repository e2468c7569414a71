"""Tools package for codeloop."""

from codeloop.tools.registry import (
    Tool,
    ToolRegistry,
    ToolResult,
    get_tool_registry,
    set_tool_registry,
)
from codeloop.tools.completion import TASK_COMPLETED_MARKER, AttemptCompletionTool
from codeloop.tools.condense import CONDENSE_MARKER, CondenseTool
from codeloop.tools.edit import EditTool
from codeloop.tools.list_dir import ListDirTool
from codeloop.tools.read import ReadFileTool
from codeloop.tools.write import WriteToFileTool

__all__ = [
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "get_tool_registry",
    "set_tool_registry",
    "AttemptCompletionTool",
    "CondenseTool",
    "EditTool",
    "ListDirTool",
    "ReadFileTool",
    "WriteToFileTool",
    "TASK_COMPLETED_MARKER",
    "CONDENSE_MARKER",
    "create_default_registry",
]


def create_default_registry(timeout_seconds: float = 60.0) -> ToolRegistry:
    """Registry with the built-in core tools."""
    registry = ToolRegistry(default_timeout_seconds=timeout_seconds)
    for tool in (
        AttemptCompletionTool(),
        CondenseTool(),
        ListDirTool(),
        ReadFileTool(),
        WriteToFileTool(),
        EditTool(),
    ):
        registry.register(tool)
    return registry
