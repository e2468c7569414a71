"""Completion tool: ends the task with a final result."""

import asyncio

from codeloop.llm.types import ToolCall
from codeloop.runtime_context import WorkspaceContext
from codeloop.tools.registry import Tool, ToolResult

TASK_COMPLETED_MARKER = "TASK_COMPLETED:"


class AttemptCompletionTool(Tool):
    """Signal that the task is finished."""

    name = "attempt_completion"
    description = (
        "Signal that the task is complete and present the final result to the user. "
        "Use this when you have finished all work. Include a comprehensive summary "
        "of what was accomplished."
    )
    parameters = {
        "type": "object",
        "properties": {
            "result": {
                "type": "string",
                "description": "A comprehensive summary of what was accomplished, including all changes made",
            },
            "command": {
                "type": "string",
                "description": "Optional command to demonstrate the result (e.g. 'pytest', 'python -m app')",
            },
        },
        "required": ["result"],
    }

    async def execute(
        self,
        call: ToolCall,
        workspace: WorkspaceContext,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        result = call.arguments.get("result")
        if result is None:
            return ToolResult.fail("Missing required parameter: result")
        result = str(result)
        if not result.strip():
            return ToolResult.fail("Result cannot be empty")

        message = result
        command = call.arguments.get("command")
        if command is not None and str(command).strip():
            message += "\n\nSuggested command to verify:\n" + str(command)

        return ToolResult.ok(TASK_COMPLETED_MARKER + message)
