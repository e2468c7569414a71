"""Condense tool: the model hands back a summary that replaces older history."""

import asyncio

from codeloop.llm.types import ToolCall
from codeloop.runtime_context import WorkspaceContext
from codeloop.tools.registry import Tool, ToolResult

CONDENSE_MARKER = "CONDENSE:"


class CondenseTool(Tool):
    name = "condense"
    description = (
        "Condense the conversation history by providing a summary of work done so far. "
        "Use this when the conversation is getting long and you need more context space. "
        "The summary will replace earlier messages in the conversation."
    )
    parameters = {
        "type": "object",
        "properties": {
            "summary": {
                "type": "string",
                "description": (
                    "A comprehensive summary of all work done so far, including files "
                    "read/modified, tools used, decisions made, and current progress. "
                    "This replaces the earlier conversation history."
                ),
            },
        },
        "required": ["summary"],
    }

    async def execute(
        self,
        call: ToolCall,
        workspace: WorkspaceContext,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        summary = call.arguments.get("summary")
        if summary is None:
            return ToolResult.fail("Missing required parameter: summary")
        summary = str(summary)
        if not summary.strip():
            return ToolResult.fail("Summary cannot be empty")
        return ToolResult.ok(CONDENSE_MARKER + summary)
