"""Write tool for creating new files."""

import asyncio

from codeloop.llm.types import ToolCall
from codeloop.logging import get_logger
from codeloop.runtime_context import WorkspaceContext
from codeloop.tools.registry import Tool, ToolResult

log = get_logger(__name__)

PREVIEW_CHARS = 500


class WriteToFileTool(Tool):
    """Create a new file. Existing files are never overwritten."""

    name = "write_to_file"
    description = "Create a new file with the specified content. Use this only for new files."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The path for the new file (relative to workspace root)",
            },
            "content": {
                "type": "string",
                "description": "The content to write to the file",
            },
        },
        "required": ["path", "content"],
    }

    async def execute(
        self,
        call: ToolCall,
        workspace: WorkspaceContext,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        path = call.arguments.get("path")
        if path is None:
            return ToolResult.fail("Missing required parameter: path")
        content = call.arguments.get("content")
        if content is None:
            return ToolResult.fail("Missing required parameter: content")
        path, content = str(path), str(content)

        if not workspace.is_path_accessible(path):
            return ToolResult.fail(f"Access denied: {path}")
        if await workspace.file_exists(path):
            return ToolResult.fail(f"File already exists: {path}. Use 'edit' tool to modify existing files.")

        confirmed = await workspace.request_confirmation(
            "Create File",
            f"Create new file: {path}\n\nContent preview:\n{content[:PREVIEW_CHARS]}...",
        )
        if not confirmed:
            return ToolResult.fail("Operation cancelled by user")

        await workspace.write_file(path, content)
        log.info("File created", path=path, chars=len(content))
        return ToolResult.ok(f"File created: {path}")
