"""Read tool for reading file contents."""

import asyncio

from codeloop.llm.types import ToolCall
from codeloop.logging import get_logger
from codeloop.runtime_context import WorkspaceContext
from codeloop.tools.registry import Tool, ToolResult

log = get_logger(__name__)


def _optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


class ReadFileTool(Tool):
    """Read file contents, optionally a window of lines."""

    name = "read_file"
    description = "Read the contents of a file at the specified path."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The path to the file to read (relative to workspace root)",
            },
            "offset": {
                "type": "integer",
                "description": "Optional. The 1-indexed line number to start reading from.",
            },
            "limit": {
                "type": "integer",
                "description": "Optional. The number of lines to read.",
            },
        },
        "required": ["path"],
    }

    async def execute(
        self,
        call: ToolCall,
        workspace: WorkspaceContext,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Read a file.

        Without ``offset``/``limit`` the whole file is returned.
        """
        path = call.arguments.get("path")
        if path is None:
            return ToolResult.fail("Missing required parameter: path")
        path = str(path)

        if not workspace.is_path_accessible(path):
            return ToolResult.fail(f"Access denied: {path}")
        if not await workspace.file_exists(path):
            return ToolResult.fail(f"File not found: {path}")

        try:
            content = await workspace.read_file(path)
        except UnicodeDecodeError:
            return ToolResult.fail(f"Not a text file: {path}")

        offset = _optional_int(call.arguments.get("offset"))
        limit = _optional_int(call.arguments.get("limit"))
        if offset is None and limit is None:
            return ToolResult.ok(content)

        lines = content.split("\n")
        start = max(0, (offset or 1) - 1)
        if start >= len(lines):
            return ToolResult.ok("(empty - offset beyond file length)")
        count = limit if limit is not None else len(lines) - start
        count = max(0, min(count, len(lines) - start))
        log.debug("Read file window", path=path, start=start + 1, count=count)
        return ToolResult.ok("\n".join(lines[start:start + count]))
