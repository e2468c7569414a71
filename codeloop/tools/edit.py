"""Edit tool: exact string replacement inside an existing file."""

import asyncio

from codeloop.llm.types import ToolCall
from codeloop.logging import get_logger
from codeloop.runtime_context import UIContext, WorkspaceContext
from codeloop.tools.registry import Tool, ToolResult

log = get_logger(__name__)


class EditTool(Tool):
    """Replace a unique string (or every occurrence) in a file."""

    name = "edit"
    description = "Make a precise edit to an existing file by replacing a unique string with new content."
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {
                "type": "string",
                "description": "The path to the file to edit",
            },
            "old_string": {
                "type": "string",
                "description": "The exact text to replace. MUST be unique in the file.",
            },
            "new_string": {
                "type": "string",
                "description": "The new text to replace old_string with",
            },
            "replace_all": {
                "type": "boolean",
                "description": "If true, replace all occurrences. Default is false.",
                "default": False,
            },
        },
        "required": ["file_path", "old_string", "new_string"],
    }

    async def execute(
        self,
        call: ToolCall,
        workspace: WorkspaceContext,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        for key in ("file_path", "old_string", "new_string"):
            if call.arguments.get(key) is None:
                return ToolResult.fail(f"Missing required parameter: {key}")
        path = str(call.arguments["file_path"])
        old_string = str(call.arguments["old_string"])
        new_string = str(call.arguments["new_string"])
        replace_all = str(call.arguments.get("replace_all", False)).strip().lower() == "true"

        if not workspace.is_path_accessible(path):
            return ToolResult.fail(f"Access denied: {path}")
        if not await workspace.file_exists(path):
            return ToolResult.fail(f"File not found: {path}")

        content = await workspace.read_file(path)
        occurrences = content.count(old_string) if old_string else 0
        if occurrences == 0:
            return ToolResult.fail(
                "old_string not found in file. Make sure the string matches exactly including whitespace."
            )
        if occurrences > 1 and not replace_all:
            return ToolResult.fail(
                "old_string is not unique in the file. Provide more context to make it unique, "
                "or use replace_all=true."
            )
        if old_string == new_string:
            return ToolResult.fail("old_string and new_string are identical. This is a no-op.")

        updated = content.replace(old_string, new_string, -1 if replace_all else 1)
        if not await workspace.show_diff_preview(path, content, updated):
            return ToolResult.fail("Operation cancelled by user")

        await workspace.write_file(path, updated)
        replaced = occurrences if replace_all else 1
        log.info("File edited", path=path, replacements=replaced)
        return ToolResult.ok(f"File edited: {path} ({replaced} replacement(s) made)")

    async def handle_partial(
        self,
        call: ToolCall,
        ui: UIContext,
        abort_event: asyncio.Event | None = None,
    ) -> None:
        path = call.arguments.get("file_path")
        if path:
            await ui.show_progress(f"Editing {path}")
