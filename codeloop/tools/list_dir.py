"""Directory listing tool (flat or breadth-first tree)."""

import asyncio
from pathlib import Path

from codeloop.llm.types import ToolCall
from codeloop.logging import get_logger
from codeloop.runtime_context import WorkspaceContext
from codeloop.tools.registry import Tool, ToolResult

log = get_logger(__name__)

EXCLUDED_DIRS = frozenset({
    ".git", ".vs", ".vscode", "bin", "obj", "node_modules", "packages",
    "__pycache__", ".idea", "dist", ".next", ".nuget", "testresults",
    ".venv", ".mypy_cache", ".pytest_cache",
})
MAX_ITEMS = 500
DEFAULT_MAX_DEPTH = 3


def format_size(size: float) -> str:
    suffixes = ("B", "KB", "MB", "GB")
    index = 0
    while size >= 1024 and index < len(suffixes) - 1:
        size /= 1024
        index += 1
    text = f"{size:.2f}".rstrip("0").rstrip(".")
    return f"{text} {suffixes[index]}"


def _item_count(directory: Path) -> int:
    try:
        return sum(1 for _ in directory.iterdir())
    except OSError:
        return 0


def _coerce_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _coerce_depth(value: object) -> int:
    try:
        depth = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        depth = DEFAULT_MAX_DEPTH
    return max(1, min(10, depth))


class _Listing:
    """Accumulates listing lines under the item cap."""

    def __init__(self, max_items: int = MAX_ITEMS):
        self.lines: list[str] = []
        self.count = 0
        self.max_items = max_items

    @property
    def full(self) -> bool:
        return self.count >= self.max_items

    def add(self, line: str) -> None:
        self.lines.append(line)
        self.count += 1


def _list_flat(directory: Path, label: str) -> str:
    lines = [f"{label}/"]
    entries = sorted(directory.iterdir(), key=lambda p: p.name)
    for entry in entries:
        if entry.is_dir():
            lines.append(f"  {entry.name}/ ({_item_count(entry)} items)")
    for entry in entries:
        if entry.is_file():
            lines.append(f"  {entry.name} ({format_size(entry.stat().st_size)})")
    return "\n".join(lines) + "\n"


def _list_tree(directory: Path, listing: _Listing, indent: str, depth: int, max_depth: int) -> None:
    """List every entry of a level before descending into its subdirectories."""
    if listing.full:
        return
    try:
        entries = sorted(directory.iterdir(), key=lambda p: p.name)
    except PermissionError:
        listing.lines.append(f"{indent}  [access denied]")
        return

    to_visit: list[Path] = []
    for entry in entries:
        if not entry.is_dir():
            continue
        if listing.full:
            return
        if entry.name.lower() in EXCLUDED_DIRS:
            continue
        listing.add(f"{indent}  {entry.name}/ ({_item_count(entry)} items)")
        if depth < max_depth:
            to_visit.append(entry)

    for entry in entries:
        if not entry.is_file():
            continue
        if listing.full:
            return
        listing.add(f"{indent}  {entry.name} ({format_size(entry.stat().st_size)})")

    for subdir in to_visit:
        if listing.full:
            return
        _list_tree(subdir, listing, indent + "  ", depth + 1, max_depth)


class ListDirTool(Tool):
    """List files and directories."""

    name = "list_dir"
    description = (
        "List files and directories in the specified path. "
        "Use recursive=true when user asks for full/complete structure, directory tree, 完整结构, 目录树. "
        "For large projects, set max_depth=2 or 3 to avoid excessive output."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The directory path to list (relative to workspace root)",
            },
            "recursive": {
                "type": "boolean",
                "description": "If true, list contents recursively in tree format. Default: false",
            },
            "max_depth": {
                "type": "integer",
                "description": "Maximum depth for recursive listing (1-10). Default: 3. Only used when recursive=true",
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
        relative = str(call.arguments.get("path") or "").strip()
        if relative in ("", "/", "\\"):
            relative = "."

        if not workspace.is_path_accessible(relative):
            return ToolResult.fail(f"Access denied: {relative}")

        directory = workspace.resolve_directory_path(relative)
        if not directory.is_dir():
            return ToolResult.fail(f"Directory not found: {relative}")

        recursive = _coerce_bool(call.arguments.get("recursive", False))
        max_depth = _coerce_depth(call.arguments.get("max_depth", DEFAULT_MAX_DEPTH))

        def _run() -> str:
            if not recursive:
                return _list_flat(directory, relative)
            listing = _Listing()
            listing.lines.append(f"{relative}/")
            _list_tree(directory, listing, "", 1, max_depth)
            text = "\n".join(listing.lines) + "\n"
            if listing.full:
                text += f"\n... (output truncated at {listing.max_items} items)\n"
            return text

        try:
            content = await asyncio.to_thread(_run)
        except PermissionError:
            return ToolResult.fail(f"Access denied to directory contents: {relative}")
        log.debug("Listed directory", path=relative, recursive=recursive, max_depth=max_depth)
        return ToolResult.ok(content)
