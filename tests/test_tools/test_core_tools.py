import pytest

from codeloop.llm import ToolCall
from codeloop.runtime_context import LocalWorkspace
from codeloop.tools import (
    TASK_COMPLETED_MARKER,
    CONDENSE_MARKER,
    AttemptCompletionTool,
    CondenseTool,
    EditTool,
    ListDirTool,
    ReadFileTool,
    WriteToFileTool,
)
from codeloop.tools.list_dir import format_size


def _call(name: str, **arguments) -> ToolCall:
    return ToolCall(id="call_1", name=name, arguments=arguments)


class _RecordingUI:
    def __init__(self):
        self.progress: list[str] = []

    async def show_progress(self, message, percent_complete=None):
        self.progress.append(message)


@pytest.mark.asyncio
async def test_completion_result_carries_marker_and_command(tmp_path):
    tool = AttemptCompletionTool()
    workspace = LocalWorkspace(tmp_path)

    plain = await tool.execute(_call("attempt_completion", result="Done"), workspace)
    assert plain.content == TASK_COMPLETED_MARKER + "Done"

    with_command = await tool.execute(_call("attempt_completion", result="Done", command="pytest -q"), workspace)
    assert with_command.content == TASK_COMPLETED_MARKER + "Done\n\nSuggested command to verify:\npytest -q"

    empty = await tool.execute(_call("attempt_completion", result="   "), workspace)
    assert empty.error == "Result cannot be empty"

    missing = await tool.execute(_call("attempt_completion"), workspace)
    assert missing.error == "Missing required parameter: result"


@pytest.mark.asyncio
async def test_condense_returns_summary_with_marker(tmp_path):
    tool = CondenseTool()
    workspace = LocalWorkspace(tmp_path)

    result = await tool.execute(_call("condense", summary="Read two files"), workspace)
    assert result.content == CONDENSE_MARKER + "Read two files"

    empty = await tool.execute(_call("condense", summary=""), workspace)
    assert empty.success is False
    assert empty.error == "Summary cannot be empty"


@pytest.mark.asyncio
async def test_read_file_whole_and_windowed(tmp_path):
    (tmp_path / "notes.txt").write_text("one\ntwo\nthree\nfour", encoding="utf-8")
    tool = ReadFileTool()
    workspace = LocalWorkspace(tmp_path)

    whole = await tool.execute(_call("read_file", path="notes.txt"), workspace)
    assert whole.content == "one\ntwo\nthree\nfour"

    window = await tool.execute(_call("read_file", path="notes.txt", offset=2, limit=2), workspace)
    assert window.content == "two\nthree"

    tail = await tool.execute(_call("read_file", path="notes.txt", offset="3"), workspace)
    assert tail.content == "three\nfour"

    beyond = await tool.execute(_call("read_file", path="notes.txt", offset=99), workspace)
    assert beyond.content == "(empty - offset beyond file length)"


@pytest.mark.asyncio
async def test_read_file_failures(tmp_path):
    (tmp_path / "blob.bin").write_bytes(b"\xff\xfe\x00\x81")
    tool = ReadFileTool()
    workspace = LocalWorkspace(tmp_path)

    missing = await tool.execute(_call("read_file", path="absent.py"), workspace)
    assert missing.error == "File not found: absent.py"

    binary = await tool.execute(_call("read_file", path="blob.bin"), workspace)
    assert binary.error == "Not a text file: blob.bin"

    outside = await tool.execute(_call("read_file", path="../elsewhere.txt"), workspace)
    assert outside.error == "Access denied: ../elsewhere.txt"


@pytest.mark.asyncio
async def test_write_creates_new_files_only(tmp_path):
    tool = WriteToFileTool()
    workspace = LocalWorkspace(tmp_path)

    created = await tool.execute(_call("write_to_file", path="pkg/new.py", content="x = 1\n"), workspace)
    assert created.content == "File created: pkg/new.py"
    assert (tmp_path / "pkg" / "new.py").read_text(encoding="utf-8") == "x = 1\n"

    again = await tool.execute(_call("write_to_file", path="pkg/new.py", content="x = 2\n"), workspace)
    assert again.error == "File already exists: pkg/new.py. Use 'edit' tool to modify existing files."
    assert (tmp_path / "pkg" / "new.py").read_text(encoding="utf-8") == "x = 1\n"


@pytest.mark.asyncio
async def test_write_respects_refused_confirmation(tmp_path):
    questions: list[str] = []

    def _refuse(question: str) -> bool:
        questions.append(question)
        return False

    workspace = LocalWorkspace(tmp_path, approval_callback=_refuse)
    result = await WriteToFileTool().execute(_call("write_to_file", path="a.txt", content="hi"), workspace)

    assert result.error == "Operation cancelled by user"
    assert questions and questions[0].startswith("Create File\nCreate new file: a.txt")
    assert not (tmp_path / "a.txt").exists()


@pytest.mark.asyncio
async def test_edit_replaces_unique_occurrence(tmp_path):
    target = tmp_path / "app.py"
    target.write_text("def main():\n    return 1\n", encoding="utf-8")
    workspace = LocalWorkspace(tmp_path)

    result = await EditTool().execute(
        _call("edit", file_path="app.py", old_string="return 1", new_string="return 2"),
        workspace,
    )

    assert result.content == "File edited: app.py (1 replacement(s) made)"
    assert target.read_text(encoding="utf-8") == "def main():\n    return 2\n"


@pytest.mark.asyncio
async def test_edit_rejects_ambiguous_missing_and_noop_edits(tmp_path):
    target = tmp_path / "app.py"
    target.write_text("x = 1\nx = 1\n", encoding="utf-8")
    workspace = LocalWorkspace(tmp_path)
    tool = EditTool()

    ambiguous = await tool.execute(_call("edit", file_path="app.py", old_string="x = 1", new_string="x = 2"), workspace)
    assert ambiguous.error.startswith("old_string is not unique in the file")

    missing = await tool.execute(_call("edit", file_path="app.py", old_string="y = 3", new_string="y = 4"), workspace)
    assert missing.error.startswith("old_string not found in file")

    absent = await tool.execute(_call("edit", file_path="x.py", old_string="a", new_string="a"), workspace)
    assert absent.error == "File not found: x.py"

    same = await tool.execute(_call("edit", file_path="app.py", old_string="x = 1", new_string="x = 1", replace_all=True), workspace)
    assert same.error == "old_string and new_string are identical. This is a no-op."

    every = await tool.execute(
        _call("edit", file_path="app.py", old_string="x = 1", new_string="x = 2", replace_all=True),
        workspace,
    )
    assert every.content == "File edited: app.py (2 replacement(s) made)"
    assert target.read_text(encoding="utf-8") == "x = 2\nx = 2\n"


@pytest.mark.asyncio
async def test_edit_requires_diff_approval(tmp_path):
    target = tmp_path / "app.py"
    target.write_text("value = 1\n", encoding="utf-8")
    workspace = LocalWorkspace(tmp_path, approval_callback=lambda question: False)

    result = await EditTool().execute(
        _call("edit", file_path="app.py", old_string="1", new_string="2"),
        workspace,
    )

    assert result.error == "Operation cancelled by user"
    assert target.read_text(encoding="utf-8") == "value = 1\n"


@pytest.mark.asyncio
async def test_edit_partial_shows_progress():
    ui = _RecordingUI()

    await EditTool().handle_partial(_call("edit", file_path="src/app.py"), ui)
    await EditTool().handle_partial(_call("edit"), ui)

    assert ui.progress == ["Editing src/app.py"]


def test_format_size():
    assert format_size(12) == "12 B"
    assert format_size(1536) == "1.5 KB"
    assert format_size(3 * 1024 * 1024) == "3 MB"


@pytest.mark.asyncio
async def test_list_dir_flat(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "main.py").write_text("print()\n", encoding="utf-8")
    (tmp_path / "README.md").write_text("hello", encoding="utf-8")
    workspace = LocalWorkspace(tmp_path)

    result = await ListDirTool().execute(_call("list_dir", path="."), workspace)

    assert result.content == "./\n  src/ (1 items)\n  README.md (5 B)\n"


@pytest.mark.asyncio
async def test_list_dir_recursive_is_breadth_first_and_skips_excluded(tmp_path):
    (tmp_path / "a" / "deep").mkdir(parents=True)
    (tmp_path / "a" / "deep" / "leaf.txt").write_text("x", encoding="utf-8")
    (tmp_path / "b").mkdir()
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "top.txt").write_text("y", encoding="utf-8")
    workspace = LocalWorkspace(tmp_path)

    result = await ListDirTool().execute(_call("list_dir", path="/", recursive="true"), workspace)

    lines = result.content.splitlines()
    assert lines[0] == "./"
    assert lines[1:4] == ["  a/ (1 items)", "  b/ (0 items)", "  top.txt (1 B)"]
    assert "    deep/ (1 items)" in lines
    assert "      leaf.txt (1 B)" in lines
    assert not any("node_modules" in line for line in lines)


@pytest.mark.asyncio
async def test_list_dir_respects_max_depth(tmp_path):
    (tmp_path / "a" / "deep").mkdir(parents=True)
    (tmp_path / "a" / "deep" / "leaf.txt").write_text("x", encoding="utf-8")
    workspace = LocalWorkspace(tmp_path)

    result = await ListDirTool().execute(_call("list_dir", path=".", recursive=True, max_depth=1), workspace)

    assert "deep/" not in result.content


@pytest.mark.asyncio
async def test_list_dir_failures(tmp_path):
    workspace = LocalWorkspace(tmp_path)
    tool = ListDirTool()

    missing = await tool.execute(_call("list_dir", path="nowhere"), workspace)
    assert missing.error == "Directory not found: nowhere"

    outside = await tool.execute(_call("list_dir", path="../.."), workspace)
    assert outside.error == "Access denied: ../.."
