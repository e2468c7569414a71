import pytest

from codeloop.runtime_context import (
    LocalWorkspace,
    NullUI,
    PlanStep,
    PlanStepStatus,
    TaskPlan,
    UIContext,
    WorkspaceContext,
)


def test_local_workspace_satisfies_protocols(tmp_path):
    assert isinstance(LocalWorkspace(tmp_path), WorkspaceContext)
    assert isinstance(NullUI(), UIContext)


def test_paths_are_confined_to_root(tmp_path):
    workspace = LocalWorkspace(tmp_path)

    assert workspace.is_path_accessible(".")
    assert workspace.is_path_accessible("src/app.py")
    assert workspace.is_path_accessible(str(tmp_path / "abs.txt"))
    assert not workspace.is_path_accessible("../outside.txt")
    assert workspace.resolve_file_path("src/app.py") == (tmp_path / "src" / "app.py").resolve()
    with pytest.raises(PermissionError):
        workspace.resolve_file_path("../outside.txt")


@pytest.mark.asyncio
async def test_write_then_read_creates_parents(tmp_path):
    workspace = LocalWorkspace(tmp_path)

    await workspace.write_file("a/b/c.txt", "héllo")

    assert await workspace.file_exists("a/b/c.txt")
    assert await workspace.read_file("a/b/c.txt") == "héllo"
    assert not await workspace.file_exists("a/b")
    assert not await workspace.file_exists("../c.txt")


@pytest.mark.asyncio
async def test_confirmations_go_through_callback(tmp_path):
    asked: list[str] = []

    def _approve(question: str) -> bool:
        asked.append(question)
        return len(asked) == 1

    workspace = LocalWorkspace(tmp_path, approval_callback=_approve)

    assert await workspace.request_confirmation("Create File", "x.py") is True
    assert await workspace.show_diff_preview("x.py", "a", "b") is False
    assert asked == ["Create File\nx.py", "Apply changes to x.py?"]
    assert await LocalWorkspace(tmp_path).show_diff_preview("x.py", "a", "b") is True


def test_plan_is_stored_on_workspace(tmp_path):
    workspace = LocalWorkspace(tmp_path)
    assert workspace.current_plan is None

    plan = TaskPlan(steps=[PlanStep("read files"), PlanStep("edit", PlanStepStatus.IN_PROGRESS)])
    workspace.update_plan(plan)

    assert workspace.current_plan is plan
    assert workspace.current_plan.steps[0].status == PlanStepStatus.PENDING
