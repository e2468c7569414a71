"""Host-facing collaborator contracts for a running task.

The agent core never touches the editor, the filesystem or the screen
directly. It talks to a :class:`WorkspaceContext` (files, plan,
confirmations) and a :class:`UIContext` (display), both supplied by the
host. :class:`LocalWorkspace` and :class:`NullUI` are the plain
implementations used by hosts and the tests.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Protocol, runtime_checkable

from codeloop.logging import get_logger

log = get_logger(__name__)


class PlanStepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PlanStep:
    description: str
    status: PlanStepStatus = PlanStepStatus.PENDING


@dataclass
class TaskPlan:
    """Plan the model maintains for the current task."""

    steps: list[PlanStep] = field(default_factory=list)
    explanation: str = ""


@runtime_checkable
class WorkspaceContext(Protocol):
    """Workspace access granted to tools."""

    @property
    def working_directory(self) -> str: ...

    @property
    def current_plan(self) -> TaskPlan | None: ...

    def update_plan(self, plan: TaskPlan) -> None: ...

    def is_path_accessible(self, path: str) -> bool: ...

    def resolve_file_path(self, requested_path: str) -> Path: ...

    def resolve_directory_path(self, requested_path: str) -> Path: ...

    async def read_file(self, path: str) -> str: ...

    async def write_file(self, path: str, content: str) -> None: ...

    async def file_exists(self, path: str) -> bool: ...

    async def request_confirmation(self, operation: str, details: str) -> bool: ...

    async def show_diff_preview(self, file_path: str, original_content: str, new_content: str) -> bool: ...


@runtime_checkable
class UIContext(Protocol):
    """Display surface of the host."""

    async def show_message(self, message: str) -> None: ...

    async def update_streaming_content(self, content: str) -> None: ...

    async def show_progress(self, message: str, percent_complete: int | None = None) -> None: ...

    async def hide_progress(self) -> None: ...

    async def show_confirmation(self, title: str, message: str) -> bool: ...

    async def show_diff_preview(self, file_path: str, original_content: str, new_content: str) -> bool: ...


ApprovalCallback = Callable[[str], bool]


class LocalWorkspace:
    """Filesystem workspace confined to one root directory."""

    def __init__(self, root: Path | str, approval_callback: ApprovalCallback | None = None):
        self.root = Path(root).expanduser().resolve()
        self._approval_callback = approval_callback
        self._plan: TaskPlan | None = None

    @property
    def working_directory(self) -> str:
        return str(self.root)

    @property
    def current_plan(self) -> TaskPlan | None:
        return self._plan

    def update_plan(self, plan: TaskPlan) -> None:
        self._plan = plan

    def _resolve(self, requested_path: str) -> Path:
        raw = Path(str(requested_path or "").strip() or ".").expanduser()
        if not raw.is_absolute():
            raw = self.root / raw
        return raw.resolve()

    def is_path_accessible(self, path: str) -> bool:
        resolved = self._resolve(path)
        return resolved == self.root or self.root in resolved.parents

    def resolve_file_path(self, requested_path: str) -> Path:
        """Resolve ``requested_path`` against the root.

        Raises:
            PermissionError if the path escapes the workspace root
        """
        resolved = self._resolve(requested_path)
        if not self.is_path_accessible(str(resolved)):
            raise PermissionError(f"Access denied: {requested_path} is outside the workspace")
        return resolved

    def resolve_directory_path(self, requested_path: str) -> Path:
        return self.resolve_file_path(requested_path)

    async def read_file(self, path: str) -> str:
        resolved = self.resolve_file_path(path)
        return await asyncio.to_thread(resolved.read_text, encoding="utf-8")

    async def write_file(self, path: str, content: str) -> None:
        resolved = self.resolve_file_path(path)

        def _write() -> None:
            resolved.parent.mkdir(parents=True, exist_ok=True)
            resolved.write_text(content, encoding="utf-8")

        await asyncio.to_thread(_write)
        log.debug("Wrote file", path=str(resolved), chars=len(content))

    async def file_exists(self, path: str) -> bool:
        try:
            resolved = self.resolve_file_path(path)
        except PermissionError:
            return False
        return resolved.is_file()

    def _approve(self, question: str) -> bool:
        if self._approval_callback is None:
            return True
        return bool(self._approval_callback(question))

    async def request_confirmation(self, operation: str, details: str) -> bool:
        return self._approve(f"{operation}\n{details}")

    async def show_diff_preview(self, file_path: str, original_content: str, new_content: str) -> bool:
        return self._approve(f"Apply changes to {file_path}?")


class NullUI:
    """UI context that discards output and approves every prompt."""

    async def show_message(self, message: str) -> None:
        return None

    async def update_streaming_content(self, content: str) -> None:
        return None

    async def show_progress(self, message: str, percent_complete: int | None = None) -> None:
        return None

    async def hide_progress(self) -> None:
        return None

    async def show_confirmation(self, title: str, message: str) -> bool:
        return True

    async def show_diff_preview(self, file_path: str, original_content: str, new_content: str) -> bool:
        return True
