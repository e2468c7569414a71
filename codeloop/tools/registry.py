"""Tool registry, base tool class and the per-call dispatcher."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, model_validator

from codeloop.exceptions import ToolExecutionError, ToolNotFoundError
from codeloop.llm.types import ToolCall, ToolDefinition
from codeloop.logging import get_logger
from codeloop.runtime_context import UIContext, WorkspaceContext

log = get_logger(__name__)

DEFAULT_TOOL_TIMEOUT_SECONDS = 60.0
CANCELLED_MESSAGE = "Operation was cancelled"


def _normalize_tool_name(value: str) -> str:
    """Normalize tool names for case-insensitive lookup."""
    return str(value or "").strip().lower()


class ToolResult(BaseModel):
    """Result from tool execution.

    Exactly one of ``content`` / ``error`` is populated, matching ``success``.
    """

    success: bool = True
    content: str | None = None
    error: str | None = None

    @model_validator(mode="after")
    def _align_with_success(self) -> "ToolResult":
        """Keep content/error consistent with the success flag."""
        if self.success:
            if self.content is None:
                self.content = ""
            self.error = None
        else:
            if not (self.error or "").strip():
                fallback = (self.content or "").strip()
                self.error = fallback or "Tool execution failed"
            self.content = None
        return self

    @classmethod
    def ok(cls, content: str) -> "ToolResult":
        return cls(success=True, content=content)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {"type": "object", "properties": {}}

    @abstractmethod
    async def execute(
        self,
        call: ToolCall,
        workspace: WorkspaceContext,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Execute the tool.

        Args:
            call: Tool call with decoded arguments
            workspace: Workspace the tool operates on
            abort_event: Set when the call should stop (timeout or task cancel)

        Returns:
            ToolResult with success status and content
        """
        pass

    async def handle_partial(
        self,
        call: ToolCall,
        ui: UIContext,
        abort_event: asyncio.Event | None = None,
    ) -> None:
        """Receive a preview of the call before it runs. Default: nothing."""
        return None

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition for LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate tool arguments against schema.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = self.parameters.get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )


class ToolRegistry:
    """Registry keyed by case-insensitive tool name; executes calls in isolation."""

    def __init__(self, default_timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS):
        self._tools: dict[str, Tool] = {}
        self.default_timeout_seconds = default_timeout_seconds

    def register(self, tool: Tool) -> None:
        """Register a tool, replacing any tool with the same name."""
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[_normalize_tool_name(tool.name)] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(_normalize_tool_name(name), None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return _normalize_tool_name(name) in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        tool = self._tools.get(_normalize_tool_name(name))
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def tool_names(self) -> list[str]:
        return [tool.name for tool in self._tools.values()]

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for LLM."""
        return [tool.get_definition() for tool in self._tools.values()]

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            pass

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror task-level abort event to the per-call abort event."""
        await source.wait()
        target.set()

    async def execute(
        self,
        call: ToolCall,
        workspace: WorkspaceContext,
        ui: UIContext | None = None,
        abort_event: asyncio.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> ToolResult:
        """Execute one tool call.

        Never raises for tool-side problems: unknown tools, invalid
        arguments, exceptions, timeouts and aborts all come back as a
        failed :class:`ToolResult`. Cancellation of the calling task
        itself is propagated.
        """
        try:
            tool = self.get(call.name)
        except ToolNotFoundError as e:
            log.warning("Unknown tool", tool=call.name)
            return ToolResult.fail(str(e))

        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()
        timeout = max(1.0, float(timeout_seconds or self.default_timeout_seconds))
        try:
            tool.validate_arguments(call.arguments)
            if abort_event is not None:
                if abort_event.is_set():
                    return ToolResult.fail(CANCELLED_MESSAGE)
                bridge_task = asyncio.create_task(
                    self._bridge_abort_event(abort_event, tool_abort_event)
                )

            log.info("Executing tool", tool=tool.name, call_id=call.id, args=call.arguments)
            execute_task = asyncio.create_task(tool.execute(call, workspace, tool_abort_event))
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                if execute_task.cancelled():
                    return ToolResult.fail(CANCELLED_MESSAGE)
                result = execute_task.result()
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(tool.name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=tool.name, success=result.success)
                return result

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                log.info("Tool aborted", tool=tool.name)
                return ToolResult.fail(CANCELLED_MESSAGE)

            tool_abort_event.set()
            await self._cancel_task(execute_task)
            timeout_label = int(timeout) if timeout.is_integer() else timeout
            log.warning("Tool timed out", tool=tool.name, timeout=timeout_label)
            return ToolResult.fail(f"Tool execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError as e:
            log.error("Tool execution failed", tool=tool.name, error=e.message)
            return ToolResult.fail(f"Tool execution failed: {e.message}")
        except Exception as e:
            log.error("Tool execution failed", tool=tool.name, error=str(e))
            return ToolResult.fail(f"Tool execution failed: {e}")
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)

    async def handle_partial(
        self,
        call: ToolCall,
        ui: UIContext,
        abort_event: asyncio.Event | None = None,
    ) -> None:
        """Best-effort preview hook; failures are logged and ignored."""
        tool = self._tools.get(_normalize_tool_name(call.name))
        if tool is None:
            return
        try:
            await tool.handle_partial(call, ui, abort_event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("Partial handling failed", tool=tool.name, error=str(e))


# Global registry
_registry: ToolRegistry | None = None


def get_tool_registry() -> ToolRegistry:
    """Get the global tool registry."""
    global _registry
    if _registry is None:
        _registry = ToolRegistry()
    return _registry


def set_tool_registry(registry: ToolRegistry) -> None:
    """Set the global tool registry."""
    global _registry
    _registry = registry
