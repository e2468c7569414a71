"""Agent loop: drive model calls and tool calls until the task ends."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable

import httpx

from codeloop.config import Config, get_config
from codeloop.context import truncate_conversation
from codeloop.exceptions import LLMAPIError, LLMCancelledError, LLMConnectionError
from codeloop.llm import (
    LLMProvider,
    Message,
    ToolCall,
    ToolDefinition,
    TurnAccumulator,
    get_provider,
)
from codeloop.logging import get_logger
from codeloop.runtime_context import NullUI, UIContext, WorkspaceContext
from codeloop.steps import AgentStep
from codeloop.task_state import TaskState
from codeloop.tool_calls import (
    DuplicateCallGuard,
    augment_tool_call_parameters,
    is_likely_conversational,
    parse_text_tool_calls,
)
from codeloop.tools import CONDENSE_MARKER, TASK_COMPLETED_MARKER, ToolRegistry, ToolResult, get_tool_registry

log = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a coding agent working inside the user's workspace. Use the available "
    "tools to inspect and change files. When the task is done, call attempt_completion "
    "with a summary of the result."
)

CANCELLED_MESSAGE = "Operation cancelled."
CONTEXT_RETRY_NOTICE = "\n⚠️ Context window is full, trimming conversation history...\n"
CONTEXT_EXHAUSTED_MESSAGE = (
    "Context window exceeded even after automatic truncation. Please start a new conversation."
)
CONTINUE_AFTER_CUTOFF = (
    "[System: Your response was cut off due to token limit. "
    "Please continue from where you left off.]"
)
CONTINUE_AFTER_TOOLS = (
    "[System: Your previous text response was cut off due to token limit. "
    "The tool calls have been executed and their results are above. "
    "Please continue your response from where it was cut off.]"
)
NO_TOOLS_NUDGE = (
    "You did not use any tools in your response. If the task is complete, please use "
    "the attempt_completion tool to present your result. Otherwise, continue using "
    "tools to complete the task."
)
CONDENSED_NOTE_PREFIX = "[Conversation condensed] The following is a summary of all previous work:\n"
CONDENSED_NOTICE = "\n\n📝 *Conversation condensed to save context space.*\n\n"


class AttemptOutcome(str, Enum):
    """How one model request ended."""

    SUCCESS = "success"
    CANCELLED = "cancelled"
    CONTEXT_EXCEEDED = "context_exceeded"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass
class AttemptResult:
    outcome: AttemptOutcome
    turn: TurnAccumulator = field(default_factory=TurnAccumulator)
    error_message: str = ""


def classify_llm_error(error: BaseException) -> AttemptOutcome:
    """Map a transport failure onto the retry policy."""
    if isinstance(error, (LLMCancelledError, asyncio.CancelledError)):
        return AttemptOutcome.CANCELLED
    if isinstance(error, LLMAPIError):
        if error.is_context_exceeded:
            return AttemptOutcome.CONTEXT_EXCEEDED
        if error.is_transient:
            return AttemptOutcome.TRANSIENT
        return AttemptOutcome.FATAL
    if isinstance(error, (LLMConnectionError, httpx.TransportError, TimeoutError)):
        return AttemptOutcome.TRANSIENT
    return AttemptOutcome.FATAL


def condense_history(history: list[Message], summary: str) -> list[Message]:
    """Keep the system prompt and first request; everything else becomes the summary."""
    condensed = list(history[:2])
    condensed.append(Message(role="system", content=CONDENSED_NOTE_PREFIX + summary))
    return condensed


def _same_tool(name: str | None, target: str) -> bool:
    return (name or "").strip().lower() == target.strip().lower()


Emit = Callable[[AgentStep], Awaitable[None]]


class Agent:
    """Runs one task at a time against a provider and a tool registry."""

    def __init__(
        self,
        provider: LLMProvider | None = None,
        tools: ToolRegistry | None = None,
        config: Config | None = None,
        system_prompt: str | None = None,
    ):
        """Initialize the agent.

        Args:
            provider: Optional LLM provider override (defaults to the global provider)
            tools: Optional tool registry override (defaults to the global registry)
            config: Optional configuration override
            system_prompt: Opaque system prompt text sent as the first message
        """
        self.provider = provider or get_provider()
        self.tools = tools or get_tool_registry()
        self.config = config or get_config()
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.last_usage: dict[str, int] = {}
        self.total_usage: dict[str, int] = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
        self._abort_requested = False
        self._running = False

    def abort(self) -> None:
        """Stop the running task at the next loop boundary and abort the active request."""
        log.info("Abort requested")
        self._abort_requested = True
        self.provider.abort()

    async def execute(
        self,
        user_request: str,
        workspace: WorkspaceContext,
        ui: UIContext | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[AgentStep]:
        """Run a task and yield its steps as they happen.

        The loop runs in a producer task that feeds a bounded queue; closing
        this iterator early cancels the producer.
        """
        if self._running:
            raise RuntimeError("Agent is already executing a task")
        self._running = True
        self._abort_requested = False
        cancel = cancel_event or asyncio.Event()
        queue: asyncio.Queue[AgentStep | None] = asyncio.Queue(
            maxsize=max(1, self.config.agent.step_queue_size)
        )

        async def produce() -> None:
            # No sentinel after cancellation: the consumer is gone and the queue may be full.
            try:
                await self._run(user_request, workspace, ui or NullUI(), cancel, queue.put)
            except Exception as e:
                log.exception("Agent loop failed", error=str(e))
                await queue.put(AgentStep.error(f"Agent error: {e}"))
            await queue.put(None)

        producer = asyncio.create_task(produce())
        try:
            while True:
                step = await queue.get()
                if step is None:
                    break
                yield step
        finally:
            if not producer.done():
                producer.cancel()
                try:
                    await producer
                except asyncio.CancelledError:
                    pass
            self._running = False

    async def run(
        self,
        user_request: str,
        workspace: WorkspaceContext,
        ui: UIContext | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[AgentStep]:
        """Run a task to the end and return every step."""
        return [step async for step in self.execute(user_request, workspace, ui, cancel_event)]

    def _record_usage(self, usage: dict[str, int] | None) -> None:
        if not usage:
            return
        self.last_usage = dict(usage)
        for key in self.total_usage:
            self.total_usage[key] += int(usage.get(key, 0) or 0)

    def _format_tool_content(self, result: ToolResult) -> str:
        content = (result.content or "") if result.success else f"Error: {result.error}"
        limit = self.config.agent.max_tool_result_chars
        if len(content) > limit:
            content = content[:limit] + f"\n... (truncated, total length: {len(content)} chars)"
        return content

    async def _attempt(
        self,
        history: list[Message],
        tool_definitions: list[ToolDefinition],
        cancel: asyncio.Event,
    ) -> AttemptResult:
        """One model request, drained into a fresh accumulator."""
        turn = TurnAccumulator()
        stream = self.provider.stream_chat(history, tool_definitions, abort_event=cancel)
        try:
            async for chunk in stream:
                if cancel.is_set():
                    return AttemptResult(AttemptOutcome.CANCELLED, turn)
                turn.add(chunk)
        except Exception as e:
            outcome = classify_llm_error(e)
            log.warning("LLM request failed", outcome=outcome.value, error=str(e))
            return AttemptResult(outcome, turn, error_message=str(e))
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if cancel.is_set():
            return AttemptResult(AttemptOutcome.CANCELLED, turn)
        self._record_usage(turn.usage)
        return AttemptResult(AttemptOutcome.SUCCESS, turn)

    def _should_continue(self, state: TaskState, cancel: asyncio.Event, max_iterations: int) -> bool:
        state.abort = state.abort or self._abort_requested
        return (
            state.iteration < max_iterations
            and not cancel.is_set()
            and not state.abort
            and not state.is_completed
        )

    @staticmethod
    async def _backoff(delay_ms: int, cancel: asyncio.Event) -> bool:
        """Sleep before a retry; True when cancellation arrived meanwhile."""
        if delay_ms <= 0:
            return cancel.is_set()
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            return False
        return True

    async def _request_with_retries(
        self,
        history: list[Message],
        tool_definitions: list[ToolDefinition],
        budget: int,
        cancel: asyncio.Event,
        emit: Emit,
    ) -> tuple[AttemptResult, list[Message]]:
        """Query the model, retrying context overflows and transient failures.

        Each context overflow halves the budget used by the previous attempt,
        so repeated overflows shrink the history further instead of
        re-truncating to the same size. Returns the final attempt together
        with the (possibly re-truncated) history.
        """
        agent_cfg = self.config.agent
        max_retries = max(0, agent_cfg.max_retries)
        delays = agent_cfg.retry_delays_ms
        result = AttemptResult(AttemptOutcome.FATAL, error_message="No request was made")

        for attempt in range(max_retries + 1):
            result = await self._attempt(history, tool_definitions, cancel)

            if result.outcome in (AttemptOutcome.SUCCESS, AttemptOutcome.CANCELLED):
                return result, history

            if result.outcome == AttemptOutcome.CONTEXT_EXCEEDED:
                budget = max(1, budget // 2)
                history = truncate_conversation(history, budget, agent_cfg.keep_recent_messages)
                log.info("Context window exceeded, truncated history", attempt=attempt + 1, budget=budget)
                if attempt < max_retries:
                    await emit(AgentStep.text_chunk(CONTEXT_RETRY_NOTICE))
                    continue
                return AttemptResult(AttemptOutcome.FATAL, result.turn, CONTEXT_EXHAUSTED_MESSAGE), history

            if result.outcome == AttemptOutcome.TRANSIENT and attempt < max_retries:
                log.info("Transient LLM error, retrying", attempt=attempt + 1, error=result.error_message)
                await emit(AgentStep.text_chunk(
                    f"\n⏳ Request failed, retrying ({attempt + 1}/{max_retries})...\n"
                ))
                delay = delays[min(attempt, len(delays) - 1)] if delays else 0
                if await self._backoff(delay, cancel):
                    return AttemptResult(AttemptOutcome.CANCELLED, result.turn), history
                continue

            return result, history

        return result, history

    async def _run(
        self,
        user_request: str,
        workspace: WorkspaceContext,
        ui: UIContext,
        cancel: asyncio.Event,
        emit: Emit,
    ) -> None:
        cfg = self.config
        policy = cfg.policy
        state = TaskState(
            max_consecutive_mistakes=cfg.agent.max_consecutive_mistakes,
            max_consecutive_no_tool=cfg.agent.max_consecutive_no_tool,
        )
        tool_definitions = self.tools.get_definitions()
        history = [
            Message(role="system", content=self.system_prompt),
            Message(role="user", content=user_request),
        ]
        guard = DuplicateCallGuard(exempt_tools=(policy.completion_tool, policy.condense_tool))
        conversation_budget = cfg.conversation_budget()
        max_iterations = cfg.agent.max_iterations

        while self._should_continue(state, cancel, max_iterations):
            state.iteration += 1
            state.api_request_count += 1
            log.debug("Agent iteration", iteration=state.iteration, messages=len(history))

            if conversation_budget > 0:
                history = truncate_conversation(history, conversation_budget, cfg.agent.keep_recent_messages)

            attempt, history = await self._request_with_retries(
                history, tool_definitions, conversation_budget, cancel, emit
            )
            if attempt.outcome == AttemptOutcome.CANCELLED:
                await emit(AgentStep.error(CANCELLED_MESSAGE))
                return
            if attempt.outcome != AttemptOutcome.SUCCESS:
                await emit(AgentStep.error(f"LLM communication error: {attempt.error_message}"))
                return

            turn = attempt.turn
            text = turn.text
            tool_calls: list[ToolCall] = list(turn.tool_calls)
            if not tool_calls and text:
                tool_calls.extend(parse_text_tool_calls(text))

            # Greetings are answered verbatim, before suppression; tool calls in the reply are not run.
            if state.iteration == 1 and is_likely_conversational(
                user_request, policy.task_keywords, policy.conversational_max_chars
            ):
                log.debug("Conversational request, completing", chars=len(text), ignored_tool_calls=len(tool_calls))
                for segment in turn.text_segments:
                    await emit(AgentStep.text_chunk(segment))
                history.append(Message(role="assistant", content=text))
                await emit(AgentStep.complete(text))
                return

            has_completion = any(_same_tool(call.name, policy.completion_tool) for call in tool_calls)
            long_text = len(text) > policy.suppression_threshold_chars
            suppress = bool(tool_calls) and not has_completion and long_text
            defer = not tool_calls and state.iteration == 1 and long_text
            if suppress or defer:
                log.debug("Suppressing assistant text", chars=len(text), suppress=suppress, defer=defer)
                text = ""
            else:
                for segment in turn.text_segments:
                    await emit(AgentStep.text_chunk(segment))

            if tool_calls:
                augment_tool_call_parameters(
                    tool_calls,
                    user_request,
                    listing_tool=policy.recursive_listing_tool,
                    recursive_keywords=policy.recursive_keywords,
                )
            history.append(Message(
                role="assistant",
                content=text,
                tool_calls=[call.to_ref() for call in tool_calls],
            ))

            if not tool_calls:
                if turn.truncated:
                    log.debug("Response truncated without tool calls, requesting continuation")
                    history.append(Message(role="user", content=CONTINUE_AFTER_CUTOFF))
                    continue
                if state.iteration == 1 and not defer:
                    await emit(AgentStep.complete(text))
                    return
                if state.record_no_tools_used():
                    log.info("No tool use tolerance exceeded, completing", count=state.consecutive_no_tool_count)
                    await emit(AgentStep.complete(text))
                    return
                history.append(Message(role="user", content=NO_TOOLS_NUDGE))
                log.debug("No tools used, nudging", count=state.consecutive_no_tool_count)
                continue

            state.reset_no_tool_count()
            state.has_ever_used_tools = True
            log.info("Executing tool calls", count=len(tool_calls), iteration=state.iteration)

            condensed = False
            for call in tool_calls:
                if cancel.is_set():
                    await emit(AgentStep.error(CANCELLED_MESSAGE))
                    return

                if guard.check_and_record(call):
                    duplicate = ToolResult.fail(
                        f"Duplicate call: You already called {call.name} with the same arguments. "
                        "Use the previous result instead of calling again. "
                        "If you need different information, change the parameters."
                    )
                    await emit(AgentStep.tool_start(call))
                    await emit(AgentStep.tool_result(call, duplicate))
                    history.append(Message(role="tool", content=f"Error: {duplicate.error}", tool_call_id=call.id))
                    continue

                await self.tools.handle_partial(call, ui, cancel)
                await emit(AgentStep.tool_start(call))
                state.last_tool_name = call.name
                result = await self.tools.execute(
                    call,
                    workspace,
                    ui,
                    abort_event=cancel,
                    timeout_seconds=cfg.agent.tool_timeout_seconds,
                )

                if result.success:
                    state.reset_mistake_count()
                    if any(_same_tool(call.name, name) for name in policy.edit_tools):
                        state.did_edit_file = True
                elif state.increment_mistake_count():
                    log.warning("Consecutive mistake threshold reached", count=state.consecutive_mistake_count)

                await emit(AgentStep.tool_result(call, result))
                content = result.content or ""

                if (
                    _same_tool(call.name, policy.completion_tool)
                    and result.success
                    and content.startswith(TASK_COMPLETED_MARKER)
                ):
                    state.is_completed = True
                    await emit(AgentStep.complete(content[len(TASK_COMPLETED_MARKER):]))
                    return

                if (
                    _same_tool(call.name, policy.condense_tool)
                    and result.success
                    and content.startswith(CONDENSE_MARKER)
                ):
                    summary = content[len(CONDENSE_MARKER):]
                    log.info("Condensing conversation", summary_chars=len(summary), before=len(history))
                    history = condense_history(history, summary)
                    await emit(AgentStep.text_chunk(CONDENSED_NOTICE))
                    condensed = True
                    break

                history.append(Message(
                    role="tool",
                    content=self._format_tool_content(result),
                    tool_call_id=call.id,
                ))

            if condensed:
                continue

            if turn.truncated:
                log.debug("Response truncated after tool calls, requesting continuation")
                history.append(Message(role="user", content=CONTINUE_AFTER_TOOLS))

            if state.mistake_threshold_reached:
                await emit(AgentStep.error(
                    f"The Agent has encountered {state.consecutive_mistake_count} consecutive errors. "
                    "This may indicate a problem with the current approach. Consider providing guidance."
                ))
                return

        if cancel.is_set() or state.abort:
            await emit(AgentStep.error(CANCELLED_MESSAGE))
            return
        if state.iteration >= max_iterations:
            await emit(AgentStep.error(
                f"Maximum iterations ({max_iterations}) reached. The Agent may be stuck in a loop."
            ))
