"""OpenAI-compatible provider - direct HTTP calls with streaming tool-call support."""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, TypeVar

import httpx

from codeloop.exceptions import (
    ConfigurationError,
    LLMAPIError,
    LLMCancelledError,
    LLMConnectionError,
    LLMError,
)
from codeloop.llm.streaming import (
    DONE_SENTINEL,
    ChunkType,
    StreamAggregator,
    StreamChunk,
    TurnAccumulator,
    parse_tool_arguments,
)
from codeloop.llm.types import Message, ToolCall, ToolCallRef, ToolDefinition
from codeloop.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

__all__ = [
    "ChunkType",
    "LLMProvider",
    "Message",
    "OpenAICompatibleProvider",
    "StreamChunk",
    "ToolCall",
    "ToolCallRef",
    "ToolDefinition",
    "TurnAccumulator",
    "create_provider",
    "get_provider",
    "set_provider",
]


async def _next_line(lines: AsyncIterator[str]) -> str | None:
    try:
        return await anext(lines)
    except StopAsyncIteration:
        return None


class LLMProvider(ABC):
    """Abstract base class for model transports."""

    @abstractmethod
    def stream_chat(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat completion as aggregated chunks.

        Raises:
            LLMAPIError for non-success HTTP statuses
            LLMConnectionError for network-layer failures
            LLMCancelledError when the request is aborted
        """
        pass

    @abstractmethod
    def abort(self) -> None:
        """Abort the in-flight request, if any."""
        pass

    async def close(self) -> None:
        """Release transport resources."""
        return None


class OpenAICompatibleProvider(LLMProvider):
    """Chat-completions provider for OpenAI, vLLM, Ollama, LM Studio and similar servers."""

    def __init__(
        self,
        model: str = "qwen3-coder",
        base_url: str = "http://localhost:8000/v1/",
        api_key: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        timeout_seconds: float = 120.0,
        stream: bool = True,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the provider.

        Args:
            model: Model identifier sent with each request
            base_url: API base URL; ``/chat/completions`` is appended when missing
            api_key: Optional bearer token
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            timeout_seconds: Timeout for non-streaming requests
            stream: Use server-sent-events streaming
            client: Optional preconfigured HTTP client
        """
        self.model = model
        self.base_url = base_url
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.stream = stream
        # Streaming reads have no wall-clock timeout; abort events end them.
        self.client = client or httpx.AsyncClient(
            timeout=None if stream else httpx.Timeout(timeout_seconds),
            follow_redirects=True,
        )
        self._abort_event: asyncio.Event | None = None

    def _chat_endpoint(self) -> str:
        base = self.base_url.rstrip("/")
        if not base.endswith("/chat/completions"):
            base = base + "/chat/completions"
        return base

    def _build_request(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [message.to_payload() for message in messages],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "stream": self.stream,
        }
        if tools:
            body["tools"] = [tool.to_payload() for tool in tools]
            body["tool_choice"] = "auto"
        return body

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

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

    async def _race_abort(self, awaitable: Awaitable[T], abort_events: list[asyncio.Event]) -> T:
        """Await ``awaitable`` unless one of the abort events fires first."""
        if any(event.is_set() for event in abort_events):
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise LLMCancelledError("Request aborted")

        work = asyncio.ensure_future(awaitable)
        waiters = [asyncio.create_task(event.wait()) for event in abort_events]
        try:
            done, _ = await asyncio.wait({work, *waiters}, return_when=asyncio.FIRST_COMPLETED)
            if work in done:
                return work.result()
            raise LLMCancelledError("Request aborted")
        finally:
            await self._cancel_task(work)
            for waiter in waiters:
                await self._cancel_task(waiter)

    def _completion_chunks(self, data: dict[str, Any]) -> list[StreamChunk]:
        """Convert a non-streaming completion body into chunks."""
        choices = data.get("choices") or []
        if not choices:
            return [StreamChunk.done()]
        choice = choices[0] or {}
        message = choice.get("message") or {}
        chunks: list[StreamChunk] = []

        content = message.get("content")
        if content:
            chunks.append(StreamChunk.text_delta(str(content)))

        for index, raw_call in enumerate(message.get("tool_calls") or []):
            function = raw_call.get("function") or {}
            name = str(function.get("name") or "").strip()
            if not name:
                continue
            chunks.append(StreamChunk.tool(ToolCall(
                id=str(raw_call.get("id") or f"call_{index}"),
                name=name,
                arguments=parse_tool_arguments(function.get("arguments")),
            )))

        usage_raw = data.get("usage") or {}
        usage = None
        if usage_raw:
            prompt = int(usage_raw.get("prompt_tokens", 0) or 0)
            completion = int(usage_raw.get("completion_tokens", 0) or 0)
            usage = {
                "prompt_tokens": prompt,
                "completion_tokens": completion,
                "total_tokens": prompt + completion,
            }
        chunks.append(StreamChunk.done(choice.get("finish_reason"), usage=usage))
        return chunks

    async def stream_chat(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion."""
        self._abort_event = asyncio.Event()
        abort_events = [self._abort_event]
        if abort_event is not None:
            abort_events.append(abort_event)

        url = self._chat_endpoint()
        body = self._build_request(messages, tools)
        log.debug(
            "Calling LLM",
            model=self.model,
            url=url,
            msg_count=len(messages),
            tool_count=len(tools or []),
        )

        request = self.client.build_request("POST", url, json=body, headers=self._headers())
        try:
            response = await self._race_abort(self.client.send(request, stream=True), abort_events)
        except httpx.TransportError as e:
            raise LLMConnectionError(f"Failed to connect to LLM API: {e}") from e

        try:
            if not response.is_success:
                error_text = (await response.aread()).decode("utf-8", errors="replace")
                log.error("LLM API error", status=response.status_code, body=error_text[:500])
                raise LLMAPIError(
                    f"LLM API returned {response.status_code}: {error_text}",
                    status_code=response.status_code,
                )

            if not self.stream:
                raw = await self._race_abort(response.aread(), abort_events)
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError as e:
                    raise LLMError(f"LLM response decode error: {e}") from e
                for chunk in self._completion_chunks(data):
                    yield chunk
                return

            aggregator = StreamAggregator()
            lines = response.aiter_lines()
            saw_sentinel = False
            while not saw_sentinel:
                line = await self._race_abort(_next_line(lines), abort_events)
                if line is None:
                    break
                for chunk in aggregator.feed_sse_line(line):
                    yield chunk
                saw_sentinel = line.strip().endswith(DONE_SENTINEL)
            if not saw_sentinel:
                for chunk in aggregator.on_end():
                    yield chunk
        except httpx.TransportError as e:
            raise LLMConnectionError(f"LLM stream interrupted: {e}") from e
        finally:
            await response.aclose()
            self._abort_event = None

    def abort(self) -> None:
        """Abort the active request."""
        if self._abort_event is not None:
            self._abort_event.set()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    model: str = "qwen3-coder",
    base_url: str = "http://localhost:8000/v1/",
    api_key: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    timeout_seconds: float = 120.0,
    stream: bool = True,
) -> LLMProvider:
    """Create an OpenAI-compatible LLM provider."""
    if not str(base_url or "").strip():
        raise ConfigurationError("LLM base_url must not be empty")
    return OpenAICompatibleProvider(
        model=model,
        base_url=base_url,
        api_key=api_key,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout_seconds=timeout_seconds,
        stream=stream,
    )


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from codeloop.config import get_config
        cfg = get_config()
        _provider = create_provider(
            model=cfg.model.model,
            base_url=cfg.model.base_url,
            api_key=cfg.model.api_key or None,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            timeout_seconds=cfg.model.timeout_seconds,
            stream=cfg.model.stream,
        )
    return _provider


def set_provider(provider: LLMProvider | None) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider
