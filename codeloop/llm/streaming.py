"""Reassemble streamed chat-completion deltas into text and complete tool calls.

OpenAI-compatible servers stream tool calls as fragments keyed by a
positional ``index``: the first fragment usually carries the id and the
function name, later fragments carry slices of the JSON argument string.
:class:`StreamAggregator` concatenates those fragments per index and only
releases a :class:`ToolCall` once the stream says the calls are finished
(``finish_reason == "tool_calls"``) or the ``[DONE]`` sentinel arrives.
"""

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from codeloop.llm.types import ToolCall
from codeloop.logging import get_logger

log = get_logger(__name__)

DONE_SENTINEL = "[DONE]"
TRUNCATION_FINISH_REASONS = frozenset({"length", "max_tokens"})


class ChunkType(str, Enum):
    """Kind of unit emitted by a model transport."""

    TEXT = "text"
    TOOL_CALL = "tool_call"
    DONE = "done"


@dataclass
class StreamChunk:
    """One aggregated unit of a streamed model response."""

    type: ChunkType
    text: str = ""
    tool_call: ToolCall | None = None
    finish_reason: str | None = None
    usage: dict[str, int] | None = None

    @classmethod
    def text_delta(cls, text: str) -> "StreamChunk":
        return cls(type=ChunkType.TEXT, text=text)

    @classmethod
    def tool(cls, call: ToolCall) -> "StreamChunk":
        return cls(type=ChunkType.TOOL_CALL, tool_call=call)

    @classmethod
    def done(cls, finish_reason: str | None = None, usage: dict[str, int] | None = None) -> "StreamChunk":
        return cls(type=ChunkType.DONE, finish_reason=finish_reason, usage=usage)

    @property
    def is_truncation(self) -> bool:
        """Whether this completion signal means the text was cut off by a length limit."""
        return self.type == ChunkType.DONE and self.finish_reason in TRUNCATION_FINISH_REASONS


@dataclass
class ToolCallDelta:
    """One streamed fragment of a tool call."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ToolCallDelta":
        function = payload.get("function") or {}
        try:
            index = int(payload.get("index", 0) or 0)
        except (TypeError, ValueError):
            index = 0
        return cls(
            index=index,
            id=payload.get("id") or None,
            name=function.get("name") or None,
            arguments=function.get("arguments") or None,
        )


def parse_tool_arguments(raw: str | dict[str, Any] | None) -> dict[str, Any]:
    """Decode a tool-call argument payload into a JSON object.

    Undecodable or non-object payloads yield an empty mapping.
    """
    if isinstance(raw, dict):
        return dict(raw)
    text = (raw or "").strip()
    if not text:
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        log.warning("Failed to decode tool arguments", raw=text[:200])
        return {}
    if not isinstance(value, dict):
        return {}
    return value


@dataclass
class ToolCallBuilder:
    """Accumulates fragments for a single tool-call index."""

    id: str | None = None
    name: str | None = None
    arguments: str = ""

    def apply(self, delta: ToolCallDelta) -> None:
        if delta.id:
            self.id = delta.id
        if delta.name:
            self.name = delta.name
        if delta.arguments:
            self.arguments += delta.arguments

    def build(self) -> ToolCall | None:
        if not self.name:
            return None
        return ToolCall(
            id=self.id or uuid.uuid4().hex,
            name=self.name,
            arguments=parse_tool_arguments(self.arguments),
        )


@dataclass
class StreamAggregator:
    """Turn raw stream events into :class:`StreamChunk` values."""

    builders: dict[int, ToolCallBuilder] = field(default_factory=dict)
    finished: bool = False

    def on_text(self, text: str) -> list[StreamChunk]:
        if not text:
            return []
        return [StreamChunk.text_delta(text)]

    def on_tool_deltas(self, deltas: list[ToolCallDelta]) -> None:
        for delta in deltas:
            builder = self.builders.get(delta.index)
            if builder is None:
                builder = ToolCallBuilder()
                self.builders[delta.index] = builder
            builder.apply(delta)

    def flush_tool_calls(self) -> list[StreamChunk]:
        """Finalize every named builder in index order and clear the accumulators."""
        chunks: list[StreamChunk] = []
        for index in sorted(self.builders):
            call = self.builders[index].build()
            if call is not None:
                chunks.append(StreamChunk.tool(call))
        self.builders.clear()
        return chunks

    def on_finish(self, finish_reason: str) -> list[StreamChunk]:
        log.debug("Stream finish reason", finish_reason=finish_reason)
        chunks: list[StreamChunk] = []
        if finish_reason == "tool_calls":
            chunks.extend(self.flush_tool_calls())
        chunks.append(StreamChunk.done(finish_reason))
        self.finished = True
        return chunks

    def on_end(self, usage: dict[str, int] | None = None) -> list[StreamChunk]:
        """Handle the end sentinel (or a stream that closed without one)."""
        chunks = self.flush_tool_calls()
        if not self.finished or usage:
            chunks.append(StreamChunk.done(usage=usage))
        self.finished = True
        return chunks

    def feed(self, payload: dict[str, Any]) -> list[StreamChunk]:
        """Consume one decoded ``chat.completion.chunk`` object."""
        choices = payload.get("choices") or []
        if not choices:
            return []
        choice = choices[0] or {}
        delta = choice.get("delta") or {}

        chunks = self.on_text(str(delta.get("content") or ""))

        raw_tool_calls = delta.get("tool_calls")
        if isinstance(raw_tool_calls, list) and raw_tool_calls:
            self.on_tool_deltas([
                ToolCallDelta.from_payload(item)
                for item in raw_tool_calls
                if isinstance(item, dict)
            ])

        finish_reason = choice.get("finish_reason")
        if finish_reason:
            chunks.extend(self.on_finish(str(finish_reason)))
        return chunks

    def feed_sse_line(self, line: str) -> list[StreamChunk]:
        """Consume one raw server-sent-events line."""
        stripped = (line or "").strip()
        if not stripped.startswith("data:"):
            return []
        data = stripped[len("data:"):].strip()
        if data == DONE_SENTINEL:
            return self.on_end()
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            log.warning("Failed to parse stream chunk", data=data[:200])
            return []
        if not isinstance(payload, dict):
            return []
        return self.feed(payload)


@dataclass
class TurnAccumulator:
    """Collects one model attempt's output for the agent loop."""

    text_segments: list[str] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    truncated: bool = False
    usage: dict[str, int] | None = None

    @property
    def text(self) -> str:
        return "".join(self.text_segments)

    def add(self, chunk: StreamChunk) -> None:
        if chunk.type == ChunkType.TEXT:
            self.text_segments.append(chunk.text)
        elif chunk.type == ChunkType.TOOL_CALL and chunk.tool_call is not None:
            self.tool_calls.append(chunk.tool_call)
        elif chunk.type == ChunkType.DONE:
            if chunk.is_truncation:
                self.truncated = True
            if chunk.usage:
                self.usage = chunk.usage
