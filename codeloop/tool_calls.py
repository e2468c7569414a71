"""Fallback tool-call extraction, parameter fix-ups and duplicate detection.

Some models (notably local Qwen/DeepSeek deployments) do not always use the
structured ``tool_calls`` field and instead write calls into their text,
either as ``<function=name><parameter=key>value</tool_call>`` blocks or as
inline ``{"name": ..., "arguments": {...}}`` JSON. The helpers here recover
those calls and normalize them before the agent loop dispatches anything.
"""

import json
import re
import uuid
from typing import Any, Iterable

from pydantic import JsonValue

from codeloop.llm.types import ToolCall
from codeloop.logging import get_logger

__all__ = [
    "DuplicateCallGuard",
    "FUNCTION_BLOCK_RE",
    "PARAMETER_RE",
    "augment_tool_call_parameters",
    "is_likely_conversational",
    "parse_json_tool_calls",
    "parse_tagged_tool_calls",
    "parse_text_tool_calls",
    "sanitize_parameter_value",
    "text_tool_call_id",
    "tool_call_signature",
]

log = get_logger(__name__)

FUNCTION_BLOCK_RE = re.compile(
    r"<function=(\w+)>(.*?)</(?:tool_call|function)>",
    re.IGNORECASE | re.DOTALL,
)
PARAMETER_RE = re.compile(r"<parameter=(\w+)>\s*(.*?)(?=<parameter=|$)", re.DOTALL)

_TAG_RE = re.compile(r"<[^>]+>")
_CONTROL_RE = re.compile(r"[\x00-\x1F\x7F]+")
_SPACES_RE = re.compile(r"\s{2,}")

PATH_KEYS = frozenset({"path", "file_path", "directory"})
TEXT_KEYS = frozenset({"query", "pattern", "name", "command"})


def text_tool_call_id() -> str:
    """Identifier for a call recovered from free text."""
    return "text_" + uuid.uuid4().hex[:8]


def sanitize_parameter_value(raw: str | None) -> str:
    """Clean a parameter value scraped from tagged text.

    Removes leftover markup tags, control characters and repeated
    whitespace, then strips one layer of matching surrounding quotes.
    """
    if not raw:
        return ""
    cleaned = _TAG_RE.sub(" ", raw)
    cleaned = _CONTROL_RE.sub(" ", cleaned)
    cleaned = _SPACES_RE.sub(" ", cleaned)
    cleaned = cleaned.strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in ("'", '"'):
        cleaned = cleaned[1:-1].strip()
    return cleaned


def parse_tagged_tool_calls(text: str) -> list[ToolCall]:
    """Parse ``<function=NAME><parameter=KEY>VALUE...</tool_call>`` blocks.

    Blocks without any parameter are ignored.
    """
    calls: list[ToolCall] = []
    for match in FUNCTION_BLOCK_RE.finditer(text or ""):
        name = match.group(1).strip()
        body = match.group(2).strip()
        arguments: dict[str, JsonValue] = {}
        for param in PARAMETER_RE.finditer(body):
            arguments[param.group(1).strip()] = sanitize_parameter_value(param.group(2))
        if name and arguments:
            calls.append(ToolCall(id=text_tool_call_id(), name=name, arguments=arguments))
    return calls


def _iter_json_objects(text: str) -> Iterable[dict[str, Any]]:
    decoder = json.JSONDecoder()
    position = text.find("{")
    while position != -1:
        try:
            value, end = decoder.raw_decode(text, position)
        except json.JSONDecodeError:
            position = text.find("{", position + 1)
            continue
        if isinstance(value, dict):
            yield value
        position = text.find("{", end)


def parse_json_tool_calls(text: str) -> list[ToolCall]:
    """Parse inline ``{"name": "...", "arguments": {...}}`` objects."""
    calls: list[ToolCall] = []
    for payload in _iter_json_objects(text or ""):
        name = payload.get("name")
        arguments = payload.get("arguments")
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError:
                continue
        if not isinstance(name, str) or not name.strip() or not isinstance(arguments, dict):
            continue
        calls.append(ToolCall(id=text_tool_call_id(), name=name.strip(), arguments=arguments))
    return calls


def parse_text_tool_calls(text: str) -> list[ToolCall]:
    """Recover tool calls from assistant text.

    The tagged format wins; JSON objects are only considered when no tagged
    block was found.
    """
    calls = parse_tagged_tool_calls(text)
    if not calls:
        calls = parse_json_tool_calls(text)
    if calls:
        log.info("Parsed tool calls from text", count=len(calls), tools=[c.name for c in calls])
    return calls


def augment_tool_call_parameters(
    calls: list[ToolCall],
    user_request: str,
    listing_tool: str = "list_dir",
    recursive_keywords: Iterable[str] = (),
) -> None:
    """Set ``recursive=True`` on listing calls when the request asks for a full tree.

    Only fills the flag when the model omitted it; explicit values are kept.
    """
    if not user_request:
        return
    lowered = user_request.lower()
    keyword = next((kw for kw in recursive_keywords if kw.lower() in lowered), None)
    if keyword is None:
        return
    for call in calls:
        if call.name == listing_tool and "recursive" not in call.arguments:
            call.arguments["recursive"] = True
            log.debug("Augmented listing call", tool=call.name, keyword=keyword)


def _signature_value(value: JsonValue) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def tool_call_signature(call: ToolCall) -> str:
    """Stable dedup key: name plus sorted, normalized ``key=value`` pairs."""
    parts = [call.name or ""]
    for key in sorted(call.arguments or {}):
        value = _signature_value(call.arguments[key])
        if key in PATH_KEYS:
            value = value.rstrip("/\\").lower()
        elif key in TEXT_KEYS:
            value = value.strip().lower()
        parts.append(f"{key}={value}")
    return "|".join(parts)


def is_likely_conversational(
    message: str,
    task_keywords: Iterable[str],
    max_chars: int = 20,
) -> bool:
    """Whether a request looks like small talk rather than a coding task."""
    if not message or not message.strip():
        return True
    trimmed = message.strip()
    if len(trimmed) > max_chars:
        return False
    lowered = trimmed.lower()
    return not any(keyword.lower() in lowered for keyword in task_keywords)


class DuplicateCallGuard:
    """Remembers executed call signatures for one task."""

    def __init__(self, exempt_tools: Iterable[str] = ()):
        self.exempt_tools = {name.lower() for name in exempt_tools}
        self._seen: set[str] = set()

    def is_exempt(self, call: ToolCall) -> bool:
        return (call.name or "").lower() in self.exempt_tools

    def check_and_record(self, call: ToolCall) -> bool:
        """Record ``call``; return True when an identical call already ran."""
        if self.is_exempt(call):
            return False
        signature = tool_call_signature(call)
        if signature in self._seen:
            log.info("Duplicate tool call blocked", tool=call.name, signature=signature)
            return True
        self._seen.add(signature)
        return False

    def __len__(self) -> int:
        return len(self._seen)
