"""Token-budget-aware compaction of the conversation history."""

import math
import unicodedata
from dataclasses import replace

from codeloop.llm.types import Message
from codeloop.logging import get_logger

log = get_logger(__name__)

WIDE_CHAR_TOKENS = 1.5
NARROW_CHAR_TOKENS = 0.25
HEAD_MESSAGES = 2
LONG_MESSAGE_TOKENS = 500
SHRUNK_MESSAGE_FLOOR = 200


def _char_cost(char: str) -> float:
    if unicodedata.east_asian_width(char) in ("W", "F"):
        return WIDE_CHAR_TOKENS
    return NARROW_CHAR_TOKENS


def estimate_tokens(text: str | None) -> int:
    """Rough token estimate: ~1.5 tokens per CJK-class char, ~4 other chars per token."""
    if not text:
        return 0
    total = sum(_char_cost(char) for char in text)
    return max(1, math.ceil(total))


def estimate_message_tokens(message: Message) -> int:
    """Estimate a message, including serialized tool-call references."""
    tokens = estimate_tokens(message.content)
    for ref in message.tool_calls:
        tokens += estimate_tokens(ref.name) + estimate_tokens(ref.arguments)
    return tokens


def estimate_conversation_tokens(messages: list[Message]) -> int:
    return sum(estimate_message_tokens(message) for message in messages)


def _truncate_to_tokens(text: str, target_tokens: int) -> str:
    """Longest prefix of ``text`` whose estimate stays within ``target_tokens``."""
    spent = 0.0
    for index, char in enumerate(text):
        spent += _char_cost(char)
        if spent > target_tokens:
            return text[:index]
    return text


def _shrink_long_messages(messages: list[Message], max_tokens: int) -> list[Message]:
    result = list(messages)
    for index in range(1, len(result)):
        if estimate_conversation_tokens(result) <= max_tokens:
            break
        message = result[index]
        if message.role == "system":
            continue
        tokens = estimate_tokens(message.content)
        if tokens <= LONG_MESSAGE_TOKENS:
            continue
        target = max(SHRUNK_MESSAGE_FLOOR, tokens // 3)
        shortened = _truncate_to_tokens(message.content, target)
        result[index] = replace(
            message,
            content=f"{shortened}\n... [truncated, original ~{tokens} tokens]",
        )
        log.debug("Shrunk long message", index=index, role=message.role, before=tokens, target=target)
    return result


def truncate_conversation(
    messages: list[Message],
    max_tokens: int,
    keep_recent: int = 10,
) -> list[Message]:
    """Fit ``messages`` into ``max_tokens``.

    Histories already within budget come back unchanged. Otherwise the
    system prompt and first user turn are kept together with the last
    ``keep_recent`` messages; the span in between is replaced by one
    system note. Messages that are still too long are shortened in place
    of the originals. A new list is always returned; input messages are
    never mutated.
    """
    before = estimate_conversation_tokens(messages)
    if before <= max_tokens:
        return list(messages)

    keep_recent = max(0, keep_recent)
    if len(messages) > HEAD_MESSAGES + keep_recent:
        head = messages[:HEAD_MESSAGES]
        tail = messages[len(messages) - keep_recent:] if keep_recent else []
        elided = len(messages) - len(head) - len(tail)
        note = Message(
            role="system",
            content=(
                f"[Context truncated: {elided} earlier messages were removed "
                "to stay within the token budget.]"
            ),
        )
        result = [*head, note, *tail]
        log.info(
            "Conversation truncated",
            removed=elided,
            before=before,
            after=estimate_conversation_tokens(result),
            budget=max_tokens,
        )
        if estimate_conversation_tokens(result) <= max_tokens:
            return result
    else:
        result = list(messages)

    result = _shrink_long_messages(result, max_tokens)
    after = estimate_conversation_tokens(result)
    if after > max_tokens:
        log.warning("Conversation still over budget after truncation", tokens=after, budget=max_tokens)
    return result
