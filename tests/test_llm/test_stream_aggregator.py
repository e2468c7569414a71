import json

from codeloop.llm.streaming import (
    ChunkType,
    StreamAggregator,
    StreamChunk,
    TurnAccumulator,
    parse_tool_arguments,
)


def _tool_delta(index: int, *, call_id: str | None = None, name: str | None = None, arguments: str | None = None):
    function: dict = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    payload: dict = {"index": index, "function": function}
    if call_id is not None:
        payload["id"] = call_id
    return {"choices": [{"delta": {"tool_calls": [payload]}, "finish_reason": None}]}


def test_split_arguments_are_reassembled_into_one_call():
    aggregator = StreamAggregator()
    chunks: list[StreamChunk] = []
    chunks += aggregator.feed(_tool_delta(0, call_id="call_1", name="search", arguments='{"query":'))
    chunks += aggregator.feed(_tool_delta(0, arguments='"fo'))
    chunks += aggregator.feed(_tool_delta(0, arguments='o"}'))
    assert chunks == []

    chunks += aggregator.feed({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]})

    tool_chunks = [c for c in chunks if c.type == ChunkType.TOOL_CALL]
    assert len(tool_chunks) == 1
    call = tool_chunks[0].tool_call
    assert call.id == "call_1"
    assert call.name == "search"
    assert call.arguments == {"query": "foo"}
    assert chunks[-1].type == ChunkType.DONE
    assert chunks[-1].finish_reason == "tool_calls"


def test_builders_are_cleared_after_flush():
    aggregator = StreamAggregator()
    aggregator.feed(_tool_delta(0, name="a", arguments="{}"))
    aggregator.feed({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]})
    assert aggregator.builders == {}
    assert aggregator.on_end() == []


def test_calls_are_emitted_in_index_order_and_nameless_builders_dropped():
    aggregator = StreamAggregator()
    aggregator.feed(_tool_delta(1, call_id="b", name="second", arguments="{}"))
    aggregator.feed(_tool_delta(0, call_id="a", name="first", arguments="{}"))
    aggregator.feed(_tool_delta(2, arguments='{"x": 1}'))

    chunks = aggregator.on_end()

    names = [c.tool_call.name for c in chunks if c.type == ChunkType.TOOL_CALL]
    assert names == ["first", "second"]
    assert chunks[-1].type == ChunkType.DONE


def test_id_and_name_overwrite_when_present():
    aggregator = StreamAggregator()
    aggregator.feed(_tool_delta(0, call_id="old", name="read", arguments='{"path"'))
    aggregator.feed(_tool_delta(0, call_id="new", arguments=': "a.py"}'))

    chunks = aggregator.on_end()

    call = chunks[0].tool_call
    assert call.id == "new"
    assert call.name == "read"
    assert call.arguments == {"path": "a.py"}


def test_missing_id_gets_generated():
    aggregator = StreamAggregator()
    aggregator.feed(_tool_delta(0, name="read", arguments="{}"))
    call = aggregator.on_end()[0].tool_call
    assert call.id


def test_length_finish_reason_marks_truncation():
    aggregator = StreamAggregator()
    chunks = aggregator.feed({"choices": [{"delta": {"content": "partial"}, "finish_reason": "length"}]})

    assert chunks[0] == StreamChunk.text_delta("partial")
    assert chunks[-1].is_truncation is True

    turn = TurnAccumulator()
    for chunk in chunks:
        turn.add(chunk)
    assert turn.truncated is True
    assert turn.text == "partial"


def test_sse_lines_skip_comments_and_malformed_json():
    aggregator = StreamAggregator()
    assert aggregator.feed_sse_line(": keep-alive") == []
    assert aggregator.feed_sse_line("") == []
    assert aggregator.feed_sse_line("data: {not json") == []

    payload = {"choices": [{"delta": {"content": "hi"}}]}
    chunks = aggregator.feed_sse_line("data: " + json.dumps(payload))
    assert [c.text for c in chunks] == ["hi"]

    done = aggregator.feed_sse_line("data: [DONE]")
    assert done[-1].type == ChunkType.DONE
    assert aggregator.finished is True


def test_done_sentinel_after_finish_reason_does_not_duplicate_done():
    aggregator = StreamAggregator()
    first = aggregator.feed({"choices": [{"delta": {}, "finish_reason": "stop"}]})
    second = aggregator.feed_sse_line("data: [DONE]")
    assert [c.type for c in first] == [ChunkType.DONE]
    assert second == []


def test_parse_tool_arguments_tolerates_bad_payloads():
    assert parse_tool_arguments(None) == {}
    assert parse_tool_arguments("") == {}
    assert parse_tool_arguments("{broken") == {}
    assert parse_tool_arguments("[1, 2]") == {}
    assert parse_tool_arguments({"a": 1}) == {"a": 1}
    assert parse_tool_arguments('{"nested": {"ok": true}, "n": null}') == {"nested": {"ok": True}, "n": None}
