from codeloop.config import PolicyConfig
from codeloop.llm import ToolCall
from codeloop.tool_calls import (
    DuplicateCallGuard,
    augment_tool_call_parameters,
    is_likely_conversational,
    parse_text_tool_calls,
    sanitize_parameter_value,
    tool_call_signature,
)

POLICY = PolicyConfig()


def test_tagged_function_block_is_parsed_and_sanitized():
    text = (
        "Let me look.\n"
        "<function=read_file>\n"
        "<parameter=path>\n  \"src/app.py\"\n</parameter>\n"
        "<parameter=limit> 20 </parameter>\n"
        "</tool_call>"
    )

    calls = parse_text_tool_calls(text)

    assert len(calls) == 1
    call = calls[0]
    assert call.name == "read_file"
    assert call.arguments == {"path": "src/app.py", "limit": "20"}
    assert call.id.startswith("text_")
    assert len(call.id) == len("text_") + 8


def test_tagged_block_without_parameters_is_ignored():
    assert parse_text_tool_calls("<function=list_dir></tool_call>") == []


def test_json_objects_are_only_used_when_no_tagged_block():
    json_text = 'I will call {"name": "list_dir", "arguments": {"path": ".", "recursive": true}} now'
    calls = parse_text_tool_calls(json_text)
    assert [(c.name, c.arguments) for c in calls] == [("list_dir", {"path": ".", "recursive": True})]

    mixed = (
        "<function=read_file><parameter=path>a.py</tool_call>\n"
        '{"name": "list_dir", "arguments": {"path": "."}}'
    )
    assert [c.name for c in parse_text_tool_calls(mixed)] == ["read_file"]


def test_json_scan_skips_unrelated_objects():
    text = '{"foo": 1} then {"name": "edit", "arguments": "{\\"file_path\\": \\"a\\"}"} and {broken'
    calls = parse_text_tool_calls(text)
    assert [(c.name, c.arguments) for c in calls] == [("edit", {"file_path": "a"})]


def test_plain_prose_yields_no_calls():
    assert parse_text_tool_calls("All done, the tests pass.") == []


def test_sanitize_parameter_value():
    assert sanitize_parameter_value(None) == ""
    assert sanitize_parameter_value("<b>hello</b>\t\tworld") == "hello world"
    assert sanitize_parameter_value("  'quoted value '  ") == "quoted value"
    assert sanitize_parameter_value('"a"b"') == 'a"b'
    assert sanitize_parameter_value("\"mismatched'") == "\"mismatched'"
    assert sanitize_parameter_value("line1\r\nline2\x00") == "line1 line2"


def test_augmentation_adds_recursive_only_when_absent():
    missing = ToolCall(id="1", name="list_dir", arguments={"path": "."})
    explicit = ToolCall(id="2", name="list_dir", arguments={"path": ".", "recursive": False})
    other = ToolCall(id="3", name="read_file", arguments={"path": "a"})

    augment_tool_call_parameters(
        [missing, explicit, other],
        "Show me the complete project structure",
        recursive_keywords=POLICY.recursive_keywords,
    )

    assert missing.arguments["recursive"] is True
    assert explicit.arguments["recursive"] is False
    assert "recursive" not in other.arguments


def test_augmentation_understands_chinese_keywords_and_ignores_plain_requests():
    call = ToolCall(id="1", name="list_dir", arguments={"path": "."})
    augment_tool_call_parameters([call], "列出目录", recursive_keywords=POLICY.recursive_keywords)
    assert "recursive" not in call.arguments

    augment_tool_call_parameters([call], "给我看完整目录树", recursive_keywords=POLICY.recursive_keywords)
    assert call.arguments["recursive"] is True


def test_signature_normalizes_paths_and_queries():
    a = ToolCall(id="1", name="read_file", arguments={"path": "Src/App.py/", "offset": 1})
    b = ToolCall(id="2", name="read_file", arguments={"offset": 1, "path": "src/app.py"})
    c = ToolCall(id="3", name="grep", arguments={"query": "  TODO "})
    d = ToolCall(id="4", name="grep", arguments={"query": "todo"})
    e = ToolCall(id="5", name="read_file", arguments={"path": "src/app.py", "offset": 2})

    assert tool_call_signature(a) == tool_call_signature(b) == "read_file|offset=1|path=src/app.py"
    assert tool_call_signature(c) == tool_call_signature(d)
    assert tool_call_signature(a) != tool_call_signature(e)


def test_signature_keeps_other_values_verbatim():
    a = ToolCall(id="1", name="edit", arguments={"old_string": "Foo "})
    b = ToolCall(id="2", name="edit", arguments={"old_string": "foo"})
    assert tool_call_signature(a) != tool_call_signature(b)


def test_duplicate_guard_blocks_repeats_but_not_exempt_tools():
    guard = DuplicateCallGuard(exempt_tools=("attempt_completion", "condense"))
    first = ToolCall(id="1", name="list_dir", arguments={"path": "src"})
    again = ToolCall(id="2", name="list_dir", arguments={"path": "SRC/"})
    completion = ToolCall(id="3", name="attempt_completion", arguments={"result": "x"})

    assert guard.check_and_record(first) is False
    assert guard.check_and_record(again) is True
    assert guard.check_and_record(completion) is False
    assert guard.check_and_record(completion) is False
    assert len(guard) == 1


def test_conversational_detection():
    keywords = POLICY.task_keywords
    assert is_likely_conversational("hi!", keywords) is True
    assert is_likely_conversational("你好", keywords) is True
    assert is_likely_conversational("   ", keywords) is True
    assert is_likely_conversational("fix the bug", keywords) is False
    assert is_likely_conversational("帮我看看", keywords) is False
    assert is_likely_conversational("thanks, that was really helpful", keywords) is False
