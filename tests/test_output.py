import json

from ocbridge.agent.output import (
    EventLine,
    RawLine,
    StepLine,
    TextLine,
    ToolLine,
    decode_line,
    describe_status,
    extract_text,
)


def _line(payload: dict) -> str:
    return json.dumps(payload)


def test_blank_line_is_none() -> None:
    assert decode_line("") is None
    assert decode_line("   \n") is None


def test_text_event() -> None:
    line = decode_line(_line({"type": "text", "sessionID": "ses_1", "part": {"text": "hello"}}))
    assert line == TextLine(text="hello", session_id="ses_1")


def test_session_id_may_live_in_part() -> None:
    line = decode_line(_line({"type": "step_start", "part": {"sessionID": "ses_2"}}))
    assert line == StepLine(phase="start", session_id="ses_2")


def test_empty_text_is_an_event() -> None:
    line = decode_line(_line({"type": "text", "part": {"text": "  "}}))
    assert line == EventLine(type="text")


def test_tool_use_event() -> None:
    line = decode_line(
        _line(
            {
                "type": "tool_use",
                "part": {"tool": "read", "state": {"status": "Running", "input": {"filePath": "/src/app.py"}}},
            }
        )
    )
    assert line == ToolLine(tool="read", status="running", hint="/src/app.py")


def test_tool_hint_is_truncated() -> None:
    command = "echo " + "a" * 100
    line = decode_line(_line({"type": "tool_use", "part": {"state": {"input": {"command": command}}}}))
    assert isinstance(line, ToolLine)
    assert line.tool == "tool"
    assert len(line.hint) == 60
    assert line.hint.endswith("...")


def test_unknown_and_non_object_json() -> None:
    assert decode_line(_line({"type": "error", "part": {}})) == EventLine(type="error")
    assert decode_line(_line({"nothing": 1})) == EventLine(type="unknown")
    assert decode_line("[1, 2]") == RawLine(text="[1, 2]")
    assert decode_line("not json {") == RawLine(text="not json {")
    assert decode_line("    indented = True\r") == RawLine(text="    indented = True")


def test_describe_status() -> None:
    assert describe_status(StepLine(phase="start")) == "🧠 Analyzing"
    assert describe_status(StepLine(phase="finish")) is None
    assert describe_status(ToolLine(tool="bash", status="running", hint="ls")) == "🔧 Calling tool bash: ls"
    assert describe_status(ToolLine(tool="bash", status="pending")) == "🔧 Calling tool bash"
    assert describe_status(ToolLine(tool="bash", status="completed")) == "✅ Tool bash done"
    assert describe_status(ToolLine(tool="bash", status="error")) == "⚠️ Tool bash failed"
    assert describe_status(TextLine(text="hi")) is None


def test_extract_text() -> None:
    dump = "\n".join(
        [
            _line({"type": "step_start"}),
            _line({"type": "text", "part": {"text": "first"}}),
            "plain line",
            _line({"type": "tool_use", "part": {"tool": "bash"}}),
            _line({"type": "text", "part": {"text": "second"}}),
            "",
        ]
    )
    assert extract_text(dump) == "first\nplain line\nsecond"
