"""Decoder for the agent's newline-delimited JSON output."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

_HINT_KEYS = ("command", "filePath", "file_path", "path", "pattern", "url", "query", "description")
_HINT_MAX_CHARS = 60


@dataclass(frozen=True)
class TextLine:
    text: str
    session_id: str | None = None


@dataclass(frozen=True)
class StepLine:
    phase: str  # "start" or "finish"
    session_id: str | None = None


@dataclass(frozen=True)
class ToolLine:
    tool: str
    status: str  # pending, running, completed, error
    hint: str = ""
    session_id: str | None = None


@dataclass(frozen=True)
class EventLine:
    """A JSON event of a shape that carries no displayable content."""

    type: str
    session_id: str | None = None


@dataclass(frozen=True)
class RawLine:
    """Anything that is not a JSON object; shown to the user verbatim."""

    text: str
    session_id: None = None


AgentLine = Union[TextLine, StepLine, ToolLine, EventLine, RawLine]


def _str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _session_id(payload: dict[str, Any], part: dict[str, Any]) -> str | None:
    return _str(payload.get("sessionID")) or _str(part.get("sessionID")) or None


def _tool_hint(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    for key in _HINT_KEYS:
        value = _str(data.get(key))
        if value:
            value = " ".join(value.split())
            if len(value) > _HINT_MAX_CHARS:
                value = value[: _HINT_MAX_CHARS - 3] + "..."
            return value
    return ""


def decode_line(line: str) -> AgentLine | None:
    """
    Decode one stdout line.

    Returns None for blank lines. Never raises: unparsable input and
    non-object JSON become RawLine, unknown object shapes become EventLine.
    """
    stripped = line.strip()
    if not stripped:
        return None
    try:
        payload = json.loads(stripped)
    except ValueError:
        return RawLine(text=line.rstrip("\r\n"))
    if not isinstance(payload, dict):
        return RawLine(text=line.rstrip("\r\n"))

    part = payload.get("part") if isinstance(payload.get("part"), dict) else {}
    session_id = _session_id(payload, part)
    event_type = _str(payload.get("type"))

    if event_type == "text":
        text = part.get("text")
        if isinstance(text, str) and text.strip():
            return TextLine(text=text, session_id=session_id)
        return EventLine(type=event_type, session_id=session_id)

    if event_type in ("step_start", "step_finish"):
        phase = "start" if event_type == "step_start" else "finish"
        return StepLine(phase=phase, session_id=session_id)

    if event_type == "tool_use":
        state = part.get("state") if isinstance(part.get("state"), dict) else {}
        tool = (
            _str(part.get("tool"))
            or _str(part.get("name"))
            or _str(part.get("title"))
            or _str(state.get("title"))
            or "tool"
        )
        status = (_str(state.get("status")) or _str(part.get("status")) or "running").lower()
        hint = _tool_hint(state.get("input")) or _tool_hint(part.get("input"))
        return ToolLine(tool=tool, status=status, hint=hint, session_id=session_id)

    return EventLine(type=event_type or "unknown", session_id=session_id)


def describe_status(line: AgentLine) -> str | None:
    """Short human-readable status for step and tool events, None for anything else."""
    if isinstance(line, StepLine):
        return "🧠 Analyzing" if line.phase == "start" else None
    if isinstance(line, ToolLine):
        if line.status in ("completed", "success", "done"):
            return f"✅ Tool {line.tool} done"
        if line.status in ("error", "failed"):
            return f"⚠️ Tool {line.tool} failed"
        if line.hint:
            return f"🔧 Calling tool {line.tool}: {line.hint}"
        return f"🔧 Calling tool {line.tool}"
    return None


def extract_text(raw_output: str) -> str:
    """Collect the text parts (and raw lines) of a complete output dump."""
    chunks: list[str] = []
    for raw in raw_output.splitlines():
        line = decode_line(raw)
        if isinstance(line, (TextLine, RawLine)):
            chunks.append(line.text)
    return "\n".join(chunks).strip()
