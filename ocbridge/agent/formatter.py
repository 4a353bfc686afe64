"""Response formatter: pure functions from task state to chat payloads."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any, Iterable

from ocbridge.agent.cards import CardBuilder
from ocbridge.agent.task import (
    REASON_NO_PROGRESS,
    REASON_SHUTDOWN,
    REASON_TIMEOUT,
    REASON_USER,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    TaskInfo,
)
from ocbridge.config.schema import ResponseConfig

_ANSI_CSI = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
_ANSI_OSC = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
_MARKDOWN_STRUCTURE = re.compile(
    r"^\s{0,3}(?:#{1,6}\s|[-*+]\s|\d+[.)]\s|>\s?|```|\|.+\|)", re.MULTILINE
)
_LIST_ITEM = re.compile(r"^\s*(?:[-*+•]|\d+[.)、])\s+\S")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?。！？])\s+|(?<=[。！？])")
_CJK_END = ("。", "！", "？")
_LINK = re.compile(r"https?://\S+|\[[^\]]+\]\([^)]+\)")
_IMAGE_MARKDOWN = re.compile(r"!\[[^\]]*\]\(\s*([^)\s]+)\s*\)")
_IMAGE_PATH = re.compile(
    r"(?:(?<=\s)|^|(?<=[`'\"(]))((?:https?://|/|\./|~/)[^\s`'\"()<>]+?\.(?:png|jpe?g|gif|webp))\b",
    re.IGNORECASE | re.MULTILINE,
)
_DETAIL_REQUEST = re.compile(
    r"(详细|详情|完整|全文|全部输出|展开|细节|\bdetail(?:s|ed)?\b|\bfull\s+(?:output|log|logs|result|details)\b"
    r"|\bverbose\b|\bin\s+depth\b)",
    re.IGNORECASE,
)
_NO_DETAIL_REQUEST = re.compile(
    r"((?:不需要|不用|无需|不要|别)\s*(?:太)?(?:详细|细节|详情|完整)"
    r"|\b(?:no|don'?t\s+need|without|skip\s+the)\s+(?:the\s+|any\s+)?details?\b|\bbrief(?:ly)?\b)",
    re.IGNORECASE,
)

_CANCEL_REASONS = {
    REASON_USER: "cancelled at your request",
    REASON_NO_PROGRESS: "cancelled due to prolonged inactivity (the agent produced no output for too long)",
    REASON_TIMEOUT: "cancelled because it exceeded the maximum run time",
    REASON_SHUTDOWN: "cancelled because the bridge is shutting down",
}
_STATUS_EMOJI = {
    STATUS_COMPLETED: "✅",
    STATUS_FAILED: "❌",
    STATUS_CANCELLED: "⏹️",
}

CONCISE_MAX_CHARS = 900
CONCISE_MAX_TOTAL_LINES = 14
CONCISE_MAX_LINES = 6
CONCISE_MAX_LINE_CHARS = 120
PROGRESS_PREVIEW_CHARS = 500


def strip_ansi(text: str) -> str:
    """Remove ANSI CSI (colors, cursor) and OSC (titles, hyperlinks) sequences."""
    return _ANSI_CSI.sub("", _ANSI_OSC.sub("", text))


def normalize_output(text: str) -> str:
    """
    Clean raw process output for display.

    Strips ANSI codes and trailing whitespace, collapses adjacent duplicate
    lines and runs of blank lines.
    """
    if not text:
        return ""
    lines = strip_ansi(text).replace("\r\n", "\n").replace("\r", "\n").split("\n")
    out: list[str] = []
    for raw in lines:
        line = raw.rstrip()
        if out and line == out[-1]:
            continue
        out.append(line)
    return "\n".join(out).strip()


def has_markdown_structure(text: str) -> bool:
    return bool(_MARKDOWN_STRUCTURE.search(text or ""))


def split_sentences(text: str) -> list[str]:
    flat = " ".join(text.split())
    return [s.strip() for s in _SENTENCE_SPLIT.split(flat) if s and s.strip()]


def reflow_paragraphs(text: str, sentences_per_paragraph: int = 3, min_chars: int = 240) -> str:
    """Break long plain paragraphs into groups of a few sentences."""
    paragraphs = re.split(r"\n\s*\n", text)
    out: list[str] = []
    for para in paragraphs:
        para = para.strip()
        if not para:
            continue
        if len(para) < min_chars or "\n" in para:
            out.append(para)
            continue
        sentences = split_sentences(para)
        for i in range(0, len(sentences), sentences_per_paragraph):
            group = sentences[i : i + sentences_per_paragraph]
            joined = ""
            for sentence in group:
                sep = "" if not joined or joined.endswith(_CJK_END) else " "
                joined += sep + sentence
            out.append(joined)
    return "\n\n".join(out)


def beautify_output(text: str) -> str:
    normalized = normalize_output(text)
    if not normalized or has_markdown_structure(normalized):
        return normalized
    return reflow_paragraphs(normalized)


def wants_detail(text: str) -> bool:
    """True when the request asks for full output; an explicit "no details" wins."""
    if not text:
        return False
    if _NO_DETAIL_REQUEST.search(text):
        return False
    return bool(_DETAIL_REQUEST.search(text))


def _clip(line: str, limit: int) -> str:
    line = line.strip()
    return line if len(line) <= limit else line[: limit - 1].rstrip() + "…"


def concise(
    text: str,
    max_lines: int = CONCISE_MAX_LINES,
    max_line_chars: int = CONCISE_MAX_LINE_CHARS,
    max_chars: int = CONCISE_MAX_CHARS,
    max_total_lines: int = CONCISE_MAX_TOTAL_LINES,
) -> str:
    """
    Reduce long output to a few representative lines.

    Output already under both thresholds is returned unchanged, and the
    reduced form is always under them, so concise(concise(x)) == concise(x).
    """
    text = (text or "").strip()
    lines = [line for line in text.splitlines() if line.strip()]
    if len(text) <= max_chars and len(lines) <= max_total_lines:
        return text

    max_lines = max(1, min(max_lines, max_total_lines, max_chars // (max_line_chars + 1)))
    picked = [line for line in lines if _LIST_ITEM.match(line)]
    if not picked:
        picked = split_sentences(text)
    if not picked:
        picked = lines
    return "\n".join(_clip(line, max_line_chars) for line in picked[:max_lines])


def extract_highlights(text: str, limit: int = 3, max_chars: int = 100) -> list[str]:
    """Pick a few key lines: list items first, else leading sentences."""
    lines = [line for line in (text or "").splitlines() if line.strip()]
    candidates = [re.sub(r"^\s*(?:[-*+•]|\d+[.)、])\s+", "", line) for line in lines if _LIST_ITEM.match(line)]
    if not candidates:
        prose = "\n".join(line for line in lines if not line.lstrip().startswith(("```", "#", "|")))
        candidates = split_sentences(prose)
    return [_clip(c, max_chars) for c in candidates[:limit] if c.strip()]


def extract_image_refs(text: str) -> list[str]:
    """Image URLs or paths mentioned in output (markdown images and bare paths)."""
    refs: list[str] = []
    for match in _IMAGE_MARKDOWN.finditer(text or ""):
        refs.append(match.group(1))
    for match in _IMAGE_PATH.finditer(text or ""):
        refs.append(match.group(1))
    seen: set[str] = set()
    return [r for r in refs if not (r in seen or seen.add(r))]


def split_message(content: str, max_len: int = 4000) -> list[str]:
    """Split content into chunks within max_len, preferring line breaks."""
    if len(content) <= max_len:
        return [content]
    chunks: list[str] = []
    while content:
        if len(content) <= max_len:
            chunks.append(content)
            break
        cut = content[:max_len]
        pos = cut.rfind("\n")
        if pos <= 0:
            pos = cut.rfind(" ")
        if pos <= 0:
            pos = max_len
        chunks.append(content[:pos])
        # Drop the separator only; the next chunk keeps its indentation.
        content = content[pos:]
        if content[:1] in ("\n", " "):
            content = content[1:]
    return chunks


def describe_cancel_reason(reason: str | None) -> str:
    if not reason:
        return _CANCEL_REASONS[REASON_USER]
    return _CANCEL_REASONS.get(reason, f"cancelled ({reason})")


def format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "-"
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def _overlap(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b[: len(a) * 2]).ratio()


def _dedupe_tail(items: Iterable[str], limit: int) -> list[str]:
    """Last `limit` distinct entries, keeping each at its latest position."""
    seen: set[str] = set()
    picked: list[str] = []
    for item in reversed([i.strip() for i in items if i and i.strip()]):
        if item in seen:
            continue
        seen.add(item)
        picked.append(item)
        if len(picked) >= limit:
            break
    return list(reversed(picked))


@dataclass
class RenderedResponse:
    """
    A chat-ready response.

    `text` is always usable on its own (it is the fallback when a card cannot
    be delivered); `continuation` holds follow-up chunks that did not fit.
    """

    text: str
    card: dict[str, Any] | None = None
    continuation: list[str] = field(default_factory=list)


class ResponseFormatter:
    """Render task lifecycle and command replies."""

    def __init__(self, config: ResponseConfig):
        self.config = config

    def queued(self, task: TaskInfo, position: int) -> RenderedResponse:
        return RenderedResponse(f"⏳ Task queued (position {position})\nTask ID: `{task.id}`")

    def started(self, task: TaskInfo) -> RenderedResponse:
        lines = ["🚀 Task started", f"Task ID: `{task.id}`"]
        if task.model:
            lines.append(f"Model: {task.model}")
        return RenderedResponse("\n".join(lines))

    def progress(self, task: TaskInfo, items: list[str], status_only: bool) -> RenderedResponse | None:
        if status_only:
            recent = _dedupe_tail(items, max(1, self.config.progress_max_lines))
            if not recent:
                return None
            body = "\n".join(f"• {line}" for line in recent)
            return RenderedResponse(f"⏳ In progress (`{task.id}`)\n{body}")

        merged = normalize_output("\n".join(items))
        if not merged:
            return None
        if len(merged) > PROGRESS_PREVIEW_CHARS:
            merged = "..." + merged[-PROGRESS_PREVIEW_CHARS:]
        return RenderedResponse(f"📝 In progress (`{task.id}`)\n{merged}")

    def completed(
        self,
        task: TaskInfo,
        *,
        silent: bool = False,
        detail: bool = False,
        label: str = "Task",
    ) -> RenderedResponse:
        output = beautify_output(task.output_text)
        duration = format_duration(task.duration)

        if silent:
            if not output:
                return RenderedResponse("(no output)")
            chunks = split_message(output, self.config.message_max_len)
            return RenderedResponse(chunks[0], continuation=chunks[1:])

        if not output:
            return RenderedResponse(f"✅ {label} completed in {duration} (no output)\nTask ID: `{task.id}`")

        shortened = False
        body = output
        if not detail and self.config.concise_result_default:
            body = concise(output)
            shortened = body != output

        continuation: list[str] = []
        budget = max(200, self.config.card_detail_budget)
        if len(body) > budget:
            cut = body.rfind("\n", 0, budget)
            cut = cut if cut > budget // 2 else budget
            continuation = split_message(body[cut:].lstrip(), self.config.message_max_len)
            body = body[:cut].rstrip()

        header = f"✅ {label} completed in {duration}"
        text = f"{header}\n\n{body}"
        if shortened:
            text += "\n\n(Summary shown. Ask for details to get the full output.)"

        if not self._use_card(output):
            return RenderedResponse(text, continuation=continuation)

        meta = f"Type: {label} | Duration: {duration} | Model: {task.model or 'default'}"
        builder = CardBuilder(header, subtitle=f"ID: {task.id}", template="green")
        builder.add_note(meta)
        highlights = extract_highlights(output)
        joined = "\n".join(highlights)
        if highlights and _overlap(joined, body) < self.config.card_dedup_threshold:
            builder.add_section("Highlights", "\n".join(f"• {h}" for h in highlights))
            builder.add_divider()
        builder.add_markdown(body)
        if shortened:
            builder.add_note("Summary shown. Ask for details to get the full output.")
        return RenderedResponse(text, card=builder.build(), continuation=continuation)

    def failed(self, task: TaskInfo, *, silent: bool = False) -> RenderedResponse:
        error = task.error or "Unknown error"
        if silent:
            return RenderedResponse(f"❌ {error}")
        lines = ["❌ Task failed", f"Task ID: `{task.id}`", f"Reason: {error}"]
        stderr = normalize_output("".join(task.stderr))
        if stderr:
            tail = "\n".join(stderr.splitlines()[-3:])
            lines += ["", "```", tail[-300:], "```"]
        return RenderedResponse("\n".join(lines))

    def cancelled(self, task: TaskInfo, reason: str | None) -> RenderedResponse:
        text = f"⏹️ Task `{task.id}` {describe_cancel_reason(reason)}."
        if task.duration is not None:
            text += f" (ran {format_duration(task.duration)})"
        return RenderedResponse(text)

    def _use_card(self, output: str) -> bool:
        if not self.config.result_card_enabled:
            return False
        return len(output) > 300 or has_markdown_structure(output) or bool(_LINK.search(output))

    # Command replies

    @staticmethod
    def help_text() -> str:
        return "\n".join(
            [
                "📖 Commands",
                "• `!help` / `!h` show this help",
                "• `!status` / `!s` show bridge status",
                "• `!history` / `!hist` show recent tasks",
                "• `!clear` / `!c` clear task history",
                "• `!cancel [task_id]` cancel a running task",
                "• `!sendfile <path>` send a local file to this chat",
                "• `/new [task]` start a new agent session",
                "• `/model list|current|reset|<model>` choose the model",
                "• `/notify quiet|normal|debug|current` set progress verbosity",
                "• `/agent execute|guide|current` act directly or only advise",
                "• Anything else is sent to the agent (mention the bot in group chats)",
            ]
        )

    @staticmethod
    def history_text(tasks: list[TaskInfo], limit: int = 5) -> str:
        recent = tasks[-limit:]
        if not recent:
            return "No tasks yet."
        lines = ["📜 Recent tasks:"]
        for task in recent:
            emoji = _STATUS_EMOJI.get(task.status, "⏳")
            command = _clip(task.command.splitlines()[0] if task.command else "", 60)
            lines.append(f"{emoji} `{command}` ({task.status})")
        return "\n".join(lines)

    @staticmethod
    def status_text(
        *,
        active_sessions: int,
        running_tasks: int,
        queued_tasks: int,
        model: str | None,
        notify_mode: str,
        execute_first: bool,
    ) -> str:
        return "\n".join(
            [
                "✅ Bridge status: OK",
                f"• Active sessions: {active_sessions}",
                f"• Running tasks: {running_tasks}",
                f"• Queued tasks: {queued_tasks}",
                f"• Model: {model or 'agent default'}",
                f"• Notify mode: {notify_mode}",
                f"• Agent mode: {'execute' if execute_first else 'guide'}",
            ]
        )
