"""Builders for Feishu interactive card payloads."""

from __future__ import annotations

from typing import Any


def format_uptime(seconds: float) -> str:
    total = int(max(0, seconds))
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class CardBuilder:
    """Fluent builder for the card JSON accepted by `msg_type=interactive`."""

    def __init__(self, title: str | None = None, subtitle: str | None = None, template: str = ""):
        self._elements: list[dict[str, Any]] = []
        self._header: dict[str, Any] | None = None
        if title:
            self._header = {"title": {"tag": "plain_text", "content": title}}
            if subtitle:
                self._header["subtitle"] = {"tag": "plain_text", "content": subtitle}
            if template:
                self._header["template"] = template

    def add_markdown(self, content: str) -> "CardBuilder":
        self._elements.append({"tag": "div", "text": {"tag": "lark_md", "content": content}})
        return self

    def add_section(self, title: str, content: str) -> "CardBuilder":
        return self.add_markdown(f"**{title}**\n{content}")

    def add_divider(self) -> "CardBuilder":
        self._elements.append({"tag": "hr"})
        return self

    def add_note(self, content: str) -> "CardBuilder":
        self._elements.append(
            {"tag": "note", "elements": [{"tag": "plain_text", "content": content}]}
        )
        return self

    def build(self) -> dict[str, Any]:
        card: dict[str, Any] = {
            "config": {"wide_screen_mode": True},
            "elements": list(self._elements),
        }
        if self._header is not None:
            card["header"] = self._header
        return card


def build_status_card(
    *,
    version: str,
    uptime_s: float,
    active_sessions: int,
    running_tasks: int,
    queued_tasks: int,
    connection_mode: str,
    model: str | None = None,
) -> dict[str, Any]:
    runtime = [
        f"- Uptime: {format_uptime(uptime_s)}",
        f"- Connection mode: {connection_mode}",
        f"- Model: {model or 'agent default'}",
    ]
    stats = [
        f"- Active sessions: {active_sessions}",
        f"- Running tasks: {running_tasks}",
        f"- Queued tasks: {queued_tasks}",
    ]
    return (
        CardBuilder("📊 System Status", subtitle=f"ocbridge v{version}", template="blue")
        .add_section("Runtime", "\n".join(runtime))
        .add_section("Statistics", "\n".join(stats))
        .build()
    )
