"""Task record for a single agent invocation."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED})

# Response modes, least to most verbose.
MODE_SILENT = "silent"
MODE_QUIET = "quiet"
MODE_NORMAL = "normal"
MODE_DEBUG = "debug"
RESPONSE_MODES = (MODE_SILENT, MODE_QUIET, MODE_NORMAL, MODE_DEBUG)

# Cancellation reason codes.
REASON_USER = "user_request"
REASON_NO_PROGRESS = "no_progress"
REASON_TIMEOUT = "timeout"
REASON_SHUTDOWN = "shutdown"

_PREVIEW_MAX_CHARS = 500


def new_task_id() -> str:
    return f"task_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass
class TaskInfo:
    """
    One invocation of the agent process.

    Mutated only by the executor while the process is alive. Once the status
    is terminal the record is frozen: later output or state changes are dropped.
    """

    id: str
    command: str
    user_id: str
    chat_id: str
    message_id: str = ""
    prompt: str = ""  # Text sent to the agent when it differs from `command`
    status: str = STATUS_PENDING
    agent_session_id: str | None = None
    model: str | None = None
    response_mode: str = MODE_NORMAL
    files: list[str] = field(default_factory=list)
    output: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    progress: str = ""
    error: str | None = None
    exit_code: int | None = None
    cancel_reason: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration: float | None = None  # seconds, completed_at - created_at

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def output_text(self) -> str:
        return "\n".join(self.output)

    def append_output(self, text: str) -> None:
        self.output.append(text)
        self.progress = text if len(text) <= _PREVIEW_MAX_CHARS else text[:_PREVIEW_MAX_CHARS] + "..."
