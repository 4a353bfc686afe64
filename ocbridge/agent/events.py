"""Lifecycle events emitted by the agent executor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union

from ocbridge.agent.task import TaskInfo

ProgressKind = Literal["text", "status", "stderr"]


@dataclass
class TaskQueued:
    task: TaskInfo
    position: int


@dataclass
class TaskStarted:
    task: TaskInfo


@dataclass
class TaskSessionUpdated:
    task: TaskInfo
    agent_session_id: str


@dataclass
class TaskProgress:
    task: TaskInfo
    text: str
    kind: ProgressKind = "text"


@dataclass
class TaskCompleted:
    task: TaskInfo


@dataclass
class TaskFailed:
    task: TaskInfo
    error: str


@dataclass
class TaskCancelled:
    task: TaskInfo
    reason: str


TaskEvent = Union[
    TaskQueued,
    TaskStarted,
    TaskSessionUpdated,
    TaskProgress,
    TaskCompleted,
    TaskFailed,
    TaskCancelled,
]

TERMINAL_EVENTS = (TaskCompleted, TaskFailed, TaskCancelled)
