"""Session management for chat conversations bridged to the agent."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from ocbridge.agent.task import TaskInfo
from ocbridge.config.schema import ResponseConfig, SessionConfig

PREF_MODEL = "model"
PREF_NOTIFY_MODE = "notify_mode"
PREF_EXECUTE_FIRST = "execute_first"
PREF_LAST_MODEL = "last_model"


@dataclass
class Session:
    """
    A (user, chat) conversation with the bridge.

    Lives for the lifetime of the process. `epoch` increases every time the
    agent conversation is reset so late session updates from older tasks can
    be recognised and ignored.
    """

    key: str
    user_id: str
    chat_id: str
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    tasks: list[TaskInfo] = field(default_factory=list)
    preferences: dict[str, Any] = field(default_factory=dict)
    agent_session_id: str | None = None
    epoch: int = 0
    pending_files: list[str] = field(default_factory=list)

    def touch(self) -> None:
        self.updated_at = datetime.now()


class SessionManager:
    """
    In-memory registry of bridge sessions.

    Keeps a reverse index from task id to session key so executor events can
    be routed back to the session that submitted the task.
    """

    def __init__(self, config: SessionConfig, defaults: ResponseConfig | None = None):
        self.config = config
        self.defaults = defaults or ResponseConfig()
        self._cache: dict[str, Session] = {}
        self._task_index: dict[str, str] = {}

    @staticmethod
    def compose_key(user_id: str, chat_id: str) -> str:
        return f"{user_id}:{chat_id}"

    def get_or_create(self, user_id: str, chat_id: str) -> Session:
        key = self.compose_key(user_id, chat_id)
        session = self._cache.get(key)
        if session is None:
            session = Session(key=key, user_id=user_id, chat_id=chat_id)
            self._cache[key] = session
            logger.debug(f"Created session {key}")
        session.touch()
        return session

    def get(self, key: str) -> Session | None:
        return self._cache.get(key)

    def __len__(self) -> int:
        return len(self._cache)

    # Task history

    def record_task(self, session: Session, task: TaskInfo) -> None:
        """Insert or replace a task in the session's bounded history."""
        for index, existing in enumerate(session.tasks):
            if existing.id == task.id:
                session.tasks[index] = task
                break
        else:
            session.tasks.append(task)
        overflow = len(session.tasks) - self.config.max_history
        if overflow > 0:
            for dropped in session.tasks[:overflow]:
                if self._task_index.get(dropped.id) == session.key and dropped.is_finished:
                    self._task_index.pop(dropped.id, None)
            del session.tasks[:overflow]
        self._task_index[task.id] = session.key
        session.touch()

    def update_task(self, task: TaskInfo) -> None:
        session = self.session_for_task(task.id)
        if session is not None:
            self.record_task(session, task)

    def session_for_task(self, task_id: str) -> Session | None:
        key = self._task_index.get(task_id)
        return self._cache.get(key) if key else None

    def release_task(self, task_id: str) -> None:
        """Drop the reverse index entry once a finished task has been reported."""
        self._task_index.pop(task_id, None)

    def active_tasks(self, session: Session) -> list[TaskInfo]:
        return [t for t in session.tasks if not t.is_finished]

    def clear_history(self, session: Session) -> None:
        """Forget finished tasks; preferences and the agent conversation are kept."""
        for task in session.tasks:
            if task.is_finished:
                self._task_index.pop(task.id, None)
        session.tasks = [t for t in session.tasks if not t.is_finished]
        session.touch()

    # Preferences

    def _default(self, name: str) -> Any:
        if name == PREF_NOTIFY_MODE:
            return self.defaults.default_notify_mode
        if name == PREF_EXECUTE_FIRST:
            return self.defaults.execute_first_default
        return None

    def get_preference(self, session: Session, name: str) -> Any:
        if name not in session.preferences:
            session.preferences[name] = self._default(name)
        return session.preferences[name]

    def set_preference(self, session: Session, name: str, value: Any) -> None:
        session.preferences[name] = value
        session.touch()

    def set_model(self, session: Session, model: str | None) -> list[str]:
        """
        Change (or clear, with None) the model override.

        Starts a fresh agent conversation; returns the discarded pending files.
        """
        self.set_preference(session, PREF_MODEL, model)
        if model:
            self.set_preference(session, PREF_LAST_MODEL, model)
        return self.reset_conversation(session)

    # Agent conversation

    def reset_conversation(self, session: Session) -> list[str]:
        """
        Drop the agent conversation id and bump the epoch.

        Returns the pending files that were discarded so the caller can delete them.
        """
        session.agent_session_id = None
        session.epoch += 1
        dropped = self.drain_pending_files(session)
        session.touch()
        logger.info(f"Session {session.key} reset (epoch {session.epoch})")
        return dropped

    def set_agent_session(self, session: Session, agent_session_id: str, epoch: int) -> bool:
        """Store the agent's conversation id unless the session was reset since `epoch`."""
        if epoch != session.epoch:
            logger.debug(f"Ignoring stale agent session {agent_session_id} for {session.key}")
            return False
        session.agent_session_id = agent_session_id
        return True

    # Pending file attachments

    def add_pending_file(self, session: Session, path: str | Path) -> list[str]:
        """Queue a staged file; returns paths evicted to stay within the limit."""
        session.pending_files.append(str(path))
        evicted: list[str] = []
        while len(session.pending_files) > self.config.max_pending_files:
            evicted.append(session.pending_files.pop(0))
        session.touch()
        return evicted

    def consume_pending_files(self, session: Session) -> list[str]:
        files, session.pending_files = session.pending_files, []
        return files

    def drain_pending_files(self, session: Session) -> list[str]:
        return self.consume_pending_files(session)
