"""Bridge loop: routes chat messages to the agent executor and results back to chat."""

from __future__ import annotations

import asyncio
import contextlib
import os
import time
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from ocbridge import __version__
from ocbridge.agent.cards import build_status_card
from ocbridge.agent.events import (
    TaskCancelled,
    TaskCompleted,
    TaskEvent,
    TaskFailed,
    TaskProgress,
    TaskQueued,
    TaskSessionUpdated,
    TaskStarted,
)
from ocbridge.agent.executor import AgentExecutor
from ocbridge.agent.formatter import (
    RenderedResponse,
    ResponseFormatter,
    extract_image_refs,
    wants_detail,
)
from ocbridge.agent.interpreter import (
    HINT_AMBIGUOUS,
    HINT_CHAT,
    AgentPreferenceIntent,
    BuiltinIntent,
    CommandInterpreter,
    ExecuteIntent,
    Intent,
    ModelIntent,
    NotifyIntent,
    ReplyIntent,
    ResetIntent,
    infer_intent_hint,
)
from ocbridge.agent.task import (
    MODE_DEBUG,
    MODE_NORMAL,
    MODE_QUIET,
    MODE_SILENT,
    REASON_USER,
    RESPONSE_MODES,
    TaskInfo,
)
from ocbridge.bus.events import InboundMessage, OutboundMessage
from ocbridge.bus.queue import MessageBus
from ocbridge.channels.manager import ChannelManager
from ocbridge.config.schema import Config
from ocbridge.session.manager import (
    PREF_EXECUTE_FIRST,
    PREF_LAST_MODEL,
    PREF_MODEL,
    PREF_NOTIFY_MODE,
    Session,
    SessionManager,
)
from ocbridge.utils.helpers import ensure_dir, safe_filename

FILE_MESSAGE_TYPES = ("file", "image", "media", "audio")
UPLOAD_DIR_NAME = ".bridge_uploads"

KIND_REPLY = "reply"
KIND_PROGRESS = "progress"
KIND_RESULT = "result"

GENERIC_FAILURE = "❌ Failed to process your message. Please try again later."


@dataclass
class _TaskState:
    """Per-task bookkeeping held from submission until the terminal event."""

    channel: str
    chat_id: str
    session_key: str
    epoch: int
    mode: str
    files: list[str] = field(default_factory=list)
    detail: bool = False
    progress: list[str] = field(default_factory=list)
    last_flush: float = field(default_factory=time.monotonic)


class BridgeLoop:
    """
    The bridge loop ties chat channels to the agent executor.

    It:
    1. Receives messages from the bus (serialized per session)
    2. Interprets them into commands or agent tasks
    3. Submits tasks to the executor
    4. Relays queued/started/progress/result events back to the chat
    """

    def __init__(
        self,
        bus: MessageBus,
        executor: AgentExecutor,
        sessions: SessionManager,
        formatter: ResponseFormatter,
        interpreter: CommandInterpreter,
        config: Config,
        channels: ChannelManager | None = None,
    ):
        self.bus = bus
        self.executor = executor
        self.sessions = sessions
        self.formatter = formatter
        self.interpreter = interpreter
        self.config = config
        self.channels = channels
        self.working_dir = Path(config.agent.working_dir or os.getcwd()).expanduser()

        self._running = False
        self._started_at = time.monotonic()
        self._locks: dict[str, asyncio.Lock] = {}
        self._handlers: set[asyncio.Task] = set()
        self._events_task: asyncio.Task | None = None
        self._states: dict[str, _TaskState] = {}
        self._early_events: dict[str, list[TaskEvent]] = {}
        self._submitting = 0

    async def run(self) -> None:
        """Run the bridge loop until `stop()` is called."""
        self._running = True
        self._started_at = time.monotonic()
        self._events_task = asyncio.create_task(self._consume_events())
        logger.info("Bridge loop started")

        try:
            while self._running:
                try:
                    msg = await asyncio.wait_for(self.bus.consume_inbound(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                handler = asyncio.create_task(self._dispatch(msg))
                self._handlers.add(handler)
                handler.add_done_callback(self._handlers.discard)
        finally:
            for handler in list(self._handlers):
                handler.cancel()
            if self._events_task is not None:
                # Deliver anything already emitted (e.g. shutdown cancellations).
                await self._drain_events()
                self._events_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._events_task
                self._events_task = None
            logger.info("Bridge loop stopped")

    def stop(self) -> None:
        """Stop the bridge loop."""
        self._running = False
        logger.info("Bridge loop stopping")

    # Inbound

    async def _dispatch(self, msg: InboundMessage) -> None:
        lock = self._locks.setdefault(msg.session_key, asyncio.Lock())
        try:
            async with lock:
                await self._process_message(msg)
        except Exception:
            logger.exception(f"Error handling message from {msg.sender_id} in {msg.chat_id}")
            await self._reply(msg, GENERIC_FAILURE)

    async def _process_message(self, msg: InboundMessage) -> None:
        preview = msg.content[:80] + "..." if len(msg.content) > 80 else msg.content
        logger.info(
            f"Processing {msg.message_type} message from {msg.channel}:{msg.sender_id}: {preview}"
        )
        session = self.sessions.get_or_create(msg.sender_id, msg.chat_id)

        if msg.message_type in FILE_MESSAGE_TYPES:
            await self._handle_file_message(msg, session)
            return

        intent = self.interpreter.interpret(msg.content, msg.mentions, msg.chat_type)
        if intent is None:
            return
        await self._handle_intent(msg, session, intent)

    async def _handle_intent(self, msg: InboundMessage, session: Session, intent: Intent) -> None:
        if isinstance(intent, ReplyIntent):
            await self._reply(msg, intent.text)
        elif isinstance(intent, BuiltinIntent):
            await self._handle_builtin(msg, session, intent)
        elif isinstance(intent, ResetIntent):
            await self._handle_reset(msg, session, intent)
        elif isinstance(intent, ModelIntent):
            await self._handle_model(msg, session, intent)
        elif isinstance(intent, NotifyIntent):
            await self._handle_notify(msg, session, intent)
        elif isinstance(intent, AgentPreferenceIntent):
            await self._handle_agent_preference(msg, session, intent)
        elif isinstance(intent, ExecuteIntent):
            await self._execute(msg, session, intent.command, intent.hint)

    async def _handle_file_message(self, msg: InboundMessage, session: Session) -> None:
        if not msg.media or not msg.message_id:
            logger.warning(f"File message without resource key in {msg.chat_id}; ignored")
            return
        if self.channels is None:
            await self._reply(msg, "❌ File uploads are not supported here.")
            return

        file_key = msg.media[0]
        name = safe_filename(msg.metadata.get("file_name") or file_key)
        stamp = time.strftime("%Y%m%d%H%M%S")
        target = ensure_dir(self._upload_dir(session)) / f"{stamp}_{name}"
        try:
            await self.channels.download_file(
                msg.channel,
                msg.message_id,
                file_key,
                target,
                msg.metadata.get("resource_type", "file"),
            )
        except Exception as e:
            logger.error(f"Failed to download file {file_key}: {e}")
            await self._reply(msg, "❌ Failed to receive the file. Please try again.")
            return

        evicted = self.sessions.add_pending_file(session, target)
        self._discard_files(evicted)
        await self._reply(
            msg,
            f"📥 File received: {name}\nIt will be attached to your next task "
            f"({len(session.pending_files)} pending).",
        )

    async def _handle_builtin(self, msg: InboundMessage, session: Session, intent: BuiltinIntent) -> None:
        name = intent.name
        if name == "help":
            await self._reply(msg, self.formatter.help_text())
        elif name == "status":
            await self._send_status(msg, session)
        elif name == "history":
            await self._reply(msg, self.formatter.history_text(session.tasks))
        elif name == "clear":
            self.sessions.clear_history(session)
            await self._reply(msg, "🧹 Task history cleared.")
        elif name == "sendfile":
            await self._send_local_file(msg, intent.argument)
        elif name == "cancel":
            await self._cancel(msg, session, intent.argument)

    async def _send_status(self, msg: InboundMessage, session: Session) -> None:
        model = self.sessions.get_preference(session, PREF_MODEL) or self.config.agent.model
        text = self.formatter.status_text(
            active_sessions=len(self.sessions),
            running_tasks=self.executor.running_count,
            queued_tasks=self.executor.queue_length,
            model=model,
            notify_mode=self.sessions.get_preference(session, PREF_NOTIFY_MODE),
            execute_first=bool(self.sessions.get_preference(session, PREF_EXECUTE_FIRST)),
        )
        card = None
        if self.config.response.result_card_enabled:
            connection = ", ".join(self.channels.enabled_channels) if self.channels else msg.channel
            card = build_status_card(
                version=__version__,
                uptime_s=time.monotonic() - self._started_at,
                active_sessions=len(self.sessions),
                running_tasks=self.executor.running_count,
                queued_tasks=self.executor.queue_length,
                connection_mode=connection,
                model=model,
            )
        await self._reply(msg, text, card=card)

    async def _send_local_file(self, msg: InboundMessage, raw_path: str) -> None:
        path = Path(raw_path).expanduser()
        if not path.is_absolute():
            path = self.working_dir / path
        if not path.is_file():
            await self._reply(msg, f"❌ File not found: {raw_path}")
            return
        await self._reply(msg, f"📎 Sending file: {path.name}", media=[str(path)])

    async def _cancel(self, msg: InboundMessage, session: Session, task_id: str) -> None:
        active = self.sessions.active_tasks(session)
        if task_id:
            target = next((t for t in active if t.id == task_id), None)
            if target is None:
                await self._reply(msg, f"No active task `{task_id}` in this chat.")
                return
        elif active:
            target = active[-1]
        else:
            await self._reply(msg, "No running task to cancel.")
            return

        # The executor reports the cancellation through a TaskCancelled event.
        if not self.executor.cancel_task(target.id, REASON_USER):
            await self._reply(msg, f"Task `{target.id}` has already finished.")

    async def _handle_reset(self, msg: InboundMessage, session: Session, intent: ResetIntent) -> None:
        self._discard_files(self.sessions.reset_conversation(session))
        if not intent.command:
            await self._reply(msg, "🆕 Started a new session. Send your next task.")
            return
        await self._reply(msg, "🆕 Switched to a new session, running your task.")
        await self._execute(msg, session, intent.command, intent.hint or infer_intent_hint(intent.command))

    async def _handle_model(self, msg: InboundMessage, session: Session, intent: ModelIntent) -> None:
        override = self.sessions.get_preference(session, PREF_MODEL)

        if intent.action == "current":
            if override:
                await self._reply(msg, f"🧠 Current model: `{override}` (set for this chat)")
            else:
                default = await self.executor.resolve_model()
                text = f"🧠 Current model: `{default or 'agent default'}` (default)"
                last = self.sessions.get_preference(session, PREF_LAST_MODEL)
                if last:
                    text += f"\nLast selected in this chat: `{last}`"
                await self._reply(msg, text)
            return

        if intent.action == "reset":
            self._discard_files(self.sessions.set_model(session, None))
            await self._reply(msg, "♻️ Model reset to the default. A new session was started.")
            return

        models = await asyncio.to_thread(self.executor.list_models)
        if intent.action == "list":
            if not models:
                await self._reply(msg, "No models reported by the agent.")
                return
            current = override or await self.executor.resolve_model()
            lines = ["🧠 Available models:"]
            lines += [f"• `{m}`" + (" (current)" if m == current else "") for m in models]
            await self._reply(msg, "\n".join(lines))
            return

        model = intent.model or ""
        if models and model not in models:
            await self._reply(msg, f"❌ Unknown model `{model}`. Use `/model list` to see available models.")
            return
        self._discard_files(self.sessions.set_model(session, model))
        await self._reply(msg, f"✅ Model set to `{model}`. A new session was started.")

    async def _handle_notify(self, msg: InboundMessage, session: Session, intent: NotifyIntent) -> None:
        if intent.mode is None:
            mode = self.sessions.get_preference(session, PREF_NOTIFY_MODE)
            await self._reply(msg, f"🔔 Notify mode: {mode}")
            return
        self.sessions.set_preference(session, PREF_NOTIFY_MODE, intent.mode)
        await self._reply(msg, f"🔔 Notify mode set to {intent.mode}")

    async def _handle_agent_preference(
        self, msg: InboundMessage, session: Session, intent: AgentPreferenceIntent
    ) -> None:
        if intent.execute_first is not None:
            self.sessions.set_preference(session, PREF_EXECUTE_FIRST, intent.execute_first)
        execute_first = bool(self.sessions.get_preference(session, PREF_EXECUTE_FIRST))
        label = "execute (act directly)" if execute_first else "guide (advise only)"
        prefix = "Agent mode" if intent.execute_first is None else "Agent mode set to"
        await self._reply(msg, f"🤖 {prefix}: {label}")

    # Task submission

    async def _resolve_mode(self, session: Session, command: str, hint: str) -> str:
        if hint == HINT_CHAT:
            return MODE_SILENT
        if hint == HINT_AMBIGUOUS and self.config.agent.intent_routing_enabled:
            result = await self.executor.classify_intent(
                command, self.sessions.get_preference(session, PREF_MODEL)
            )
            logger.info(f"Intent classified as {result.label} ({result.confidence:.2f})")
            if result.label == "chat" and result.confidence >= self.config.agent.intent_confidence:
                return MODE_SILENT
        mode = self.sessions.get_preference(session, PREF_NOTIFY_MODE)
        return mode if mode in RESPONSE_MODES else MODE_QUIET

    async def _execute(self, msg: InboundMessage, session: Session, command: str, hint: str) -> None:
        mode = await self._resolve_mode(session, command, hint)

        prompt = None
        if mode != MODE_SILENT and self.sessions.get_preference(session, PREF_EXECUTE_FIRST):
            prompt = f"{self.config.response.policy_prompt.rstrip()}\n{command}"

        files = self.sessions.consume_pending_files(session)
        if files:
            names = ", ".join(Path(f).name for f in files)
            await self._reply(msg, f"📎 Attached files: {names}")

        epoch = session.epoch
        self._submitting += 1
        try:
            task = await self.executor.execute(
                command,
                user_id=msg.sender_id,
                chat_id=msg.chat_id,
                message_id=msg.message_id,
                files=files,
                agent_session_id=session.agent_session_id,
                response_mode=mode,
                model=self.sessions.get_preference(session, PREF_MODEL),
                working_dir=str(self.working_dir),
                prompt=prompt,
            )
            self._states[task.id] = _TaskState(
                channel=msg.channel,
                chat_id=msg.chat_id,
                session_key=session.key,
                epoch=epoch,
                mode=mode,
                files=files,
                detail=wants_detail(command),
            )
            self.sessions.record_task(session, task)
        finally:
            self._submitting -= 1

        logger.info(f"Submitted task {task.id} for {session.key} (mode={mode})")
        for event in self._early_events.pop(task.id, []):
            await self._handle_event(event)

    # Executor events

    async def _consume_events(self) -> None:
        while True:
            event = await self.executor.events.get()
            await self._safe_handle_event(event)

    async def _drain_events(self) -> None:
        while not self.executor.events.empty():
            await self._safe_handle_event(self.executor.events.get_nowait())

    async def _safe_handle_event(self, event: TaskEvent) -> None:
        try:
            await self._handle_event(event)
        except Exception:
            logger.exception(f"Error handling {type(event).__name__} for task {event.task.id}")

    async def _handle_event(self, event: TaskEvent) -> None:
        task = event.task
        state = self._states.get(task.id)
        if state is None:
            if self._submitting:
                # Emitted before execute() returned; replayed after registration.
                self._early_events.setdefault(task.id, []).append(event)
            else:
                logger.debug(f"Dropping {type(event).__name__} for untracked task {task.id}")
            return

        if isinstance(event, TaskSessionUpdated):
            session = self.sessions.get(state.session_key)
            if session is not None:
                self.sessions.set_agent_session(session, event.agent_session_id, state.epoch)
        elif isinstance(event, TaskQueued):
            self.sessions.update_task(task)
            if state.mode != MODE_SILENT:
                await self._send(state, self.formatter.queued(task, event.position))
        elif isinstance(event, TaskStarted):
            self.sessions.update_task(task)
            state.last_flush = time.monotonic()
            if state.mode != MODE_SILENT:
                await self._send(state, self.formatter.started(task))
        elif isinstance(event, TaskProgress):
            self._buffer_progress(state, event)
            await self._flush_progress(task, state, force=False)
        else:
            await self._finish(event, state)

    def _buffer_progress(self, state: _TaskState, event: TaskProgress) -> None:
        if state.mode not in (MODE_NORMAL, MODE_DEBUG):
            return
        if self.config.agent.progress_status_only:
            if event.kind == "status":
                state.progress.append(event.text)
        elif event.kind == "text":
            state.progress.append(event.text)

    async def _flush_progress(self, task: TaskInfo, state: _TaskState, force: bool) -> None:
        if not state.progress:
            return
        if not force:
            if not self.config.response.streaming_enabled:
                return
            interval = (
                self.config.response.streaming_interval_s
                if state.mode == MODE_DEBUG
                else self.config.response.normal_progress_interval_s
            )
            if time.monotonic() - state.last_flush < interval:
                return

        items, state.progress = state.progress, []
        rendered = self.formatter.progress(task, items, self.config.agent.progress_status_only)
        if rendered is not None:
            await self._send(state, rendered, kind=KIND_PROGRESS)
            state.last_flush = time.monotonic()

    async def _finish(self, event: TaskCompleted | TaskFailed | TaskCancelled, state: _TaskState) -> None:
        task = event.task
        silent = state.mode == MODE_SILENT
        try:
            await self._flush_progress(task, state, force=True)
            media: list[str] = []
            if isinstance(event, TaskCompleted):
                rendered = self.formatter.completed(task, silent=silent, detail=state.detail)
                media = self._image_media(task.output_text)
            elif isinstance(event, TaskFailed):
                rendered = self.formatter.failed(task, silent=silent)
            else:
                logger.info(f"Task {task.id} cancelled: {event.reason}")
                rendered = self.formatter.cancelled(task, event.reason)
            await self._send(state, rendered, kind=KIND_RESULT, media=media)
        finally:
            self._discard_files(state.files)
            self._states.pop(task.id, None)
            self.sessions.update_task(task)
            self.sessions.release_task(task.id)

    # Outbound helpers

    async def _reply(
        self,
        msg: InboundMessage,
        text: str,
        card: dict | None = None,
        media: list[str] | None = None,
    ) -> None:
        await self.bus.publish_outbound(
            OutboundMessage(
                channel=msg.channel,
                chat_id=msg.chat_id,
                content=text,
                card=card,
                reply_to=msg.message_id or None,
                media=media or [],
                metadata={"kind": KIND_REPLY},
            )
        )

    async def _send(
        self,
        state: _TaskState,
        rendered: RenderedResponse,
        kind: str = KIND_REPLY,
        media: list[str] | None = None,
    ) -> None:
        chunks = [rendered.text, *rendered.continuation]
        for index, chunk in enumerate(chunks):
            last = index == len(chunks) - 1
            await self.bus.publish_outbound(
                OutboundMessage(
                    channel=state.channel,
                    chat_id=state.chat_id,
                    content=chunk,
                    card=rendered.card if index == 0 else None,
                    media=list(media or []) if last else [],
                    metadata={"kind": kind},
                )
            )

    def _image_media(self, output: str) -> list[str]:
        media: list[str] = []
        for ref in extract_image_refs(output):
            if ref.startswith(("http://", "https://")):
                media.append(ref)
                continue
            path = Path(ref).expanduser()
            if not path.is_absolute():
                path = self.working_dir / path
            if path.is_file():
                media.append(str(path))
        return media

    def _upload_dir(self, session: Session) -> Path:
        return self.working_dir / UPLOAD_DIR_NAME / safe_filename(session.key)

    def _discard_files(self, paths: list[str]) -> None:
        for raw in paths:
            try:
                Path(raw).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to delete staged file {raw}: {e}")
