"""Process executor: runs the agent CLI per task with bounded concurrency."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import math
import os
import re
import subprocess
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime

import json_repair
from loguru import logger

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
from ocbridge.agent.output import RawLine, TextLine, decode_line, describe_status, extract_text
from ocbridge.agent.task import (
    MODE_NORMAL,
    REASON_NO_PROGRESS,
    REASON_SHUTDOWN,
    REASON_TIMEOUT,
    REASON_USER,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RUNNING,
    TaskInfo,
    new_task_id,
)
from ocbridge.config.schema import AgentConfig

_READ_CHUNK = 64 * 1024
_MIN_INTENT_TIMEOUT_S = 3.0
_CODE_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

_INTENT_PROMPT = (
    "Only classify the intent of the message below. Do not carry out any work.\n"
    'Reply with exactly one line of JSON: {"label":"chat|task","confidence":0.00}\n'
    "chat = small talk, questions, status queries; "
    "task = requires real action (editing code, analysis, searching, handling files, running commands).\n"
    "User message: "
)


@dataclass
class IntentClassification:
    label: str  # "chat" or "task"
    confidence: float
    raw: str = ""


def parse_intent_classification(text: str) -> IntentClassification | None:
    """Parse the classifier's reply, tolerating fences, prose and broken JSON."""
    if not text:
        return None
    cleaned = _CODE_FENCE.sub("", text).strip()
    match = _JSON_OBJECT.search(cleaned)
    candidate = match.group(0) if match else cleaned

    parsed = json_repair.loads(candidate) if match else None
    if isinstance(parsed, dict):
        label = str(parsed.get("label") or "").strip().lower()
        if label not in ("chat", "task"):
            return None
        try:
            confidence = float(parsed.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        if not math.isfinite(confidence):
            confidence = 0.5
        return IntentClassification(label, min(1.0, max(0.0, confidence)), cleaned)

    lower = cleaned.lower()
    if "chat" in lower and "task" not in lower:
        return IntentClassification("chat", 0.6, cleaned)
    if "task" in lower or "任务" in lower:
        return IntentClassification("task", 0.6, cleaned)
    return None


@dataclass
class _Run:
    """Bookkeeping for a task whose process is alive."""

    task: TaskInfo
    process: asyncio.subprocess.Process
    buffer: str = ""
    last_status: str = ""
    idle_handle: asyncio.TimerHandle | None = None
    hard_handle: asyncio.TimerHandle | None = None
    kill_handle: asyncio.TimerHandle | None = None
    supervisor: asyncio.Task | None = None
    decoders: dict[str, codecs.IncrementalDecoder] = field(default_factory=dict)


class AgentExecutor:
    """
    Runs the agent CLI as one subprocess per task.

    At most `max_concurrent` processes run at once; further tasks wait in a
    FIFO queue. Lifecycle events are pushed onto `events` in the order
    queued?, started, session*, progress*, terminal. A slot is held until the
    process has actually exited, even if the task was already reported as
    cancelled.
    """

    def __init__(self, config: AgentConfig):
        self.config = config
        self.events: asyncio.Queue[TaskEvent] = asyncio.Queue()
        self._tasks: OrderedDict[str, TaskInfo] = OrderedDict()
        self._queue: deque[tuple[TaskInfo, str | None]] = deque()
        self._runs: dict[str, _Run] = {}
        self._slots_in_use = 0
        self._launchers: set[asyncio.Task] = set()
        self._detected_model: str | None = None
        self._model_detected = False

    # Public API

    @property
    def running_count(self) -> int:
        return self._slots_in_use

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def get_task(self, task_id: str) -> TaskInfo | None:
        return self._tasks.get(task_id)

    def all_tasks(self) -> list[TaskInfo]:
        return list(self._tasks.values())

    async def execute(
        self,
        command: str,
        user_id: str,
        chat_id: str,
        message_id: str = "",
        files: list[str] | None = None,
        agent_session_id: str | None = None,
        response_mode: str | None = None,
        model: str | None = None,
        working_dir: str | None = None,
        prompt: str | None = None,
    ) -> TaskInfo:
        """
        Submit a task. Returns as soon as the task is queued or spawned.

        `prompt` overrides the text passed to the agent; `command` is what
        the user asked for and what history shows.

        Raises:
            ValueError: If the command is empty.
        """
        command = (command or "").strip()
        if not command:
            raise ValueError("command must not be empty")

        task = TaskInfo(
            id=new_task_id(),
            command=command,
            user_id=user_id,
            chat_id=chat_id,
            message_id=message_id,
            prompt=(prompt or "").strip(),
            agent_session_id=agent_session_id,
            model=model,
            response_mode=response_mode or MODE_NORMAL,
            files=list(files or []),
        )
        self._remember(task)

        if self._slots_in_use >= self.config.max_concurrent:
            self._queue.append((task, working_dir))
            logger.info(f"Task {task.id} queued at position {len(self._queue)}")
            self._emit(TaskQueued(task=task, position=len(self._queue)))
            return task

        self._slots_in_use += 1
        await self._launch(task, working_dir)
        return task

    def cancel_task(self, task_id: str, reason: str = REASON_USER) -> bool:
        """
        Cancel a queued or running task.

        The cancelled event is emitted immediately; the process gets SIGTERM
        and, if still alive after the grace window, SIGKILL.
        """
        task = self._tasks.get(task_id)
        if task is None or task.is_finished:
            return False

        for index, (queued, _) in enumerate(self._queue):
            if queued.id == task_id:
                del self._queue[index]
                logger.info(f"Cancelling queued task {task_id}: {reason}")
                self._finalize(task, STATUS_CANCELLED, reason=reason)
                return True

        logger.info(f"Cancelling task {task_id}: {reason}")
        self._finalize(task, STATUS_CANCELLED, reason=reason)
        run = self._runs.get(task_id)
        if run is not None:
            self._terminate(run)
        return True

    async def shutdown(self) -> None:
        """Cancel everything and wait briefly for processes to exit."""
        for task, _ in list(self._queue):
            self.cancel_task(task.id, REASON_SHUTDOWN)
        supervisors = []
        for run in list(self._runs.values()):
            self.cancel_task(run.task.id, REASON_SHUTDOWN)
            if run.supervisor is not None:
                supervisors.append(run.supervisor)
        if supervisors:
            await asyncio.wait(supervisors, timeout=self.config.kill_grace_s + 1.0)
        for run in list(self._runs.values()):
            self._kill(run)
        for launcher in list(self._launchers):
            launcher.cancel()

    def build_args(
        self,
        prompt: str,
        model: str | None = None,
        files: list[str] | None = None,
        session_id: str | None = None,
    ) -> list[str]:
        args = ["run", prompt, "--format", "json"]
        if model:
            args += ["--model", model]
        if session_id:
            args += ["--session", session_id]
        for path in files or []:
            args += ["--file", path]
        return args

    def list_models(self) -> list[str]:
        """Run the agent's `models` subcommand. Returns [] on any failure."""
        try:
            result = subprocess.run(
                [self.config.path, "models"],
                capture_output=True,
                text=True,
                timeout=self.config.models_timeout_s,
                cwd=self._cwd(),
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Failed to list models: {e}")
            return []
        if result.returncode != 0:
            logger.warning(
                f"Listing models exited with code {result.returncode}: {result.stderr.strip()[:300]}"
            )
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def resolve_model(self) -> str | None:
        """Configured model, else the first listed model (detected once)."""
        if self.config.model:
            return self.config.model
        if not self.config.auto_detect_model:
            return None
        if not self._model_detected:
            models = await asyncio.to_thread(self.list_models)
            self._detected_model = models[0] if models else None
            self._model_detected = True
            if self._detected_model:
                logger.info(f"Auto-detected agent model: {self._detected_model}")
        return self._detected_model

    async def classify_intent(
        self, command: str, model_override: str | None = None
    ) -> IntentClassification:
        """
        Ask the agent whether a message is chat or a task.

        Never raises: timeouts, spawn errors and unparsable replies all
        resolve to ("task", 0.0).
        """
        model = model_override or await self.resolve_model()
        args = self.build_args(_INTENT_PROMPT + command, model)
        timeout = max(_MIN_INTENT_TIMEOUT_S, self.config.intent_timeout_s)
        logger.info(f"Classifying intent with agent (model={model or 'default'})")

        try:
            process = await asyncio.create_subprocess_exec(
                self.config.path,
                *args,
                cwd=self._cwd(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            logger.warning(f"Intent classification spawn failed: {e}")
            return IntentClassification("task", 0.0, str(e))

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Intent classification timed out after {timeout}s")
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            return IntentClassification("task", 0.0, "timeout")

        text = extract_text(stdout.decode("utf-8", errors="replace"))
        parsed = parse_intent_classification(text)
        if parsed is not None:
            return parsed

        err_text = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode:
            logger.warning(
                f"Intent classification exited with code {process.returncode}: {err_text[:300]}"
            )
        else:
            logger.warning(f"Intent classification parse failed: {text[:300]}")
        return IntentClassification("task", 0.0, text or err_text)

    # Lifecycle

    def _cwd(self, working_dir: str | None = None) -> str:
        return working_dir or self.config.working_dir or os.getcwd()

    def _remember(self, task: TaskInfo) -> None:
        self._tasks[task.id] = task
        while len(self._tasks) > self.config.max_task_store:
            self._tasks.popitem(last=False)

    def _emit(self, event: TaskEvent) -> None:
        self.events.put_nowait(event)

    async def _launch(self, task: TaskInfo, working_dir: str | None) -> None:
        """Spawn the process for a task whose slot is already reserved."""
        try:
            if not task.model:
                task.model = await self.resolve_model()
            if task.is_finished:
                self._release_slot()
                return

            args = self.build_args(
                task.prompt or task.command, task.model, task.files, task.agent_session_id
            )
            cwd = self._cwd(working_dir)
            logger.info(f"Starting task {task.id}: {self.config.path} run ... (cwd={cwd})")
            try:
                process = await asyncio.create_subprocess_exec(
                    self.config.path,
                    *args,
                    cwd=cwd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except (OSError, ValueError) as e:
                logger.error(f"Failed to spawn agent for task {task.id}: {e}")
                self._finalize(task, STATUS_FAILED, error=f"Failed to start agent: {e}")
                self._release_slot()
                return
        except asyncio.CancelledError:
            self._release_slot()
            raise

        run = _Run(task=task, process=process)
        self._runs[task.id] = run

        if task.is_finished:
            # Cancelled while spawning.
            self._terminate(run)
        else:
            task.status = STATUS_RUNNING
            task.started_at = datetime.now()
            self._emit(TaskStarted(task=task))
            self._arm_idle(run)
            if self.config.hard_timeout_s > 0:
                run.hard_handle = asyncio.get_running_loop().call_later(
                    self.config.hard_timeout_s, self.cancel_task, task.id, REASON_TIMEOUT
                )
        run.supervisor = asyncio.create_task(self._supervise(run))

    async def _supervise(self, run: _Run) -> None:
        task = run.task
        process = run.process
        try:
            await asyncio.gather(
                self._pump(run, process.stdout, "stdout"),
                self._pump(run, process.stderr, "stderr"),
            )
            code = await process.wait()
            self._flush_stdout(run)
            if code == 0:
                self._finalize(task, STATUS_COMPLETED, exit_code=code)
            else:
                self._finalize(
                    task, STATUS_FAILED, error=f"Process exited with code {code}", exit_code=code
                )
        except asyncio.CancelledError:
            self._kill(run)
            raise
        except Exception as e:
            logger.error(f"Error supervising task {task.id}: {e}")
            self._finalize(task, STATUS_FAILED, error=str(e))
            self._kill(run)
        finally:
            self._disarm(run)
            if run.kill_handle is not None:
                run.kill_handle.cancel()
            self._runs.pop(task.id, None)
            self._release_slot()

    async def _pump(self, run: _Run, stream: asyncio.StreamReader | None, name: str) -> None:
        if stream is None:
            return
        decoder = run.decoders.setdefault(name, codecs.getincrementaldecoder("utf-8")("replace"))
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    self._on_chunk(run, tail, name)
                return
            self._arm_idle(run)
            text = decoder.decode(chunk)
            if text:
                self._on_chunk(run, text, name)

    def _on_chunk(self, run: _Run, text: str, name: str) -> None:
        if name == "stderr":
            self._on_stderr(run, text)
            return
        run.buffer += text
        while "\n" in run.buffer:
            line, run.buffer = run.buffer.split("\n", 1)
            self._on_line(run, line)

    def _flush_stdout(self, run: _Run) -> None:
        remaining, run.buffer = run.buffer, ""
        if remaining.strip():
            self._on_line(run, remaining)

    def _on_line(self, run: _Run, raw: str) -> None:
        task = run.task
        if task.is_finished:
            return
        line = decode_line(raw)
        if line is None:
            return

        if line.session_id and line.session_id != task.agent_session_id:
            task.agent_session_id = line.session_id
            self._emit(TaskSessionUpdated(task=task, agent_session_id=line.session_id))

        if isinstance(line, (TextLine, RawLine)):
            task.append_output(line.text)
            self._emit(TaskProgress(task=task, text=line.text, kind="text"))
            return

        if self.config.progress_status_only:
            status = describe_status(line)
            if status:
                self._emit_status(run, status)

    def _on_stderr(self, run: _Run, text: str) -> None:
        task = run.task
        if task.is_finished or not text.strip():
            return
        task.stderr.append(text)
        self._emit(TaskProgress(task=task, text=text, kind="stderr"))
        if self.config.progress_status_only:
            first = text.strip().splitlines()[0][:80]
            self._emit_status(run, f"⚠️ {first}")

    def _emit_status(self, run: _Run, status: str) -> None:
        if status == run.last_status:
            return
        run.last_status = status
        self._emit(TaskProgress(task=run.task, text=status, kind="status"))

    def _finalize(
        self,
        task: TaskInfo,
        status: str,
        *,
        error: str | None = None,
        exit_code: int | None = None,
        reason: str | None = None,
    ) -> bool:
        """Move a task to a terminal state exactly once and emit its terminal event."""
        if task.is_finished:
            return False
        task.status = status
        task.completed_at = datetime.now()
        task.duration = (task.completed_at - task.created_at).total_seconds()
        if exit_code is not None:
            task.exit_code = exit_code
        run = self._runs.get(task.id)
        if run is not None:
            self._disarm(run)

        if status == STATUS_COMPLETED:
            logger.info(f"Task {task.id} completed in {task.duration:.1f}s")
            self._emit(TaskCompleted(task=task))
        elif status == STATUS_FAILED:
            task.error = error or "Unknown task error"
            logger.warning(f"Task {task.id} failed: {task.error}")
            self._emit(TaskFailed(task=task, error=task.error))
        else:
            task.cancel_reason = reason or REASON_USER
            task.error = f"Cancelled: {task.cancel_reason}"
            self._emit(TaskCancelled(task=task, reason=task.cancel_reason))
        return True

    def _release_slot(self) -> None:
        self._slots_in_use = max(0, self._slots_in_use - 1)
        self._advance_queue()

    def _advance_queue(self) -> None:
        while self._queue and self._slots_in_use < self.config.max_concurrent:
            task, working_dir = self._queue.popleft()
            if task.status != STATUS_PENDING:
                continue
            self._slots_in_use += 1
            launcher = asyncio.create_task(self._launch(task, working_dir))
            self._launchers.add(launcher)
            launcher.add_done_callback(self._launchers.discard)

    # Timers and signals

    def _arm_idle(self, run: _Run) -> None:
        if run.idle_handle is not None:
            run.idle_handle.cancel()
            run.idle_handle = None
        if self.config.idle_timeout_s <= 0 or run.task.is_finished:
            return
        run.idle_handle = asyncio.get_running_loop().call_later(
            self.config.idle_timeout_s, self._on_idle, run.task.id
        )

    def _on_idle(self, task_id: str) -> None:
        logger.warning(
            f"Task {task_id} produced no output for {self.config.idle_timeout_s}s, cancelling"
        )
        self.cancel_task(task_id, REASON_NO_PROGRESS)

    def _disarm(self, run: _Run) -> None:
        for handle in (run.idle_handle, run.hard_handle):
            if handle is not None:
                handle.cancel()
        run.idle_handle = None
        run.hard_handle = None

    def _terminate(self, run: _Run) -> None:
        if run.process.returncode is not None:
            return
        try:
            run.process.terminate()
        except ProcessLookupError:
            return
        if run.kill_handle is None:
            run.kill_handle = asyncio.get_running_loop().call_later(
                self.config.kill_grace_s, self._kill, run
            )

    def _kill(self, run: _Run) -> None:
        if run.process.returncode is not None:
            return
        logger.warning(f"Force killing agent process for task {run.task.id}")
        with contextlib.suppress(ProcessLookupError):
            run.process.kill()
