from __future__ import annotations

import asyncio
import logging
import sys
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, TextIO

from vibeflow.backends.base import EventHook, TaskKilledError
from vibeflow.logs import tail_lines
from vibeflow.models import TERMINAL_STATUSES, Task

logger = logging.getLogger(__name__)

ControlAction = Literal["pause", "resume", "kill"]

HELP_TEXT = """\
Commands:
  status      show every task and its state
  logs <n>    show the last lines of task n's log
  pause       hold tasks at their next checkpoint
  resume      let paused tasks continue
  kill <n>    fail task n at its next checkpoint
  help        show this help"""


@dataclass(slots=True, frozen=True)
class ControlMessage:
    action: ControlAction
    task_id: str | None = None


class ControlChannel:
    """Commands from the operator, applied by each task at its checkpoints.

    Publishers never touch task state directly. A task observes pending messages when it
    calls ``checkpoint`` between steps and while its agent session is polled.
    """

    def __init__(
        self,
        *,
        poll_interval_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.poll_interval_seconds = poll_interval_seconds
        self.sleep = sleep
        self._queue: asyncio.Queue[ControlMessage] = asyncio.Queue()
        self._paused = False
        self._killed: set[str] = set()

    @property
    def paused(self) -> bool:
        self._apply_pending()
        return self._paused

    def publish(self, message: ControlMessage) -> None:
        self._queue.put_nowait(message)

    def pause(self) -> None:
        self.publish(ControlMessage("pause"))

    def resume(self) -> None:
        self.publish(ControlMessage("resume"))

    def kill(self, task_id: str) -> None:
        self.publish(ControlMessage("kill", task_id))

    def is_killed(self, task_id: str) -> bool:
        self._apply_pending()
        return task_id in self._killed

    def _apply_pending(self) -> None:
        while True:
            try:
                message = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            if message.action == "pause":
                self._paused = True
            elif message.action == "resume":
                self._paused = False
            elif message.action == "kill" and message.task_id:
                self._killed.add(message.task_id)
            logger.debug("Applied control message %s", message)

    async def checkpoint(self, task_id: str) -> None:
        self._apply_pending()
        while True:
            if task_id in self._killed:
                raise TaskKilledError(task_id)
            if not self._paused:
                return
            await self.sleep(self.poll_interval_seconds)
            self._apply_pending()

    def checkpoint_for(self, task_id: str) -> Callable[[], Awaitable[None]]:
        async def _checkpoint() -> None:
            await self.checkpoint(task_id)

        return _checkpoint


@dataclass(slots=True)
class ProgressMonitor:
    """Tracks task status transitions and the peak number of running tasks."""

    clock: Callable[[], float] = time.time
    event_hook: EventHook | None = None
    tasks: list[Task] = field(default_factory=list)
    peak_running: int = 0
    started_at: float | None = None

    def start(self, tasks: list[Task]) -> None:
        self.tasks = list(tasks)
        self.peak_running = 0
        self.started_at = self.clock()

    @property
    def running(self) -> int:
        return sum(1 for task in self.tasks if task.status == "RUNNING")

    def update(self, task: Task) -> None:
        running = self.running
        self.peak_running = max(self.peak_running, running)
        logger.info("[%s] %s -> %s (running: %d)", task.id, task.name, task.status, running)
        if self.event_hook is not None:
            self.event_hook(
                {
                    "event": "task_status",
                    "task_id": task.id,
                    "status": task.status,
                    "attempts": task.attempts,
                    "running": running,
                }
            )

    def summary(self) -> dict[str, int]:
        counts = {"total": len(self.tasks), "pending": 0, "running": 0, "completed": 0, "failed": 0}
        for task in self.tasks:
            if task.status == "PENDING":
                counts["pending"] += 1
            elif task.status == "RUNNING":
                counts["running"] += 1
            elif task.status == "FAILED":
                counts["failed"] += 1
            elif task.status in TERMINAL_STATUSES:
                counts["completed"] += 1
        return counts

    def render(self) -> list[str]:
        now = self.clock()
        lines = []
        for number, task in enumerate(self.tasks, start=1):
            elapsed = task.elapsed_seconds(now)
            clock = f"{elapsed:6.0f}s" if elapsed is not None else "      -"
            lines.append(
                f"{number:>2}. {task.status:<9} {clock}  attempts={task.attempts}  {task.name} ({task.id})"
            )
        counts = self.summary()
        lines.append(
            "Total {total} | pending {pending} | running {running} | "
            "completed {completed} | failed {failed}".format(**counts)
        )
        return lines


class DebugConsole:
    """Line-based operator console that publishes control messages."""

    def __init__(
        self,
        monitor: ProgressMonitor,
        control: ControlChannel,
        *,
        log_dir: Path,
        output: TextIO | None = None,
    ) -> None:
        self.monitor = monitor
        self.control = control
        self.log_dir = log_dir
        self.output = output or sys.stdout
        self._attached_to: TextIO | None = None

    def _resolve_task(self, token: str) -> Task | None:
        tasks = self.monitor.tasks
        if token.isdigit():
            index = int(token) - 1
            return tasks[index] if 0 <= index < len(tasks) else None
        for task in tasks:
            if task.id == token:
                return task
        return None

    def handle(self, line: str) -> str:
        parts = line.strip().split()
        if not parts:
            return ""
        command, args = parts[0].lower(), parts[1:]
        if command == "status":
            return "\n".join(self.monitor.render())
        if command == "help":
            return HELP_TEXT
        if command == "pause":
            self.control.pause()
            return "Pausing tasks at their next checkpoint."
        if command == "resume":
            self.control.resume()
            return "Resuming tasks."
        if command in {"logs", "kill"}:
            if not args:
                return f"Usage: {command} <task number>"
            task = self._resolve_task(args[0])
            if task is None:
                return f"No task {args[0]!r}."
            if command == "kill":
                self.control.kill(task.id)
                return f"Task {task.id} will be failed at its next checkpoint."
            path = Path(task.log_path) if task.log_path else self.log_dir / f"{task.id}.log"
            lines = tail_lines(path, 20)
            return "\n".join(lines) if lines else f"No log output yet for {task.id}."
        return f"Unknown command {command!r}. Type 'help'."

    def _on_readable(self) -> None:
        if self._attached_to is None:
            return
        line = self._attached_to.readline()
        if not line:
            self.detach()
            return
        reply = self.handle(line)
        if reply:
            self.output.write(reply + "\n")
            self.output.flush()

    def attach(self, stream: TextIO | None = None) -> None:
        source = stream or sys.stdin
        loop = asyncio.get_running_loop()
        loop.add_reader(source.fileno(), self._on_readable)
        self._attached_to = source
        self.output.write("Debug console ready. Type 'help' for commands.\n")
        self.output.flush()

    def detach(self) -> None:
        if self._attached_to is None:
            return
        try:
            asyncio.get_running_loop().remove_reader(self._attached_to.fileno())
        except (RuntimeError, ValueError):
            pass
        self._attached_to = None
