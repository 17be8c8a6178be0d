from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

Mode = Literal["SCRATCH", "INIT_INDEX", "MAINTAIN"]
Domain = Literal["HARDWARE", "AI_ROBOT", "WEB", "PYTHON_GENERIC", "GENERIC"]
TaskStatus = Literal["PENDING", "RUNNING", "SUCCEEDED", "FAILED", "HEALED"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"SUCCEEDED", "FAILED", "HEALED"})
MERGEABLE_STATUSES: frozenset[str] = frozenset({"SUCCEEDED", "HEALED"})


@dataclass(slots=True, frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int | None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def describe(self) -> str:
        detail = self.stderr.strip() or self.stdout.strip()
        return f"exit code {self.exit_code}: {detail}" if detail else f"exit code {self.exit_code}"


@dataclass(slots=True)
class Task:
    id: str
    name: str
    description: str
    branch_name: str = ""
    worktree_path: str = ""
    status: TaskStatus = "PENDING"
    attempts: int = 0
    log_path: str = ""
    start_time: float | None = None
    end_time: float | None = None
    failure_reason: str | None = None

    @classmethod
    def from_plan(cls, item: Any, log_dir: Path) -> Task:
        return cls(
            id=item.id,
            name=item.name,
            description=item.desc,
            log_path=str(log_dir / f"{item.id}.log"),
        )

    @property
    def commit_marker(self) -> str:
        return f"Agent: {self.name}"

    @property
    def is_mergeable(self) -> bool:
        return self.status in MERGEABLE_STATUSES

    def mark_running(self) -> None:
        self.status = "RUNNING"
        if self.start_time is None:
            self.start_time = time.time()

    def mark_finished(self, status: TaskStatus, reason: str | None = None) -> None:
        self.status = status
        self.failure_reason = reason
        self.end_time = time.time()

    def elapsed_seconds(self, now: float | None = None) -> float | None:
        if self.start_time is None:
            return None
        end = self.end_time if self.end_time is not None else (now or time.time())
        return max(0.0, end - self.start_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "branch_name": self.branch_name,
            "worktree_path": self.worktree_path,
            "status": self.status,
            "attempts": self.attempts,
            "log_path": self.log_path,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "failure_reason": self.failure_reason,
        }


@dataclass(slots=True)
class SessionState:
    mode: Mode
    domain: Domain
    start_commit: str
    tasks: list[Task] = field(default_factory=list)

    def task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def counts(self) -> dict[str, int]:
        counts = {"PENDING": 0, "RUNNING": 0, "SUCCEEDED": 0, "FAILED": 0, "HEALED": 0}
        for task in self.tasks:
            counts[task.status] = counts.get(task.status, 0) + 1
        return counts
