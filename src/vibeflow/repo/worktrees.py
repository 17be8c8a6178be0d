from __future__ import annotations

import asyncio
import logging
import shutil
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from vibeflow.backends.base import EventHook, VibeFlowError
from vibeflow.repo.git import GitRepository

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "vibe-task"


class WorktreeError(VibeFlowError):
    def __init__(self, message: str) -> None:
        super().__init__(message, retriable=False)


@dataclass(slots=True, frozen=True)
class WorktreeInfo:
    task_id: str
    branch_name: str
    worktree_path: str
    started_at: float
    finished_at: float


class WorktreeManager:
    """Creates one branch-bound git worktree per task.

    Creation is strictly serial: concurrent ``git worktree add`` calls against one
    repository contend on the same lock files. An internal lock keeps that true even if
    several coroutines call in at once.
    """

    def __init__(
        self,
        repo: GitRepository,
        base_dir: str | Path = ".vibe_worktrees",
        *,
        clock: Callable[[], float] = time.time,
        event_hook: EventHook | None = None,
    ) -> None:
        self.repo = repo
        base = Path(base_dir)
        self.base_dir = base if base.is_absolute() else repo.root / base
        self.clock = clock
        self.event_hook = event_hook
        self._lock = asyncio.Lock()

    def _emit(self, payload: dict) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def worktree_path(self, task_id: str) -> Path:
        """Directory for ``task_id``; always a direct child of the worktree base."""

        base = self.base_dir.resolve()
        if not task_id or (base / task_id).resolve().parent != base:
            raise WorktreeError(f"Task id {task_id!r} does not name a directory inside {base}")
        return self.base_dir / task_id

    async def _unique_branch(self, task_id: str) -> str:
        stamp = int(self.clock() * 1000)
        branch = f"{BRANCH_PREFIX}_{task_id}_{stamp}"
        while await self.repo.branch_exists(branch):
            stamp += 1
            branch = f"{BRANCH_PREFIX}_{task_id}_{stamp}"
        return branch

    async def _discard_stale(self, path: Path) -> None:
        if not path.exists():
            return
        logger.info("Removing stale worktree %s", path)
        await self.repo._run_git(["worktree", "remove", "--force", str(path)], check=False)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        await self.repo._run_git(["worktree", "prune"], check=False)

    async def create_worktree(self, task_id: str) -> WorktreeInfo:
        async with self._lock:
            started = self.clock()
            path = self.worktree_path(task_id)
            self.base_dir.mkdir(parents=True, exist_ok=True)
            await self._discard_stale(path)

            branch = await self._unique_branch(task_id)
            result = await self.repo._run_git(
                ["worktree", "add", "-b", branch, str(path)], check=False
            )
            if not result.ok:
                raise WorktreeError(f"Failed to create worktree for {task_id}: {result.describe()}")
            if not path.is_dir():
                raise WorktreeError(f"Worktree directory was not created: {path}")

            info = WorktreeInfo(
                task_id=task_id,
                branch_name=branch,
                worktree_path=str(path.resolve()),
                started_at=started,
                finished_at=self.clock(),
            )
            logger.info("Created worktree %s on %s", info.worktree_path, branch)
            self._emit(
                {
                    "event": "worktree_created",
                    "task_id": task_id,
                    "branch": branch,
                    "path": info.worktree_path,
                }
            )
            return info

    async def create_all_serially(self, task_ids: Iterable[str]) -> list[WorktreeInfo]:
        created: list[WorktreeInfo] = []
        for task_id in task_ids:
            created.append(await self.create_worktree(task_id))
        return created

    async def remove_worktree(self, task_id: str) -> bool:
        """Best effort: failures are logged, never raised."""

        try:
            path = self.worktree_path(task_id)
        except WorktreeError as exc:
            logger.warning("Not removing worktree: %s", exc)
            return False
        if not path.exists():
            return True
        try:
            result = await self.repo._run_git(
                ["worktree", "remove", "--force", str(path)], check=False
            )
        except Exception as exc:
            logger.warning("Failed to remove worktree %s: %s", path, exc)
            return False
        if not result.ok:
            logger.warning("Failed to remove worktree %s: %s", path, result.describe())
            return False
        return True

    async def cleanup_all(self) -> int:
        """Remove every directory under the worktree base, tracked by a task or not."""

        if not self.base_dir.exists():
            return 0
        removed = 0
        for entry in sorted(self.base_dir.iterdir()):
            if not entry.is_dir():
                continue
            if await self.remove_worktree(entry.name):
                removed += 1
            elif entry.exists():
                shutil.rmtree(entry, ignore_errors=True)
                removed += 1
        await self.repo._run_git(["worktree", "prune"], check=False)
        return removed
