from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from vibeflow.agents.mediator import Mediator
from vibeflow.backends.base import VibeFlowError
from vibeflow.context import RunContext
from vibeflow.models import Task

logger = logging.getLogger(__name__)

MergeOutcome = Literal["merged", "mediated", "skipped"]


class MergeConflictError(VibeFlowError):
    """A branch could not be merged into the integration branch."""

    def __init__(self, message: str, *, branch: str) -> None:
        super().__init__(message, retriable=False)
        self.branch = branch


@dataclass(slots=True, frozen=True)
class MergeRecord:
    task_id: str
    branch: str
    outcome: MergeOutcome
    commit: str | None = None


class MergeCoordinator:
    """Merges finished task branches one by one, in task order.

    The integration branch has no other writer during this phase. An unresolved conflict
    stops the phase and leaves the repository as it is for manual inspection.
    """

    def __init__(self, ctx: RunContext, mediator: Mediator | None = None) -> None:
        self.ctx = ctx
        self.mediator = mediator or Mediator(ctx)

    async def merge_all(self, tasks: Sequence[Task]) -> list[MergeRecord]:
        repo = self.ctx.repo
        merge_log = self.ctx.phase_logger("merge")
        candidates = [task for task in tasks if task.is_mergeable]
        merge_log.info("Integrating %d branches", len(candidates))
        records: list[MergeRecord] = []

        for task in candidates:
            branch = task.branch_name
            if not branch or not await repo.branch_exists(branch):
                merge_log.warning("Branch %r for %s not found; skipping", branch, task.id)
                records.append(MergeRecord(task.id, branch, "skipped"))
                continue

            self.ctx.emit({"event": "merge_started", "task_id": task.id, "branch": branch})
            pre_merge_head = await repo.head()
            result = await repo.merge(branch)
            if result.ok:
                merge_log.info("Merged %s", branch)
                records.append(MergeRecord(task.id, branch, "merged", await repo.current_hash()))
                continue

            if not await repo.conflicted_files() and not await repo.merge_in_progress():
                raise MergeConflictError(
                    f"git merge {branch} failed: {result.describe()}", branch=branch
                )

            outcome = await self.mediator.resolve(branch, pre_merge_head)
            if not outcome.resolved:
                merge_log.error(
                    "Could not resolve conflicts in %s. Manual intervention required.", branch
                )
                raise MergeConflictError(
                    f"Merge conflict in {branch} could not be resolved: {outcome.reason}",
                    branch=branch,
                )
            records.append(MergeRecord(task.id, branch, "mediated", outcome.commit))

        return records
