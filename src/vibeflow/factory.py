from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from vibeflow.agents.review import ReviewFailedError, ReviewGate
from vibeflow.backends.base import AgentComplianceError, AgentRequest, VibeFlowError
from vibeflow.backends.retry import with_retry
from vibeflow.context import RunContext
from vibeflow.models import SessionState, Task
from vibeflow.plan import TaskPlanItem
from vibeflow.prompts import heal_prompt, task_prompt, truncate
from vibeflow.repo.git import GitRepository

logger = logging.getLogger(__name__)


class TaskFactory:
    """Runs every planned task in its own worktree with bounded concurrency.

    Worktrees are created one at a time before any task starts. Each task then runs the
    build, commit check, review and heal loop on its own; a failed task never stops the
    others.
    """

    def __init__(self, ctx: RunContext, review_gate: ReviewGate | None = None) -> None:
        self.ctx = ctx
        self.review_gate = review_gate or ReviewGate(ctx)

    def _index_text(self) -> str:
        path = self.ctx.path(self.ctx.config.paths.index_file)
        if not path.exists():
            return ""
        text = path.read_text(encoding="utf-8", errors="replace")
        return truncate(text, self.ctx.config.max_context_chars)

    async def prepare(self, plan: Sequence[TaskPlanItem], session: SessionState) -> list[Task]:
        tasks = [Task.from_plan(item, self.ctx.log_dir) for item in plan]
        session.tasks = tasks
        logger.info("Creating %d worktrees (serially)", len(tasks))
        created = await self.ctx.worktrees.create_all_serially([task.id for task in tasks])
        for task, info in zip(tasks, created, strict=True):
            task.branch_name = info.branch_name
            task.worktree_path = info.worktree_path
        return tasks

    async def run_all(self, plan: Sequence[TaskPlanItem], session: SessionState) -> list[Task]:
        tasks = await self.prepare(plan, session)
        limit = self.ctx.config.max_parallel_agents
        semaphore = asyncio.Semaphore(limit)
        self.ctx.monitor.start(tasks)
        logger.info("Launching %d tasks (max parallel: %d)", len(tasks), limit)

        async def _guarded(task: Task) -> None:
            async with semaphore:
                await self.run_task(task, session)

        await asyncio.gather(*(_guarded(task) for task in tasks))
        done = sum(1 for task in tasks if task.is_mergeable)
        logger.info("All tasks finished. Succeeded: %d/%d", done, len(tasks))
        return tasks

    async def run_task(self, task: Task, session: SessionState) -> None:
        """Drive one task to a terminal status. Only cancellation propagates."""

        ctx = self.ctx
        task_log = ctx.phase_logger(task.id)
        repo = GitRepository(task.worktree_path, executor=ctx.repo.executor)
        checkpoint = ctx.control.checkpoint_for(task.id)
        index_text = self._index_text()
        feedback = ""

        task.mark_running()
        ctx.monitor.update(task)
        task_log.info(
            "Agent working on %s in %s (branch %s)", task.name, task.worktree_path, task.branch_name
        )

        def _failed_attempt(reason: str) -> None:
            nonlocal feedback
            feedback = reason
            task.attempts += 1
            summary = reason.splitlines()[0] if reason else ""
            task_log.warning("Attempt %d failed: %s", task.attempts, summary)

        async def _attempt() -> None:
            nonlocal feedback
            await checkpoint()
            if task.attempts > 0 and ctx.config.workflow.reset_before_heal:
                await repo.reset_hard()
                await repo.clean()
            before = await repo.current_hash()
            if task.attempts == 0:
                prompt = task_prompt(task, domain=session.domain, index_text=index_text)
            else:
                prompt = heal_prompt(
                    task, previous_commit=await repo.last_commit_summary(), feedback=feedback
                )

            try:
                await ctx.backend.run(
                    AgentRequest(
                        task_id=task.id,
                        prompt=prompt,
                        cwd=task.worktree_path,
                        checkpoint=checkpoint,
                    )
                )
            except VibeFlowError as exc:
                if not exc.retriable:
                    raise
                _failed_attempt(f"The agent run failed: {exc}")
                raise
            task_log.info("Agent turn finished (attempt %d)", task.attempts + 1)

            after = await repo.current_hash()
            subject = await repo.last_commit_subject()
            if after is None or after == before or task.commit_marker not in subject:
                reason = (
                    f"No new commit containing '{task.commit_marker}' was found. "
                    "Commit your work with the exact message requested."
                )
                _failed_attempt(reason)
                raise AgentComplianceError(reason)

            await checkpoint()
            verdict = await self.review_gate.review(task, session)
            if not verdict.passed:
                path = self.review_gate.feedback_path(task)
                _failed_attempt(
                    path.read_text(encoding="utf-8")
                    if path.exists()
                    else "Review failed but no feedback file was found."
                )
                raise ReviewFailedError(f"Review failed for {task.id}: {verdict.message}")

            task.mark_finished("HEALED" if task.attempts > 0 else "SUCCEEDED")

        try:
            await with_retry(
                _attempt,
                ctx.retry_policy(),
                name=f"task {task.id}",
                event_hook=ctx.event_hook,
                sleep=ctx.sleep,
            )
        except asyncio.CancelledError:
            task.mark_finished("FAILED", "cancelled")
            ctx.monitor.update(task)
            raise
        except Exception as exc:
            task.mark_finished("FAILED", str(exc))
            task_log.error("Task %s failed after %d attempts: %s", task.name, task.attempts, exc)
        else:
            task_log.info("Task %s finished as %s", task.name, task.status)
        ctx.monitor.update(task)
