from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from vibeflow.agents.architect import Architect
from vibeflow.agents.integration import IntegrationPhase
from vibeflow.agents.librarian import Librarian
from vibeflow.agents.reporter import Reporter
from vibeflow.context import RunContext
from vibeflow.detect import detect_domain, detect_mode
from vibeflow.factory import TaskFactory
from vibeflow.merge import MergeCoordinator, MergeRecord
from vibeflow.models import SessionState
from vibeflow.plan import TaskPlanItem, load_plan
from vibeflow.repo.git import SCRATCH_EXCLUDES

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionResult:
    state: SessionState
    merges: list[MergeRecord] = field(default_factory=list)
    report_path: Path | None = None


async def prepare_repository(ctx: RunContext) -> SessionState:
    """Detect mode and domain, then put the repository on the integration branch."""

    config = ctx.config
    mode = detect_mode(ctx.root, config.paths.index_file)
    domain = detect_domain(ctx.root)
    logger.info("Mode: %s | Domain: %s", mode, domain)
    if mode == "SCRATCH":
        await ctx.repo.init()
    await ctx.repo.ensure_initial_commit()
    await ctx.repo.ensure_branch(config.workflow.integration_branch)
    await ctx.repo.exclude_patterns(
        [*SCRATCH_EXCLUDES, f"{config.paths.log_dir}/", f"{config.paths.worktree_dir}/"]
    )
    start_commit = await ctx.repo.head()
    return SessionState(mode=mode, domain=domain, start_commit=start_commit)


async def run_session(
    ctx: RunContext,
    requirements: str,
    *,
    plan_file: Path | None = None,
) -> SessionResult:
    """Run the whole workflow: index, plan, build, merge, integrate, report.

    Per-task failures end up in the report; merge and integration failures propagate.
    """

    session = await prepare_repository(ctx)
    librarian = Librarian(ctx)
    await librarian.refresh(session)

    plan: list[TaskPlanItem]
    if plan_file is not None:
        plan = load_plan(plan_file)
        logger.info("Loaded %d tasks from %s", len(plan), plan_file)
    else:
        plan = await Architect(ctx).plan(requirements, session)

    try:
        tasks = await TaskFactory(ctx).run_all(plan, session)
        merges = await MergeCoordinator(ctx).merge_all(tasks)
        await IntegrationPhase(ctx).run(session)
    finally:
        # session.tasks is set before the first worktree is created.
        for task in session.tasks:
            await ctx.worktrees.remove_worktree(task.id)

    await librarian.refresh(session, force=True)
    report_path = await Reporter(ctx).run(session, merges)
    return SessionResult(state=session, merges=merges, report_path=report_path)
