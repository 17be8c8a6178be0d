from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from vibeflow.backends.base import AgentRequest, VibeFlowError
from vibeflow.context import RunContext
from vibeflow.models import SessionState, Task
from vibeflow.prompts import cto_prompt, readme_prompt, report_prompt

if TYPE_CHECKING:
    from vibeflow.merge import MergeRecord

logger = logging.getLogger(__name__)


def _duration(task: Task) -> str:
    elapsed = task.elapsed_seconds()
    if elapsed is None:
        return "-"
    minutes, seconds = divmod(int(elapsed), 60)
    return f"{minutes}m {seconds:02d}s" if minutes else f"{seconds}s"


def render_task_table(tasks: list[Task]) -> str:
    lines = [
        "| # | Task | ID | Status | Heal attempts | Duration | Branch |",
        "|---|------|----|--------|---------------|----------|--------|",
    ]
    for number, task in enumerate(tasks, start=1):
        lines.append(
            f"| {number} | {task.name} | `{task.id}` | {task.status} | {task.attempts} "
            f"| {_duration(task)} | `{task.branch_name or '-'}` |"
        )
    return "\n".join(lines)


def render_session_report(
    session: SessionState,
    *,
    merges: list[MergeRecord] | None = None,
    narrative: str | None = None,
    generated_at: datetime | None = None,
) -> str:
    stamp = (generated_at or datetime.now(UTC)).replace(microsecond=0).isoformat()
    counts = session.counts()
    sections = [
        "# Vibe Flow Session Report",
        "",
        f"- Generated: {stamp}",
        f"- Mode: {session.mode}",
        f"- Domain: {session.domain}",
        f"- Start commit: `{session.start_commit[:12]}`",
        f"- Tasks: {len(session.tasks)} (succeeded {counts['SUCCEEDED']}, "
        f"healed {counts['HEALED']}, failed {counts['FAILED']})",
        "",
        "## Tasks",
        "",
        render_task_table(session.tasks),
    ]
    failed = [task for task in session.tasks if task.status == "FAILED"]
    if failed:
        sections += ["", "## Failures", ""]
        sections += [f"- `{task.id}`: {task.failure_reason or 'unknown'}" for task in failed]
    if merges:
        sections += ["", "## Merges", ""]
        sections += [f"- `{record.branch}`: {record.outcome}" for record in merges]
    if narrative:
        sections += ["", "## Summary", "", narrative.strip()]
    return "\n".join(sections) + "\n"


class Reporter:
    """Writes the session report, the architectural review and the README update.

    Agent-written parts are optional: if the agent fails, the deterministic parts are
    still written and the failure is logged.
    """

    def __init__(self, ctx: RunContext) -> None:
        self.ctx = ctx

    async def _ask(self, task_id: str, prompt: str) -> str | None:
        try:
            return await self.ctx.direct.run(
                AgentRequest(
                    task_id=task_id, prompt=prompt, cwd=str(self.ctx.root), needs_output=True
                )
            )
        except VibeFlowError as exc:
            self.ctx.phase_logger("report").warning("%s agent failed: %s", task_id, exc)
            return None

    async def session_report(
        self, session: SessionState, merges: list[MergeRecord] | None = None
    ) -> Path:
        git_log = await self.ctx.repo.log_oneline(f"{session.start_commit}..HEAD")
        narrative = await self._ask("report", report_prompt(session, git_log=git_log))
        path = self.ctx.path(self.ctx.config.paths.report_file)
        path.write_text(
            render_session_report(session, merges=merges, narrative=narrative), encoding="utf-8"
        )
        self.ctx.phase_logger("report").info("Session report written to %s", path)
        return path

    async def cto_review(self, session: SessionState) -> Path | None:
        revision_range = f"{session.start_commit}..HEAD"
        review = await self._ask(
            "cto",
            cto_prompt(
                commit_log=await self.ctx.repo.log_oneline(revision_range),
                diff_stat=await self.ctx.repo.diff_stat(revision_range),
            ),
        )
        if not review:
            return None
        path = self.ctx.path(self.ctx.config.paths.cto_report_file)
        path.write_text(review.strip() + "\n", encoding="utf-8")
        self.ctx.phase_logger("report").info("CTO review written to %s", path)
        return path

    async def update_readme(self, session: SessionState) -> bool:
        return await self._ask("readme", readme_prompt(session)) is not None

    async def run(self, session: SessionState, merges: list[MergeRecord] | None = None) -> Path:
        path = await self.session_report(session, merges)
        await self.update_readme(session)
        await self.cto_review(session)
        return path
