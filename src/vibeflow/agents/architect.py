from __future__ import annotations

import logging

from vibeflow.backends.base import AgentRequest
from vibeflow.backends.retry import with_retry
from vibeflow.context import RunContext
from vibeflow.models import SessionState
from vibeflow.plan import PlanValidationError, TaskPlanItem, extract_task_plan, save_plan
from vibeflow.prompts import architect_prompt, architect_retry_prompt, truncate

logger = logging.getLogger(__name__)

PLAN_ATTEMPTS = 3


class Architect:
    """Turns requirements into a validated task plan, re-prompting on bad output."""

    def __init__(self, ctx: RunContext) -> None:
        self.ctx = ctx

    async def plan(self, requirements: str, session: SessionState) -> list[TaskPlanItem]:
        ctx = self.ctx
        phase_log = ctx.phase_logger("architect")
        index_path = ctx.path(ctx.config.paths.index_file)
        index_text = (
            index_path.read_text(encoding="utf-8", errors="replace") if index_path.exists() else ""
        )
        base_prompt = architect_prompt(
            domain=session.domain,
            index_text=truncate(index_text, ctx.config.max_context_chars),
            requirements=requirements,
            max_parallel=ctx.config.max_parallel_agents,
        )
        last_error = ""

        async def _attempt() -> list[TaskPlanItem]:
            nonlocal last_error
            prompt = (
                base_prompt
                if not last_error
                else architect_retry_prompt(error=last_error, original=base_prompt)
            )
            output = await ctx.direct.run(
                AgentRequest(
                    task_id="architect", prompt=prompt, cwd=str(ctx.root), needs_output=True
                )
            )
            try:
                return extract_task_plan(output or "")
            except PlanValidationError as exc:
                last_error = str(exc)
                phase_log.warning("Plan rejected: %s", last_error.splitlines()[0])
                raise

        phase_log.info("Requesting task plan")
        plan = await with_retry(
            _attempt,
            ctx.retry_policy(PLAN_ATTEMPTS),
            name="architect",
            event_hook=ctx.event_hook,
            sleep=ctx.sleep,
        )
        plan_path = ctx.path(ctx.config.paths.plan_file)
        save_plan(plan_path, plan)
        phase_log.info("Plan generated: %d tasks written to %s", len(plan), plan_path)
        return plan
