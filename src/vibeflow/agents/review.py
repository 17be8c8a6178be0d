from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from vibeflow.backends.base import AgentRequest, VibeFlowError
from vibeflow.backends.process import run_shell
from vibeflow.context import RunContext
from vibeflow.detect import test_command_for
from vibeflow.logs import append_log
from vibeflow.models import ExecResult, SessionState, Task
from vibeflow.plan import extract_json_object
from vibeflow.prompts import review_prompt, truncate
from vibeflow.repo.git import GitRepository

logger = logging.getLogger(__name__)

_OUTPUT_TAIL = 4000


class ReviewFailedError(VibeFlowError):
    """A task attempt was rejected by the review gate."""


class ReviewReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Literal["PASS", "FAIL"]
    message: str = ""
    test_command: str | None = Field(default=None, alias="testCommand")


@dataclass(slots=True, frozen=True)
class ReviewVerdict:
    passed: bool
    message: str
    test_command: str | None = None
    test_result: ExecResult | None = None

    def feedback(self, task: Task) -> str:
        lines = [
            f"# Review report for {task.name} ({task.id})",
            "",
            f"**Verdict:** {'PASS' if self.passed else 'FAIL'}",
            "",
            "## Findings",
            self.message or "No message was given.",
        ]
        if self.test_command:
            lines += ["", "## Test command", f"`{self.test_command}`"]
        if self.test_result is not None:
            lines += ["", f"Exit code: {self.test_result.exit_code}"]
            output = (self.test_result.stdout + "\n" + self.test_result.stderr).strip()
            if output:
                lines += ["", "```", output[-_OUTPUT_TAIL:], "```"]
        return "\n".join(lines) + "\n"


def parse_review_report(text: str | None) -> ReviewReport:
    if not text:
        raise ValueError("Review agent returned no output")
    try:
        return ReviewReport.model_validate(extract_json_object(text))
    except ValidationError as exc:
        raise ValueError(f"Malformed review result: {exc.errors()}") from exc


class ReviewGate:
    """Second agent pass over a task's latest commit, backed by a real test run."""

    def __init__(self, ctx: RunContext) -> None:
        self.ctx = ctx

    def feedback_path(self, task: Task) -> Path:
        return self.ctx.log_dir / f"review_report_{task.id}.md"

    async def _run_agent(self, task: Task, prompt: str) -> ReviewReport:
        request = AgentRequest(
            task_id=f"review-{task.id}",
            prompt=prompt,
            cwd=task.worktree_path,
            needs_output=True,
            output_format="json",
            checkpoint=self.ctx.control.checkpoint_for(task.id),
        )
        output = await self.ctx.backend.run(request)
        return parse_review_report(output)

    async def evaluate(self, task: Task, session: SessionState) -> ReviewVerdict:
        repo = GitRepository(task.worktree_path, executor=self.ctx.repo.executor)
        limit = self.ctx.config.max_context_chars
        prompt = review_prompt(
            task,
            domain=session.domain,
            diff_stat=await repo.diff("--stat", "HEAD~1", "HEAD"),
            diff=truncate(await repo.last_commit_diff(), limit),
            default_test_command=test_command_for(session.domain),
        )
        try:
            report = await self._run_agent(task, prompt)
        except VibeFlowError as exc:
            if not exc.retriable:
                raise
            return ReviewVerdict(passed=False, message=f"Review agent failed: {exc}")
        except ValueError as exc:
            return ReviewVerdict(passed=False, message=str(exc))

        if report.status != "PASS":
            return ReviewVerdict(
                passed=False, message=report.message, test_command=report.test_command
            )
        command = (report.test_command or "").strip()
        if not command:
            return ReviewVerdict(
                passed=False,
                message=f"{report.message}\n\nThe review reported PASS without a test command.",
            )

        result = await run_shell(
            command,
            cwd=task.worktree_path,
            timeout=self.ctx.config.workflow.review_test_timeout_seconds,
            executor=self.ctx.executor,
        )
        if not result.ok:
            return ReviewVerdict(
                passed=False,
                message=f"{report.message}\n\nThe test command failed ({result.describe()[:200]}).",
                test_command=command,
                test_result=result,
            )
        return ReviewVerdict(
            passed=True, message=report.message, test_command=command, test_result=result
        )

    async def review(self, task: Task, session: SessionState) -> ReviewVerdict:
        """Review the task's latest commit and persist feedback when it fails."""

        task_log = self.ctx.phase_logger(task.id)
        task_log.info("Review started for %s", task.name)
        verdict = await self.evaluate(task, session)
        append_log(
            self.ctx.log_dir / f"review_{task.id}.log",
            json.dumps(
                {
                    "passed": verdict.passed,
                    "message": verdict.message,
                    "test_command": verdict.test_command,
                    "exit_code": verdict.test_result.exit_code if verdict.test_result else None,
                }
            ),
        )
        if verdict.passed:
            task_log.info("Review passed: %s", verdict.message)
        else:
            path = self.feedback_path(task)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(verdict.feedback(task), encoding="utf-8")
            task_log.warning("Review failed: %s (feedback in %s)", verdict.message, path)
        return verdict
