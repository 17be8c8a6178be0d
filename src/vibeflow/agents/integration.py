from __future__ import annotations

import logging
from pathlib import Path

from vibeflow.backends.base import AgentRequest, VibeFlowError
from vibeflow.backends.process import run_shell
from vibeflow.context import RunContext
from vibeflow.detect import test_command_for
from vibeflow.logs import append_log, tail_lines
from vibeflow.models import ExecResult, SessionState
from vibeflow.prompts import integration_heal_prompt

logger = logging.getLogger(__name__)

ERROR_LOG_LINES = 100


class IntegrationError(VibeFlowError):
    def __init__(self, message: str) -> None:
        super().__init__(message, retriable=False)


class IntegrationPhase:
    """Runs the project-wide tests after merging and lets an agent repair failures."""

    def __init__(self, ctx: RunContext) -> None:
        self.ctx = ctx

    @property
    def log_path(self) -> Path:
        return self.ctx.log_dir / "integration_system.log"

    async def _run_tests(self, command: str) -> ExecResult:
        result = await run_shell(
            command,
            cwd=self.ctx.root,
            timeout=self.ctx.config.workflow.review_test_timeout_seconds,
            executor=self.ctx.executor,
        )
        append_log(self.log_path, f"$ {command} (exit code {result.exit_code})")
        if result.stdout.strip():
            append_log(self.log_path, result.stdout)
        if result.stderr.strip():
            append_log(self.log_path, result.stderr)
        return result

    async def run(self, session: SessionState) -> None:
        ctx = self.ctx
        phase_log = ctx.phase_logger("integration")
        command = test_command_for(session.domain)
        phase_log.info("Running global test suite: %s", command)
        append_log(self.log_path, ">>> Starting integration phase")
        result = await self._run_tests(command)
        if result.ok:
            phase_log.info("Integration tests passed")
            return

        attempts = ctx.config.workflow.integration_heal_attempts
        phase_log.error("Integration tests failed; starting system healer (%d attempts)", attempts)
        for attempt in range(1, attempts + 1):
            append_log(self.log_path, f">>> System healer attempt {attempt}")
            error_log = "\n".join(tail_lines(self.log_path, ERROR_LOG_LINES))
            try:
                output = await ctx.direct.run(
                    AgentRequest(
                        task_id="integration",
                        prompt=integration_heal_prompt(test_command=command, error_log=error_log),
                        cwd=str(ctx.root),
                        needs_output=True,
                    )
                )
                if output:
                    append_log(self.log_path, output)
            except VibeFlowError as exc:
                phase_log.warning("System healer attempt %d failed: %s", attempt, exc)
                append_log(self.log_path, f"System healer error: {exc}")

            result = await self._run_tests(command)
            if result.ok:
                phase_log.info("System healer fixed the integration issue on attempt %d", attempt)
                return

        phase_log.error("System healer could not fix the integration failure")
        raise IntegrationError(
            f"Integration tests still failing after {attempts} healing attempts "
            f"(see {self.log_path})"
        )
