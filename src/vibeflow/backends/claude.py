from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

from vibeflow.backends.base import AgentBackend, AgentExecutionError, AgentRequest, EventHook
from vibeflow.backends.process import Executor, execute
from vibeflow.models import ExecResult

logger = logging.getLogger(__name__)

NON_INTERACTIVE_ENV = {"CI": "true", "NO_COLOR": "1"}


class ClaudeCodeBackend(AgentBackend):
    """Runs the agent non-interactively (``claude -p``) and returns its stdout."""

    def __init__(
        self,
        binary: str = "claude",
        *,
        timeout_seconds: float = 0.0,
        checkpoint_interval_seconds: float = 1.0,
        executor: Executor = execute,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        event_hook: EventHook | None = None,
    ) -> None:
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self.checkpoint_interval_seconds = checkpoint_interval_seconds
        self.sleep = sleep
        self.executor = executor
        self.event_hook = event_hook

    def _emit(self, payload: dict) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, prompt: str, session_id: str | None = None) -> list[str]:
        command = [self.binary, "--dangerously-skip-permissions", "-p", prompt]
        if session_id:
            command.extend(["--session-id", session_id])
        return command

    async def invoke(
        self,
        prompt: str,
        *,
        cwd: str | None = None,
        context: str = "",
        session_id: str | None = None,
        timeout_seconds: float | None = None,
    ) -> ExecResult:
        command = self.build_command(prompt, session_id)
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        self._emit({"event": "agent_direct_start", "cwd": cwd, "session_id": session_id})
        result = await self.executor(
            command[0],
            command[1:],
            cwd=cwd,
            env=NON_INTERACTIVE_ENV,
            input_text=context,
            timeout=timeout if timeout > 0 else None,
        )
        self._emit({"event": "agent_direct_exit", "exit_code": result.exit_code})
        return result

    async def _poll_checkpoint(self, checkpoint: Callable[[], Awaitable[None]]) -> None:
        while True:
            await self.sleep(self.checkpoint_interval_seconds)
            await checkpoint()

    async def _invoke_watched(self, request: AgentRequest) -> ExecResult:
        """Run the agent while polling the request checkpoint.

        A checkpoint that raises (a kill from the monitor) cancels the agent call, which
        terminates the child process, and the checkpoint's error propagates.
        """

        invocation = asyncio.ensure_future(
            self.invoke(
                request.prompt,
                cwd=request.cwd,
                timeout_seconds=request.timeout_seconds or None,
            )
        )
        if request.checkpoint is None:
            return await invocation
        watcher = asyncio.ensure_future(self._poll_checkpoint(request.checkpoint))
        try:
            await asyncio.wait({invocation, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            invocation.cancel()
            watcher.cancel()
            await asyncio.gather(invocation, watcher, return_exceptions=True)
            raise
        if invocation.done():
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
            return invocation.result()
        logger.info("Stopping %s for %s", self.binary, request.task_id)
        invocation.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await invocation
        watcher.result()
        raise AgentExecutionError(f"{self.binary} was stopped for {request.task_id}")

    async def run(self, request: AgentRequest) -> str | None:
        result = await self._invoke_watched(request)
        if not result.ok:
            raise AgentExecutionError(
                f"{self.binary} failed for {request.task_id} with {result.describe()}",
                exit_code=result.exit_code,
            )
        if request.checkpoint is not None:
            await request.checkpoint()
        if not request.needs_output:
            return None
        output = result.stdout.strip()
        if not output:
            raise AgentExecutionError(f"{self.binary} returned no output for {request.task_id}")
        return output
