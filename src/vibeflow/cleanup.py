from __future__ import annotations

import asyncio
import logging
import signal

from vibeflow.backends.tmux import TmuxSessionRunner
from vibeflow.repo.worktrees import WorktreeManager

logger = logging.getLogger(__name__)

EXIT_CODES: dict[signal.Signals, int] = {signal.SIGINT: 130, signal.SIGTERM: 143}


class ShutdownGuard:
    """Turns SIGINT/SIGTERM into cancellation of the running workflow task."""

    def __init__(self) -> None:
        self.received: signal.Signals | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def exit_code(self) -> int | None:
        return EXIT_CODES.get(self.received) if self.received is not None else None

    def _handle(self, signum: signal.Signals, task: asyncio.Task) -> None:
        if self.received is not None:
            return
        self.received = signum
        logger.warning("Received %s, cancelling and cleaning up...", signum.name)
        task.cancel()

    def install(self, task: asyncio.Task) -> None:
        loop = asyncio.get_running_loop()
        for signum in EXIT_CODES:
            loop.add_signal_handler(signum, self._handle, signum, task)
        self._loop = loop

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for signum in EXIT_CODES:
            self._loop.remove_signal_handler(signum)
        self._loop = None


async def cleanup_all_resources(
    worktrees: WorktreeManager | None,
    runner: TmuxSessionRunner | None = None,
) -> None:
    """Sweep every task worktree and agent session. Never raises."""

    jobs = []
    if worktrees is not None:
        jobs.append(worktrees.cleanup_all())
    if runner is not None:
        jobs.append(runner.cleanup_all())
    results = await asyncio.gather(*jobs, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            logger.error("Cleanup step failed: %s", result)
        else:
            logger.info("Cleanup removed %d resources", result)
