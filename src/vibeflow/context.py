from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from vibeflow.backends.base import AgentBackend, EventHook
from vibeflow.backends.claude import ClaudeCodeBackend
from vibeflow.backends.process import Executor, execute
from vibeflow.backends.retry import RetryPolicy
from vibeflow.backends.tmux import TmuxSessionRunner
from vibeflow.config import VibeConfig
from vibeflow.logs import scoped_logger
from vibeflow.monitor import ControlChannel, ProgressMonitor
from vibeflow.repo.git import GitRepository
from vibeflow.repo.worktrees import WorktreeManager


@dataclass(slots=True)
class RunContext:
    """Everything one workflow run shares, passed explicitly to each phase."""

    config: VibeConfig
    root: Path
    repo: GitRepository
    backend: AgentBackend
    direct: AgentBackend
    worktrees: WorktreeManager
    monitor: ProgressMonitor = field(default_factory=ProgressMonitor)
    control: ControlChannel = field(default_factory=ControlChannel)
    executor: Executor = execute
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    event_hook: EventHook | None = None

    @property
    def log_dir(self) -> Path:
        path = self.config.log_dir
        return path if path.is_absolute() else self.root / path

    def path(self, name: str) -> Path:
        candidate = Path(name)
        return candidate if candidate.is_absolute() else self.root / candidate

    def retry_policy(self, max_attempts: int | None = None) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max_attempts or self.config.max_retries,
            base_delay_seconds=self.config.workflow.retry_base_delay_seconds,
        )

    def phase_logger(self, scope: str) -> logging.Logger:
        return scoped_logger(scope, self.log_dir)

    def emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)


def build_backends(
    config: VibeConfig,
    *,
    interactive: bool | None = None,
    event_hook: EventHook | None = None,
) -> tuple[AgentBackend, AgentBackend]:
    """Return ``(task_backend, direct_backend)`` for the configured agent mode."""

    agent = config.agent
    direct = ClaudeCodeBackend(
        agent.binary,
        timeout_seconds=agent.direct_timeout_seconds,
        event_hook=event_hook,
    )
    use_tmux = agent.interactive if interactive is None else interactive
    if not use_tmux:
        return direct, direct
    config.check_session_capacity()
    runner = TmuxSessionRunner(
        binary=agent.binary,
        tmux_binary=agent.tmux_binary,
        session_prefix=agent.session_prefix,
        max_sessions=agent.max_sessions,
        poll_interval_seconds=agent.poll_interval_seconds,
        warmup_seconds=agent.warmup_seconds,
        stale_session_seconds=agent.stale_session_seconds,
        exit_grace_seconds=agent.exit_grace_seconds,
        timeout_seconds=agent.session_timeout_seconds,
        event_hook=event_hook,
    )
    return runner, direct


def build_context(
    config: VibeConfig,
    root: Path,
    *,
    interactive: bool | None = None,
    event_hook: EventHook | None = None,
) -> RunContext:
    root = root.resolve()
    repo = GitRepository(root)
    backend, direct = build_backends(config, interactive=interactive, event_hook=event_hook)
    return RunContext(
        config=config,
        root=root,
        repo=repo,
        backend=backend,
        direct=direct,
        worktrees=WorktreeManager(repo, config.paths.worktree_dir, event_hook=event_hook),
        monitor=ProgressMonitor(event_hook=event_hook),
        event_hook=event_hook,
    )
