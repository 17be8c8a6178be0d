from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

OutputFormat = Literal["text", "json"]
EventHook = Callable[[dict[str, Any]], None]
Checkpoint = Callable[[], Awaitable[None]]


class VibeFlowError(RuntimeError):
    """Base error for orchestration failures."""

    def __init__(self, message: str, *, retriable: bool = True) -> None:
        super().__init__(message)
        self.retriable = retriable


class AgentExecutionError(VibeFlowError):
    """Raised when an agent invocation fails or returns nothing usable."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message, retriable=retriable)
        self.exit_code = exit_code


class AgentComplianceError(VibeFlowError):
    """Raised when the agent did not do what the prompt required (commit, structured result)."""


class TmuxUnavailableError(VibeFlowError):
    def __init__(self, message: str) -> None:
        super().__init__(message, retriable=False)


class SessionLimitError(VibeFlowError):
    """Too many live sessions; the caller may try again later."""


class SessionTimeoutError(VibeFlowError):
    pass


class SessionTerminatedError(VibeFlowError):
    pass


class TaskKilledError(VibeFlowError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} was killed from the debug console", retriable=False)
        self.task_id = task_id


@dataclass(slots=True)
class AgentRequest:
    task_id: str
    prompt: str
    cwd: str
    needs_output: bool = False
    output_format: OutputFormat = "text"
    timeout_seconds: float = 0.0
    checkpoint: Checkpoint | None = None


class AgentBackend(ABC):
    @abstractmethod
    async def run(self, request: AgentRequest) -> str | None:
        """Run one agent turn and return its result text when output was requested."""
