from vibeflow.backends.base import (
    AgentBackend,
    AgentComplianceError,
    AgentExecutionError,
    AgentRequest,
    SessionLimitError,
    SessionTerminatedError,
    SessionTimeoutError,
    TaskKilledError,
    TmuxUnavailableError,
    VibeFlowError,
)
from vibeflow.backends.claude import ClaudeCodeBackend
from vibeflow.backends.retry import RetryPolicy, with_retry
from vibeflow.backends.tmux import TmuxSessionRunner

__all__ = [
    "AgentBackend",
    "AgentComplianceError",
    "AgentExecutionError",
    "AgentRequest",
    "ClaudeCodeBackend",
    "RetryPolicy",
    "SessionLimitError",
    "SessionTerminatedError",
    "SessionTimeoutError",
    "TaskKilledError",
    "TmuxSessionRunner",
    "TmuxUnavailableError",
    "VibeFlowError",
    "with_retry",
]
