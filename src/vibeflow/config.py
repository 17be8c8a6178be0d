from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

DEFAULT_IGNORE_PATTERNS = (
    "**/*.lock,**/node_modules,**/dist,**/.git,**/.DS_Store,**/build,**/.pio,"
    "**/.env*,**/*.key,**/secrets.*,**/__pycache__"
)

ENV_MAX_RETRIES = "MAX_RETRIES"
ENV_MAX_PARALLEL_AGENTS = "MAX_PARALLEL_AGENTS"


class ConfigError(ValueError):
    """Raised when configuration values are missing or invalid."""


@dataclass(slots=True, frozen=True)
class PathsConfig:
    index_file: str = "project_index.json"
    plan_file: str = "vibe_plan.json"
    report_file: str = "vibe_report.md"
    cto_report_file: str = "vibe_cto_report.md"
    log_dir: str = ".vibe_logs"
    worktree_dir: str = ".vibe_worktrees"


@dataclass(slots=True, frozen=True)
class AgentConfig:
    binary: str = "claude"
    interactive: bool = True
    tmux_binary: str = "tmux"
    session_prefix: str = "vibe-task"
    max_sessions: int = 10
    poll_interval_seconds: float = 2.0
    warmup_seconds: float = 3.0
    stale_session_seconds: float = 3600.0
    exit_grace_seconds: float = 1.5
    session_timeout_seconds: float = 0.0
    direct_timeout_seconds: float = 0.0


@dataclass(slots=True, frozen=True)
class WorkflowConfig:
    max_retries: int = 3
    max_parallel_agents: int = 2
    retry_base_delay_seconds: float = 2.0
    max_context_size_kb: int = 500
    ignore_patterns: str = DEFAULT_IGNORE_PATTERNS
    integration_branch: str = "vibe"
    reset_before_heal: bool = True
    integration_heal_attempts: int = 2
    review_test_timeout_seconds: float = 900.0


@dataclass(slots=True, frozen=True)
class VibeConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)

    @classmethod
    def default(cls) -> VibeConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> VibeConfig:
        try:
            config = cls(
                paths=PathsConfig(**data.get("paths", {})),
                agent=AgentConfig(**data.get("agent", {})),
                workflow=WorkflowConfig(**data.get("workflow", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc
        config.validate()
        return config

    @property
    def log_dir(self) -> Path:
        return Path(self.paths.log_dir)

    @property
    def max_retries(self) -> int:
        return self.workflow.max_retries

    @property
    def max_parallel_agents(self) -> int:
        return self.workflow.max_parallel_agents

    @property
    def max_context_chars(self) -> int:
        return self.workflow.max_context_size_kb * 1024

    def validate(self) -> None:
        _require_positive_int("workflow.max_retries", self.workflow.max_retries)
        _require_positive_int("workflow.max_parallel_agents", self.workflow.max_parallel_agents)
        _require_positive_int("agent.max_sessions", self.agent.max_sessions)
        if self.agent.poll_interval_seconds <= 0:
            raise ConfigError("agent.poll_interval_seconds must be greater than zero.")
        if self.workflow.retry_base_delay_seconds < 0:
            raise ConfigError("workflow.retry_base_delay_seconds must not be negative.")
        if self.agent.interactive:
            self.check_session_capacity()

    def check_session_capacity(self) -> None:
        """Every parallel task needs its own tmux session in interactive mode."""

        parallel = self.workflow.max_parallel_agents
        if parallel > self.agent.max_sessions:
            raise ConfigError(
                f"workflow.max_parallel_agents ({parallel}) exceeds agent.max_sessions "
                f"({self.agent.max_sessions}); raise agent.max_sessions or run with --direct."
            )

    def with_environment(self, environ: Mapping[str, str] | None = None) -> VibeConfig:
        env = os.environ if environ is None else environ
        workflow = self.workflow
        if env.get(ENV_MAX_RETRIES) is not None:
            workflow = replace(
                workflow, max_retries=_parse_env_int(ENV_MAX_RETRIES, env[ENV_MAX_RETRIES])
            )
        if env.get(ENV_MAX_PARALLEL_AGENTS) is not None:
            workflow = replace(
                workflow,
                max_parallel_agents=_parse_env_int(
                    ENV_MAX_PARALLEL_AGENTS, env[ENV_MAX_PARALLEL_AGENTS]
                ),
            )
        config = replace(self, workflow=workflow)
        config.validate()
        return config

    def to_dict(self) -> dict:
        return {
            "paths": {
                "index_file": self.paths.index_file,
                "plan_file": self.paths.plan_file,
                "report_file": self.paths.report_file,
                "cto_report_file": self.paths.cto_report_file,
                "log_dir": self.paths.log_dir,
                "worktree_dir": self.paths.worktree_dir,
            },
            "agent": {
                "binary": self.agent.binary,
                "interactive": self.agent.interactive,
                "tmux_binary": self.agent.tmux_binary,
                "session_prefix": self.agent.session_prefix,
                "max_sessions": self.agent.max_sessions,
                "poll_interval_seconds": self.agent.poll_interval_seconds,
                "warmup_seconds": self.agent.warmup_seconds,
                "stale_session_seconds": self.agent.stale_session_seconds,
                "exit_grace_seconds": self.agent.exit_grace_seconds,
                "session_timeout_seconds": self.agent.session_timeout_seconds,
                "direct_timeout_seconds": self.agent.direct_timeout_seconds,
            },
            "workflow": {
                "max_retries": self.workflow.max_retries,
                "max_parallel_agents": self.workflow.max_parallel_agents,
                "retry_base_delay_seconds": self.workflow.retry_base_delay_seconds,
                "max_context_size_kb": self.workflow.max_context_size_kb,
                "ignore_patterns": self.workflow.ignore_patterns,
                "integration_branch": self.workflow.integration_branch,
                "reset_before_heal": self.workflow.reset_before_heal,
                "integration_heal_attempts": self.workflow.integration_heal_attempts,
                "review_test_timeout_seconds": self.workflow.review_test_timeout_seconds,
            },
        }


def _require_positive_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"Invalid {name}: {value!r} (expected an integer >= 1)")


def _parse_env_int(name: str, raw: str) -> int:
    try:
        value = int(raw.strip(), 10)
    except ValueError as exc:
        raise ConfigError(f"Invalid {name}: {raw!r}") from exc
    if value < 1:
        raise ConfigError(f"Invalid {name}: {raw!r}")
    return value


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: VibeConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("paths", "agent", "workflow"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path | None = None, environ: Mapping[str, str] | None = None) -> VibeConfig:
    if path is None or not path.exists():
        config = VibeConfig.default()
    else:
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
        config = VibeConfig.from_dict(data)
    return config.with_environment(environ)


def save_config(path: Path, config: VibeConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
