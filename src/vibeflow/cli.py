from __future__ import annotations

import asyncio
import subprocess
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import click

from vibeflow import __version__
from vibeflow.backends.base import VibeFlowError
from vibeflow.backends.tmux import TmuxSessionRunner
from vibeflow.cleanup import ShutdownGuard, cleanup_all_resources
from vibeflow.config import ConfigError, VibeConfig, load_config, save_config
from vibeflow.context import RunContext, build_context
from vibeflow.logs import close_scoped_loggers, configure_logging
from vibeflow.monitor import DebugConsole
from vibeflow.repo.git import GitRepository
from vibeflow.repo.worktrees import WorktreeManager
from vibeflow.session import SessionResult, run_session

DEFAULT_CONFIG = "vibeflow.toml"


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load(repo_root: Path, config_value: str) -> VibeConfig:
    try:
        return load_config(_resolve_config_path(repo_root, config_value))
    except ConfigError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc


def _session_runner(config: VibeConfig) -> TmuxSessionRunner:
    agent = config.agent
    return TmuxSessionRunner(
        binary=agent.binary,
        tmux_binary=agent.tmux_binary,
        session_prefix=agent.session_prefix,
        max_sessions=agent.max_sessions,
    )


async def _run_guarded(
    ctx: RunContext,
    requirements: str,
    plan_file: Path | None,
    console: bool,
) -> tuple[SessionResult | None, int | None]:
    current = asyncio.current_task()
    guard = ShutdownGuard()
    if current is not None:
        guard.install(current)
    debug_console = None
    if console:
        debug_console = DebugConsole(ctx.monitor, ctx.control, log_dir=ctx.log_dir)
        debug_console.attach()
    runner = ctx.backend if isinstance(ctx.backend, TmuxSessionRunner) else None
    try:
        return await run_session(ctx, requirements, plan_file=plan_file), None
    except asyncio.CancelledError:
        if guard.received is None or current is None:
            raise
        current.uncancel()
        await cleanup_all_resources(ctx.worktrees, runner)
        return None, guard.exit_code
    except Exception:
        # The integration branch is left as is; only worktrees and sessions are swept.
        await cleanup_all_resources(ctx.worktrees, runner)
        raise
    finally:
        if debug_console is not None:
            debug_console.detach()
        guard.uninstall()
        close_scoped_loggers()


@click.group()
@click.version_option(__version__, prog_name="vibe")
@click.option("--log-level", default="INFO", show_default=True)
def cli(log_level: str) -> None:
    """Vibe Flow: plan, build, review and merge with parallel coding agents."""

    configure_logging(log_level)


@cli.command("init")
@click.option("--direct", is_flag=True, default=False, help="Run agents without tmux.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(direct: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load(repo_root, config_value)
    if direct:
        config = replace(config, agent=replace(config.agent, interactive=False))
    save_config(config_path, config)
    (repo_root / config.paths.log_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Vibe Flow in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent mode: {'tmux' if config.agent.interactive else 'direct'}")
    click.echo(
        f"Parallel agents: {config.max_parallel_agents} | Max retries: {config.max_retries}"
    )


@cli.command("run")
@click.argument("requirements", required=False, default="")
@click.option(
    "--requirements-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
)
@click.option(
    "--plan",
    "plan_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Skip planning and run an existing plan file.",
)
@click.option("--interactive/--direct", "interactive", default=None)
@click.option("--console", is_flag=True, default=False, help="Enable the debug console.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
@click.pass_context
def run_command(
    click_ctx: click.Context,
    requirements: str,
    requirements_file: Path | None,
    plan_file: Path | None,
    interactive: bool | None,
    console: bool,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    config = _load(repo_root, config_value)
    if requirements_file is not None:
        requirements = requirements_file.read_text(encoding="utf-8")
    if not requirements.strip() and plan_file is None:
        raise click.UsageError("Provide REQUIREMENTS, --requirements-file or --plan.")

    try:
        ctx = build_context(config, repo_root, interactive=interactive)
    except ConfigError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc
    started = datetime.now(UTC)
    try:
        result, exit_code = asyncio.run(_run_guarded(ctx, requirements, plan_file, console))
    except VibeFlowError as exc:
        raise click.ClickException(str(exc)) from exc
    if exit_code is not None:
        click.echo("Interrupted; worktrees and sessions were cleaned up.", err=True)
        click_ctx.exit(exit_code)
    if result is None:
        raise click.ClickException("The session ended without a result.")

    counts = result.state.counts()
    elapsed = (datetime.now(UTC) - started).total_seconds()
    click.echo(f"Session complete in {elapsed:.0f}s ({result.state.mode}, {result.state.domain})")
    click.echo(
        f"Tasks: {len(result.state.tasks)} | succeeded {counts['SUCCEEDED']} | "
        f"healed {counts['HEALED']} | failed {counts['FAILED']}"
    )
    click.echo(f"Merged branches: {sum(1 for m in result.merges if m.outcome != 'skipped')}")
    if result.report_path is not None:
        click.echo(f"Report: {result.report_path}")


@cli.group("sessions")
def sessions_group() -> None:
    """Inspect and control live agent sessions."""


@sessions_group.command("list")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def sessions_list(config_value: str) -> None:
    runner = _session_runner(_load(Path.cwd().resolve(), config_value))
    sessions = asyncio.run(runner.list_sessions())
    if not sessions:
        click.echo("No active agent sessions.")
        return
    for session in sessions:
        created = datetime.fromtimestamp(session.created, UTC).strftime("%Y-%m-%d %H:%M:%S")
        attached = " (attached)" if session.attached else ""
        click.echo(f"{session.name}  created {created}{attached}")


@sessions_group.command("attach")
@click.argument("task_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def sessions_attach(task_id: str, config_value: str) -> None:
    config = _load(Path.cwd().resolve(), config_value)
    runner = _session_runner(config)
    name = runner.session_name(task_id)
    if not asyncio.run(runner.session_exists(name)):
        raise click.ClickException(f"No session {name}. Run `vibe sessions list` to see live ones.")
    click.echo(f"Attaching to {name}. Detach with Ctrl+B then D.")
    raise SystemExit(subprocess.call([config.agent.tmux_binary, "attach", "-t", name]))


@sessions_group.command("kill")
@click.argument("task_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def sessions_kill(task_id: str, config_value: str) -> None:
    runner = _session_runner(_load(Path.cwd().resolve(), config_value))
    name = runner.session_name(task_id)
    if not asyncio.run(runner.kill_session(name)):
        raise click.ClickException(f"Could not kill {name} (is it running?)")
    click.echo(f"Killed {name}")


@sessions_group.command("check")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def sessions_check(config_value: str) -> None:
    runner = _session_runner(_load(Path.cwd().resolve(), config_value))

    async def _check() -> int:
        await runner.check_available()
        return len(await runner.list_sessions())

    try:
        count = asyncio.run(_check())
    except VibeFlowError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"tmux is available. Active agent sessions: {count}/{runner.max_sessions}")


@cli.command("cleanup")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def cleanup_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = _load(repo_root, config_value)
    worktrees = WorktreeManager(GitRepository(repo_root), config.paths.worktree_dir)
    asyncio.run(cleanup_all_resources(worktrees, _session_runner(config)))
    click.echo("Cleanup complete.")
