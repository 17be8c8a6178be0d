import json
import subprocess
import tomllib
from pathlib import Path

from click.testing import CliRunner

from vibeflow import __version__
from vibeflow.backends.base import AgentBackend, AgentRequest
from vibeflow.cli import cli
from vibeflow.config import VibeConfig, load_config
from vibeflow.context import RunContext
from vibeflow.repo.git import GitRepository
from vibeflow.repo.worktrees import WorktreeManager

PLAN = '[{"id": "task_1", "name": "Add greeting", "desc": "Write greeting.txt"}]'


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


class FakeAgent(AgentBackend):
    def __init__(self) -> None:
        self.roles: list[str] = []

    async def run(self, request: AgentRequest) -> str | None:
        self.roles.append(request.task_id)
        if request.task_id == "librarian":
            return json.dumps({"name": "demo", "components": []})
        if request.task_id == "architect":
            return PLAN
        if request.task_id.startswith("review-"):
            return json.dumps(
                {"status": "PASS", "message": "ok", "testCommand": "test -f greeting.txt"}
            )
        if request.task_id == "task_1":
            worktree = Path(request.cwd)
            (worktree / "greeting.txt").write_text("hello\n", encoding="utf-8")
            _run(["git", "add", "-A"], cwd=worktree)
            message = "Agent: Add greeting - Initial implementation"
            _run(["git", "commit", "-m", message], cwd=worktree)
            return None
        return "Session went well."


def _patch_context(monkeypatch, agent: AgentBackend) -> None:
    def _build(config: VibeConfig, root: Path, *, interactive=None, event_hook=None) -> RunContext:
        _ = interactive
        repo = GitRepository(root)
        return RunContext(
            config=config,
            root=repo.root,
            repo=repo,
            backend=agent,
            direct=agent,
            worktrees=WorktreeManager(repo, config.paths.worktree_dir),
            event_hook=event_hook,
        )

    monkeypatch.setattr("vibeflow.cli.build_context", _build)


def test_init_writes_config(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["init", "--direct"])

    assert result.exit_code == 0, result.output
    assert "Agent mode: direct" in result.output
    config = load_config(tmp_path / "vibeflow.toml", environ={})
    assert config.agent.interactive is False
    assert (tmp_path / ".vibe_logs").is_dir()


def test_invalid_environment_limits_fail_fast(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["init"], env={"MAX_RETRIES": "many"})

    assert result.exit_code != 0
    assert "Invalid configuration" in result.output
    assert "MAX_RETRIES" in result.output


def test_run_requires_requirements_or_plan(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["run"])

    assert result.exit_code == 2
    assert "Provide REQUIREMENTS" in result.output


def test_cli_run_executes_a_full_session(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    agent = FakeAgent()
    _patch_context(monkeypatch, agent)

    result = CliRunner().invoke(cli, ["run", "--direct", "Add a greeting"])

    assert result.exit_code == 0, result.output
    assert "Tasks: 1 | succeeded 1 | healed 0 | failed 0" in result.output
    assert "Merged branches: 1" in result.output
    assert "Report:" in result.output
    assert (repo / "greeting.txt").read_text(encoding="utf-8") == "hello\n"
    assert agent.roles[:2] == ["librarian", "architect"]


def test_cli_run_with_plan_file(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    agent = FakeAgent()
    _patch_context(monkeypatch, agent)
    plan_file = tmp_path / "plan.json"
    plan_file.write_text(PLAN, encoding="utf-8")

    result = CliRunner().invoke(cli, ["run", "--plan", str(plan_file)])

    assert result.exit_code == 0, result.output
    assert "architect" not in agent.roles
    assert "task_1" in agent.roles


def test_sessions_check_reports_missing_tmux(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "vibeflow.toml").write_text(
        '[agent]\ntmux_binary = "vibeflow-missing-tmux"\n', encoding="utf-8"
    )
    runner = CliRunner()

    check = runner.invoke(cli, ["sessions", "check"])
    listing = runner.invoke(cli, ["sessions", "list"])

    assert check.exit_code == 1
    assert "tmux is required" in check.output
    assert listing.exit_code == 0
    assert "No active agent sessions." in listing.output


def test_cleanup_removes_leftover_worktrees(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    _run(["git", "worktree", "add", "-b", "vibe-task_x_1", ".vibe_worktrees/x"], cwd=repo)
    (repo / "vibeflow.toml").write_text(
        '[agent]\ntmux_binary = "vibeflow-missing-tmux"\n', encoding="utf-8"
    )
    monkeypatch.chdir(repo)

    result = CliRunner().invoke(cli, ["cleanup"])

    assert result.exit_code == 0, result.output
    assert "Cleanup complete." in result.output
    assert not (repo / ".vibe_worktrees" / "x").exists()


def test_version_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    result = CliRunner().invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert pyproject["project"]["version"] in result.output
    assert __version__ in result.output


def test_run_without_a_result_fails_cleanly(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    _patch_context(monkeypatch, FakeAgent())

    async def _no_result(ctx, requirements, plan_file, console):
        _ = ctx, requirements, plan_file, console
        return None, None

    monkeypatch.setattr("vibeflow.cli._run_guarded", _no_result)

    result = CliRunner().invoke(cli, ["run", "--direct", "Add a greeting"])

    assert result.exit_code == 1
    assert "The session ended without a result." in result.output
    assert result.exception is None or isinstance(result.exception, SystemExit)
