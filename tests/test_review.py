import asyncio
import json
import subprocess
from pathlib import Path

import pytest

from vibeflow.agents.review import ReviewGate, parse_review_report
from vibeflow.backends.base import AgentBackend, AgentExecutionError, AgentRequest, TaskKilledError
from vibeflow.config import VibeConfig
from vibeflow.context import RunContext
from vibeflow.models import SessionState, Task
from vibeflow.repo.git import GitRepository
from vibeflow.repo.worktrees import WorktreeManager


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


class CannedReviewer(AgentBackend):
    def __init__(self, reply: str | None = None, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.requests: list[AgentRequest] = []

    async def run(self, request: AgentRequest) -> str | None:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.reply


def _setup(tmp_path: Path, reviewer: AgentBackend) -> tuple[ReviewGate, Task, SessionState]:
    repo_path = tmp_path / "repo"
    repo_path.mkdir()
    _init_git_repo(repo_path)
    (repo_path / "parser.py").write_text("def parse():\n    return 42\n", encoding="utf-8")
    _run(["git", "add", "parser.py"], cwd=repo_path)
    _run(["git", "commit", "-m", "Agent: Add parser - Initial implementation"], cwd=repo_path)

    repo = GitRepository(repo_path)
    ctx = RunContext(
        config=VibeConfig.default(),
        root=tmp_path,
        repo=repo,
        backend=reviewer,
        direct=reviewer,
        worktrees=WorktreeManager(repo),
    )
    task = Task(
        id="task_1", name="Add parser", description="Parse things", worktree_path=str(repo.root)
    )
    session = SessionState(mode="MAINTAIN", domain="GENERIC", start_commit="")
    return ReviewGate(ctx), task, session


def _reply(status: str, message: str, test_command: str | None) -> str:
    payload = {"status": status, "message": message}
    if test_command is not None:
        payload["testCommand"] = test_command
    return json.dumps(payload)


def test_pass_requires_the_test_command_to_succeed(tmp_path: Path) -> None:
    reviewer = CannedReviewer(_reply("PASS", "Solid work", "test -f parser.py"))
    gate, task, session = _setup(tmp_path, reviewer)

    verdict = asyncio.run(gate.review(task, session))

    assert verdict.passed is True
    assert verdict.test_result is not None and verdict.test_result.exit_code == 0
    assert not gate.feedback_path(task).exists()
    request = reviewer.requests[0]
    assert request.task_id == "review-task_1"
    assert request.needs_output is True
    assert request.output_format == "json"
    assert "parser.py" in request.prompt
    log_line = (tmp_path / ".vibe_logs" / "review_task_1.log").read_text(encoding="utf-8")
    assert json.loads(log_line.splitlines()[-1])["passed"] is True


def test_pass_with_failing_test_command_is_a_failure(tmp_path: Path) -> None:
    reviewer = CannedReviewer(_reply("PASS", "Looks fine", "echo broken >&2; exit 3"))
    gate, task, session = _setup(tmp_path, reviewer)

    verdict = asyncio.run(gate.review(task, session))

    assert verdict.passed is False
    feedback = gate.feedback_path(task).read_text(encoding="utf-8")
    assert "**Verdict:** FAIL" in feedback
    assert "Exit code: 3" in feedback
    assert "broken" in feedback


def test_pass_without_test_command_is_a_failure(tmp_path: Path) -> None:
    gate, task, session = _setup(tmp_path, CannedReviewer(_reply("PASS", "Trust me", None)))

    verdict = asyncio.run(gate.evaluate(task, session))

    assert verdict.passed is False
    assert "without a test command" in verdict.message


def test_fail_verdict_is_reported(tmp_path: Path) -> None:
    reply = _reply("FAIL", "parse() ignores its input", "pytest")
    gate, task, session = _setup(tmp_path, CannedReviewer(reply))

    verdict = asyncio.run(gate.review(task, session))

    assert verdict.passed is False
    assert verdict.test_result is None
    assert "parse() ignores its input" in gate.feedback_path(task).read_text(encoding="utf-8")


@pytest.mark.parametrize(
    "reviewer",
    [
        CannedReviewer("I reviewed it and it is great."),
        CannedReviewer('{"verdict": "ok"}'),
        CannedReviewer(error=AgentExecutionError("claude exited with code 1")),
    ],
)
def test_unusable_review_output_fails_the_attempt(tmp_path: Path, reviewer: CannedReviewer) -> None:
    gate, task, session = _setup(tmp_path, reviewer)

    verdict = asyncio.run(gate.evaluate(task, session))

    assert verdict.passed is False
    assert verdict.message


def test_non_retriable_errors_propagate(tmp_path: Path) -> None:
    gate, task, session = _setup(tmp_path, CannedReviewer(error=TaskKilledError("task_1")))

    with pytest.raises(TaskKilledError):
        asyncio.run(gate.evaluate(task, session))


def test_parse_review_report_accepts_fenced_json() -> None:
    report = parse_review_report(
        'Done.\n```json\n{"status": "PASS", "testCommand": "pytest -q"}\n```'
    )

    assert report.status == "PASS"
    assert report.test_command == "pytest -q"
    assert report.message == ""
