import asyncio
import re
from collections.abc import Callable
from pathlib import Path

import pytest

from vibeflow.backends.base import (
    AgentRequest,
    SessionLimitError,
    SessionTerminatedError,
    SessionTimeoutError,
    TmuxUnavailableError,
)
from vibeflow.backends.tmux import TmuxSessionRunner, completion_instructions, scratch_files
from vibeflow.models import ExecResult

OK = ExecResult(stdout="", stderr="", exit_code=0)
MISSING = ExecResult(stdout="", stderr="can't find session", exit_code=1)


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []
        self.on_sleep: Callable[[], None] | None = None

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep is not None:
            self.on_sleep()


class FakeTmux:
    """Simulates the tmux commands the runner issues, without a tmux server."""

    def __init__(self, clock: FakeClock, *, available: bool = True) -> None:
        self.clock = clock
        self.available = available
        self.sessions: dict[str, float] = {}
        self.calls: list[list[str]] = []
        self.buffers: dict[str, str] = {}
        self.on_paste: Callable[[str, str], None] | None = None

    async def __call__(
        self, command: str, args: list[str] | tuple[str, ...] = (), **kwargs
    ) -> ExecResult:
        _ = command, kwargs
        args = list(args)
        self.calls.append(args)
        sub = args[0]
        if sub == "-V":
            if self.available:
                return ExecResult(stdout="tmux 3.4\n", stderr="", exit_code=0)
            return ExecResult(stdout="", stderr="No such file or directory", exit_code=1)
        if sub == "list-sessions":
            if not self.sessions:
                return ExecResult(stdout="", stderr="no server running", exit_code=1)
            lines = [f"{name}\t{int(created)}\t0" for name, created in self.sessions.items()]
            return ExecResult(stdout="\n".join(lines) + "\n", stderr="", exit_code=0)
        if sub == "has-session":
            return OK if args[2].lstrip("=") in self.sessions else MISSING
        if sub == "kill-session":
            return OK if self.sessions.pop(args[2].lstrip("="), None) is not None else MISSING
        if sub == "new-session":
            self.sessions[args[args.index("-s") + 1]] = self.clock()
            return OK
        if sub == "load-buffer":
            self.buffers[args[2]] = Path(args[3]).read_text(encoding="utf-8")
            return OK
        if sub == "paste-buffer":
            text = self.buffers.pop(args[3])
            if self.on_paste is not None:
                self.on_paste(args[5], text)
            return OK
        if sub == "send-keys":
            return OK
        raise AssertionError(f"unexpected tmux call: {args}")

    def commands(self) -> list[str]:
        return [call[0] for call in self.calls]


def _sentinel(prompt: str) -> Path:
    return Path(re.search(r"create an empty file at: (\S+)", prompt).group(1))


def _output(prompt: str) -> Path:
    return Path(re.search(r"to this file: (\S+)", prompt).group(1))


def _runner(clock: FakeClock, tmux: FakeTmux, **overrides) -> tuple[TmuxSessionRunner, list[dict]]:
    events: list[dict] = []
    options = {
        "max_sessions": 3,
        "poll_interval_seconds": 2.0,
        "warmup_seconds": 3.0,
        "exit_grace_seconds": 1.0,
        "executor": tmux,
        "sleep": clock.sleep,
        "clock": clock,
        "event_hook": events.append,
    }
    options.update(overrides)
    return TmuxSessionRunner(**options), events


def _phases(events: list[dict]) -> list[str]:
    return [event["phase"] for event in events if event["event"] == "session_phase"]


def test_completion_instructions_name_the_scratch_files(tmp_path: Path) -> None:
    request = AgentRequest(
        task_id="review task/1",
        prompt="p",
        cwd=str(tmp_path),
        needs_output=True,
        output_format="json",
    )
    files = scratch_files(tmp_path, request.task_id, request.output_format)

    text = completion_instructions(request, files)

    assert files.sentinel == tmp_path / ".vibe_done_review-task-1"
    assert files.output.name == ".vibe_output_review-task-1.json"
    assert str(files.sentinel) in text
    assert "valid JSON only" in text
    assert str(files.output) in text


def test_run_returns_output_after_sentinel(tmp_path: Path) -> None:
    clock = FakeClock()
    tmux = FakeTmux(clock)
    runner, events = _runner(clock, tmux)

    def agent_finishes(session: str, prompt: str) -> None:
        assert session == "vibe-task-task_1"
        assert prompt.startswith("Implement the parser")
        _output(prompt).write_text('  {"status": "PASS"}\n', encoding="utf-8")
        _sentinel(prompt).touch()

    tmux.on_paste = agent_finishes
    request = AgentRequest(
        task_id="task_1", prompt="Implement the parser", cwd=str(tmp_path), needs_output=True
    )

    output = asyncio.run(runner.run(request))

    assert output == '{"status": "PASS"}'
    assert _phases(events) == [
        "CREATING",
        "STARTED",
        "WARMUP",
        "PROMPT_INJECTED",
        "WAITING",
        "COMPLETED",
    ]
    assert tmux.sessions == {}
    assert list(tmp_path.glob(".vibe_*")) == []
    assert tmux.commands().index("load-buffer") < tmux.commands().index("paste-buffer")
    assert ["send-keys", "-t", "vibe-task-task_1", "/exit", "Enter"] in tmux.calls


def test_run_without_output_returns_none(tmp_path: Path) -> None:
    clock = FakeClock()
    tmux = FakeTmux(clock)
    runner, _ = _runner(clock, tmux)
    polls = {"count": 0}

    def agent_finishes_later() -> None:
        polls["count"] += 1
        if polls["count"] == 6:
            (tmp_path / ".vibe_done_task_2").touch()

    clock.on_sleep = agent_finishes_later
    request = AgentRequest(task_id="task_2", prompt="work", cwd=str(tmp_path))

    assert asyncio.run(runner.run(request)) is None
    assert clock.sleeps.count(2.0) >= 1
    assert tmux.sessions == {}


def test_session_death_without_sentinel_fails(tmp_path: Path) -> None:
    clock = FakeClock()
    tmux = FakeTmux(clock)
    runner, events = _runner(clock, tmux)
    tmux.on_paste = lambda session, prompt: tmux.sessions.pop(session)
    request = AgentRequest(task_id="task_1", prompt="work", cwd=str(tmp_path))

    with pytest.raises(SessionTerminatedError, match="ended before task_1"):
        asyncio.run(runner.run(request))

    assert "SESSION_DIED" in _phases(events)
    assert "COMPLETED" not in _phases(events)
    assert list(tmp_path.glob(".vibe_*")) == []


def test_session_that_exits_after_sentinel_succeeds(tmp_path: Path) -> None:
    clock = FakeClock()
    tmux = FakeTmux(clock)
    runner, _ = _runner(clock, tmux)

    def finish_and_exit(session: str, prompt: str) -> None:
        _sentinel(prompt).touch()
        tmux.sessions.pop(session)

    tmux.on_paste = finish_and_exit
    request = AgentRequest(task_id="task_1", prompt="work", cwd=str(tmp_path))

    assert asyncio.run(runner.run(request)) is None


def test_timeout_kills_the_session(tmp_path: Path) -> None:
    clock = FakeClock()
    tmux = FakeTmux(clock)
    runner, events = _runner(clock, tmux, timeout_seconds=10.0)
    request = AgentRequest(task_id="task_1", prompt="work", cwd=str(tmp_path))

    with pytest.raises(SessionTimeoutError, match="within 10s"):
        asyncio.run(runner.run(request))

    assert "TIMED_OUT" in _phases(events)
    assert tmux.sessions == {}
    assert tmux.calls[-1][0] == "kill-session"


def test_zero_timeout_waits_indefinitely(tmp_path: Path) -> None:
    clock = FakeClock()
    tmux = FakeTmux(clock)
    runner, events = _runner(clock, tmux, poll_interval_seconds=3600.0, timeout_seconds=0)
    started = clock.now

    def finish_after_a_long_time() -> None:
        if clock.now - started > 48 * 3600:
            (tmp_path / ".vibe_done_task_1").touch()

    clock.on_sleep = finish_after_a_long_time
    request = AgentRequest(task_id="task_1", prompt="work", cwd=str(tmp_path))

    assert asyncio.run(runner.run(request)) is None
    assert "TIMED_OUT" not in _phases(events)
    assert clock.now - started > 48 * 3600


def test_request_timeout_overrides_runner_default(tmp_path: Path) -> None:
    clock = FakeClock()
    tmux = FakeTmux(clock)
    runner, _ = _runner(clock, tmux, timeout_seconds=0)
    request = AgentRequest(task_id="task_1", prompt="work", cwd=str(tmp_path), timeout_seconds=4.0)

    with pytest.raises(SessionTimeoutError):
        asyncio.run(runner.run(request))


def test_session_limit_is_enforced(tmp_path: Path) -> None:
    clock = FakeClock()
    tmux = FakeTmux(clock)
    tmux.sessions = {"vibe-task-a": clock.now, "vibe-task-b": clock.now, "other": clock.now}
    runner, _ = _runner(clock, tmux, max_sessions=2)
    request = AgentRequest(task_id="task_1", prompt="work", cwd=str(tmp_path))

    with pytest.raises(SessionLimitError) as excinfo:
        asyncio.run(runner.run(request))

    assert excinfo.value.retriable is True
    assert "new-session" not in tmux.commands()


def test_stale_sessions_are_reaped_before_the_limit_check(tmp_path: Path) -> None:
    clock = FakeClock()
    tmux = FakeTmux(clock)
    tmux.sessions = {"vibe-task-old": clock.now - 7200, "vibe-task-fresh": clock.now}
    runner, _ = _runner(clock, tmux, max_sessions=2, stale_session_seconds=3600)
    tmux.on_paste = lambda session, prompt: _sentinel(prompt).touch()
    request = AgentRequest(task_id="task_1", prompt="work", cwd=str(tmp_path))

    asyncio.run(runner.run(request))

    assert "vibe-task-old" not in tmux.sessions
    assert "vibe-task-fresh" in tmux.sessions


def test_missing_tmux_is_not_retriable(tmp_path: Path) -> None:
    clock = FakeClock()
    tmux = FakeTmux(clock, available=False)
    runner, _ = _runner(clock, tmux)
    request = AgentRequest(task_id="task_1", prompt="work", cwd=str(tmp_path))

    with pytest.raises(TmuxUnavailableError, match="--direct") as excinfo:
        asyncio.run(runner.run(request))

    assert excinfo.value.retriable is False
    assert tmux.commands() == ["-V"]


def test_checkpoint_is_polled_while_waiting(tmp_path: Path) -> None:
    clock = FakeClock()
    tmux = FakeTmux(clock)
    runner, _ = _runner(clock, tmux)
    calls = {"count": 0}

    class Stop(Exception):
        pass

    async def checkpoint() -> None:
        calls["count"] += 1
        if calls["count"] == 3:
            raise Stop()

    request = AgentRequest(
        task_id="task_1", prompt="work", cwd=str(tmp_path), checkpoint=checkpoint
    )

    with pytest.raises(Stop):
        asyncio.run(runner.run(request))

    assert tmux.sessions == {}


def test_list_sessions_and_cleanup_only_touch_prefixed_sessions() -> None:
    clock = FakeClock()
    tmux = FakeTmux(clock)
    tmux.sessions = {"vibe-task-a": clock.now, "vibe-task-b": clock.now, "mine": clock.now}
    runner, _ = _runner(clock, tmux)

    names = [session.name for session in asyncio.run(runner.list_sessions())]
    killed = asyncio.run(runner.cleanup_all())

    assert names == ["vibe-task-a", "vibe-task-b"]
    assert killed == 2
    assert tmux.sessions == {"mine": clock.now}
