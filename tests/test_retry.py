import asyncio

import pytest

from vibeflow.backends.base import AgentExecutionError, TmuxUnavailableError
from vibeflow.backends.retry import RetryPolicy, is_rate_limited, retry_delay, with_retry


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def test_retry_delay_doubles_and_caps() -> None:
    policy = RetryPolicy(max_attempts=10, base_delay_seconds=1.0, max_delay_seconds=5.0)

    delays = [retry_delay(policy, attempt, "boom") for attempt in range(1, 6)]

    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_rate_limit_errors_use_fixed_delay() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, rate_limit_delay_seconds=60.0)

    assert is_rate_limited("HTTP 429 Too Many Requests")
    assert is_rate_limited(RuntimeError("Rate limit reached for requests"))
    assert is_rate_limited("rate_limit_error")
    assert not is_rate_limited("exit code 4290: something else")
    assert retry_delay(policy, 3, "429") == 60.0


def test_with_retry_recovers_after_transient_failures() -> None:
    sleep = RecordingSleep()
    events: list[dict] = []
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise AgentExecutionError(f"transient failure {calls['count']}")
        return "ok"

    result = asyncio.run(
        with_retry(
            flaky,
            RetryPolicy(max_attempts=3, base_delay_seconds=2.0),
            name="flaky",
            event_hook=events.append,
            sleep=sleep,
        )
    )

    assert result == "ok"
    assert calls["count"] == 3
    assert sleep.delays == [2.0, 4.0]
    assert [event["attempt"] for event in events] == [1, 2]
    assert all(event["event"] == "retry_scheduled" and event["call"] == "flaky" for event in events)
    assert events[0]["rate_limited"] is False


def test_with_retry_reraises_last_error_when_exhausted() -> None:
    sleep = RecordingSleep()
    calls = {"count": 0}

    async def always_fails() -> None:
        calls["count"] += 1
        raise AgentExecutionError(f"failure {calls['count']}")

    with pytest.raises(AgentExecutionError, match="failure 3"):
        asyncio.run(with_retry(always_fails, RetryPolicy(max_attempts=3), sleep=sleep))

    assert calls["count"] == 3
    assert len(sleep.delays) == 2


def test_with_retry_stops_on_non_retriable_errors() -> None:
    sleep = RecordingSleep()
    calls = {"count": 0}

    async def missing_tmux() -> None:
        calls["count"] += 1
        raise TmuxUnavailableError("tmux not installed")

    with pytest.raises(TmuxUnavailableError):
        asyncio.run(with_retry(missing_tmux, RetryPolicy(max_attempts=5), sleep=sleep))

    assert calls["count"] == 1
    assert sleep.delays == []


def test_with_retry_waits_longer_after_rate_limit() -> None:
    sleep = RecordingSleep()
    calls = {"count": 0}

    async def limited() -> str:
        calls["count"] += 1
        if calls["count"] == 1:
            raise AgentExecutionError("API error 429: rate limited")
        return "done"

    policy = RetryPolicy(max_attempts=2, base_delay_seconds=1.0, rate_limit_delay_seconds=60.0)
    assert asyncio.run(with_retry(limited, policy, sleep=sleep)) == "done"
    assert sleep.delays == [60.0]
