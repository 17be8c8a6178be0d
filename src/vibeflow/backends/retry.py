from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from vibeflow.backends.base import EventHook

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_PATTERN = re.compile(r"\b429\b|rate[ _-]?limit", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    rate_limit_delay_seconds: float = 60.0


def is_rate_limited(error: BaseException | str) -> bool:
    return bool(RATE_LIMIT_PATTERN.search(str(error)))


def retry_delay(policy: RetryPolicy, attempt: int, error: BaseException | str) -> float:
    if is_rate_limited(error):
        return policy.rate_limit_delay_seconds
    delay = policy.base_delay_seconds * (2 ** (attempt - 1))
    return min(delay, policy.max_delay_seconds)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    name: str = "operation",
    event_hook: EventHook | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or ``policy.max_attempts`` is exhausted.

    The last error is re-raised once the budget is spent. Errors carrying
    ``retriable=False`` are re-raised immediately.
    """

    max_attempts = max(1, policy.max_attempts)
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if getattr(exc, "retriable", True) is False or attempt >= max_attempts:
                raise
            delay = retry_delay(policy, attempt, exc)
            rate_limited = is_rate_limited(exc)
            if rate_limited:
                logger.warning(
                    "%s hit a rate limit; waiting %.0fs (attempt %d/%d)",
                    name,
                    delay,
                    attempt,
                    max_attempts,
                )
            else:
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    name,
                    attempt,
                    max_attempts,
                    delay,
                    exc,
                )
            if event_hook is not None:
                event_hook(
                    {
                        "event": "retry_scheduled",
                        "call": name,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "delay_seconds": delay,
                        "rate_limited": rate_limited,
                        "error": str(exc),
                    }
                )
            await sleep(delay)
