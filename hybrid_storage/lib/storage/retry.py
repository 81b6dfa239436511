"""Retry loop with exponential backoff for remote storage calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff schedule.

    The delay before attempt ``n + 1`` is ``base_delay * 2 ** (n - 1)``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * 2 ** (attempt - 1)


@dataclass
class RetryOutcome(Generic[T]):
    """Tagged result of :func:`retry_with_backoff`.

    Exactly one of ``value``/``error`` is meaningful, selected by ``ok``.
    ``terminal`` is set when the loop stopped on a non-retryable error
    rather than running out of attempts.
    """

    ok: bool
    attempts: int
    value: T | None = None
    error: BaseException | None = None
    terminal: bool = False


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool],
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryOutcome[T]:
    """Run *operation* until it succeeds, hits a terminal error, or runs out of attempts."""
    last_error: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            value = await operation()
        except Exception as exc:
            last_error = exc
        else:
            return RetryOutcome(ok=True, attempts=attempt, value=value)

        if not is_retryable(last_error):
            return RetryOutcome(ok=False, attempts=attempt, error=last_error, terminal=True)

        if attempt == policy.max_attempts:
            logger.error(
                "%s failed after %d attempts: %s", description, attempt, last_error
            )
            break

        delay = policy.delay_for(attempt)
        logger.warning(
            "%s failed, retrying in %.1fs (attempt %d/%d): %s",
            description,
            delay,
            attempt,
            policy.max_attempts,
            last_error,
        )
        await sleep(delay)

    return RetryOutcome(ok=False, attempts=policy.max_attempts, error=last_error)
