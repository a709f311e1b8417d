"""Run an operation several times with exponential backoff."""
from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from core.log import get_logger
from core.settings import OFFLINE_QUEUE


logger = get_logger("retry")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = OFFLINE_QUEUE.initial_backoff_sec
    backoff_multiplier: float = OFFLINE_QUEUE.backoff_multiplier

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before ``attempt`` (1-based); the first attempt runs at once."""

        if attempt < 2:
            return 0.0
        return self.initial_delay * self.backoff_multiplier ** (attempt - 2)


async def with_retry(
    operation: Callable[[], Any],
    policy: Optional[RetryPolicy] = None,
    *,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    context: Optional[dict] = None,
) -> Any:
    """Await ``operation()`` up to ``policy.max_attempts`` times.

    ``operation`` may return a plain value or an awaitable. The last error is
    re-raised once attempts run out, or immediately when ``should_retry``
    returns False for it.
    """

    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_attempts)
    attempt = 1
    while True:
        delay = policy.delay_before(attempt)
        if delay > 0:
            await sleep(delay)
        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as exc:
            if should_retry is not None and not should_retry(exc):
                logger.info("Attempt %s/%s not retryable %s: %s", attempt, attempts, context or {}, exc)
                raise
            if attempt >= attempts:
                logger.warning("All %s attempts failed %s: %s", attempts, context or {}, exc)
                raise
            logger.debug("Attempt %s/%s failed %s: %s", attempt, attempts, context or {}, exc)
        attempt += 1


__all__ = ["RetryPolicy", "with_retry"]
