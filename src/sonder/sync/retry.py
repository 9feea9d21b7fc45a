"""Exponential backoff with jitter, shared by the sync loop and photo uploads."""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from sonder.sync.errors import TransientNetworkError, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Backoff:
    """Delay schedule: base * 2**attempt, capped, plus up to `jitter` seconds."""

    base_seconds: float = 1.0
    max_seconds: float = 300.0
    jitter: float = 0.25

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number `attempt` (0-based)."""
        seconds = min(self.max_seconds, self.base_seconds * float(2 ** max(0, attempt)))
        if self.jitter:
            seconds += random.uniform(0.0, self.jitter)
        return seconds


async def retry_transient(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff: Backoff,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "request",
) -> T:
    """Call `fn` up to `attempts` times, retrying only transient failures.

    Exceptions are classified on the way out; anything that is not a
    TransientNetworkError is raised on the first occurrence.

    Raises:
        SyncError: the classified error of the last attempt.
    """
    for attempt in range(attempts):
        try:
            return await fn()
        except Exception as exc:
            error = classify_error(exc)
            if not isinstance(error, TransientNetworkError) or attempt + 1 >= attempts:
                if error is exc:
                    raise
                raise error from exc
            delay = backoff.delay(attempt)
            logger.info(
                "Retrying %s in %.1fs (attempt %d/%d): %s",
                label, delay, attempt + 2, attempts, error,
            )
            await sleep(delay)
    raise ValueError("attempts must be at least 1")
