"""
Bounded retry for dependency calls.

Only `DependencyUnavailable` is retried; every other error is a decision made
by the domain and propagates on the first attempt.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from gfcity.domain.errors import DependencyUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    fn: Callable[[], T],
    *,
    retries: int = 1,
    backoff_seconds: float = 0.2,
    max_backoff_seconds: float = 2.0,
    what: str = "dependency call",
) -> T:
    """Run `fn`, retrying up to `retries` times on `DependencyUnavailable` with exponential backoff."""
    max_attempts = max(0, int(retries))
    for attempt in range(max_attempts + 1):
        try:
            return fn()
        except DependencyUnavailable as exc:
            if attempt >= max_attempts:
                raise
            delay = min(float(max_backoff_seconds), float(backoff_seconds) * (2**attempt))
            logger.warning(
                "%s unavailable (%s); retrying in %.2fs (attempt %s/%s)",
                what,
                exc.message,
                delay,
                attempt + 1,
                max_attempts,
            )
            time.sleep(delay)
    raise RuntimeError("call_with_retry exhausted without an exception (unexpected).")
