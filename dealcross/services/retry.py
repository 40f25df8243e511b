# dealcross/services/retry.py
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from dealcross.core.config import get_settings
from dealcross.core.errors import ConcurrencyConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_with_conflict_retry(
    fn: Callable[[], T],
    attempts: Optional[int] = None,
    backoff_seconds: float = 0.05,
) -> T:
    """
    Run a whole unit of work, re-running it on ConcurrencyConflictError.

    fn must re-read whatever it mutates: the failed attempt's session has
    been rolled back, so a retry sees the winner's committed state. The last
    conflict propagates once attempts are used up.
    """
    attempts = attempts or get_settings().conflict_retry_attempts
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ConcurrencyConflictError:
            if attempt >= attempts:
                raise
            logger.info("retrying after concurrency conflict", extra={"attempt": attempt})
            if backoff_seconds:
                time.sleep(backoff_seconds * attempt)
    raise RuntimeError("unreachable")
