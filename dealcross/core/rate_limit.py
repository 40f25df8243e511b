from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from fastapi import Depends, Request

from dealcross.core.auth_deps import get_current_principal
from dealcross.core.config import Settings, get_settings
from dealcross.core.errors import RateLimitedError
from dealcross.policies.rbac import Principal

ESCROW_CREATE = "escrow_create"
DISPUTE_RAISE = "dispute_raise"

# refill rate 0 never frees a token; clients are told to come back in a minute
NO_REFILL_RETRY_AFTER = 60


@dataclass
class Bucket:
    tokens: float
    last_ts: float


class TokenBucketLimiter:
    """
    Token bucket per (user_id, scope): `capacity` tokens, refilled at
    `refill_per_sec`. `acquire` returns 0 when the call may proceed, else
    the whole seconds until a token is available.
    """

    def __init__(self, capacity: int, refill_per_sec: float, clock: Callable[[], float] = time.monotonic):
        self.capacity = float(capacity)
        self.refill_per_sec = float(refill_per_sec)
        self._clock = clock
        self._buckets: Dict[Tuple[str, str], Bucket] = {}
        self._lock = threading.Lock()

    def acquire(self, user_id: str, scope: str, cost: float = 1.0) -> int:
        with self._lock:
            now = self._clock()
            b = self._buckets.setdefault((user_id, scope), Bucket(tokens=self.capacity, last_ts=now))

            elapsed = max(0.0, now - b.last_ts)
            b.tokens = min(self.capacity, b.tokens + elapsed * self.refill_per_sec)
            b.last_ts = now

            if b.tokens >= cost:
                b.tokens -= cost
                return 0
            if self.refill_per_sec <= 0:
                return NO_REFILL_RETRY_AFTER
            return max(1, math.ceil((cost - b.tokens) / self.refill_per_sec))


def build_limiters(settings: Settings) -> Dict[str, TokenBucketLimiter]:
    return {
        ESCROW_CREATE: TokenBucketLimiter(
            capacity=settings.escrow_create_rate_capacity,
            refill_per_sec=settings.escrow_create_rate_per_minute / 60.0,
        ),
        DISPUTE_RAISE: TokenBucketLimiter(
            capacity=settings.dispute_rate_capacity,
            refill_per_sec=settings.dispute_rate_per_minute / 60.0,
        ),
    }


def rate_limited(scope: str):
    """
    Dependency for one write scope. Runs after authentication so buckets
    are per user; limiters live on app.state so each app has its own.
    """

    def dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> None:
        limiters = getattr(request.app.state, "rate_limiters", None)
        if limiters is None:
            limiters = request.app.state.rate_limiters = build_limiters(get_settings())
        wait = limiters[scope].acquire(principal.user_id, scope)
        if wait:
            raise RateLimitedError(
                f"Too many {scope.replace('_', ' ')} requests; retry in {wait}s.",
                retry_after=wait,
            )

    return dependency
