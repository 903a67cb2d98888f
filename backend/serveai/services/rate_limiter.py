from __future__ import annotations

import math
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from time import monotonic


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int


class SlidingWindowRateLimiter:
    """Per-client request budget over a trailing window."""

    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        self._lock = Lock()
        self._buckets: dict[str, deque[float]] = {}

    def take(self, client_key: str) -> RateLimitDecision:
        now = self._clock()
        cutoff = now - self._window_seconds

        with self._lock:
            bucket = self._buckets.setdefault(client_key, deque())
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()

            if len(bucket) >= self._max_requests:
                return RateLimitDecision(
                    allowed=False,
                    limit=self._max_requests,
                    remaining=0,
                    retry_after_seconds=max(
                        1,
                        math.ceil((bucket[0] + self._window_seconds) - now),
                    ),
                )

            bucket.append(now)
            return RateLimitDecision(
                allowed=True,
                limit=self._max_requests,
                remaining=max(self._max_requests - len(bucket), 0),
                retry_after_seconds=0,
            )
