from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

LOGGER = logging.getLogger("shimmyserve.availability")


class AvailabilityCache:
    """Memoized capability probe for one external tool.

    The first probe answer is kept until ``invalidate()`` is called or, when a
    TTL is configured, until it expires. Probes are serialized so that a
    re-probe never races another one.
    """

    def __init__(
        self,
        probe: Callable[[], Awaitable[bool]],
        *,
        name: str,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._probe = probe
        self._name = name
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._value: bool | None = None
        self._checked_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def value(self) -> bool | None:
        return self._value

    async def check(self) -> bool:
        cached = self._fresh_value()
        if cached is not None:
            return cached

        async with self._lock:
            cached = self._fresh_value()
            if cached is not None:
                return cached
            available = await self._probe()
            self._value = available
            self._checked_at = self._clock()
            if available:
                LOGGER.info("tool availability probed tool=%s available=true", self._name)
            else:
                LOGGER.warning("tool availability probed tool=%s available=false", self._name)
            return available

    def invalidate(self) -> None:
        self._value = None
        self._checked_at = None

    def _fresh_value(self) -> bool | None:
        if self._value is None or self._checked_at is None:
            return None
        if self._ttl_seconds is not None and self._clock() - self._checked_at >= self._ttl_seconds:
            return None
        return self._value
