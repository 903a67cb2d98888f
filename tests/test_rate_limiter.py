from __future__ import annotations

from backend.serveai.services.rate_limiter import SlidingWindowRateLimiter


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_budget_is_per_client_and_window_slides() -> None:
    clock = _Clock()
    limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60, clock=clock)

    first = limiter.take("10.0.0.1")
    second = limiter.take("10.0.0.1")
    blocked = limiter.take("10.0.0.1")
    other = limiter.take("10.0.0.2")

    assert first.allowed and first.remaining == 1
    assert second.allowed and second.remaining == 0
    assert not blocked.allowed
    assert blocked.retry_after_seconds == 60
    assert other.allowed

    clock.now += 45
    assert limiter.take("10.0.0.1").retry_after_seconds == 15

    clock.now += 15
    assert limiter.take("10.0.0.1").allowed
