from __future__ import annotations

import asyncio

from backend.serveai.services.availability import AvailabilityCache


class _Probe:
    def __init__(self, *answers: bool) -> None:
        self.calls = 0
        self._answers = list(answers)

    async def __call__(self) -> bool:
        self.calls += 1
        await asyncio.sleep(0)
        if len(self._answers) > 1:
            return self._answers.pop(0)
        return self._answers[0]


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_first_answer_is_memoized() -> None:
    probe = _Probe(False, True)
    cache = AvailabilityCache(probe, name="docker")

    async def _scenario() -> list[bool]:
        return [await cache.check() for _ in range(5)]

    assert asyncio.run(_scenario()) == [False] * 5
    assert probe.calls == 1
    assert cache.value is False


def test_concurrent_checks_share_one_probe() -> None:
    probe = _Probe(True)
    cache = AvailabilityCache(probe, name="kubectl")

    async def _scenario() -> list[bool]:
        return list(await asyncio.gather(*(cache.check() for _ in range(10))))

    assert asyncio.run(_scenario()) == [True] * 10
    assert probe.calls == 1


def test_invalidate_forces_reprobe() -> None:
    probe = _Probe(False, True)
    cache = AvailabilityCache(probe, name="shimmy")

    async def _scenario() -> tuple[bool, bool]:
        first = await cache.check()
        cache.invalidate()
        return first, await cache.check()

    assert asyncio.run(_scenario()) == (False, True)
    assert probe.calls == 2


def test_ttl_expiry_triggers_reprobe() -> None:
    probe = _Probe(True, False)
    clock = _Clock()
    cache = AvailabilityCache(probe, name="docker", ttl_seconds=30.0, clock=clock)

    async def _scenario() -> list[bool]:
        answers = [await cache.check()]
        clock.now += 10
        answers.append(await cache.check())
        clock.now += 25
        answers.append(await cache.check())
        return answers

    assert asyncio.run(_scenario()) == [True, True, False]
    assert probe.calls == 2
