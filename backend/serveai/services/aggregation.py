from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from datetime import UTC, datetime
from typing import Any, TypeVar

from backend.serveai.services.results import FetchResult

LOGGER = logging.getLogger("shimmyserve.aggregation")

T = TypeVar("T")


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


async def settle(label: str, awaitable: Awaitable[Any]) -> FetchResult[Any]:
    try:
        value = await awaitable
    except Exception as exc:
        LOGGER.warning("constituent fetch raised constituent=%s", label, exc_info=True)
        return FetchResult.failure(f"{type(exc).__name__}: {exc}")
    if isinstance(value, FetchResult):
        return value
    return FetchResult.success(value)


async def gather_settled(**awaitables: Awaitable[Any]) -> dict[str, FetchResult[Any]]:
    """Run constituents concurrently; each one fails on its own.

    Results are keyed by constituent name, so callers never depend on which
    call completed first.
    """
    labels = list(awaitables)
    outcomes = await asyncio.gather(
        *(settle(label, awaitables[label]) for label in labels)
    )
    return dict(zip(labels, outcomes, strict=True))


def take(
    outcomes: dict[str, FetchResult[Any]],
    label: str,
    default: T,
    errors: list[str],
) -> T:
    outcome = outcomes[label]
    if not outcome.ok:
        errors.append(f"{label}: {outcome.error}")
        return default
    if outcome.value is None:
        return default
    return outcome.value
