from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    """Outcome of a fallible read: a value, or the reason it is missing.

    An empty list with ``ok`` set means the tool answered with no rows; a
    failure means the tool could not be asked.
    """

    value: T | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> FetchResult[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: str) -> FetchResult[T]:
        return cls(value=None, error=error or "unknown error")

    def unwrap_or(self, default: T) -> T:
        if self.error is not None or self.value is None:
            return default
        return self.value
