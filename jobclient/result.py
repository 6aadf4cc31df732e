"""Result value returned by every execution path."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from jobclient.errors import ClientError

__all__ = ["Result"]

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a ClientError, never both.

    Failures travel as values so callers can inspect the error taxonomy
    without wrapping calls in try/except.
    """

    value: Optional[T] = None
    error: Optional[ClientError] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ClientError) -> "Result[Any]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, raising the carried error on failure."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def map(self, fn: Callable[[T], U]) -> "Result[U]":
        if self.error is not None:
            return Result(error=self.error)
        return Result(value=fn(self.value))  # type: ignore[arg-type]

    def __repr__(self) -> str:
        if self.error is not None:
            return f"Result(error={self.error.__class__.__name__}: {self.error.message!r})"
        return f"Result(value={self.value!r})"
