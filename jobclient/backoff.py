"""Backoff delay calculation.

Two independent formulas live here:

- ``poll_backoff``: the deterministic delay used between poll iterations.
  No jitter, so the polling loop never compounds two random sources.
- ``retry_delay``: the jittered delay used by single-call retries.
"""

from __future__ import annotations

import math
import random
from typing import Any, Callable, Mapping, Optional

__all__ = [
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_BACKOFF",
    "MAX_BACKOFF_EXPONENT",
    "max_exponent",
    "poll_backoff",
    "retry_delay",
    "PollBackoff",
]

DEFAULT_INITIAL_BACKOFF = 1.0
DEFAULT_MAX_BACKOFF = 30.0
MAX_BACKOFF_EXPONENT = 30


def max_exponent(initial: float, max_delay: float) -> int:
    """Smallest exponent whose delay already reaches ``max_delay``."""
    if initial > 0 and max_delay > initial:
        return int(math.floor(math.log2(max_delay / initial))) + 1
    return 0


def poll_backoff(
    iteration: int,
    initial: float = DEFAULT_INITIAL_BACKOFF,
    max_delay: float = DEFAULT_MAX_BACKOFF,
) -> float:
    """Delay before poll ``iteration + 1``.

    ``min(initial * 2 ** min(iteration, cap), max_delay)`` where the exponent
    cap keeps ``2 ** n`` from growing past what ``max_delay`` can express.

    Example:
        >>> [poll_backoff(i) for i in range(7)]
        [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
    """
    if iteration < 0:
        raise ValueError(f"iteration must be >= 0, got {iteration}")
    exponent = min(iteration, max_exponent(initial, max_delay), MAX_BACKOFF_EXPONENT)
    return min(initial * (2 ** exponent), max_delay)


def retry_delay(
    attempt: int,
    initial: float,
    max_delay: float,
    jitter: float = 0.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """Jittered exponential delay for single-call retries.

    ``attempt`` is 1-based (the attempt that just failed). The base delay is
    multiplied by a uniform factor in ``[1 - jitter, 1 + jitter]``.
    """
    base = min(initial * (2 ** max(0, min(attempt - 1, MAX_BACKOFF_EXPONENT))), max_delay)
    if jitter > 0:
        factor = 1.0 - jitter + 2.0 * jitter * rng()
        base *= factor
    return max(0.0, min(base, max_delay))


class PollBackoff:
    """Delay policy for transient retrieval failures (408 and 5xx).

    Example:
        PollBackoff.none()                  # re-poll without waiting
        PollBackoff.exponential(0.5, 10.0)  # capped doubling
        PollBackoff.custom(lambda i: 2.0)   # caller-supplied
    """

    NONE = "none"
    EXPONENTIAL = "exponential"
    CUSTOM = "custom"

    def __init__(
        self,
        mode: str,
        *,
        initial: float = DEFAULT_INITIAL_BACKOFF,
        max_delay: float = DEFAULT_MAX_BACKOFF,
        fn: Optional[Callable[[int], Any]] = None,
    ) -> None:
        if mode not in (self.NONE, self.EXPONENTIAL, self.CUSTOM):
            raise ValueError(f"Unknown poll backoff mode: {mode!r}")
        if mode == self.CUSTOM and fn is None:
            raise ValueError("custom poll backoff requires a function")
        self.mode = mode
        self.initial = initial
        self.max_delay = max_delay
        self.fn = fn

    @classmethod
    def none(cls) -> "PollBackoff":
        return cls(cls.NONE)

    @classmethod
    def exponential(
        cls,
        initial: float = DEFAULT_INITIAL_BACKOFF,
        max_delay: float = DEFAULT_MAX_BACKOFF,
    ) -> "PollBackoff":
        if initial <= 0 or max_delay < initial:
            raise ValueError(
                f"exponential poll backoff needs 0 < initial <= max_delay, "
                f"got initial={initial}, max_delay={max_delay}"
            )
        return cls(cls.EXPONENTIAL, initial=initial, max_delay=max_delay)

    @classmethod
    def custom(cls, fn: Callable[[int], Any]) -> "PollBackoff":
        return cls(cls.CUSTOM, fn=fn)

    @classmethod
    def parse(cls, value: Any) -> "PollBackoff":
        """Build a policy from a config value.

        Accepts None/False/"none", True/"exponential", a mapping with
        ``initial``/``max`` keys, a callable, or an existing policy.
        """
        if isinstance(value, PollBackoff):
            return value
        if value is None or value is False or value == cls.NONE:
            return cls.none()
        if value is True or value == cls.EXPONENTIAL:
            return cls.exponential()
        if isinstance(value, Mapping):
            return cls.exponential(
                float(value.get("initial", DEFAULT_INITIAL_BACKOFF)),
                float(value.get("max", value.get("max_delay", DEFAULT_MAX_BACKOFF))),
            )
        if callable(value):
            return cls.custom(value)
        raise ValueError(f"Unsupported poll backoff value: {value!r}")

    def delay(self, iteration: int) -> Optional[float]:
        """Seconds to sleep, or None for no sleep at all."""
        if self.mode == self.NONE:
            return None
        if self.mode == self.EXPONENTIAL:
            return poll_backoff(iteration, self.initial, self.max_delay)
        assert self.fn is not None
        raw = self.fn(iteration)
        if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw < 0:
            return 0.0
        return float(raw)

    def __repr__(self) -> str:
        if self.mode == self.EXPONENTIAL:
            return f"PollBackoff.exponential({self.initial}, {self.max_delay})"
        return f"PollBackoff.{self.mode}()"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PollBackoff):
            return NotImplemented
        return (self.mode, self.initial, self.max_delay, self.fn) == (
            other.mode,
            other.initial,
            other.max_delay,
            other.fn,
        )

    __hash__ = None  # type: ignore[assignment]
