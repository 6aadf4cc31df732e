"""Circuit breakers keyed by endpoint.

A breaker opens after a run of consecutive failures, rejects calls while
open, and lets a limited number of trial calls through once the reset
timeout has passed.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from jobclient.errors import CircuitOpenError, ClientError, ErrorKind
from jobclient.result import Result

logger = logging.getLogger(__name__)

__all__ = ["CircuitState", "CircuitBreaker", "CircuitBreakerRegistry", "counts_as_failure"]

StateCallback = Callable[[str, str, str], None]


class CircuitState:
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def counts_as_failure(error: Optional[ClientError]) -> bool:
    """Only failures that say something about the endpoint's health count.

    Connection errors and 5xx answers count; user errors, 429 and our own
    open-circuit rejections do not.
    """
    if error is None or isinstance(error, CircuitOpenError):
        return False
    if error.kind is ErrorKind.CONNECTION:
        return True
    return error.status is not None and error.status >= 500


class CircuitBreaker:
    """Circuit breaker with closed/open/half-open states.

    ``allow()`` checks and transitions under one lock, so two concurrent
    callers can never both slip past a breaker that just tripped, and the
    half-open trial budget is reserved atomically.

    Example:
        breaker = CircuitBreaker("create_job", failure_threshold=3)

        if breaker.allow():
            result = await send(request)
            breaker.record(result.error)
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[StateCallback] = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_calls = half_open_max_calls
        self.on_state_change = on_state_change
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0

    @property
    def state(self) -> str:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> str:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.reset_timeout
        ):
            return CircuitState.HALF_OPEN
        return self._state

    def _transition(self, new_state: str) -> Optional[str]:
        old_state = self._state
        if old_state == new_state:
            return None
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state == CircuitState.CLOSED:
            self._opened_at = None
            self._failures = 0
        self._half_open_calls = 0
        return old_state

    def _notify(self, old_state: Optional[str], new_state: str) -> None:
        if old_state is None:
            return
        level = logging.WARNING if new_state == CircuitState.OPEN else logging.INFO
        logger.log(
            level,
            "Circuit breaker '%s' %s -> %s",
            self.name,
            old_state,
            new_state,
        )
        if self.on_state_change is not None:
            try:
                self.on_state_change(self.name, old_state, new_state)
            except Exception:  # noqa: BLE001
                logger.warning(
                    "Circuit breaker '%s' state callback failed",
                    self.name,
                    exc_info=True,
                )

    def allow(self) -> bool:
        """Reserve permission for one call."""
        changed = None
        with self._lock:
            current = self._current_state()
            if current == CircuitState.OPEN:
                return False
            if current == CircuitState.HALF_OPEN:
                if self._state != CircuitState.HALF_OPEN:
                    changed = self._transition(CircuitState.HALF_OPEN)
                if self._half_open_calls >= self.half_open_max_calls:
                    allowed = False
                else:
                    self._half_open_calls += 1
                    allowed = True
            else:
                allowed = True
        self._notify(changed, CircuitState.HALF_OPEN)
        return allowed

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            changed = self._transition(CircuitState.CLOSED)
        self._notify(changed, CircuitState.CLOSED)

    def record_failure(self) -> None:
        changed = None
        with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN:
                # a failed trial call reopens immediately
                changed = self._transition(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
                changed = self._transition(CircuitState.OPEN)
            elif self._state == CircuitState.OPEN:
                self._opened_at = self._clock()
        self._notify(changed, CircuitState.OPEN)

    def record(self, error: Optional[ClientError]) -> None:
        """Record the outcome of one allowed call."""
        if counts_as_failure(error):
            self.record_failure()
        elif error is None:
            self.record_success()
        else:
            self.release()

    def release(self) -> None:
        """Give back a half-open slot without judging the endpoint's health."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._half_open_calls > 0:
                self._half_open_calls -= 1

    def reset(self) -> None:
        with self._lock:
            changed = self._transition(CircuitState.CLOSED)
        self._notify(changed, CircuitState.CLOSED)

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self._current_state(),
                "failures": self._failures,
                "failure_threshold": self.failure_threshold,
                "reset_timeout": self.reset_timeout,
                "half_open_max_calls": self.half_open_max_calls,
            }


class CircuitBreakerRegistry:
    """Lazily creates one CircuitBreaker per name, shared by all callers."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[StateCallback] = None,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_calls = half_open_max_calls
        self.on_state_change = on_state_change
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    failure_threshold=self.failure_threshold,
                    reset_timeout=self.reset_timeout,
                    half_open_max_calls=self.half_open_max_calls,
                    clock=self._clock,
                    on_state_change=self.on_state_change,
                )
                self._breakers[name] = breaker
            return breaker

    async def call(
        self,
        name: str,
        fn: Callable[[], Awaitable[Result[Any]]],
    ) -> Result[Any]:
        """Run ``fn`` through the breaker named ``name``.

        Returns a CircuitOpenError failure without calling ``fn`` when the
        breaker rejects the call.
        """
        breaker = self.get(name)
        if not breaker.allow():
            return Result.failure(CircuitOpenError(name))
        try:
            result = await fn()
        except BaseException:
            breaker.release()
            raise
        breaker.record(result.error)
        return result

    def states(self) -> Dict[str, str]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.state for breaker in breakers}
