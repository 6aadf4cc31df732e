"""Single-call retry built on tenacity.

The retried callable returns a Result instead of raising, so retries are
driven by ``retry_if_result`` and exhaustion hands back the last Result
rather than a tenacity.RetryError.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import asdict, dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional

import tenacity

from jobclient.backoff import retry_delay
from jobclient.classifier import Classification, classify
from jobclient.errors import CircuitOpenError, ClientError, ErrorKind, RequestInterruptedError
from jobclient.result import Result

logger = logging.getLogger(__name__)

__all__ = ["RetryPolicy", "with_retry", "should_retry"]

SleepFn = Callable[[float], Awaitable[Any]]
RetryHook = Callable[[int, float, ClientError], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Declarative retry policy for one call.

    ``max_attempts`` counts the first attempt; None retries until success
    or a non-retryable failure.
    """

    max_attempts: Optional[int] = 3
    initial_delay: float = 0.5
    max_delay: float = 10.0
    jitter: float = 0.25

    def __post_init__(self) -> None:
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1 or None, got {self.max_attempts}")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be between 0 and 1, got {self.jitter}")

    @classmethod
    def none(cls) -> "RetryPolicy":
        """No retry - fail on the first error."""
        return cls(max_attempts=1)

    @classmethod
    def default(cls) -> "RetryPolicy":
        return cls()

    @classmethod
    def aggressive(cls) -> "RetryPolicy":
        """Five attempts with longer backoff."""
        return cls(max_attempts=5, initial_delay=2.0, max_delay=30.0)

    def with_max_retries(self, max_retries: Optional[int]) -> "RetryPolicy":
        """Copy with ``max_retries`` retries after the first attempt."""
        if max_retries is None:
            return self
        return replace(self, max_attempts=max(0, max_retries) + 1)

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        return retry_delay(attempt, self.initial_delay, self.max_delay, self.jitter, rng)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        default = cls()
        max_attempts = data.get("max_attempts", default.max_attempts)
        return cls(
            max_attempts=None if max_attempts in (None, "unbounded") else int(max_attempts),
            initial_delay=float(data.get("initial_delay", default.initial_delay)),
            max_delay=float(data.get("max_delay", default.max_delay)),
            jitter=float(data.get("jitter", default.jitter)),
        )


def should_retry(result: Result[Any], *, retry_unsafe: bool = True) -> bool:
    """Whether a failed attempt is worth repeating.

    An open circuit is never retried. Calls that are unsafe to repeat
    (mutations without an idempotency key) are only retried when the
    request demonstrably did not take effect.
    """
    error = result.error
    if error is None or isinstance(error, CircuitOpenError):
        return False
    if not retry_unsafe:
        if isinstance(error, RequestInterruptedError):
            return False
        return error.kind is ErrorKind.CONNECTION or error.status == 429
    return classify(error) is Classification.RETRYABLE


async def with_retry(
    fn: Callable[[], Awaitable[Result[Any]]],
    policy: RetryPolicy,
    *,
    sleep: SleepFn = asyncio.sleep,
    retry_unsafe: bool = True,
    operation_name: str = "request",
    on_retry: Optional[RetryHook] = None,
    rng: Callable[[], float] = random.random,
) -> Result[Any]:
    """Run ``fn`` until it succeeds, fails terminally, or the policy is spent.

    Args:
        fn: Zero-argument coroutine function returning a Result
        policy: Retry policy
        sleep: Awaitable sleep used between attempts
        retry_unsafe: False for non-idempotent calls without an idempotency key
        operation_name: Name for logging
        on_retry: Called with (attempt, delay, error) before each sleep
        rng: Random source for jitter

    Returns:
        The first successful Result, or the last failed one
    """
    if policy.max_attempts is None:
        stop = tenacity.stop_never
    else:
        stop = tenacity.stop_after_attempt(policy.max_attempts)

    def wait_strategy(retry_state: tenacity.RetryCallState) -> float:
        delay = policy.delay_for(retry_state.attempt_number, rng)
        result = retry_state.outcome.result() if retry_state.outcome else None
        hint = result.error.retry_after if result is not None and result.error else None
        if hint is not None:
            delay = max(delay, hint)
        return delay

    def before_sleep_handler(retry_state: tenacity.RetryCallState) -> None:
        """Log retry attempts."""
        error = retry_state.outcome.result().error if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s attempt %d/%s failed: %s. Retrying in %.1fs...",
            operation_name,
            retry_state.attempt_number,
            policy.max_attempts if policy.max_attempts is not None else "inf",
            error,
            delay,
        )
        if on_retry is not None and error is not None:
            on_retry(retry_state.attempt_number, delay, error)

    def exhausted(retry_state: tenacity.RetryCallState) -> Result[Any]:
        """Hand back the last Result once the policy is spent."""
        result = retry_state.outcome.result()
        logger.error(
            "%s failed after %d attempts. Last error: %s",
            operation_name,
            retry_state.attempt_number,
            result.error,
        )
        return result

    retryer = tenacity.AsyncRetrying(
        sleep=sleep,
        stop=stop,
        wait=wait_strategy,
        retry=tenacity.retry_if_result(
            lambda result: should_retry(result, retry_unsafe=retry_unsafe)
        ),
        before_sleep=before_sleep_handler,
        retry_error_callback=exhausted,
    )
    return await retryer(fn)
