"""Future controller: polls a job handle until the job resolves.

The loop runs inside one asyncio task per job. Each iteration:

1. checks the overall poll deadline (surfacing the last transient
   failure rather than a bare timeout when one was seen),
2. issues one retrieval with HTTP-level retries disabled,
3. classifies the outcome as completed, pending, retryable, terminal or
   expired,
4. reports queue-state changes, then sleeps through the injected sleep.

Every failure comes back as a Result; a crashed or cancelled worker is
converted to an ApiTimeoutError at the await boundary.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from jobclient import telemetry as events
from jobclient.backoff import (
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_BACKOFF,
    PollBackoff,
    poll_backoff,
)
from jobclient.classifier import Classification, classify
from jobclient.errors import (
    ApiTimeoutError,
    ClientError,
    ErrorKind,
    JobExpiredError,
    RequestErrorCategory,
    RequestFailedError,
    ResponseValidationError,
)
from jobclient.models import (
    JobCompleted,
    JobFailed,
    JobPending,
    JobTryAgain,
    QueueState,
    parse_poll_response,
)
from jobclient.observer import NoopObserver, QueueStateObserver
from jobclient.result import Result
from jobclient.telemetry import NoopTelemetry, Telemetry

logger = logging.getLogger(__name__)

__all__ = [
    "PollConfig",
    "PollPhase",
    "PollState",
    "OutcomeKind",
    "Outcome",
    "FutureController",
    "PollTask",
    "await_many",
    "normalize_job_id",
    "DEFAULT_HTTP_TIMEOUT",
    "DEFAULT_PAUSED_DELAY",
]

DEFAULT_HTTP_TIMEOUT = 45.0
DEFAULT_PAUSED_DELAY = 1.0

RetrieveFn = Callable[[str, int, float], Awaitable[Result[Any]]]
SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class PollConfig:
    """Fully resolved polling settings, in seconds.

    ``poll_timeout`` of None means the loop only ends on a terminal
    outcome or cancellation.
    """

    initial_backoff: float = DEFAULT_INITIAL_BACKOFF
    max_backoff: float = DEFAULT_MAX_BACKOFF
    paused_delay: float = DEFAULT_PAUSED_DELAY
    poll_timeout: Optional[float] = None
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    poll_backoff: PollBackoff = field(default_factory=PollBackoff.exponential)

    def backoff(self, iteration: int) -> float:
        return poll_backoff(iteration, self.initial_backoff, self.max_backoff)


class PollPhase(str, Enum):
    SUBMITTING = "submitting"
    POLLING = "polling"
    SLEEPING = "sleeping"
    COMPLETED = "completed"
    TERMINAL_FAILED = "terminal_failed"
    EXPIRED = "expired"
    DEADLINE_EXCEEDED = "deadline_exceeded"

    @property
    def is_terminal(self) -> bool:
        return self in (
            PollPhase.COMPLETED,
            PollPhase.TERMINAL_FAILED,
            PollPhase.EXPIRED,
            PollPhase.DEADLINE_EXCEEDED,
        )


@dataclass
class PollState:
    """Mutable record owned by exactly one polling loop."""

    job_id: str
    started_at: float
    http_timeout: float
    poll_timeout: Optional[float] = None
    iteration: int = 0
    phase: PollPhase = PollPhase.SUBMITTING
    prev_queue_state: Optional[QueueState] = None
    prev_queue_reason: Optional[str] = None
    last_failure: Optional[ClientError] = None


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    RETRYABLE_FAILURE = "retryable_failure"
    TERMINAL_FAILURE = "terminal_failure"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Outcome:
    """Classified result of one poll attempt.

    ``delay`` is the sleep before the next attempt; None means re-poll
    without sleeping.
    """

    kind: OutcomeKind
    value: Any = None
    error: Optional[ClientError] = None
    delay: Optional[float] = None
    queue_state: Optional[QueueState] = None
    reason: Optional[str] = None


def normalize_job_id(handle: Any, field_name: str = "request_id") -> str:
    """Extract the job handle from a submission response.

    Raises:
        ResponseValidationError: If no string handle is present
    """
    if isinstance(handle, str) and handle:
        return handle
    if isinstance(handle, Mapping):
        value = handle.get(field_name)
        if isinstance(value, str) and value:
            return value
    raise ResponseValidationError(
        f"Expected a job handle in field '{field_name}'",
        data={"response": handle if isinstance(handle, (dict, str)) else repr(handle)},
    )


class FutureController:
    """Drives the polling state machine for one job at a time.

    Args:
        retrieve: ``retrieve(job_id, iteration, http_timeout)`` issuing one
            retrieval call with retries disabled
        config: Polling settings
        telemetry: Event sink
        observer: Notified on queue-state changes
        sleep: Awaitable sleep; tests pass a recording stand-in
        clock: Monotonic clock in seconds
        metadata: Extra fields merged into every telemetry event
    """

    def __init__(
        self,
        retrieve: RetrieveFn,
        *,
        config: Optional[PollConfig] = None,
        telemetry: Optional[Telemetry] = None,
        observer: Optional[QueueStateObserver] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.retrieve = retrieve
        self.config = config or PollConfig()
        self.telemetry = telemetry or NoopTelemetry()
        self.observer = observer or NoopObserver()
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self._sleep = sleep
        self._clock = clock

    def poll(self, job_id: str) -> "PollTask":
        """Start polling ``job_id`` in a new task."""
        task = asyncio.get_running_loop().create_task(self.run(job_id), name=f"poll-{job_id}")
        return PollTask(job_id, task)

    async def run(self, job_id: str) -> Result[Any]:
        """Poll ``job_id`` to a terminal state in the current task."""
        state = PollState(
            job_id=job_id,
            started_at=self._clock(),
            http_timeout=self.config.http_timeout,
            poll_timeout=self.config.poll_timeout,
        )
        self._emit(events.POLL_START, {}, state)
        return await self._loop(state)

    async def _loop(self, state: PollState) -> Result[Any]:
        while True:
            state.phase = PollPhase.POLLING
            if self._deadline_exceeded(state):
                return self._finish_deadline(state)

            self._emit(events.POLL_ATTEMPT, {}, state)
            result = await self.retrieve(state.job_id, state.iteration, state.http_timeout)
            outcome = self.classify(state, result)

            if outcome.kind is OutcomeKind.COMPLETED:
                state.phase = PollPhase.COMPLETED
                self._emit(events.POLL_COMPLETE, {}, state)
                return Result.success(outcome.value)

            if outcome.kind is OutcomeKind.EXPIRED:
                state.phase = PollPhase.EXPIRED
                self._emit_error(events.FUTURE_EXPIRED, outcome.error, state)
                self._emit_poll_error(outcome.error, state)
                return Result.failure(outcome.error)

            if outcome.kind is OutcomeKind.TERMINAL_FAILURE:
                state.phase = PollPhase.TERMINAL_FAILED
                self._emit_error(_error_event(outcome.error), outcome.error, state)
                self._emit_poll_error(outcome.error, state)
                return Result.failure(outcome.error)

            if outcome.kind is OutcomeKind.RETRYABLE_FAILURE:
                state.last_failure = outcome.error
                self._emit_error(_error_event(outcome.error), outcome.error, state)
            elif outcome.queue_state is not None:
                self._report_queue_state(state, outcome.queue_state, outcome.reason)

            state.phase = PollPhase.SLEEPING
            await self._pause(outcome.delay)
            state.iteration += 1

    def classify(self, state: PollState, result: Result[Any]) -> Outcome:
        """Map one retrieval result onto an Outcome."""
        iteration = state.iteration
        if result.error is not None:
            return self._classify_error(state, result.error)

        try:
            response = parse_poll_response(result.value)
        except ResponseValidationError as e:
            return Outcome(OutcomeKind.TERMINAL_FAILURE, error=e)

        if isinstance(response, JobCompleted):
            return Outcome(OutcomeKind.COMPLETED, value=response.result)

        if isinstance(response, (JobTryAgain, JobPending)):
            return Outcome(
                OutcomeKind.PENDING,
                delay=self._pending_delay(response, iteration),
                queue_state=response.queue_state,
                reason=response.reason,
            )

        assert isinstance(response, JobFailed)
        error = RequestFailedError(
            response.message or f"Job {state.job_id} failed",
            category=response.category,
            data={"request_id": state.job_id, "error": response.error},
        )
        if response.category is RequestErrorCategory.USER:
            return Outcome(OutcomeKind.TERMINAL_FAILURE, error=error)
        return Outcome(
            OutcomeKind.RETRYABLE_FAILURE,
            error=error,
            delay=self.config.backoff(iteration),
        )

    def _classify_error(self, state: PollState, error: ClientError) -> Outcome:
        verdict = classify(error)
        if verdict is Classification.EXPIRED:
            return Outcome(OutcomeKind.EXPIRED, error=JobExpiredError(state.job_id, error))
        if verdict is Classification.TERMINAL:
            return Outcome(OutcomeKind.TERMINAL_FAILURE, error=error)

        iteration = state.iteration
        status = error.status
        if status == 408 or (status is not None and 500 <= status < 600):
            delay = self.config.poll_backoff.delay(iteration)
        elif status == 429 and error.retry_after is not None:
            delay = error.retry_after
        else:
            delay = self.config.backoff(iteration)
        return Outcome(OutcomeKind.RETRYABLE_FAILURE, error=error, delay=delay)

    def _pending_delay(self, response: Any, iteration: int) -> float:
        if response.retry_after is not None:
            return response.retry_after
        if response.queue_state is not None and response.queue_state.is_paused:
            return self.config.paused_delay
        return self.config.backoff(iteration)

    async def _pause(self, delay: Optional[float]) -> None:
        if delay is None:
            # no backoff requested; still yield so cancellation lands promptly
            await asyncio.sleep(0)
        else:
            await self._sleep(delay)

    def _deadline_exceeded(self, state: PollState) -> bool:
        if state.poll_timeout is None:
            return False
        return self._clock() - state.started_at > state.poll_timeout

    def _finish_deadline(self, state: PollState) -> Result[Any]:
        state.phase = PollPhase.DEADLINE_EXCEEDED
        error = state.last_failure or ApiTimeoutError(
            f"Timed out while polling job {state.job_id}",
            data={
                "request_id": state.job_id,
                "poll_timeout": state.poll_timeout,
                "iteration": state.iteration,
            },
        )
        self._emit(events.FUTURE_TIMEOUT, {}, state)
        self._emit_poll_error(error, state)
        if state.last_failure is not None:
            logger.warning(
                "Polling job %s exceeded %.1fs deadline; last failure: %s",
                state.job_id,
                state.poll_timeout,
                state.last_failure,
            )
        return Result.failure(error)

    def _report_queue_state(
        self,
        state: PollState,
        queue_state: QueueState,
        reason: Optional[str],
    ) -> None:
        if (queue_state, reason) == (state.prev_queue_state, state.prev_queue_reason):
            return
        state.prev_queue_state = queue_state
        state.prev_queue_reason = reason

        metadata = self._metadata(state)
        metadata["queue_state"] = queue_state.value
        metadata["queue_state_reason"] = reason
        self._safe_emit(events.QUEUE_STATE_CHANGE, {}, metadata)
        try:
            self.observer.on_queue_state_change(queue_state, metadata)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Queue state observer %r failed for job %s",
                self.observer,
                state.job_id,
                exc_info=True,
            )

    def _metadata(self, state: PollState) -> Dict[str, Any]:
        metadata = dict(self.metadata)
        metadata["request_id"] = state.job_id
        metadata["iteration"] = state.iteration
        return metadata

    def _emit(self, event: str, measurements: Dict[str, Any], state: PollState) -> None:
        measurements.setdefault("elapsed", self._clock() - state.started_at)
        self._safe_emit(event, measurements, self._metadata(state))

    def _emit_error(self, event: str, error: ClientError, state: PollState) -> None:
        metadata = self._metadata(state)
        metadata.update(
            status=error.status,
            category=error.category.value if error.category is not None else None,
            error_type=error.kind.value,
        )
        self._safe_emit(event, {"elapsed": self._clock() - state.started_at}, metadata)

    def _emit_poll_error(self, error: ClientError, state: PollState) -> None:
        metadata = self._metadata(state)
        metadata.update(reason=error.message, error_type=error.kind.value, phase=state.phase.value)
        self._safe_emit(events.POLL_ERROR, {"elapsed": self._clock() - state.started_at}, metadata)

    def _safe_emit(self, event: str, measurements: Dict[str, Any], metadata: Dict[str, Any]) -> None:
        try:
            self.telemetry.emit(event, measurements, metadata)
        except Exception:  # noqa: BLE001
            logger.warning("Telemetry emit failed for %s", event, exc_info=True)


def _error_event(error: Optional[ClientError]) -> str:
    kind = error.kind if error is not None else None
    if kind is ErrorKind.CONNECTION:
        return events.FUTURE_CONNECTION_ERROR
    if kind is ErrorKind.VALIDATION:
        return events.FUTURE_VALIDATION_ERROR
    if kind is ErrorKind.REQUEST_FAILED:
        return events.FUTURE_REQUEST_FAILED
    return events.FUTURE_API_ERROR


class PollTask:
    """Handle on a running (or already resolved) poll.

    ``wait`` never raises for worker failures: a timeout, crash or
    cancellation all come back as an ApiTimeoutError. The first outcome
    observed is kept, so waiting again returns the same Result.
    """

    def __init__(
        self,
        job_id: str,
        task: Optional["asyncio.Task[Result[Any]]"] = None,
        *,
        outcome: Optional[Result[Any]] = None,
    ) -> None:
        if task is None and outcome is None:
            raise ValueError("PollTask needs a task or an outcome")
        self.job_id = job_id
        self._task = task
        self._outcome = outcome

    @classmethod
    def resolved(cls, job_id: str, result: Result[Any]) -> "PollTask":
        return cls(job_id, outcome=result)

    def done(self) -> bool:
        return self._outcome is not None or (self._task is not None and self._task.done())

    def cancel(self) -> bool:
        """Request cancellation; returns False if the poll already finished."""
        if self._task is None or self._task.done():
            return False
        return self._task.cancel()

    async def wait(self, timeout: Optional[float] = None) -> Result[Any]:
        """Wait for the poll to finish.

        Args:
            timeout: Seconds to wait; on expiry the worker is cancelled
                and awaited before returning

        Returns:
            The poll's Result, or an ApiTimeoutError failure
        """
        if self._outcome is not None:
            return self._outcome
        assert self._task is not None

        if not self._task.done():
            finished, _ = await asyncio.wait({self._task}, timeout=timeout)
            if not finished:
                self._task.cancel()
                await asyncio.wait({self._task})
                if not self._task.cancelled() and self._task.exception() is None:
                    # finished in the window between the timeout and the cancel
                    self._outcome = self._task.result()
                    return self._outcome
                logger.warning("Gave up waiting for job %s after %.1fs", self.job_id, timeout)
                self._outcome = Result.failure(
                    ApiTimeoutError(
                        f"Timed out after {timeout:.1f}s waiting for job {self.job_id}",
                        data={"request_id": self.job_id, "timeout": timeout},
                    )
                )
                return self._outcome

        self._outcome = self._collect()
        return self._outcome

    def _collect(self) -> Result[Any]:
        assert self._task is not None
        if self._task.cancelled():
            return Result.failure(
                ApiTimeoutError(
                    f"Polling for job {self.job_id} was cancelled",
                    data={"request_id": self.job_id, "exit_reason": "cancelled"},
                )
            )
        exc = self._task.exception()
        if exc is not None:
            logger.error(
                "Polling for job %s crashed",
                self.job_id,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            return Result.failure(
                ApiTimeoutError(
                    f"Polling for job {self.job_id} crashed: {exc}",
                    data={"request_id": self.job_id, "exit_reason": repr(exc)},
                    cause=exc,
                )
            )
        return self._task.result()

    def __repr__(self) -> str:
        return f"PollTask(job_id={self.job_id!r}, done={self.done()})"


async def await_many(
    tasks: Iterable[PollTask],
    timeout: Optional[float] = None,
) -> List[Result[Any]]:
    """Wait for several polls concurrently; results keep the input order."""
    return list(await asyncio.gather(*(task.wait(timeout) for task in tasks)))
