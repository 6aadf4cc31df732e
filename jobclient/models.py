"""Transport-agnostic request/response values and poll wire responses."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from jobclient.errors import RequestErrorCategory, ResponseValidationError

__all__ = [
    "Request",
    "Response",
    "QueueState",
    "RequestErrorCategory",
    "JobCompleted",
    "JobPending",
    "JobTryAgain",
    "JobFailed",
    "PollResponse",
    "parse_poll_response",
    "parse_retry_after",
]


@dataclass(frozen=True)
class Request:
    """One outbound call, discarded after use."""

    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    timeout: Optional[float] = None
    endpoint_id: Optional[str] = None

    def with_headers(self, **headers: str) -> "Request":
        merged = dict(self.headers)
        merged.update(headers)
        return replace(self, headers=merged)

    def header(self, name: str) -> Optional[str]:
        return _find_header(self.headers, name)


@dataclass(frozen=True)
class Response:
    """One inbound response."""

    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    elapsed: float = 0.0

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        return _find_header(self.headers, name)

    def retry_after(self) -> Optional[float]:
        """Server retry hint in seconds, if any."""
        return parse_retry_after(self.headers)


def _find_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    """Read ``retry-after-ms`` or ``retry-after`` (integer seconds).

    HTTP-date values are not supported and are ignored.
    """
    raw_ms = _find_header(headers, "retry-after-ms")
    if raw_ms is not None:
        try:
            return max(0.0, int(raw_ms.strip()) / 1000.0)
        except ValueError:
            pass
    raw_seconds = _find_header(headers, "retry-after")
    if raw_seconds is not None:
        try:
            return float(max(0, int(raw_seconds.strip())))
        except ValueError:
            return None
    return None


class QueueState(str, Enum):
    """Server-reported scheduling status of a pending job."""

    ACTIVE = "active"
    PAUSED_RATE_LIMIT = "paused_rate_limit"
    PAUSED_CAPACITY = "paused_capacity"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "QueueState":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            candidate = value.strip().lower()
            for member in cls:
                if member.value == candidate:
                    return member
        return cls.UNKNOWN

    @property
    def is_paused(self) -> bool:
        return self in (QueueState.PAUSED_RATE_LIMIT, QueueState.PAUSED_CAPACITY)


@dataclass(frozen=True)
class JobCompleted:
    result: Any


@dataclass(frozen=True)
class JobPending:
    queue_state: Optional[QueueState] = None
    reason: Optional[str] = None
    retry_after: Optional[float] = None


@dataclass(frozen=True)
class JobTryAgain:
    """Queue backpressure: keep polling, honoring the suggested delay."""

    queue_state: QueueState
    reason: Optional[str] = None
    retry_after: Optional[float] = None
    request_id: Optional[str] = None


@dataclass(frozen=True)
class JobFailed:
    error: Dict[str, Any]
    category: RequestErrorCategory = RequestErrorCategory.UNKNOWN

    @property
    def message(self) -> Optional[str]:
        message = self.error.get("message")
        return message if isinstance(message, str) else None


PollResponse = Union[JobCompleted, JobPending, JobTryAgain, JobFailed]


def _optional_str(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ResponseValidationError(
            f"Expected '{key}' to be a string, got {type(value).__name__}",
            data={"response": dict(data)},
        )
    return value


def _retry_after_ms(data: Mapping[str, Any]) -> Optional[float]:
    value = data.get("retry_after_ms")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ResponseValidationError(
            f"Expected 'retry_after_ms' to be a non-negative integer, got {value!r}",
            data={"response": dict(data)},
        )
    return value / 1000.0


def _failed(data: Mapping[str, Any]) -> JobFailed:
    error = data.get("error")
    if isinstance(error, str):
        error = {"message": error}
    if not isinstance(error, dict):
        error = {}
    return JobFailed(error=error, category=RequestErrorCategory.parse(error.get("category")))


def parse_poll_response(data: Any) -> PollResponse:
    """Map a decoded retrieval payload onto one poll response variant.

    A completed job is recognised by ``type`` completed/success, by
    ``status`` complete/completed, or by any other mapping carrying
    ``result``. The payload's ``result`` is the job result when present,
    otherwise the whole payload is.

    Raises:
        ResponseValidationError: If the payload matches no known shape
    """
    if not isinstance(data, Mapping):
        raise ResponseValidationError(
            f"Expected a JSON object from the retrieve endpoint, got {type(data).__name__}",
            data={"response": data},
        )

    kind = data.get("type")
    if isinstance(kind, str):
        kind = kind.lower()
        if kind == "try_again":
            queue_state = data.get("queue_state")
            if not isinstance(queue_state, str):
                raise ResponseValidationError(
                    "try_again response is missing 'queue_state'",
                    data={"response": dict(data)},
                )
            return JobTryAgain(
                queue_state=QueueState.parse(queue_state),
                reason=_optional_str(data, "queue_state_reason"),
                retry_after=_retry_after_ms(data),
                request_id=_optional_str(data, "request_id"),
            )
        if kind in ("completed", "success"):
            return JobCompleted(result=data["result"] if "result" in data else dict(data))
        if kind in ("failed", "error"):
            return _failed(data)

    status = data.get("status")
    if status == "pending":
        queue_state = data.get("queue_state")
        return JobPending(
            queue_state=QueueState.parse(queue_state) if queue_state is not None else None,
            reason=_optional_str(data, "queue_state_reason"),
            retry_after=_retry_after_ms(data),
        )
    if status in ("complete", "completed"):
        return JobCompleted(result=data["result"] if "result" in data else dict(data))
    if status == "failed":
        return _failed(data)
    if "result" in data:
        return JobCompleted(result=data["result"])

    raise ResponseValidationError(
        "Unrecognized retrieve response shape",
        data={"response": dict(data)},
    )
