"""Structured error taxonomy for the job client.

Every execution path returns these errors inside a Result instead of
raising them. Only configuration and manifest problems are raised, since
they are detected at load time, before any request is made.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from jobclient.models import Response

__all__ = [
    "ErrorKind",
    "RequestErrorCategory",
    "ClientError",
    "ApiConnectionError",
    "RequestInterruptedError",
    "CircuitOpenError",
    "ApiStatusError",
    "JobExpiredError",
    "ApiTimeoutError",
    "ResponseValidationError",
    "RequestFailedError",
    "ConfigurationError",
    "ManifestError",
    "error_from_response",
]


class ErrorKind(str, Enum):
    """Kind of failure, independent of the concrete exception type."""

    CONNECTION = "connection"
    STATUS = "status"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    REQUEST_FAILED = "request_failed"


class RequestErrorCategory(str, Enum):
    """Who the server blames for a failure."""

    USER = "user"
    SERVER = "server"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "RequestErrorCategory":
        """Parse a wire value case-insensitively; anything unrecognized is UNKNOWN."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            candidate = value.strip().lower()
            for member in cls:
                if member.value == candidate:
                    return member
        return cls.UNKNOWN


class ClientError(Exception):
    """Base error for all job client failures.

    Carries the structured fields needed to classify a failure and to
    log it without string parsing.
    """

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        category: Optional[RequestErrorCategory] = None,
        retry_after: Optional[float] = None,
        data: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.status = status
        self.category = category
        self.retry_after = retry_after
        self.data = data or {}
        self.cause = cause
        self.suggestion = suggestion

        text = f"[{status}] {message}" if status is not None else message
        if suggestion:
            text += f"\nSuggestion: {suggestion}"

        super().__init__(text)

    def is_user_error(self) -> bool:
        """True when the failure was caused by the caller's own request."""
        if self.category is RequestErrorCategory.USER:
            return True
        status = self.status
        return status is not None and 400 <= status < 500 and status not in (408, 429)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        result: Dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "kind": self.kind.value,
            "message": self.message,
            "status": self.status,
            "category": self.category.value if self.category is not None else None,
            "retry_after": self.retry_after,
            "data": self.data,
            "suggestion": self.suggestion,
        }
        if self.cause is not None:
            result["cause"] = str(self.cause)
            result["cause_type"] = type(self.cause).__name__
        return result


class ApiConnectionError(ClientError):
    """The request never reached the server (DNS, refused, connect timeout)."""

    kind = ErrorKind.CONNECTION


class RequestInterruptedError(ApiConnectionError):
    """The connection failed after the request may have been sent.

    Read and write timeouts and connections dropped mid-response land
    here. The server may already have applied the call, so mutations
    without an idempotency key must not be repeated.
    """


class CircuitOpenError(ApiConnectionError):
    """Returned in place of a call when the endpoint's breaker is open."""

    def __init__(self, name: str, **kwargs: Any) -> None:
        self.name = name
        kwargs.setdefault(
            "suggestion",
            "The endpoint has been failing; wait for the breaker to reset",
        )
        data = kwargs.pop("data", None) or {}
        data.setdefault("circuit_breaker", name)
        super().__init__(f"Circuit breaker '{name}' is open", data=data, **kwargs)


class ApiStatusError(ClientError):
    """The server answered with an error status."""

    kind = ErrorKind.STATUS


class JobExpiredError(ApiStatusError):
    """The job handle is gone (HTTP 410) and must be resubmitted."""

    def __init__(self, request_id: str, original: ClientError) -> None:
        super().__init__(
            f"Job expired for request {request_id}; submit a new request.",
            status=410,
            category=original.category or RequestErrorCategory.SERVER,
            data={"request_id": request_id, "original_error": original.to_dict()},
            cause=original,
            suggestion="Resubmit the original request instead of polling again",
        )
        self.request_id = request_id
        self.original = original


class ApiTimeoutError(ClientError):
    """An await timeout or polling deadline was exceeded."""

    kind = ErrorKind.TIMEOUT


class ResponseValidationError(ClientError):
    """The server response could not be decoded or had an unexpected shape."""

    kind = ErrorKind.VALIDATION


class RequestFailedError(ClientError):
    """The job finished but reported failure."""

    kind = ErrorKind.REQUEST_FAILED


class ConfigurationError(ClientError):
    """Invalid client configuration, raised at load time."""

    kind = ErrorKind.VALIDATION


class ManifestError(ConfigurationError):
    """Invalid or inconsistent endpoint manifest."""


def _decode_error_body(body: bytes) -> Dict[str, Any]:
    if not body:
        return {}
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return {"message": body.decode("utf-8", errors="replace")}
    return data if isinstance(data, dict) else {"message": str(data)}


def error_from_response(response: "Response") -> ApiStatusError:
    """Build a status error from a non-2xx response.

    The message comes from the body's ``message`` or ``error`` field. The
    category comes from the body when present and is otherwise inferred
    from the status class. 408 and 429 are always attributed to the server.
    """
    status = response.status
    body = _decode_error_body(response.body)
    message = body.get("message") or body.get("error") or f"HTTP {status}"
    if not isinstance(message, str):
        message = json.dumps(message, default=str)

    raw_category = body.get("category")
    if status in (408, 429):
        category = RequestErrorCategory.SERVER
    elif isinstance(raw_category, str):
        category = RequestErrorCategory.parse(raw_category)
    elif 400 <= status < 500:
        category = RequestErrorCategory.USER
    elif 500 <= status < 600:
        category = RequestErrorCategory.SERVER
    else:
        category = RequestErrorCategory.UNKNOWN

    return ApiStatusError(
        message,
        status=status,
        category=category,
        retry_after=response.retry_after(),
        data=body,
    )
