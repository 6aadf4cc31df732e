"""Error classification: keep trying, give up, or resubmit."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from jobclient.errors import ClientError, ErrorKind, RequestErrorCategory

__all__ = ["Classification", "classify", "is_retryable"]


class Classification(str, Enum):
    RETRYABLE = "retryable"
    TERMINAL = "terminal"
    EXPIRED = "expired"


def classify(
    error: Optional[ClientError] = None,
    *,
    status: Optional[int] = None,
    category: Optional[RequestErrorCategory] = None,
) -> Classification:
    """Decide what to do about a failed call.

    Explicit ``status``/``category`` arguments override the error's own
    fields. Rules, first match wins:

    1. 410 is EXPIRED, even when the server blames the user, so the caller
       is told to resubmit rather than fix the request.
    2. Category ``user`` is TERMINAL.
    3. Any other 4xx except 408 and 429 is TERMINAL.
    4. 408, 429 and 5xx are RETRYABLE.
    5. Connection failures (including an open circuit) are RETRYABLE.
    6. A failed job whose category is not ``user`` is RETRYABLE.
    7. Everything else is TERMINAL.
    """
    if error is not None:
        status = status if status is not None else error.status
        category = category if category is not None else error.category
    kind = error.kind if error is not None else None

    if status == 410:
        return Classification.EXPIRED
    if category is RequestErrorCategory.USER:
        return Classification.TERMINAL
    if status is not None:
        if 400 <= status < 500 and status not in (408, 429):
            return Classification.TERMINAL
        if status in (408, 429) or 500 <= status < 600:
            return Classification.RETRYABLE
    if kind is ErrorKind.CONNECTION:
        return Classification.RETRYABLE
    if kind is ErrorKind.REQUEST_FAILED:
        return Classification.RETRYABLE
    return Classification.TERMINAL


def is_retryable(error: ClientError) -> bool:
    return classify(error) is Classification.RETRYABLE
