"""Queue-state observers.

The poll loop notifies an observer whenever the server-reported queue
state of a pending job changes. Observers are best effort: the loop
catches and logs anything they raise.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from jobclient.models import QueueState

logger = logging.getLogger(__name__)

__all__ = ["QueueStateObserver", "NoopObserver", "QueueStateLogger", "DEFAULT_LOG_INTERVAL"]

DEFAULT_LOG_INTERVAL = 60.0

_DEFAULT_REASONS = {
    QueueState.PAUSED_RATE_LIMIT: "concurrent request rate limit hit",
    QueueState.PAUSED_CAPACITY: "server is running short on capacity, please wait",
}


class QueueStateObserver(Protocol):
    def on_queue_state_change(self, state: QueueState, metadata: Mapping[str, Any]) -> None:
        ...


class NoopObserver:
    def on_queue_state_change(self, state: QueueState, metadata: Mapping[str, Any]) -> None:
        return None


class QueueStateLogger:
    """Logs a warning when a job is paused, at most once per interval per job.

    A non-empty server-supplied reason (``metadata["queue_state_reason"]``)
    is preferred over the built-in description.
    """

    def __init__(
        self,
        identifier: Optional[str] = None,
        *,
        interval: float = DEFAULT_LOG_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.identifier = identifier
        self.interval = interval
        self._clock = clock
        self._last_logged: Dict[str, float] = {}
        self._lock = threading.Lock()

    @staticmethod
    def resolve_reason(state: QueueState, server_reason: Optional[str]) -> str:
        if server_reason:
            return server_reason
        return _DEFAULT_REASONS.get(state, "unknown")

    def _should_log(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            last = self._last_logged.get(key)
            if last is not None and now - last < self.interval:
                return False
            self._last_logged = {k: t for k, t in self._last_logged.items() if now - t < self.interval}
            self._last_logged[key] = now
            return True

    def on_queue_state_change(self, state: QueueState, metadata: Mapping[str, Any]) -> None:
        if state is QueueState.ACTIVE:
            return
        request_id = metadata.get("request_id")
        identifier = self.identifier or request_id or "unknown job"
        if not self._should_log(str(request_id or identifier)):
            return
        reason = self.resolve_reason(state, metadata.get("queue_state_reason"))
        logger.warning("Job queue is paused for %s. Reason: %s", identifier, reason)
