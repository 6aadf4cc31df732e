"""Fire-and-forget telemetry events.

Events are plain names with two dicts: numeric ``measurements`` and
descriptive ``metadata``. Emitting never raises into the caller.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

__all__ = [
    "Telemetry",
    "NoopTelemetry",
    "LoggingTelemetry",
    "TelemetryHub",
    "Handler",
    "REQUEST_START",
    "REQUEST_STOP",
    "REQUEST_ERROR",
    "RETRY_ATTEMPT",
    "CIRCUIT_STATE_CHANGE",
    "POLL_START",
    "POLL_ATTEMPT",
    "POLL_COMPLETE",
    "POLL_ERROR",
    "QUEUE_STATE_CHANGE",
    "FUTURE_TIMEOUT",
    "FUTURE_API_ERROR",
    "FUTURE_CONNECTION_ERROR",
    "FUTURE_REQUEST_FAILED",
    "FUTURE_VALIDATION_ERROR",
    "FUTURE_EXPIRED",
]

REQUEST_START = "request.start"
REQUEST_STOP = "request.stop"
REQUEST_ERROR = "request.error"
RETRY_ATTEMPT = "retry.attempt"
CIRCUIT_STATE_CHANGE = "circuit.state_change"
POLL_START = "future.poll_start"
POLL_ATTEMPT = "future.poll_attempt"
POLL_COMPLETE = "future.poll_complete"
POLL_ERROR = "future.poll_error"
QUEUE_STATE_CHANGE = "future.queue_state_change"
FUTURE_TIMEOUT = "future.timeout"
FUTURE_API_ERROR = "future.api_error"
FUTURE_CONNECTION_ERROR = "future.connection_error"
FUTURE_REQUEST_FAILED = "future.request_failed"
FUTURE_VALIDATION_ERROR = "future.validation_error"
FUTURE_EXPIRED = "future.expired"

Handler = Callable[[str, Mapping[str, Any], Mapping[str, Any]], None]


class Telemetry(Protocol):
    def emit(
        self,
        event: str,
        measurements: Mapping[str, Any],
        metadata: Mapping[str, Any],
    ) -> None:
        ...


class NoopTelemetry:
    """Discards every event."""

    def emit(
        self,
        event: str,
        measurements: Mapping[str, Any],
        metadata: Mapping[str, Any],
    ) -> None:
        return None


class LoggingTelemetry:
    """Writes every event to a logger, with the payload in ``extra``."""

    def __init__(self, log: Optional[logging.Logger] = None, level: int = logging.DEBUG) -> None:
        self._logger = log or logging.getLogger("jobclient.events")
        self.level = level

    def emit(
        self,
        event: str,
        measurements: Mapping[str, Any],
        metadata: Mapping[str, Any],
    ) -> None:
        if not self._logger.isEnabledFor(self.level):
            return
        self._logger.log(
            self.level,
            "EVENT %s",
            event,
            extra={
                "event": event,
                "measurements": dict(measurements),
                "event_metadata": dict(metadata),
            },
        )


class TelemetryHub:
    """Fans each event out to every attached handler.

    Example:
        hub = TelemetryHub()
        hub.attach("metrics", sink.handle)
        hub.attach("audit", lambda event, m, md: audit_log.append(event))
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, Tuple[Handler, Optional[frozenset]]] = {}
        self._lock = threading.Lock()

    def attach(
        self,
        handler_id: str,
        handler: Handler,
        events: Optional[List[str]] = None,
    ) -> None:
        """Register ``handler`` under ``handler_id``; ``events`` filters by name."""
        with self._lock:
            if handler_id in self._handlers:
                raise ValueError(f"Telemetry handler already attached: {handler_id}")
            self._handlers[handler_id] = (handler, frozenset(events) if events else None)

    def detach(self, handler_id: str) -> bool:
        with self._lock:
            return self._handlers.pop(handler_id, None) is not None

    def handler_ids(self) -> List[str]:
        with self._lock:
            return list(self._handlers)

    def emit(
        self,
        event: str,
        measurements: Mapping[str, Any],
        metadata: Mapping[str, Any],
    ) -> None:
        with self._lock:
            handlers = list(self._handlers.items())
        for handler_id, (handler, events) in handlers:
            if events is not None and event not in events:
                continue
            try:
                handler(event, measurements, metadata)
            except Exception:  # noqa: BLE001
                logger.warning(
                    "Telemetry handler %s failed on %s",
                    handler_id,
                    event,
                    exc_info=True,
                )
