"""Logging setup for applications using the job client.

The library itself only calls ``logging.getLogger(__name__)``; this
module is for the application entry point.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, MutableMapping, Optional, Tuple

__all__ = [
    "setup_logging",
    "JSONFormatter",
    "ClientLogger",
    "get_client_logger",
]

_RESERVED = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
}


class JSONFormatter(logging.Formatter):
    """Formatter that outputs one JSON object per record.

    Example output:
        {"timestamp": "2025-01-15T10:30:00.123Z", "level": "WARNING",
         "logger": "jobclient.retry", "message": "create_job attempt 1/3 failed ...",
         "extra": {"request_id": "job-1"}}
    """

    def __init__(self, exclude_fields: Optional[Tuple[str, ...]] = None) -> None:
        super().__init__()
        self.exclude_fields = frozenset(exclude_fields or ())

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _RESERVED and k not in self.exclude_fields
        }
        if extra:
            log_data["extra"] = extra

        return json.dumps(log_data, default=str)


class ClientLogger(logging.LoggerAdapter):
    """Logger that stamps context fields (request_id, endpoint_id, ...) on every record.

    Example:
        log = get_client_logger(__name__, endpoint_id="create_job")
        log.bind(request_id="job-1").info("Submitted")
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context: Any) -> "ClientLogger":
        merged = dict(self.extra or {})
        merged.update(context)
        return ClientLogger(self.logger, merged)


def get_client_logger(name: str, **context: Any) -> ClientLogger:
    return ClientLogger(logging.getLogger(name), context)


def setup_logging(
    verbose: bool = False,
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Configure the root logger.

    Args:
        verbose: Enable debug-level logging
        json_format: Emit JSON lines instead of plain text
        log_file: Also write to this file
    """
    level = logging.DEBUG if verbose else logging.INFO

    if json_format:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handlers: list = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
