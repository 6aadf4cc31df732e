"""Transport port and its httpx implementation."""

from __future__ import annotations

import logging
import time
from typing import Optional, Protocol

import httpx

from jobclient.errors import ApiConnectionError, RequestInterruptedError
from jobclient.models import Request, Response
from jobclient.result import Result

logger = logging.getLogger(__name__)

__all__ = ["Transport", "HttpxTransport", "DEFAULT_TIMEOUT"]

DEFAULT_TIMEOUT = 45.0

# Failures raised before any request bytes were written
_NOT_SENT = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.PoolTimeout,
    httpx.ProxyError,
    httpx.UnsupportedProtocol,
    httpx.LocalProtocolError,
)


class Transport(Protocol):
    """Sends one request. Any HTTP status is a successful send."""

    async def send(self, request: Request) -> Result[Response]:
        ...


class HttpxTransport:
    """Transport backed by a shared ``httpx.AsyncClient``.

    Failures before the request went out (refused connection, connect or
    pool timeout) come back as ApiConnectionError. Failures after it may
    have been sent (read or write timeout, dropped connection) come back as
    RequestInterruptedError. HTTP error statuses come back as ordinary
    responses; deciding what they mean is the caller's job.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        limits: Optional[httpx.Limits] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            limits=limits or httpx.Limits(max_connections=50, max_keepalive_connections=20),
        )
        self.timeout = timeout

    async def send(self, request: Request) -> Result[Response]:
        started = time.monotonic()
        timeout = request.timeout if request.timeout is not None else self.timeout
        try:
            raw = await self._client.request(
                request.method,
                request.url,
                headers=request.headers,
                content=request.body or None,
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            logger.debug("%s %s timed out after %.1fs", request.method, request.url, timeout)
            error_cls = ApiConnectionError if isinstance(exc, _NOT_SENT) else RequestInterruptedError
            return Result.failure(
                error_cls(
                    f"Request timed out after {timeout:.1f}s",
                    data={"url": request.url, "method": request.method},
                    cause=exc,
                )
            )
        except httpx.RequestError as exc:
            logger.debug("%s %s failed: %s", request.method, request.url, exc)
            error_cls = ApiConnectionError if isinstance(exc, _NOT_SENT) else RequestInterruptedError
            return Result.failure(
                error_cls(
                    f"Connection error: {exc}",
                    data={"url": request.url, "method": request.method},
                    cause=exc,
                )
            )

        return Result.success(
            Response(
                status=raw.status_code,
                headers=dict(raw.headers.items()),
                body=raw.content,
                elapsed=time.monotonic() - started,
            )
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
