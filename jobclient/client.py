"""Manifest-driven job client.

``execute`` makes one resilient round trip. ``execute_async`` submits a
job and returns a PollTask that resolves when the job does.

Example:
    manifest = load_manifest("jobs.yaml")
    async with JobClient(manifest, load_config("client.yaml")) as client:
        submitted = await client.execute_async("create_job", {"prompt": "hi"})
        if not submitted.ok:
            raise submitted.error
        result = await submitted.value.wait(timeout=300)
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import quote, urlencode

from jobclient import telemetry as events
from jobclient.circuit_breaker import CircuitBreakerRegistry
from jobclient.config import ClientConfig
from jobclient.errors import ConfigurationError, ResponseValidationError
from jobclient.future import FutureController, PollTask, normalize_job_id
from jobclient.manifest import PATH_PARAM_PATTERN, EndpointDescriptor, Manifest
from jobclient.metrics import MetricsSink
from jobclient.models import JobCompleted, Request, parse_poll_response
from jobclient.observer import QueueStateLogger, QueueStateObserver
from jobclient.rate_limiter import RateLimiterRegistry
from jobclient.result import Result
from jobclient.serializer import JsonSerializer, Serializer
from jobclient.stack import ResilienceStack
from jobclient.telemetry import Telemetry, TelemetryHub
from jobclient.transport import HttpxTransport, Transport

logger = logging.getLogger(__name__)

__all__ = ["JobClient", "build_url", "POLL_ITERATION_HEADER"]

POLL_ITERATION_HEADER = "X-Poll-Iteration"

_BODYLESS_METHODS = frozenset({"GET", "HEAD", "DELETE", "OPTIONS"})


def build_url(
    base_url: str,
    path: str,
    path_params: Optional[Mapping[str, Any]] = None,
    query: Optional[Mapping[str, Any]] = None,
) -> str:
    """Join base URL and path template, filling ``{name}``/``:name`` params.

    Raises:
        ValueError: If the template names a parameter that was not supplied
    """
    params = path_params or {}

    def fill(match: "re.Match[str]") -> str:
        name = match.group(1) or match.group(2)
        if name not in params:
            raise ValueError(f"Missing path parameter '{name}' for {path}")
        return quote(str(params[name]), safe="")

    url = base_url.rstrip("/") + PATH_PARAM_PATTERN.sub(fill, path)
    pairs = {k: v for k, v in (query or {}).items() if v is not None}
    if pairs:
        url = f"{url}?{urlencode(pairs, doseq=True)}"
    return url


class JobClient:
    """Runs manifest endpoints through the resilience stack and polls jobs.

    Circuit breakers and rate limiters are shared by every call made
    through one client instance.
    """

    def __init__(
        self,
        manifest: Manifest,
        config: Optional[ClientConfig] = None,
        *,
        transport: Optional[Transport] = None,
        serializer: Optional[Serializer] = None,
        telemetry: Optional[Telemetry] = None,
        metrics: Optional[MetricsSink] = None,
        observer: Optional[QueueStateObserver] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.manifest = manifest
        self.config = config or ClientConfig()
        base_url = self.config.base_url or manifest.base_url
        if not base_url:
            raise ConfigurationError(
                "No base_url configured",
                suggestion="Set base_url in the manifest, the config file or JOBCLIENT_BASE_URL",
            )
        self.base_url = base_url.rstrip("/")

        self._owns_transport = transport is None
        self.transport: Transport = transport or HttpxTransport(timeout=self.config.timeout)
        self.serializer: Serializer = serializer or JsonSerializer()
        self.observer: QueueStateObserver = observer or QueueStateLogger()
        self.metrics = metrics
        self._sleep = sleep
        self._clock = clock

        self.telemetry = TelemetryHub()
        if telemetry is not None:
            self.telemetry.attach("default", telemetry.emit)
        if metrics is not None:
            self.telemetry.attach("metrics", metrics.handle)

        breaker = self.config.circuit_breaker
        self.breakers = CircuitBreakerRegistry(
            failure_threshold=breaker.failure_threshold,
            reset_timeout=breaker.reset_timeout,
            half_open_max_calls=breaker.half_open_max_calls,
            clock=clock,
            on_state_change=self._on_circuit_change,
        )
        self.rate_limiters = RateLimiterRegistry(
            self.config.rate_limit.requests_per_second,
            default_burst=self.config.rate_limit.burst_size,
            limits=self.config.rate_limit_map(),
            clock=clock,
            sleep=sleep,
        )
        self.stack = ResilienceStack(
            self.transport,
            breakers=self.breakers,
            rate_limiters=self.rate_limiters,
            retry_policies=manifest.retry_policy_map(),
            default_policy=self.config.to_retry_policy(),
            telemetry=self.telemetry,
            sleep=sleep,
            idempotency_header=self.config.idempotency_header,
            rng=rng,
            max_concurrency=self.config.max_concurrency,
        )
        self.poll_config = self.config.to_poll_config()

    async def __aenter__(self) -> "JobClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_transport and isinstance(self.transport, HttpxTransport):
            await self.transport.aclose()

    def _on_circuit_change(self, name: str, old_state: str, new_state: str) -> None:
        self.telemetry.emit(
            events.CIRCUIT_STATE_CHANGE,
            {},
            {"name": name, "previous_state": old_state, "state": new_state},
        )

    def build_request(
        self,
        endpoint: EndpointDescriptor,
        body: bytes,
        *,
        path_params: Optional[Mapping[str, Any]] = None,
        query: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        idempotency_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Request:
        merged_query: Dict[str, Any] = dict(endpoint.query)
        merged_query.update(query or {})
        url = build_url(self.base_url, endpoint.path, path_params, merged_query)

        merged: Dict[str, str] = {"Accept": "application/json"}
        if body:
            merged["Content-Type"] = self.serializer.content_type
        merged.update(self.config.headers)
        merged.update(endpoint.headers)
        if self.config.api_key:
            merged["Authorization"] = f"Bearer {self.config.api_key}"
        merged.update(headers or {})
        if endpoint.idempotent:
            merged[self.config.idempotency_header] = idempotency_key or str(uuid.uuid4())

        return Request(
            method=endpoint.method,
            url=url,
            headers=merged,
            body=body,
            timeout=timeout or endpoint.timeout or self.config.timeout,
            endpoint_id=endpoint.id,
        )

    async def execute(
        self,
        endpoint_id: str,
        payload: Any = None,
        *,
        path_params: Optional[Mapping[str, Any]] = None,
        query: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        idempotency_key: Optional[str] = None,
        max_retries: Optional[int] = None,
        schema: Optional[Any] = None,
    ) -> Result[Any]:
        """One round trip through the resilience stack.

        Returns:
            Result with the decoded body, or a ClientError

        Raises:
            ManifestError: If ``endpoint_id`` is not in the manifest
        """
        endpoint = self.manifest.fetch_endpoint(endpoint_id)
        return await self._run(
            endpoint,
            payload,
            path_params=path_params,
            query=query,
            headers=headers,
            idempotency_key=idempotency_key,
            max_retries=max_retries,
            schema=schema,
        )

    async def _run(
        self,
        endpoint: EndpointDescriptor,
        payload: Any,
        *,
        path_params: Optional[Mapping[str, Any]] = None,
        query: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        idempotency_key: Optional[str] = None,
        max_retries: Optional[int] = None,
        schema: Optional[Any] = None,
        timeout: Optional[float] = None,
    ) -> Result[Any]:
        try:
            request = self.build_request(
                endpoint,
                self.serializer.encode(payload),
                path_params=path_params,
                query=query,
                headers=headers,
                idempotency_key=idempotency_key,
                timeout=timeout,
            )
        except ValueError as e:
            logger.warning("Could not build request for %s: %s", endpoint.id, e)
            return Result.failure(
                ConfigurationError(
                    str(e),
                    data={"endpoint_id": endpoint.id, "path": endpoint.path},
                    cause=e,
                    suggestion="Pass every path parameter the endpoint's path template names",
                )
            )

        metadata: Dict[str, Any] = dict(self.config.user_metadata)
        metadata.update(endpoint_id=endpoint.id, method=endpoint.method)
        self.telemetry.emit(events.REQUEST_START, {}, metadata)
        started = self._clock()
        result, status = await self._send(request, endpoint, max_retries, schema)

        measurements = {"duration": self._clock() - started}
        if result.ok:
            metadata["status"] = status
            self.telemetry.emit(events.REQUEST_STOP, measurements, metadata)
        else:
            error = result.error
            metadata.update(
                status=error.status,
                error_type=error.kind.value,
                reason=error.message,
            )
            self.telemetry.emit(events.REQUEST_ERROR, measurements, metadata)
        return result

    async def _send(
        self,
        request: Request,
        endpoint: EndpointDescriptor,
        max_retries: Optional[int],
        schema: Optional[Any],
    ) -> Tuple[Result[Any], Optional[int]]:
        sent = await self.stack.execute(request, endpoint, max_retries=max_retries)
        if not sent.ok:
            return sent, None
        response = sent.value
        try:
            data = self.serializer.decode(response.body, schema)
        except ResponseValidationError as e:
            return Result.failure(e), response.status
        return Result.success(data), response.status

    async def execute_async(
        self,
        endpoint_id: str,
        payload: Any = None,
        **kwargs: Any,
    ) -> Result[PollTask]:
        """Submit a job and start polling it.

        Accepts the same keyword arguments as ``execute``. A submission
        that already carries a final payload yields a resolved PollTask.
        """
        endpoint = self.manifest.fetch_endpoint(endpoint_id)
        if endpoint.poll_endpoint is None:
            raise ConfigurationError(
                f"Endpoint '{endpoint.id}' has no poll_endpoint",
                suggestion="Mark the endpoint async and name its poll_endpoint in the manifest",
            )

        submitted = await self._run(endpoint, payload, **kwargs)
        if not submitted.ok:
            return Result.failure(submitted.error)

        data = submitted.value
        if isinstance(data, Mapping) and endpoint.job_id_field not in data:
            try:
                immediate = parse_poll_response(data)
            except ResponseValidationError:
                immediate = None
            if isinstance(immediate, JobCompleted):
                return Result.success(
                    PollTask.resolved(endpoint.id, Result.success(immediate.result))
                )

        try:
            job_id = normalize_job_id(data, endpoint.job_id_field)
        except ResponseValidationError as e:
            return Result.failure(e)
        logger.debug("Submitted %s as job %s", endpoint.id, job_id)
        return Result.success(self.poll(job_id, endpoint.poll_endpoint))

    def future_controller(self, poll_endpoint_id: str) -> FutureController:
        """Controller that retrieves jobs via ``poll_endpoint_id``, retries disabled."""
        endpoint = self.manifest.fetch_endpoint(poll_endpoint_id)
        field = endpoint.job_id_field

        async def retrieve(job_id: str, iteration: int, timeout: float) -> Result[Any]:
            payload = None if endpoint.method in _BODYLESS_METHODS else {field: job_id}
            return await self._run(
                endpoint,
                payload,
                path_params={field: job_id, "job_id": job_id},
                headers={POLL_ITERATION_HEADER: str(iteration)},
                max_retries=0,
                timeout=timeout,
            )

        return FutureController(
            retrieve,
            config=self.poll_config,
            telemetry=self.telemetry,
            observer=self.observer,
            sleep=self._sleep,
            clock=self._clock,
            metadata=self.config.user_metadata,
        )

    def poll(self, job_id: str, poll_endpoint_id: str) -> PollTask:
        """Start polling an existing job handle. Needs a running event loop."""
        return self.future_controller(poll_endpoint_id).poll(job_id)
