"""Resilience stack for a single call.

Layers, outermost first: retry, rate limit, circuit breaker, transport.
Rate limiting sits inside retry so every physical attempt spends budget;
the breaker sits inside rate limiting so it only sees attempts that
actually went out, and an open breaker comes back as CircuitOpenError,
which the retry layer never repeats.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from jobclient import telemetry as events
from jobclient.circuit_breaker import CircuitBreakerRegistry
from jobclient.errors import ClientError, error_from_response
from jobclient.manifest import EndpointDescriptor
from jobclient.models import Request, Response
from jobclient.rate_limiter import RateLimiterRegistry
from jobclient.result import Result
from jobclient.retry import RetryPolicy, with_retry
from jobclient.telemetry import NoopTelemetry, Telemetry
from jobclient.transport import Transport

logger = logging.getLogger(__name__)

__all__ = ["ResilienceStack", "DEFAULT_IDEMPOTENCY_HEADER"]

DEFAULT_IDEMPOTENCY_HEADER = "X-Idempotency-Key"


class ResilienceStack:
    """Executes one request through retry, rate limiting and circuit breaking.

    Breaker and limiter state is keyed by the endpoint's breaker and
    rate-limit keys and shared by everything that uses this stack. With
    ``max_concurrency`` set, at most that many requests are in flight at
    once across every endpoint, poll retrievals included.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        breakers: Optional[CircuitBreakerRegistry] = None,
        rate_limiters: Optional[RateLimiterRegistry] = None,
        retry_policies: Optional[Mapping[str, RetryPolicy]] = None,
        default_policy: Optional[RetryPolicy] = None,
        telemetry: Optional[Telemetry] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        idempotency_header: str = DEFAULT_IDEMPOTENCY_HEADER,
        rng: Callable[[], float] = random.random,
        max_concurrency: Optional[int] = None,
    ) -> None:
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.transport = transport
        self.breakers = breakers or CircuitBreakerRegistry()
        self.rate_limiters = rate_limiters or RateLimiterRegistry()
        self.retry_policies: Dict[str, RetryPolicy] = dict(retry_policies or {})
        self.default_policy = default_policy or RetryPolicy.default()
        self.telemetry = telemetry or NoopTelemetry()
        self.idempotency_header = idempotency_header
        self._sleep = sleep
        self._rng = rng
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

    def policy_for(self, endpoint: EndpointDescriptor) -> RetryPolicy:
        if endpoint.retry is None:
            return self.default_policy
        policy = self.retry_policies.get(endpoint.retry)
        if policy is None:
            logger.warning(
                "Endpoint %s names unknown retry policy %r; using default",
                endpoint.id,
                endpoint.retry,
            )
            return self.default_policy
        return policy

    async def _send(self, request: Request) -> Result[Response]:
        if self._semaphore is None:
            result = await self.transport.send(request)
        else:
            async with self._semaphore:
                result = await self.transport.send(request)
        if result.ok and result.value is not None and result.value.status >= 400:
            return Result.failure(error_from_response(result.value))
        return result

    async def execute(
        self,
        request: Request,
        endpoint: EndpointDescriptor,
        *,
        max_retries: Optional[int] = None,
    ) -> Result[Response]:
        """Run ``request`` through the stack.

        Args:
            request: Fully built request
            endpoint: Descriptor naming the retry policy and shared-state keys
            max_retries: Override the policy's retry count (0 disables retries)

        Returns:
            Result holding a 2xx/3xx Response or a ClientError
        """
        policy = self.policy_for(endpoint).with_max_retries(max_retries)
        retry_unsafe = endpoint.safe_method or request.header(self.idempotency_header) is not None
        breaker_key = endpoint.breaker_key
        rate_limit_key = endpoint.rate_limit_key

        async def guarded() -> Result[Response]:
            return await self.breakers.call(breaker_key, lambda: self._send(request))

        async def attempt() -> Result[Response]:
            return await self.rate_limiters.within_limit(rate_limit_key, guarded)

        def on_retry(attempt_number: int, delay: float, error: ClientError) -> None:
            self.telemetry.emit(
                events.RETRY_ATTEMPT,
                {"delay": delay},
                {
                    "endpoint_id": endpoint.id,
                    "attempt": attempt_number,
                    "status": error.status,
                    "error_type": error.kind.value,
                },
            )

        return await with_retry(
            attempt,
            policy,
            sleep=self._sleep,
            retry_unsafe=retry_unsafe,
            operation_name=endpoint.id,
            on_retry=on_retry,
            rng=self._rng,
        )
