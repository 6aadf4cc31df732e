"""Tests for jobclient.stack module."""

import asyncio

import pytest

from jobclient.circuit_breaker import CircuitBreakerRegistry, CircuitState
from jobclient.errors import ApiConnectionError, CircuitOpenError
from jobclient.models import Request, Response
from jobclient.rate_limiter import RateLimiterRegistry
from jobclient.result import Result
from jobclient.retry import RetryPolicy
from jobclient.stack import DEFAULT_IDEMPOTENCY_HEADER, ResilienceStack
from tests.conftest import FakeClock, RecordingSleep, RecordingTelemetry


class ScriptedTransport:
    """Transport returning queued outcomes; the last one repeats."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    async def send(self, request):
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            return Result.failure(outcome)
        return Result.success(outcome)


async def _no_sleep(delay):
    return None


def _stack(transport, **kwargs):
    kwargs.setdefault("default_policy", RetryPolicy(max_attempts=3, jitter=0.0))
    return ResilienceStack(transport, sleep=_no_sleep, **kwargs)


def _request(endpoint, headers=None):
    return Request(endpoint.method, f"https://api.example.com{endpoint.path}", headers=headers or {})


class TestResilienceStack:
    """Tests for the retry / rate limit / breaker composition."""

    def test_success_passes_response_through(self, manifest):
        async def _inner():
            transport = ScriptedTransport(Response(200, body=b"{}"))
            endpoint = manifest.fetch_endpoint("get_job")
            result = await _stack(transport).execute(_request(endpoint), endpoint)
            assert result.value.status == 200

        asyncio.run(_inner())

    def test_error_status_becomes_failure(self, manifest):
        async def _inner():
            transport = ScriptedTransport(Response(404, body=b'{"message": "no such job"}'))
            endpoint = manifest.fetch_endpoint("get_job")
            result = await _stack(transport).execute(_request(endpoint), endpoint)
            assert result.error.status == 404
            assert result.error.message == "no such job"
            assert len(transport.requests) == 1

        asyncio.run(_inner())

    def test_named_policy_is_used(self, manifest):
        async def _inner():
            transport = ScriptedTransport(Response(503))
            endpoint = manifest.fetch_endpoint("get_job")
            stack = _stack(transport, retry_policies=manifest.retry_policy_map())
            result = await stack.execute(_request(endpoint), endpoint)
            assert result.error.status == 503
            assert len(transport.requests) == 4

        asyncio.run(_inner())

    def test_max_retries_override(self, manifest):
        async def _inner():
            transport = ScriptedTransport(Response(503))
            endpoint = manifest.fetch_endpoint("retrieve_job")
            result = await _stack(transport).execute(_request(endpoint), endpoint, max_retries=0)
            assert result.error.status == 503
            assert len(transport.requests) == 1

        asyncio.run(_inner())

    def test_unsafe_post_not_retried_on_5xx(self, manifest):
        async def _inner():
            transport = ScriptedTransport(Response(500), Response(200))
            endpoint = manifest.fetch_endpoint("send_message")
            result = await _stack(transport).execute(_request(endpoint), endpoint)
            assert result.error.status == 500
            assert len(transport.requests) == 1

        asyncio.run(_inner())

    def test_unsafe_post_retried_on_connection_error(self, manifest):
        async def _inner():
            transport = ScriptedTransport(ApiConnectionError("reset"), Response(200))
            endpoint = manifest.fetch_endpoint("send_message")
            result = await _stack(transport).execute(_request(endpoint), endpoint)
            assert result.ok
            assert len(transport.requests) == 2

        asyncio.run(_inner())

    def test_idempotency_header_makes_post_retryable(self, manifest):
        async def _inner():
            transport = ScriptedTransport(Response(500), Response(200))
            endpoint = manifest.fetch_endpoint("send_message")
            request = _request(endpoint, {DEFAULT_IDEMPOTENCY_HEADER: "key-1"})
            result = await _stack(transport).execute(request, endpoint)
            assert result.ok
            assert len(transport.requests) == 2

        asyncio.run(_inner())

    def test_open_circuit_is_not_retried(self, manifest):
        async def _inner():
            transport = ScriptedTransport(Response(503))
            endpoint = manifest.fetch_endpoint("get_job")
            breakers = CircuitBreakerRegistry(failure_threshold=2)
            stack = _stack(transport, breakers=breakers)
            result = await stack.execute(_request(endpoint), endpoint)
            assert isinstance(result.error, CircuitOpenError)
            assert result.error.name == "get_job"
            assert len(transport.requests) == 2

        asyncio.run(_inner())

    def test_retry_attempts_emit_telemetry(self, manifest):
        async def _inner():
            telemetry = RecordingTelemetry()
            transport = ScriptedTransport(Response(502), Response(200))
            endpoint = manifest.fetch_endpoint("get_job")
            await _stack(transport, telemetry=telemetry).execute(_request(endpoint), endpoint)
            assert telemetry.names() == ["retry.attempt"]
            _, measurements, metadata = telemetry.events[0]
            assert measurements == {"delay": 0.5}
            assert metadata["status"] == 502
            assert metadata["endpoint_id"] == "get_job"

        asyncio.run(_inner())

    def test_unknown_policy_falls_back(self, manifest):
        endpoint = manifest.fetch_endpoint("get_job")
        stack = _stack(ScriptedTransport(Response(200)))
        assert stack.policy_for(endpoint) == stack.default_policy


class CountingTransport:
    """Transport that yields while "in flight" and records peak concurrency."""

    def __init__(self):
        self.active = 0
        self.peak = 0

    async def send(self, request):
        self.active += 1
        self.peak = max(self.peak, self.active)
        for _ in range(3):
            await asyncio.sleep(0)
        self.active -= 1
        return Result.success(Response(200, body=b"{}"))


class TestLayerOrder:
    """Retry wraps rate limiting, which wraps the breaker, which wraps the transport."""

    def test_every_attempt_spends_a_token(self, manifest):
        async def _inner():
            clock = FakeClock()
            limiter_sleep = RecordingSleep(clock)
            limiters = RateLimiterRegistry(10.0, default_burst=2, clock=clock, sleep=limiter_sleep)
            transport = ScriptedTransport(Response(503), Response(503), Response(200))
            endpoint = manifest.fetch_endpoint("get_job")
            result = await _stack(transport, rate_limiters=limiters).execute(_request(endpoint), endpoint)
            assert result.ok
            assert len(transport.requests) == 3
            # burst of two covers the first two attempts; the third waits for a refill
            assert limiter_sleep.calls == [pytest.approx(0.1)]
            assert limiters.get("get_job").tokens == pytest.approx(0.0)

        asyncio.run(_inner())

    def test_breaker_counts_each_attempt(self, manifest):
        async def _inner():
            clock = FakeClock()
            limiters = RateLimiterRegistry(10.0, default_burst=3, clock=clock, sleep=RecordingSleep(clock))
            breakers = CircuitBreakerRegistry(failure_threshold=2, clock=clock)
            transport = ScriptedTransport(Response(503))
            endpoint = manifest.fetch_endpoint("get_job")
            stack = _stack(transport, rate_limiters=limiters, breakers=breakers)
            result = await stack.execute(_request(endpoint), endpoint)
            assert isinstance(result.error, CircuitOpenError)
            assert len(transport.requests) == 2
            assert breakers.get("get_job").state == CircuitState.OPEN
            # the rejected third attempt still went through the limiter first
            assert limiters.get("get_job").tokens == pytest.approx(0.0)

        asyncio.run(_inner())


class TestMaxConcurrency:
    """Tests for the in-flight request cap."""

    def test_caps_in_flight_requests(self, manifest):
        async def _inner():
            transport = CountingTransport()
            endpoint = manifest.fetch_endpoint("get_job")
            stack = _stack(transport, max_concurrency=2)
            results = await asyncio.gather(
                *(stack.execute(_request(endpoint), endpoint) for _ in range(5))
            )
            assert all(result.ok for result in results)
            assert transport.peak == 2

        asyncio.run(_inner())

    def test_uncapped_by_default(self, manifest):
        async def _inner():
            transport = CountingTransport()
            endpoint = manifest.fetch_endpoint("get_job")
            stack = _stack(transport)
            await asyncio.gather(*(stack.execute(_request(endpoint), endpoint) for _ in range(5)))
            assert transport.peak == 5

        asyncio.run(_inner())

    def test_rejects_zero(self):
        with pytest.raises(ValueError):
            _stack(CountingTransport(), max_concurrency=0)
