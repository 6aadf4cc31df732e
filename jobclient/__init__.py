"""jobclient: manifest-driven, resilient API client with async job polling.

Example:
    from jobclient import JobClient, load_config, load_manifest

    async with JobClient(load_manifest("jobs.yaml"), load_config()) as client:
        submitted = await client.execute_async("create_job", {"prompt": "hi"})
        result = await submitted.unwrap().wait(timeout=300)
"""

from jobclient.backoff import PollBackoff, poll_backoff
from jobclient.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from jobclient.classifier import Classification, classify
from jobclient.client import JobClient
from jobclient.config import ClientConfig, load_config
from jobclient.errors import (
    ApiConnectionError,
    ApiStatusError,
    ApiTimeoutError,
    CircuitOpenError,
    ClientError,
    ConfigurationError,
    ErrorKind,
    JobExpiredError,
    ManifestError,
    RequestErrorCategory,
    RequestFailedError,
    RequestInterruptedError,
    ResponseValidationError,
)
from jobclient.future import FutureController, PollConfig, PollTask, await_many
from jobclient.manifest import EndpointDescriptor, Manifest, load_manifest
from jobclient.metrics import MetricsSink
from jobclient.models import QueueState, Request, Response
from jobclient.observer import QueueStateLogger
from jobclient.rate_limiter import RateLimiter, RateLimiterRegistry
from jobclient.result import Result
from jobclient.retry import RetryPolicy, with_retry
from jobclient.stack import ResilienceStack
from jobclient.telemetry import LoggingTelemetry, TelemetryHub
from jobclient.transport import HttpxTransport

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "JobClient",
    "ClientConfig",
    "load_config",
    "Manifest",
    "EndpointDescriptor",
    "load_manifest",
    "Result",
    "Request",
    "Response",
    "QueueState",
    "ResilienceStack",
    "RetryPolicy",
    "with_retry",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "RateLimiter",
    "RateLimiterRegistry",
    "PollBackoff",
    "poll_backoff",
    "Classification",
    "classify",
    "FutureController",
    "PollConfig",
    "PollTask",
    "await_many",
    "TelemetryHub",
    "LoggingTelemetry",
    "MetricsSink",
    "QueueStateLogger",
    "HttpxTransport",
    "ErrorKind",
    "RequestErrorCategory",
    "ClientError",
    "ApiConnectionError",
    "ApiStatusError",
    "ApiTimeoutError",
    "CircuitOpenError",
    "JobExpiredError",
    "RequestFailedError",
    "RequestInterruptedError",
    "ResponseValidationError",
    "ConfigurationError",
    "ManifestError",
]
