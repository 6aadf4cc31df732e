"""Pytest configuration and fixtures."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Tuple

import pytest

from jobclient.manifest import Manifest
from jobclient.models import QueueState


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Awaitable sleep that records delays and advances a FakeClock."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)


class RecordingTelemetry:
    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any], Dict[str, Any]]] = []

    def emit(self, event: str, measurements: Mapping[str, Any], metadata: Mapping[str, Any]) -> None:
        self.events.append((event, dict(measurements), dict(metadata)))

    def names(self) -> List[str]:
        return [event for event, _, _ in self.events]


class RecordingObserver:
    def __init__(self) -> None:
        self.calls: List[Tuple[QueueState, Dict[str, Any]]] = []

    def on_queue_state_change(self, state: QueueState, metadata: Mapping[str, Any]) -> None:
        self.calls.append((state, dict(metadata)))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def telemetry() -> RecordingTelemetry:
    return RecordingTelemetry()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


MANIFEST_DATA: Dict[str, Any] = {
    "name": "jobs-api",
    "base_url": "https://api.example.com",
    "retry_policies": {
        "patient": {"max_attempts": 4, "initial_delay": 1.0, "max_delay": 8.0, "jitter": 0.0},
    },
    "endpoints": [
        {
            "id": "create_job",
            "method": "POST",
            "path": "/v1/jobs",
            "idempotent": True,
            "async": True,
            "poll_endpoint": "retrieve_job",
            "rate_limit": "jobs",
        },
        {
            "id": "retrieve_job",
            "method": "POST",
            "path": "/v1/jobs/retrieve",
            "circuit_breaker": "jobs",
        },
        {
            "id": "get_job",
            "method": "GET",
            "path": "/v1/jobs/{request_id}",
            "retry": "patient",
        },
        {
            "id": "delete_job",
            "method": "DELETE",
            "path": "/v1/jobs/:request_id",
        },
        {
            "id": "send_message",
            "method": "POST",
            "path": "/v1/messages",
        },
    ],
}


@pytest.fixture
def manifest() -> Manifest:
    return Manifest.from_dict(MANIFEST_DATA)
