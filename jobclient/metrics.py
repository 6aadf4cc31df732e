"""Client metrics collection.

Provides counters, gauges and bounded histograms fed from telemetry
events. The sink is an explicit object with a start/stop lifecycle; there
is no process-wide collector.
"""

from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence

from jobclient import telemetry as events

__all__ = ["Histogram", "MetricsSink", "DEFAULT_LATENCY_BUCKETS", "DEFAULT_MAX_SAMPLES"]

DEFAULT_LATENCY_BUCKETS = (0.001, 0.002, 0.005, 0.01, 0.02, 0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0)
DEFAULT_MAX_SAMPLES = 1000


def _median(values: Sequence[float]) -> float:
    count = len(values)
    mid = count // 2
    if count % 2 == 1:
        return values[mid]
    return (values[mid - 1] + values[mid]) / 2


def _nearest_rank(values: Sequence[float], pct: float) -> float:
    rank = math.ceil(len(values) * pct / 100)
    return values[max(rank - 1, 0)]


@dataclass
class Histogram:
    """Bucketed histogram keeping the newest ``max_samples`` raw values."""

    buckets: Sequence[float] = DEFAULT_LATENCY_BUCKETS
    max_samples: int = DEFAULT_MAX_SAMPLES
    count: int = 0
    total: float = 0.0
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    counts: List[int] = field(default_factory=list)
    samples: Deque[float] = field(init=False)

    def __post_init__(self) -> None:
        if not self.counts:
            self.counts = [0] * (len(self.buckets) + 1)
        self.samples = deque(maxlen=self.max_samples)

    def observe(self, value: float) -> None:
        index = next(
            (i for i, upper in enumerate(self.buckets) if value <= upper),
            len(self.buckets),
        )
        self.counts[index] += 1
        self.count += 1
        self.total += value
        self.samples.append(value)
        self.minimum = value if self.minimum is None else min(self.minimum, value)
        self.maximum = value if self.maximum is None else max(self.maximum, value)

    def stats(self) -> Dict[str, Any]:
        """Count, mean, min, max and p50/p95/p99 over the retained samples."""
        if self.count == 0:
            return {
                "count": 0,
                "mean": None,
                "min": None,
                "max": None,
                "p50": None,
                "p95": None,
                "p99": None,
                "buckets": {},
            }
        ordered = sorted(self.samples)
        return {
            "count": self.count,
            "mean": self.total / self.count,
            "min": self.minimum,
            "max": self.maximum,
            "p50": _median(ordered),
            "p95": _nearest_rank(ordered, 95),
            "p99": _nearest_rank(ordered, 99),
            "buckets": {
                ("+inf" if i == len(self.buckets) else str(self.buckets[i])): n
                for i, n in enumerate(self.counts)
            },
        }


class MetricsSink:
    """Aggregates client metrics.

    Attach ``handle`` to a TelemetryHub to turn request and poll events
    into metrics. Events arriving while the sink is stopped are ignored.

    Example:
        sink = MetricsSink()
        hub.attach("metrics", sink.handle)
        sink.start()
        ...
        print(sink.snapshot()["counters"]["requests_total"])
        sink.stop()
    """

    def __init__(
        self,
        *,
        max_samples: int = DEFAULT_MAX_SAMPLES,
        buckets: Sequence[float] = DEFAULT_LATENCY_BUCKETS,
    ) -> None:
        if max_samples < 1:
            raise ValueError("max_samples must be >= 1")
        self.max_samples = max_samples
        self.buckets = tuple(buckets)
        self._counters: Dict[str, float] = {}
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, Histogram] = {}
        self._running = False
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            self._running = True

    def stop(self) -> None:
        with self._lock:
            self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def increment(self, name: str, amount: float = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = value

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            histogram = self._histograms.get(name)
            if histogram is None:
                histogram = Histogram(buckets=self.buckets, max_samples=self.max_samples)
                self._histograms[name] = histogram
            histogram.observe(value)

    def handle(
        self,
        event: str,
        measurements: Mapping[str, Any],
        metadata: Mapping[str, Any],
    ) -> None:
        """Telemetry handler mapping events onto metrics."""
        if not self._running:
            return
        duration = measurements.get("duration")
        if event == events.REQUEST_STOP:
            self.increment("requests_total")
            self.increment("requests_success")
            if duration is not None:
                self.observe("request_duration", duration)
        elif event == events.REQUEST_ERROR:
            self.increment("requests_total")
            self.increment("requests_failed")
            if duration is not None:
                self.observe("request_duration", duration)
        elif event == events.RETRY_ATTEMPT:
            self.increment("retries_total")
        elif event == events.POLL_ATTEMPT:
            self.increment("poll_attempts_total")
        elif event == events.POLL_COMPLETE:
            self.increment("futures_completed")
            elapsed = measurements.get("elapsed")
            if elapsed is not None:
                self.observe("future_duration", elapsed)
        elif event == events.POLL_ERROR:
            self.increment("futures_failed")
        elif event == events.QUEUE_STATE_CHANGE:
            self.increment("queue_state_changes")
        elif event == events.CIRCUIT_STATE_CHANGE:
            self.increment(f"circuit_{metadata.get('state', 'unknown')}")

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": {name: h.stats() for name, h in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
