"""Tests for jobclient.observer module."""

import logging

from jobclient.models import QueueState
from jobclient.observer import NoopObserver, QueueStateLogger
from tests.conftest import FakeClock


class TestQueueStateLogger:
    def test_logs_pause_with_default_reason(self, caplog):
        observer = QueueStateLogger(clock=FakeClock())
        with caplog.at_level(logging.WARNING, logger="jobclient.observer"):
            observer.on_queue_state_change(QueueState.PAUSED_RATE_LIMIT, {"request_id": "job-1"})
        assert caplog.messages == [
            "Job queue is paused for job-1. Reason: concurrent request rate limit hit"
        ]

    def test_server_reason_preferred(self, caplog):
        observer = QueueStateLogger("batch-7", clock=FakeClock())
        with caplog.at_level(logging.WARNING, logger="jobclient.observer"):
            observer.on_queue_state_change(
                QueueState.PAUSED_CAPACITY,
                {"request_id": "job-1", "queue_state_reason": "maintenance"},
            )
        assert caplog.messages == ["Job queue is paused for batch-7. Reason: maintenance"]

    def test_active_is_silent(self, caplog):
        observer = QueueStateLogger(clock=FakeClock())
        with caplog.at_level(logging.WARNING, logger="jobclient.observer"):
            observer.on_queue_state_change(QueueState.ACTIVE, {})
        assert caplog.messages == []

    def test_debounced(self, caplog):
        clock = FakeClock()
        observer = QueueStateLogger(interval=60.0, clock=clock)
        with caplog.at_level(logging.WARNING, logger="jobclient.observer"):
            observer.on_queue_state_change(QueueState.PAUSED_CAPACITY, {})
            clock.advance(30.0)
            observer.on_queue_state_change(QueueState.PAUSED_CAPACITY, {})
            clock.advance(30.0)
            observer.on_queue_state_change(QueueState.PAUSED_CAPACITY, {})
        assert len(caplog.messages) == 2

    def test_debounce_is_per_job(self, caplog):
        """One job's warning never hides another job's pause."""
        clock = FakeClock()
        observer = QueueStateLogger(interval=60.0, clock=clock)
        with caplog.at_level(logging.WARNING, logger="jobclient.observer"):
            observer.on_queue_state_change(QueueState.PAUSED_CAPACITY, {"request_id": "job-1"})
            clock.advance(1.0)
            observer.on_queue_state_change(QueueState.PAUSED_CAPACITY, {"request_id": "job-2"})
            clock.advance(1.0)
            observer.on_queue_state_change(QueueState.PAUSED_CAPACITY, {"request_id": "job-1"})
        assert [m.split(".")[0] for m in caplog.messages] == [
            "Job queue is paused for job-1",
            "Job queue is paused for job-2",
        ]

    def test_resolve_reason(self):
        assert QueueStateLogger.resolve_reason(QueueState.PAUSED_CAPACITY, None) == (
            "server is running short on capacity, please wait"
        )
        assert QueueStateLogger.resolve_reason(QueueState.UNKNOWN, "") == "unknown"


def test_noop_observer():
    assert NoopObserver().on_queue_state_change(QueueState.ACTIVE, {}) is None
