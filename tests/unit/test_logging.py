"""Tests for jobclient.logging module."""

import json
import logging
import sys

import pytest

from jobclient.logging import JSONFormatter, get_client_logger, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def _record(msg="hello %s", args=("world",), **extra):
    record = logging.LogRecord("jobclient.test", logging.WARNING, "file.py", 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(_record()))
        assert data["level"] == "WARNING"
        assert data["logger"] == "jobclient.test"
        assert data["message"] == "hello world"
        assert data["timestamp"].endswith("Z")
        assert data["source"]["line"] == 10
        assert "extra" not in data

    def test_extra_fields(self):
        data = json.loads(JSONFormatter().format(_record(request_id="job-1", iteration=3)))
        assert data["extra"] == {"request_id": "job-1", "iteration": 3}

    def test_excluded_fields(self):
        formatter = JSONFormatter(exclude_fields=("iteration",))
        data = json.loads(formatter.format(_record(request_id="job-1", iteration=3)))
        assert data["extra"] == {"request_id": "job-1"}

    def test_exception(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = logging.LogRecord(
                "jobclient.test", logging.ERROR, "file.py", 1, "failed", (), sys.exc_info()
            )
        data = json.loads(JSONFormatter().format(record))
        assert "ValueError: bad" in data["exception"]


class TestClientLogger:
    def test_bind_adds_context(self, caplog):
        log = get_client_logger("jobclient.test", endpoint_id="create_job")
        with caplog.at_level(logging.INFO, logger="jobclient.test"):
            log.bind(request_id="job-1").info("Submitted", extra={"iteration": 0})
        record = caplog.records[0]
        assert record.endpoint_id == "create_job"
        assert record.request_id == "job-1"
        assert record.iteration == 0

    def test_bind_does_not_mutate_parent(self):
        log = get_client_logger("jobclient.test", endpoint_id="create_job")
        log.bind(request_id="job-1")
        assert log.extra == {"endpoint_id": "create_job"}


class TestSetupLogging:
    def test_plain(self, restore_root_logger):
        setup_logging(verbose=True)
        assert restore_root_logger.level == logging.DEBUG
        assert len(restore_root_logger.handlers) == 1
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_json_with_file(self, restore_root_logger, tmp_path):
        log_file = tmp_path / "client.log"
        setup_logging(json_format=True, log_file=str(log_file))
        assert restore_root_logger.level == logging.INFO
        assert len(restore_root_logger.handlers) == 2
        assert all(isinstance(h.formatter, JSONFormatter) for h in restore_root_logger.handlers)
        logging.getLogger("jobclient.test").info("written")
        for handler in restore_root_logger.handlers:
            handler.flush()
        assert json.loads(log_file.read_text().splitlines()[-1])["message"] == "written"
        restore_root_logger.handlers[-1].close()
