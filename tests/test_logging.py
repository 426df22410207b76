"""Tests for logging setup and helpers."""

from __future__ import annotations

from unittest.mock import Mock

import pytest

from vm_provisioner import logging as logging_module


@pytest.fixture
def captured():
    """Route all log records into a list for the duration of a test."""
    logging_module.logger.remove()
    records: list[dict] = []

    def sink(message):
        records.append(message.record)

    logging_module.logger.add(sink, level="TRACE", enqueue=False)
    yield records
    logging_module.logger.remove()


def test_setup_logging_creates_log_files(tmp_path):
    """Test INFO sinks are written and debug.log only appears with debug."""
    log_dir = tmp_path / "logs"
    logging_module.setup_logging(log_dir=log_dir, console=False)

    logging_module.get_logger(source="test").info("Hello")
    logging_module.logger.complete()

    assert (log_dir / "operations.log").exists()
    assert (log_dir / "structured.jsonl").exists()
    assert not (log_dir / "debug.log").exists()
    assert "Hello" in (log_dir / "operations.log").read_text()
    logging_module.logger.remove()


def test_setup_logging_debug_sink(tmp_path):
    log_dir = tmp_path / "logs"
    logging_module.setup_logging(debug=True, log_dir=log_dir, console=False)

    logging_module.get_logger(source="test").debug("Details")
    logging_module.logger.complete()

    assert "Details" in (log_dir / "debug.log").read_text()
    assert "Details" not in (log_dir / "operations.log").read_text()
    logging_module.logger.remove()


def test_get_logger_preserves_context_metadata(captured):
    """Test bound logger keeps job_id, tags, and source metadata."""
    log = logging_module.get_logger(job_id="job-123", tags=["disk"], source="disk")
    log.info("Context test")

    record = captured[0]
    assert record["extra"]["job_id"] == "job-123"
    assert record["extra"]["tags"] == ["disk"]
    assert record["extra"]["source"] == "disk"


def _record(level, tags=None, message="resize: 40%"):
    return {
        "message": message,
        "extra": {} if tags is None else {"tags": tags},
        "level": logging_module.logger.level(level),
    }


def test_progress_filter_drops_progress_outside_trace():
    """Test progress-tagged records are dropped unless trace is on."""
    quiet = logging_module._progress_filter(False)
    verbose = logging_module._progress_filter(True)

    assert quiet(_record("DEBUG", ["disk", "progress"])) is False
    assert quiet(_record("INFO", ["disk", "progress"])) is False
    assert verbose(_record("DEBUG", ["disk", "progress"])) is True


def test_progress_filter_passes_warnings_and_untagged_records():
    quiet = logging_module._progress_filter(False)

    assert quiet(_record("WARNING", ["disk", "progress"])) is True
    assert quiet(_record("DEBUG", message="hello")) is True
    assert quiet(_record("TRACE", ["disk", "helper"])) is True


@pytest.mark.parametrize("trace,expected", [(False, False), (True, True)])
def test_debug_log_keeps_progress_only_in_trace(tmp_path, trace, expected):
    log_dir = tmp_path / "logs"
    logging_module.setup_logging(debug=True, trace=trace, log_dir=log_dir, console=False)

    logging_module.get_logger(source="disk", tags=["disk", "progress"]).debug("resize: 40%")
    logging_module.get_logger(source="disk", tags=["disk"]).debug("Spawning helper")
    logging_module.logger.complete()

    text = (log_dir / "debug.log").read_text()
    assert "Spawning helper" in text
    assert ("resize: 40%" in text) is expected
    logging_module.logger.remove()


class TestOperationContext:
    """Tests for operation_context()."""

    def test_logs_start_and_completion(self, captured):
        with logging_module.operation_context("edit", bundle="/vms/Dev.bundle") as log:
            log.debug("inside")

        messages = [r["message"] for r in captured]
        assert messages == ["Edit started", "inside", "Edit completed"]
        assert captured[0]["extra"]["job_id"].startswith("edit-")
        assert captured[-1]["level"].name == "SUCCESS"

    def test_logs_failure_and_reraises(self, captured):
        with pytest.raises(RuntimeError):
            with logging_module.operation_context("edit"):
                raise RuntimeError("boom")

        assert captured[-1]["message"] == "Edit failed"
        assert captured[-1]["extra"]["error"] == "boom"
        assert captured[-1]["extra"]["error_type"] == "RuntimeError"


class TestLoggerFactory:
    """Tests for LoggerFactory."""

    def test_provisioning_logger(self, captured):
        logging_module.LoggerFactory.for_provisioning(bundle="/vms/Dev.bundle").info("x")

        extra = captured[0]["extra"]
        assert extra["source"] == "provision"
        assert extra["job_id"].startswith("provision-")
        assert extra["bundle"] == "/vms/Dev.bundle"

    def test_disk_logger_with_job_id(self, captured):
        logging_module.LoggerFactory.for_disk(job_id="disk-fixed").info("x")

        assert captured[0]["extra"]["job_id"] == "disk-fixed"
        assert captured[0]["extra"]["tags"] == ["disk", "helper"]

    def test_network_logger(self, captured):
        logging_module.LoggerFactory.for_network().info("x")

        assert captured[0]["extra"]["source"] == "network"


class TestThrottledLogger:
    """Tests for ThrottledLogger."""

    def test_throttles_per_key(self, mocker):
        mock_time = mocker.patch("vm_provisioner.logging.time")
        mock_time.time.side_effect = [100.0, 105.0, 105.0, 111.0]
        log = Mock()
        throttled = logging_module.ThrottledLogger(log, interval_seconds=10)

        throttled.info("download", "10%")
        throttled.info("download", "20%")
        throttled.info("install", "1%")
        throttled.info("download", "30%")

        assert [c.args[0] for c in log.info.call_args_list] == ["10%", "1%", "30%"]
