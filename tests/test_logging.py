"""Tests for logging setup and helpers."""

from __future__ import annotations

import sys

import pytest

from build_checkpoint import logging as logging_module


@pytest.fixture(autouse=True)
def restore_default_sink():
    yield
    logging_module.logger.remove()
    logging_module.logger.add(sys.stderr)


@pytest.fixture
def records():
    logging_module.logger.remove()
    captured: list[dict] = []
    logging_module.logger.add(lambda message: captured.append(message.record), level="TRACE")
    return captured


def test_setup_logging_creates_log_files(tmp_path):
    """Test file sinks are created in the requested directory."""
    log_dir = tmp_path / "logs"
    logging_module.setup_logging(debug=True, log_dir=log_dir)

    logging_module.get_logger(source="test").info("Volume 1 uploaded")
    logging_module.logger.complete()

    assert (log_dir / "operations.log").exists()
    assert (log_dir / "debug.log").exists()
    assert "Volume 1 uploaded" in (log_dir / "operations.log").read_text()
    assert (log_dir / "structured.jsonl").read_text().strip()


def test_setup_logging_without_files(tmp_path):
    log_dir = tmp_path / "logs"

    logging_module.setup_logging(log_dir=log_dir, file_logging=False)

    assert not log_dir.exists()


def test_get_logger_preserves_context_metadata(records):
    """Test bound logger keeps job_id, tags, and source metadata."""
    log = logging_module.get_logger(job_id="job-123", tags=["upload"], source="volumes")
    log.info("Context test")

    record = records[0]
    assert record["extra"]["job_id"] == "job-123"
    assert record["extra"]["tags"] == ["upload"]
    assert record["extra"]["source"] == "volumes"


def test_combined_filter_blocks_chunk_logs_above_trace():
    """Test combined filter suppresses chunk progress above TRACE level."""
    record = {
        "message": "Sent 1 MiB",
        "extra": {"tags": ["chunk"]},
        "level": logging_module.logger.level("DEBUG"),
    }

    assert logging_module._combined_filter(record) is False

    record["level"] = logging_module.logger.level("TRACE")
    assert logging_module._combined_filter(record) is True


def test_combined_filter_drops_blank_process_output():
    record = {
        "message": "   ",
        "extra": {"tags": ["process", "gpg"]},
        "level": logging_module.logger.level("DEBUG"),
    }

    assert logging_module._combined_filter(record) is False

    record["message"] = "gpg: AES256.CFB encrypted data"
    assert logging_module._combined_filter(record) is True


class TestOperationContext:
    """Tests for operation_context."""

    def test_success_logs_start_and_completion(self, records):
        with logging_module.operation_context("checkpoint", base_name="nightly") as log:
            log.debug("inside")

        messages = [r["message"] for r in records]
        assert messages == ["Checkpoint started", "inside", "Checkpoint completed"]
        assert records[1]["extra"]["job_id"].startswith("checkpoint-")
        assert records[1]["extra"]["base_name"] == "nightly"
        assert "duration_seconds" in records[2]["extra"]

    def test_failure_logs_error_and_reraises(self, records):
        with pytest.raises(RuntimeError):
            with logging_module.operation_context("restore"):
                raise RuntimeError("volume missing")

        failure = records[-1]
        assert failure["message"] == "Restore failed"
        assert failure["level"].name == "ERROR"
        assert failure["extra"]["error"] == "volume missing"
        assert failure["extra"]["error_type"] == "RuntimeError"


class TestThrottledLogger:
    """Tests for ThrottledLogger."""

    def test_throttles_per_key(self, records, mocker):
        clock = mocker.patch("build_checkpoint.logging.time.time")
        throttled = logging_module.ThrottledLogger(logging_module.logger, interval_seconds=5)

        clock.return_value = 100.0
        throttled.info("archive", "first")
        clock.return_value = 102.0
        throttled.info("archive", "suppressed")
        throttled.info("other", "different key")
        clock.return_value = 106.0
        throttled.debug("archive", "second")

        assert [r["message"] for r in records] == ["first", "different key", "second"]


class TestEventLogger:
    """Tests for structured events."""

    def test_volume_uploaded_event(self, records):
        logging_module.EventLogger.log_volume_uploaded(
            logging_module.logger, "build-artifact-vol002", 2, raw_bytes=100, stored_bytes=40
        )

        extra = records[0]["extra"]
        assert records[0]["message"] == "Volume 2 uploaded as build-artifact-vol002"
        assert extra["event_type"] == "volume_uploaded"
        assert extra["raw_bytes"] == 100
        assert extra["stored_bytes"] == 40

    def test_checkpoint_published_event(self, records):
        logging_module.EventLogger.log_checkpoint_published(
            logging_module.logger, "build-artifact-manifest", 3
        )

        assert records[0]["level"].name == "SUCCESS"
        assert records[0]["extra"]["volume_count"] == 3
