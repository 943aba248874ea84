"""Tests for the observability module.

Tests for metrics collection, logging configuration, and log sanitization.
"""
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from quicknotes.observability import (
    MetricsCollector,
    configure_logging,
    metrics,
    timed_operation,
)
from quicknotes.utils import sanitize_for_log


class TestSanitizeForLog:

    def test_simple_message(self):
        assert sanitize_for_log("Simple error") == "Simple error"

    def test_removes_home_directory(self):
        home = str(Path.home())
        result = sanitize_for_log(f"{home}/secret/db.sqlite: Permission denied")
        assert home not in result
        assert result.startswith("~/secret/db.sqlite")

    def test_removes_newlines(self):
        assert sanitize_for_log("Line 1\nLine 2\rLine 3") == "Line 1 Line 2 Line 3"

    def test_truncates(self):
        result = sanitize_for_log("a" * 300)
        assert len(result) == 200
        assert result.endswith("...")


class TestMetricsCollector:

    def test_records_success_and_error(self):
        collector = MetricsCollector()
        collector.record_operation("create_backup", 10.0, True)
        collector.record_operation("create_backup", 30.0, False, error="disk full")
        snapshot = collector.get_metrics()["create_backup"]
        assert snapshot["count"] == 2
        assert snapshot["success_count"] == 1
        assert snapshot["error_count"] == 1
        assert snapshot["avg_duration_ms"] == 20.0
        assert snapshot["last_error"] == "disk full"

    def test_reset(self):
        collector = MetricsCollector()
        collector.record_operation("restore_backup", 1.0, True)
        collector.reset()
        assert collector.get_metrics() == {}


class TestTimedOperation:

    def setup_method(self):
        metrics.reset()

    def test_success_is_recorded(self):
        with timed_operation("unit_op") as op:
            op["files"] = 3
        assert "correlation_id" in op
        assert metrics.get_metrics()["unit_op"]["success_count"] == 1

    def test_failure_is_recorded_and_reraised(self):
        with pytest.raises(ValueError):
            with timed_operation("failing_op"):
                raise ValueError("boom")
        assert metrics.get_metrics()["failing_op"]["error_count"] == 1


class TestConfigureLogging:

    def test_creates_rotating_log_file(self, tmp_path):
        logger = logging.getLogger("quicknotes")
        before = list(logger.handlers)
        try:
            log_dir = configure_logging(log_dir=tmp_path / "logs", console=False)
            logging.getLogger("quicknotes.test").info("hello from test")
            for handler in logger.handlers:
                handler.flush()
            assert log_dir == tmp_path / "logs"
            assert "hello from test" in (log_dir / "quicknotes.log").read_text()
            # Configuring twice doesn't duplicate the file handler
            configure_logging(log_dir=tmp_path / "logs", console=False)
            added = [h for h in logger.handlers if h not in before]
            assert len([h for h in added if isinstance(h, RotatingFileHandler)]) == 1
        finally:
            for handler in list(logger.handlers):
                if handler not in before:
                    logger.removeHandler(handler)
                    handler.close()
