"""Tests for numeric log levels, filtering, request ids and JSONL output."""
from __future__ import annotations

import io
import json
import logging
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

from senseflow.core.logging import (
    LogLevel,
    coerce_level,
    configure_logging,
    debug,
    error,
    get_level,
    get_level_name,
    get_logger,
    info,
    set_request_id,
    verbose,
    warn,
)


def _close_handlers():
    root = logging.getLogger("senseflow")
    for handler in root.handlers:
        handler.flush()
        handler.close()
    root.handlers = []


class TestLevelCoercion:
    """Tests for coerce_level()."""

    def test_from_int(self):
        """Integers 1-4 map directly."""
        assert coerce_level(1) == LogLevel.MINIMAL
        assert coerce_level(4) == LogLevel.DEBUG

    def test_from_names(self):
        """Level names are case-insensitive; Python names are mapped."""
        assert coerce_level("verbose") == LogLevel.VERBOSE
        assert coerce_level("INFO") == LogLevel.NORMAL
        assert coerce_level("warning") == LogLevel.MINIMAL
        assert coerce_level("3") == LogLevel.VERBOSE

    def test_python_levels(self):
        """Large integers are read as logging module levels."""
        assert coerce_level(logging.WARNING) == LogLevel.MINIMAL
        assert coerce_level(logging.INFO) == LogLevel.NORMAL
        assert coerce_level(5) == LogLevel.DEBUG

    def test_invalid_defaults_to_normal(self):
        """Unknown values fall back to NORMAL."""
        assert coerce_level("loud") == LogLevel.NORMAL
        assert coerce_level(None) == LogLevel.NORMAL


class TestLevelFiltering:
    """Messages above the configured level are suppressed."""

    def _capture(self, level):
        captured = io.StringIO()
        with patch("sys.stdout", captured):
            configure_logging(level=level, force=True)
            log = get_logger("senseflow.test_filter")
            error(log, "error message")
            info(log, "info message")
            warn(log, "warn message")
            verbose(log, "verbose message")
            debug(log, "debug message")
        configure_logging(level=2, force=True)
        return captured.getvalue()

    def test_minimal(self):
        """MINIMAL only shows errors."""
        output = self._capture(1)
        assert "error message" in output
        assert "info message" not in output
        assert "warn message" not in output

    def test_normal(self):
        """NORMAL shows info and warnings but not verbose."""
        output = self._capture(2)
        assert "info message" in output
        assert "warn message" in output
        assert "verbose message" not in output

    def test_debug(self):
        """DEBUG shows everything."""
        output = self._capture(4)
        assert "verbose message" in output
        assert "debug message" in output


class TestRequestId:
    """The correlation id appears on console lines."""

    def test_request_id_in_output(self):
        """set_request_id() tags subsequent records."""
        captured = io.StringIO()
        with patch("sys.stdout", captured):
            configure_logging(level=2, force=True)
            set_request_id("gen_1700000000000")
            info(get_logger("senseflow.test_rid"), "processing")
            set_request_id("-")
        configure_logging(level=2, force=True)
        assert "(gen_1700000000000)" in captured.getvalue()


class TestEnvOverride:
    """Environment variables override the settings file."""

    def test_log_level_env(self):
        """SENSEFLOW_LOG_LEVEL sets the level."""
        with patch.dict(os.environ, {"SENSEFLOW_LOG_LEVEL": "3"}):
            configure_logging(force=True)
            assert get_level() == LogLevel.VERBOSE
            assert get_level_name() == "VERBOSE"
        configure_logging(level=2, force=True)


class TestJsonlOutput:
    """Tests for the rotating JSONL file handler."""

    def test_jsonl_records(self):
        """Each record is one JSON object with fields under 'extra'."""
        with tempfile.TemporaryDirectory() as tmpdir:
            with patch.dict(os.environ, {"SENSEFLOW_LOG_DIR": tmpdir, "SENSEFLOW_JSONL_FILE": "test.jsonl"}):
                configure_logging(level=2, force=True)
                set_request_id("mat_42")
                info(get_logger("senseflow.test_jsonl"), "chunk_aligned", chunk=3, seconds=0.004)
                set_request_id("-")
                _close_handlers()

            lines = [json.loads(line) for line in (Path(tmpdir) / "test.jsonl").read_text().splitlines() if line]
            record = next(r for r in lines if r["message"] == "chunk_aligned")

            assert record["level"] == 2
            assert record["tag"] == "INFO"
            assert record["request_id"] == "mat_42"
            assert record["seconds"] == 0.004
            assert record["extra"] == {"chunk": 3}
            assert record["logger"] == "senseflow.test_jsonl"

        configure_logging(level=2, force=True)
