"""
Console and JSONL formatters.

Console line:
    14:30:05 [ INFO  ] (mat_42) chunk_aligned chunk=3 words=7 0.004s

JSONL record:
    {"ts": "...", "level": 2, "tag": "INFO", "message": "chunk_aligned",
     "request_id": "mat_42", "seconds": 0.004, "extra": {"chunk": 3, "words": 7}}
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict

from .colors import Colors, get_tag_color


def _colorize(text: str, color: str) -> str:
    # Read the flag at call time so tests can toggle it on the package.
    import senseflow.core.logging as log_module
    if not getattr(log_module, "_USE_COLORS", False):
        return text
    return f"{color}{text}{Colors.RESET}"


class JsonlFormatter(logging.Formatter):
    """One JSON object per line, for the rotating log file."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created).astimezone().isoformat(),
            "level": getattr(record, "numeric_level", 2),
            "tag": getattr(record, "tag", record.levelname),
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
            "logger": record.name,
        }

        seconds = getattr(record, "seconds", None)
        if seconds is not None:
            payload["seconds"] = seconds

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            payload["extra"] = extra_data

        return json.dumps(payload, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Human-readable single-line format with ANSI colors."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tag = getattr(record, "tag", record.levelname)
        rid = getattr(record, "request_id", "-")

        parts = [
            _colorize(ts, Colors.DIM),
            _colorize(f"[{tag:^7}]", get_tag_color(tag)),
        ]
        if rid != "-":
            parts.append(_colorize(f"({rid})", Colors.DIM + Colors.CYAN))
        parts.append(record.getMessage())

        seconds = getattr(record, "seconds", None)
        if seconds is not None:
            if seconds < 0.1:
                time_color = Colors.GREEN
            elif seconds < 1.0:
                time_color = Colors.YELLOW
            else:
                time_color = Colors.RED
            parts.append(_colorize(f"{seconds:.3f}s", time_color))

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            for k, v in extra_data.items():
                parts.append(_colorize(f"{k}={v}", self._field_color(k, v)))

        return " ".join(parts)

    @staticmethod
    def _field_color(key: str, value: Any) -> str:
        """Highlight fields that signal degraded output."""
        if key in ("unaligned", "synthesized", "evicted") and isinstance(value, int) and value > 0:
            return Colors.YELLOW
        if key == "error":
            return Colors.RED
        return Colors.DIM
