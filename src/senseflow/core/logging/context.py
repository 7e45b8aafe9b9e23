"""
Logging context and module state.

Holds the correlation id for the material currently being processed (a
ContextVar, so concurrent asyncio tasks keep separate ids) and the
process-wide logging configuration.

Environment variables:
    SENSEFLOW_LOG_LEVEL: level override (1-4 or a name)
    SENSEFLOW_LOG_DIR: directory for the JSONL log file
    SENSEFLOW_JSONL_FILE: JSONL filename
    SENSEFLOW_SETTINGS: settings file consulted for the logging section
"""
from __future__ import annotations

import os
from contextvars import ContextVar
from typing import Any, Dict

import yaml

from senseflow.core.config import load_settings

from .levels import LEVEL_NAMES, LogLevel

_request_id: ContextVar[str] = ContextVar("senseflow_request_id", default="-")

_configured: bool = False
_log_config: Dict[str, Any] = {}
_current_level: LogLevel = LogLevel.NORMAL


def get_request_id() -> str:
    """Correlation id for the current context, "-" when unset."""
    return _request_id.get()


def set_request_id(rid: str) -> None:
    """Tag every subsequent log record in this context with ``rid``."""
    _request_id.set(rid)


def get_level() -> LogLevel:
    return _current_level


def set_level(level: LogLevel) -> None:
    global _current_level
    _current_level = level


def get_level_name() -> str:
    return LEVEL_NAMES.get(_current_level, "NORMAL")


def is_configured() -> bool:
    return _configured


def set_configured(value: bool) -> None:
    global _configured
    _configured = value


def get_log_config() -> Dict[str, Any]:
    return _log_config


def set_log_config(config: Dict[str, Any]) -> None:
    global _log_config
    _log_config = config


def read_logging_config() -> Dict[str, Any]:
    """
    Resolve logging options from the settings file and environment.

    Environment variables win over the ``logging`` section of the
    settings file; a missing or unreadable settings file is ignored.
    """
    cfg: Dict[str, Any] = {}

    settings_path = os.getenv("SENSEFLOW_SETTINGS", "config/settings.yaml")
    try:
        settings = load_settings(settings_path)
        cfg.update(settings.raw.get("logging", {}) or {})
    except (OSError, ValueError, yaml.YAMLError):
        pass

    if os.getenv("SENSEFLOW_LOG_LEVEL"):
        cfg["level"] = os.environ["SENSEFLOW_LOG_LEVEL"]
    if os.getenv("SENSEFLOW_LOG_DIR"):
        cfg["log_dir"] = os.environ["SENSEFLOW_LOG_DIR"]
    if os.getenv("SENSEFLOW_JSONL_FILE"):
        cfg["jsonl_file"] = os.environ["SENSEFLOW_JSONL_FILE"]

    return cfg
