"""
Logging setup for the sync kernel.

Every module logs through logging.getLogger(__name__). This module only
attaches handlers: plain text for local runs, one JSON object per line for
deployments. Access tokens and API keys are masked before anything is
written.
"""

import json
import logging
import os
import re
from typing import Iterable, Optional, Pattern, Tuple, Union

from sync_kernel.clock import utcnow

ROOT_LOGGER = "sync_kernel"
TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class SensitiveDataFilter(logging.Filter):
    """Masks credentials in log messages and their arguments."""

    _PATTERNS: Iterable[Tuple[Pattern[str], str]] = (
        (re.compile(r"(authorization=)([^\s]+)", re.I), r"\1***"),
        (re.compile(r"(api[_-]?key=)([^&\s]+)", re.I), r"\1***"),
        (re.compile(r"(access[_-]?token=)([^&\s]+)", re.I), r"\1***"),
        (re.compile(r"([?&]key=)([^&\s]+)", re.I), r"\1***"),
        (re.compile(r"Bearer\s+[A-Za-z0-9._-]+"), "Bearer ***"),
    )

    def __init__(self) -> None:
        super().__init__(name="SensitiveDataFilter")

    @staticmethod
    def _sanitize_value(value: object) -> object:
        if isinstance(value, str):
            sanitized = value
            for pattern, repl in SensitiveDataFilter._PATTERNS:
                sanitized = pattern.sub(repl, sanitized)
            return sanitized
        if isinstance(value, (list, tuple)):
            return type(value)(SensitiveDataFilter._sanitize_value(v) for v in value)
        if isinstance(value, dict):
            return {k: SensitiveDataFilter._sanitize_value(v) for k, v in value.items()}
        return value

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._sanitize_value(record.msg)
        if record.args:
            record.args = self._sanitize_value(record.args)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "timestamp": utcnow().isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False, default=str)


def _resolve_level(level: Union[str, int, None]) -> int:
    if level is None:
        level = os.getenv("SYNC_KERNEL_LOG_LEVEL", "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    level: Union[str, int, None] = None,
    json_output: Optional[bool] = None,
) -> logging.Logger:
    """
    Attach one stream handler to the package logger. Safe to call again:
    the previous handler is replaced, never duplicated.

    `level` defaults to SYNC_KERNEL_LOG_LEVEL and `json_output` to
    SYNC_KERNEL_LOG_JSON.
    """
    if json_output is None:
        json_output = os.getenv("SYNC_KERNEL_LOG_JSON", "").lower() in ("1", "true", "yes")

    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        if getattr(handler, "_sync_kernel", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler._sync_kernel = True
    handler.setFormatter(JsonFormatter() if json_output else logging.Formatter(TEXT_FORMAT))
    handler.addFilter(SensitiveDataFilter())

    logger.addHandler(handler)
    logger.setLevel(_resolve_level(level))
    return logger
