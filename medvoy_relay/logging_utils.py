"""Logging setup for medvoy-relay."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from .config import LoggingConfig

# Library logger trees that follow the relay's configured level.
_LIBRARY_LOGGERS = ("httpcore", "httpx", "uvicorn", "watchdog")

# Request-scoped attributes the relay passes via `extra=`.
_CONTEXT_FIELDS = ("relay_id", "conversation_id")

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, with relay context when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            {key: getattr(record, key) for key in _CONTEXT_FIELDS if getattr(record, key, None) is not None}
        )
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def _library_logger_names() -> list[str]:
    existing = [str(name) for name in logging.root.manager.loggerDict]
    names: list[str] = []
    for prefix in _LIBRARY_LOGGERS:
        names.append(prefix)
        names.extend(name for name in existing if name.startswith(f"{prefix}."))
    return names


def setup_logging(cfg: LoggingConfig) -> None:
    """Install a single root handler and align library loggers with it.

    Called at startup and again after every config reload.
    """
    level = logging.getLevelName(cfg.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter() if cfg.json_logs else logging.Formatter(_TEXT_FORMAT))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in _library_logger_names():
        library_logger = logging.getLogger(name)
        library_logger.setLevel(level)
        library_logger.handlers.clear()
        library_logger.propagate = True
