"""Logger factory shared by the photo diary services and tools.

Records carry a snake_case event name as the message and structured context
in ``extra``. The console shows ``key=value`` pairs; the rotating file under
``log/`` receives one JSON object per line.
"""

from __future__ import annotations

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict

_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_LOG_ROOT = Path(os.getenv("PHOTO_DIARY_LOG_DIR", str(_PROJECT_ROOT / "log")))
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_RESERVED = frozenset(logging.makeLogRecord({}).__dict__) | {"stack_info", "asctime", "message"}


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: value for key, value in record.__dict__.items() if key not in _RESERVED}


class _JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            **_extras(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)


class _KeyValueFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = _extras(record)
        if not extras:
            return base
        return base + " | " + " ".join(f"{key}={value!r}" for key, value in sorted(extras.items()))


def _env_level() -> int:
    level = logging.getLevelName(os.getenv("PHOTO_DIARY_LOG_LEVEL", "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _file_logging_enabled() -> bool:
    return os.getenv("PHOTO_DIARY_LOG_FILE", "1").strip().lower() not in {"0", "false", "no", "off"}


def _configure_root_logger() -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    root.setLevel(_env_level())

    console = logging.StreamHandler()
    console.setFormatter(_KeyValueFormatter(_LOG_FORMAT))
    root.addHandler(console)

    if not _file_logging_enabled():
        return
    try:
        _LOG_ROOT.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            _LOG_ROOT / "photo_diary.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
    except OSError:
        root.warning("file_logging_unavailable", extra={"log_root": str(_LOG_ROOT)})
        return
    handler.setFormatter(_JsonLineFormatter())
    root.addHandler(handler)


class _ContextAdapter(logging.LoggerAdapter):
    """Merges the adapter's base context under each call's own ``extra``."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs


def get_logger(name: str, extra: Dict[str, Any] | None = None) -> logging.LoggerAdapter:
    """Return a logger adapter that attaches ``extra`` to every record.

    The first call installs the console and file handlers on the root logger.
    """

    _configure_root_logger()
    return _ContextAdapter(logging.getLogger(name), extra or {})


__all__ = ["get_logger"]
