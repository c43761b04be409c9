from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from threading import local
from typing import Any, Iterable

LOGGER_NAME = "archivist"

_log_ctx = local()
_CONTEXT_FIELDS = ("backup_id", "backup_name", "stage")
_PASSTHROUGH_FIELDS = ("duration_ms", "metrics", "item_path", "outcome")


def set_log_context(**kwargs: Any) -> None:
    for key, value in kwargs.items():
        setattr(_log_ctx, key, value)


def get_log_context() -> dict[str, Any]:
    return {k: v for k, v in _log_ctx.__dict__.items() if not k.startswith("_")}


def clear_log_context(keys: Iterable[str] | None = None) -> None:
    names = list(keys) if keys is not None else list(get_log_context())
    for name in names:
        if hasattr(_log_ctx, name):
            delattr(_log_ctx, name)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()
        data: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
                "%Y-%m-%dT%H:%M:%SZ"
            ),
            "level": record.levelname,
            "logger": record.name,
        }
        for field_name in _CONTEXT_FIELDS:
            data[field_name] = getattr(record, field_name, ctx.get(field_name))
        data["msg"] = record.getMessage()

        for field_name in _PASSTHROUGH_FIELDS:
            if hasattr(record, field_name):
                data[field_name] = getattr(record, field_name)
        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)

        data = {k: v for k, v in data.items() if v is not None}
        return json.dumps(data, ensure_ascii=False, default=str)


def setup_logging(
    level: int | str = logging.INFO,
    log_file: Path | str | None = None,
) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    formatter = JsonFormatter()

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
