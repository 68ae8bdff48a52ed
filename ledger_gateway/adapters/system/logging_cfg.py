# /ledger_gateway/adapters/system/logging_cfg.py
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any


class JSONHandler(logging.StreamHandler):
    """One JSON object per line; structured fields come from extra={"extra": {...}}."""

    def emit(self, record: logging.LogRecord) -> None:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "msg": record.getMessage(),
            "logger": record.name,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc"] = logging.Formatter().formatException(record.exc_info)
        try:
            self.stream.write(json.dumps(payload, default=str) + "\n")
            self.flush()
        except Exception:
            self.handleError(record)


def configure_logger(level: int | str = logging.INFO) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(JSONHandler(stream=sys.stdout))
