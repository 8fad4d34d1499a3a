from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

_EXTRA_FIELDS = (
    "document_id",
    "document_kind",
    "status",
    "stage",
    "outcome",
    "inventory_item_id",
    "quantity",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                payload[name] = getattr(record, name)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())
    if root.handlers:
        for handler in root.handlers:
            handler.setFormatter(JsonFormatter())
        return
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)


def log_document_event(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    document_id: str,
    document_kind: str | None = None,
    status: str | None = None,
    stage: str | None = None,
    outcome: str | None = None,
) -> None:
    extra: dict[str, Any] = {"document_id": document_id}
    if document_kind is not None:
        extra["document_kind"] = document_kind
    if status is not None:
        extra["status"] = status
    if stage is not None:
        extra["stage"] = stage
    if outcome is not None:
        extra["outcome"] = outcome
    logger.log(level, message, extra=extra)
