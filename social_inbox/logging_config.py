"""Structured JSON logs for the inbox relay; one object per line on stdout."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

SERVICE_NAME = "social_inbox"

# Loggers whose INFO output is request noise for an inbox relay.
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "multipart")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            entry["context"] = context

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", sql_echo: bool = False) -> None:
    """Route every logger through a single JSON handler on stdout."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if sql_echo else logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{SERVICE_NAME}.{name}")


class ConversationLogger(logging.LoggerAdapter):
    """Stamps conversation_id (and any other bound fields) into each record's context."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = kwargs.pop("extra", None) or {}
        context = {**self.extra, **(extra.get("context") or {})}
        kwargs["extra"] = {**extra, "context": context}
        return msg, kwargs


def conversation_logger(logger: logging.Logger, conversation_id: str, **fields: Any) -> ConversationLogger:
    return ConversationLogger(logger, {"conversation_id": conversation_id, **fields})
