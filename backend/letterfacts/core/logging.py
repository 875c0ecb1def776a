import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

_LOGGING_CONFIGURED = False

# `extra=` keys copied onto the JSON line when present
STRUCTURED_FIELDS = (
    "request_id",
    "stage",
    "url_hash",
    "tier",
    "connector",
    "has_target_url",
    "has_pdf_text",
    "has_user_notes",
)

# Per-request INFO lines from these would drown the pipeline stage logs
NOISY_LOGGERS = ("httpx", "httpcore", "openai")


class JsonFormatter(logging.Formatter):
    """One JSON object per line, Japanese text left unescaped."""

    def format(self, record: logging.LogRecord) -> str:
        log_record: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": getattr(record, "service", "letterfacts_backend"),
        }

        for field in STRUCTURED_FIELDS:
            if hasattr(record, field):
                log_record[field] = getattr(record, field)

        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_record, ensure_ascii=False, default=str)


def configure_logging(level: int | str = logging.INFO) -> None:
    """
    Route the root logger to stdout as JSON. Only the first call has any
    effect.
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.setLevel(level.upper() if isinstance(level, str) else level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _LOGGING_CONFIGURED = True
