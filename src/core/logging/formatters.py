"""
Log formatters.

JSONFormatter writes one object per line for the file/stdout sink;
ConsoleFormatter writes a short human line with run and subscription tags.
Both read the run context from core.logging.context.
"""

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any

from core.logging.context import get_log_context
from core.utils.json_serializers import json_serializer

CONTEXT_FIELDS = ("run_id", "stage", "worker_id", "subscription_id")

# extras copied into JSON lines; anything else on the record is ignored
INT_FIELDS = frozenset(
    {
        "http_status",
        "page",
        "records",
        "attempt",
        "max_attempts",
        "total_attempts",
        "nodes_visited",
        "events_emitted",
        "batches_sent",
        "batches_failed",
        "fallback_events",
        "event_count",
        "batch_bytes",
        "error_count",
        "subscriptions",
        "port",
    }
)
FLOAT_FIELDS = frozenset({"duration_ms", "delay_seconds", "retry_after", "wait_seconds"})
TEXT_FIELDS = frozenset(
    {
        "batch_id",
        "url",
        "error",
        "error_type",
        "error_category",
        "error_message",
        "audience",
        "auth_mode",
        "listing",
        "parent_id",
        "source_id",
        "kind",
        "outcome",
        "principal_id",
        "cancelled",
        "rate_limiter",
        "operation",
        "sink",
        "entity",
        "expires_at",
    }
)

_SECRET_QUERY = re.compile(
    r"([?&])(sig|token|key|secret|password|auth|\$skiptoken)=[^&]*",
    re.IGNORECASE,
)


def _coerce(field: str, value: Any) -> Any:
    """Numeric extras stay numeric downstream; garbage becomes null, never an error."""
    target = int if field in INT_FIELDS else float if field in FLOAT_FIELDS else None
    if target is None:
        return value
    try:
        return target(value)
    except (TypeError, ValueError):
        return None


class JSONFormatter(logging.Formatter):
    """Single-line JSON with context, whitelisted extras and redacted URLs."""

    EXTRA_FIELDS = INT_FIELDS | FLOAT_FIELDS | TEXT_FIELDS

    @staticmethod
    def _sanitize_url(url: str) -> str:
        return _SECRET_QUERY.sub(r"\1\2=[REDACTED]", url)

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = get_log_context()
        entry.update({k: context[k] for k in CONTEXT_FIELDS if context.get(k)})

        if record.levelno == logging.DEBUG or record.levelno >= logging.ERROR:
            entry["file"] = f"{record.filename}:{record.lineno}"

        for field in sorted(self.EXTRA_FIELDS):
            value = getattr(record, field, None)
            if value is None:
                continue
            value = _coerce(field, value)
            if field == "url" and isinstance(value, str):
                value = self._sanitize_url(value)
            entry[field] = value

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "stacktrace": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=json_serializer, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    `2026-01-05 14:30:00 - INFO - [export] - [run:0123abcd] [sub:8f1e2d3c] msg`

    Level names are coloured only when stdout is a terminal.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._use_colors = sys.stdout.isatty()

    def _level(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno) if self._use_colors else None
        return f"{color}{record.levelname}{self.RESET}" if color else record.levelname

    def format(self, record: logging.LogRecord) -> str:
        context = get_log_context()

        head = [datetime.now().strftime("%Y-%m-%d %H:%M:%S"), self._level(record)]
        if context["stage"]:
            head.append(f"[{context['stage']}]")

        subscription_id = getattr(record, "subscription_id", None) or context["subscription_id"]
        batch_id = getattr(record, "batch_id", None)
        tags = []
        if context["run_id"]:
            tags.append(f"[run:{context['run_id'][:8]}]")
        if subscription_id:
            tags.append(f"[sub:{subscription_id[:8]}]")
        if batch_id:
            tags.append(f"[batch:{batch_id}]")

        message = record.getMessage()
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        body = f"{' '.join(tags)} {message}" if tags else message
        return f"{' - '.join(head)} - {body}"


__all__ = ["JSONFormatter", "ConsoleFormatter"]
