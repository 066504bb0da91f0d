"""Helpers for logging structured fields without tripping over LogRecord attributes."""

import logging
from typing import Any

# Passing one of these in `extra` makes logging raise KeyError
_RECORD_ATTRIBUTES = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}

MAX_ERROR_MESSAGE = 500


def _safe_extra(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if k not in _RECORD_ATTRIBUTES}


def log_with_context(logger: logging.Logger, level: int, msg: str, **fields: Any) -> None:
    """
    logger.log with keyword fields as extras.

        log_with_context(logger, logging.DEBUG, "Listing complete", listing="resources", records=12)

    exc_info is passed through; reserved record attribute names are dropped.
    """
    exc_info = fields.pop("exc_info", None)
    logger.log(level, msg, exc_info=exc_info, extra=_safe_extra(fields))


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **fields: Any,
) -> None:
    """
    Log an exception with error_type, error_message and, for PipelineErrors,
    error_category. Messages longer than MAX_ERROR_MESSAGE are cut.
    """
    category = getattr(exc, "category", None)
    if category is not None:
        fields.setdefault("error_category", getattr(category, "value", str(category)))

    text = str(exc)
    if len(text) > MAX_ERROR_MESSAGE:
        text = text[:MAX_ERROR_MESSAGE] + "..."
    fields["error_message"] = text
    fields.setdefault("error_type", type(exc).__name__)

    logger.log(level, msg, exc_info=exc if include_traceback else None, extra=_safe_extra(fields))


__all__ = ["log_with_context", "log_exception"]
