"""JSON encoding helpers for log records and run summaries."""

import dataclasses
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any


def _isoformat_utc(value: datetime) -> str:
    if value.tzinfo is None:
        return value.isoformat()
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def json_serializer(obj: Any) -> Any:
    """
    `default=` hook for json.dumps.

    - aware datetime -> ISO 8601 in UTC with a trailing "Z"
    - date -> ISO 8601
    - Decimal -> float
    - Enum -> value
    - set/frozenset -> sorted list
    - dataclass instance -> dict
    - Path and anything else -> str
    """
    if isinstance(obj, datetime):
        return _isoformat_utc(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, Path):
        return str(obj)
    return str(obj)


__all__ = ["json_serializer"]
