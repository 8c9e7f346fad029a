"""Field-mapping helpers used by the source step transforms.

Upstream records name the same field several ways (sourcedId, sourced_id,
id). Synonyms are listed in preference order and the first non-null value
wins.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from typing import Any, Optional


def first_non_null(record: Optional[dict], *fields: str, default: Any = None) -> Any:
    if not record:
        return default
    for name in fields:
        value = record.get(name)
        if value is not None and value != "":
            return value
    return default


def text(value: Any, max_len: Optional[int] = None) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    return s[:max_len] if max_len else s


def to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_bool(value: Any) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "y")


def parse_date(value: Any) -> Optional[date]:
    """Accepts dates, datetimes and ISO strings (with or without a time part)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        return None


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    s = str(value).strip().replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


def nested(record: Optional[dict], *path: str) -> Any:
    """record[a][b]... or None when any hop is missing."""
    current: Any = record
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def full_name(record: dict) -> Optional[str]:
    explicit = text(first_non_null(record, "fullName", "full_name", "name"))
    if explicit:
        return explicit
    parts = [text(first_non_null(record, "givenName", "firstName", "first_name")),
             text(first_non_null(record, "familyName", "lastName", "last_name"))]
    joined = " ".join(p for p in parts if p)
    return joined or None


def record_key(*parts: Any) -> str:
    """Stable natural key for rows the upstream gives no identifier for."""
    raw = "|".join("" if p is None else str(p).strip().lower() for p in parts)
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()
