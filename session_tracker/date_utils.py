"""Shared timestamp normalization helpers."""
from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def utc_now_iso() -> str:
    return format_datetime_utc(datetime.now(timezone.utc))


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%Y/%m/%d", "%m/%d/%Y", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(cleaned, fmt)
        except ValueError:
            continue
    return None


def parse_datetime(value: Any) -> datetime | None:
    """Coerce ISO strings, dates, datetimes and epoch numbers into aware UTC datetimes."""
    if value is None or isinstance(value, bool):
        return None
    parsed: datetime | None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        token = value.strip()
        if _DATE_ONLY_RE.match(token):
            try:
                parsed = datetime.fromisoformat(token)
            except ValueError:
                return None
        else:
            parsed = _parse_datetime_token(token)
    else:
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def iso_to_epoch(value: Any) -> float:
    parsed = parse_datetime(value)
    if not parsed:
        return 0.0
    return parsed.timestamp()
