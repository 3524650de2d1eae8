"""Shared timestamp normalization helpers.

Transcript records carry ISO-8601 strings; edges and scan results store epoch
milliseconds so that sibling ordering is a plain integer comparison.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def _format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y/%m/%d %H:%M:%S"):
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def to_epoch_ms(value: Any) -> int | None:
    """Convert an ISO string, datetime or numeric epoch into epoch milliseconds."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    if isinstance(value, (int, float)):
        # Values below 1e11 are epoch seconds.
        numeric = float(value)
        if numeric <= 0:
            return None
        return int(numeric * 1000) if numeric < 1e11 else int(numeric)
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        if token.isdigit():
            return to_epoch_ms(int(token))
        parsed = _parse_datetime_token(token)
        if parsed is None:
            return None
        return to_epoch_ms(parsed)
    return None


def epoch_ms_to_iso(value: int | None) -> str:
    if value is None:
        return ""
    return _format_datetime_utc(datetime.fromtimestamp(value / 1000, timezone.utc))
