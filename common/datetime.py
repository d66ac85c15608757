"""Datetime helpers shared by the capital controls engine.

Currently provides:
    parse_iso8601(s): robust ISO-8601 parser that always returns an *aware* UTC
    datetime instance. The function accepts strings with:
        • trailing "Z"
        • explicit offsets like "+00:00" or "-05:00"
        • fractional seconds
    and normalises them to UTC.
    minute_bucket(dt): ``YYYY-MM-DDTHH:MM`` key used for deduplication.
    same_utc_day(a, b): calendar-day comparison in UTC.

This avoids scattered direct calls to dateutil.parser.isoparse or
datetime.fromisoformat, giving us a single spot to patch if behavior changes.
"""
from __future__ import annotations

import datetime as _dt
from typing import Union

from dateutil.parser import isoparse as _isoparse

__all__ = ["parse_iso8601", "minute_bucket", "same_utc_day", "utcnow"]


def _ensure_utc(dt: _dt.datetime) -> _dt.datetime:
    """Return *dt* converted to UTC and TZ-aware."""
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        # naive → assume already UTC
        return dt.replace(tzinfo=_dt.timezone.utc)
    return dt.astimezone(_dt.timezone.utc)


def parse_iso8601(value: Union[str, _dt.datetime]) -> _dt.datetime:
    """Parse *value* into a timezone-aware UTC datetime.

    Accepts ISO-8601 strings or datetime objects. If *value* is already a
    datetime, it will be normalised to UTC.
    """
    if isinstance(value, _dt.datetime):
        return _ensure_utc(value)

    if not isinstance(value, str):
        raise TypeError("parse_iso8601 expects str or datetime, got " + type(value).__name__)

    try:
        dt = _isoparse(value)
    except ValueError as exc:
        raise ValueError(f"invalid ISO-8601 datetime: {value}") from exc

    return _ensure_utc(dt)


def minute_bucket(value: Union[str, _dt.datetime]) -> str:
    """Return the UTC minute key, e.g. ``2026-02-17T02:30``."""
    return parse_iso8601(value).strftime("%Y-%m-%dT%H:%M")


def same_utc_day(a: Union[str, _dt.datetime], b: Union[str, _dt.datetime]) -> bool:
    return parse_iso8601(a).date() == parse_iso8601(b).date()


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)
