"""YYMM version tokens used by the Japan Post monthly archives."""

from __future__ import annotations

import re
from datetime import date, datetime

from postal_sync.errors import VersionError

_YYMM_RE = re.compile(r"^(\d{2})(\d{2})$")


def parse_yymm(value: str) -> date:
    """Return the first day of the month named by ``value``.

    Two digit years below 50 map to 20xx, the rest to 19xx.
    """

    match = _YYMM_RE.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise VersionError(f"Invalid YYMM version: {value!r}. Expected format like '2508'")
    yy, mm = int(match.group(1)), int(match.group(2))
    if not 1 <= mm <= 12:
        raise VersionError(f"Invalid month in YYMM version: {value!r}")
    year = 2000 + yy if yy < 50 else 1900 + yy
    return date(year, mm, 1)


def format_yymm(version_date: date) -> str:
    return f"{version_date.year % 100:02d}{version_date.month:02d}"


def previous_month(now: datetime | date) -> date:
    if now.month == 1:
        return date(now.year - 1, 12, 1)
    return date(now.year, now.month - 1, 1)


def resolve_version(yymm: str | None, *, now: datetime) -> date:
    if yymm:
        return parse_yymm(yymm)
    return previous_month(now)
