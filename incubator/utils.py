"""Shared utility functions used across incubator modules."""
from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def isoformat(value: datetime | date | None) -> str | None:
    return value.isoformat() if value else None


def age_from_birth_year(value: str | None, today: date) -> int | None:
    """Age in whole years from a free-text birth year; ``None`` when unparseable."""
    try:
        year = int(str(value or "").strip()[:4])
    except ValueError:
        return None
    if year < 1900 or year > today.year:
        return None
    return today.year - year
