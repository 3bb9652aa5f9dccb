"""Small helpers shared by the store, importer and API layers."""
from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Parse a JSON text column, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def json_list(value: str | None) -> list:
    parsed = json_parse(value, [])
    return parsed if isinstance(parsed, list) else []


def parse_date(value: object) -> date | None:
    """Coerce an ISO string, datetime or date into a ``date``; blanks become None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def split_list(value: object, sep: str = ";") -> list[str]:
    """Accept a list or a separator-joined string and return clean items."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in str(value).split(sep) if part.strip()]
