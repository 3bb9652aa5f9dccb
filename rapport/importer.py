from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

import openpyxl
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from rapport import services
from rapport.models import Contact
from rapport.schemas import ContactCreate, ImportResult
from rapport.scoring import CONTRIBUTION_KEYS, POTENTIAL_KEYS
from rapport.utils import json_list, json_parse, split_list

log = logging.getLogger(__name__)

# camelCase keys written by older exports
_ALIASES = {
    "fullname": "full_name", "shortname": "short_name", "companyrole": "company_role",
    "sociallinks": "social_links", "roletags": "role_tags",
    "giftpreferences": "gift_preferences", "familynotes": "family_notes",
    "contributiondetails": "contribution_details", "potentialdetails": "potential_details",
    "attentionlevel": "attention_level", "desiredfrequencydays": "desired_frequency_days",
    "lastcontactdate": "last_contact_date", "responsequality": "response_quality",
    "relationshipenergy": "relationship_energy", "attentiontrend": "attention_trend",
    "systemrole": "system_role",
}

_INT_DEFAULTS = {
    "attention_level": 1,
    "desired_frequency_days": 30,
    "response_quality": 2,
    "relationship_energy": 3,
    "attention_trend": 0,
}

_TEXT_KEYS = (
    "full_name", "short_name", "company", "company_role", "phone", "email",
    "hobbies", "preferences", "gift_preferences", "family_notes",
)

EXPORT_FIELDS = _TEXT_KEYS + (
    "attention_level", "desired_frequency_days", "response_quality",
    "relationship_energy", "attention_trend",
)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _i(value: object, default: int = 0) -> int:
    """Safely coerce cell value to int; blanks and junk give *default*."""
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (ValueError, TypeError):
        return default


def _key(name: object) -> str:
    """Normalize a header or dict key to snake_case."""
    raw = _s(name)
    snake = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", raw)
    snake = re.sub(r"[\s\-]+", "_", snake).lower()
    return _ALIASES.get(snake.replace("_", ""), snake)


def _details(raw: dict[str, Any], field: str, prefix: str, keys: tuple[str, ...]) -> dict[str, int]:
    """Nested details dict, or flattened ``<prefix>_<key>`` columns."""
    nested = raw.get(field)
    if isinstance(nested, str):
        nested = json_parse(nested, None)
    if isinstance(nested, dict):
        nested = {_key(k): v for k, v in nested.items()}
        return {k: _i(nested.get(k)) for k in keys}
    return {k: _i(raw.get(f"{prefix}_{k}")) for k in keys}


def normalize_record(record: dict[str, Any]) -> dict[str, Any]:
    """Turn a loosely-typed import row into ``ContactCreate`` input."""
    raw = {_key(k): v for k, v in record.items()}
    data: dict[str, Any] = {k: _s(raw.get(k)) for k in _TEXT_KEYS}
    for key in ("social_links", "tags", "role_tags"):
        data[key] = split_list(raw.get(key))
    for key, default in _INT_DEFAULTS.items():
        data[key] = _i(raw.get(key), default)
    last = raw.get("last_contact_date")
    if isinstance(last, datetime):
        last = last.date()
    data["last_contact_date"] = last if last not in (None, "") else None
    data["contribution_details"] = _details(raw, "contribution_details", "contribution", CONTRIBUTION_KEYS)
    data["potential_details"] = _details(raw, "potential_details", "potential", POTENTIAL_KEYS)
    return data


def _format_error(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )


def import_records(records: list[dict[str, Any]], session: Session) -> ImportResult:
    """Create one contact per record; bad rows are reported, not fatal."""
    success = failed = 0
    errors: list[str] = []
    for record in records:
        if not isinstance(record, dict):
            failed += 1
            errors.append("Unknown: record is not an object")
            continue
        name = _s(record.get("full_name") or record.get("fullName")) or "Unknown"
        try:
            validated = ContactCreate.model_validate(normalize_record(record))
        except ValidationError as exc:
            failed += 1
            errors.append(f"{name}: {_format_error(exc)}")
            log.warning("Import row rejected (%s): %s", name, exc.error_count())
            continue
        services.create_contact(session, validated.model_dump())
        success += 1
    session.commit()
    log.info("Imported %d contacts (%d failed)", success, failed)
    return ImportResult(success=success, failed=failed, errors=errors)


def import_xlsx(file_path: str | Path, session: Session) -> ImportResult:
    """Import the first sheet of a workbook; row 1 holds the column names."""
    file_path = Path(file_path)
    wb = openpyxl.load_workbook(file_path, read_only=True, data_only=True)
    ws = wb[wb.sheetnames[0]]
    rows = list(ws.iter_rows(values_only=True))
    wb.close()

    if not rows:
        return ImportResult(success=0, failed=0, errors=[])
    header = [_key(h) for h in rows[0]]
    records: list[dict[str, Any]] = []
    for row in rows[1:]:
        if not row or all(v is None or _s(v) == "" for v in row):
            continue
        records.append({h: v for h, v in zip(header, row) if h})
    return import_records(records, session)


def export_record(contact: Contact) -> dict[str, Any]:
    record = {f: getattr(contact, f) for f in EXPORT_FIELDS}
    record["social_links"] = json_list(contact.social_links_json)
    record["tags"] = json_list(contact.tags_json)
    record["role_tags"] = json_list(contact.role_tags_json)
    record["contribution_details"] = json_parse(contact.contribution_details_json, {})
    record["potential_details"] = json_parse(contact.potential_details_json, {})
    record["last_contact_date"] = (
        contact.last_contact_date.isoformat() if contact.last_contact_date else None
    )
    record["importance_level"] = contact.importance_level
    return record


def export_records(session: Session) -> list[dict[str, Any]]:
    contacts = session.execute(select(Contact).order_by(Contact.full_name)).scalars().all()
    return [export_record(c) for c in contacts]
