"""Shared business logic for the Rapport API and MCP server."""
from __future__ import annotations

import json
import logging
import os
import uuid
from collections import Counter
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import delete, event, func, select
from sqlalchemy.orm import Session

from rapport import db, insights, scoring
from rapport.insights import LLMCallError, LLMClient
from rapport.models import (
    Attachment, Contact, Contribution, Gift, InsightCache, Interaction, Purchase,
)
from rapport.utils import json_list, json_parse, parse_date

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

TEXT_FIELDS = (
    "full_name", "short_name", "company", "company_role", "phone", "email",
    "hobbies", "preferences", "gift_preferences", "family_notes",
)

LIST_FIELDS = {
    "social_links": "social_links_json",
    "tags": "tags_json",
    "role_tags": "role_tags_json",
}

INPUT_FIELDS = (
    "attention_level", "desired_frequency_days", "response_quality",
    "relationship_energy", "attention_trend",
)

DERIVED_FIELDS = (
    "contribution_score", "contribution_class", "potential_score", "potential_class",
    "value_category", "importance_level", "recommended_attention_level",
    "heat_index", "heat_status",
)

CONTACT_DEFAULTS: dict[str, Any] = {
    "attention_level": 1,
    "desired_frequency_days": 30,
    "response_quality": 2,
    "relationship_energy": 3,
    "attention_trend": 0,
    "last_contact_date": None,
    "contribution_details": {k: 0 for k in scoring.CONTRIBUTION_KEYS},
    "potential_details": {k: 0 for k in scoring.POTENTIAL_KEYS},
}

CONTRIBUTION_FIELDS = (
    "criterion_type", "title", "amount", "currency", "contributed_at", "notes",
    "introduced_contact_id",
)
PURCHASE_FIELDS = ("product_name", "category", "amount", "currency", "purchased_at", "notes")
GIFT_FIELDS = ("title", "description", "direction", "occasion", "given_on", "amount", "currency")
_DATE_FIELDS = {"contributed_at", "purchased_at", "given_on", "occurred_on"}

_IMPORTANCE_ORDER = {"A": 0, "B": 1, "C": 2}
_QUEUE_IMPORTANCE = {"A", "B"}

ATTACHMENT_SUFFIXES = {
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".heic",
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".txt", ".md",
}
MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024

INSIGHT_KINDS = ("insights", "recommendations", "summary")


class UnsupportedAttachment(ValueError):
    """Upload rejected because of its type or size."""


# ---------------------------------------------------------------------------
# Lookup helpers
# ---------------------------------------------------------------------------


def get_entity(session: Session, model, entity_id: int):
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value else None


def _ensure_client(client: LLMClient | None) -> LLMClient:
    return client if client is not None else LLMClient()


# ---------------------------------------------------------------------------
# Scoring glue
# ---------------------------------------------------------------------------


def evaluate(contact: Contact, today: date | None = None) -> scoring.ContactMetrics:
    return scoring.evaluate_contact(
        contribution_details=json_parse(contact.contribution_details_json, {}),
        potential_details=json_parse(contact.potential_details_json, {}),
        attention_level=contact.attention_level,
        last_contact_date=contact.last_contact_date,
        desired_frequency_days=contact.desired_frequency_days,
        response_quality=contact.response_quality,
        relationship_energy=contact.relationship_energy,
        attention_trend=contact.attention_trend,
        today=today,
    )


def recompute_contact(contact: Contact, today: date | None = None) -> scoring.ContactMetrics:
    """Rewrite every derived field (and the clamped sub-scores) from the inputs."""
    metrics = evaluate(contact, today)
    contact.contribution_details_json = json.dumps(metrics.contribution_details)
    contact.potential_details_json = json.dumps(metrics.potential_details)
    contact.attention_level = metrics.attention_level
    for field in DERIVED_FIELDS:
        setattr(contact, field, getattr(metrics, field))
    return metrics


def refresh_heat(contact: Contact, today: date | None = None) -> scoring.ContactMetrics:
    """Heat decays with time, so reads re-evaluate it and store any change.

    A heat-only write is not an edit: ``updated_at`` is pinned to its stored
    value so the column's ``onupdate`` does not fire.
    """
    metrics = evaluate(contact, today)
    if (contact.heat_index, contact.heat_status) != (metrics.heat_index, metrics.heat_status):
        contact.heat_index = metrics.heat_index
        contact.heat_status = metrics.heat_status
        contact.updated_at = Contact.updated_at
    return metrics


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def contact_summary(contact: Contact, metrics: scoring.ContactMetrics | None = None) -> dict:
    m = metrics or evaluate(contact)
    return {
        "id": contact.id, "full_name": contact.full_name,
        "short_name": contact.short_name or "", "company": contact.company or "",
        "company_role": contact.company_role or "",
        "tags": json_list(contact.tags_json), "role_tags": json_list(contact.role_tags_json),
        "attention_level": contact.attention_level,
        "desired_frequency_days": contact.desired_frequency_days,
        "last_contact_date": _iso(contact.last_contact_date),
        "response_quality": contact.response_quality,
        "relationship_energy": contact.relationship_energy,
        "attention_trend": contact.attention_trend,
        "contribution_score": contact.contribution_score,
        "contribution_class": contact.contribution_class,
        "potential_score": contact.potential_score,
        "potential_class": contact.potential_class,
        "value_category": contact.value_category,
        "importance_level": contact.importance_level,
        "recommended_attention_level": contact.recommended_attention_level,
        "attention_gap": m.attention_gap,
        "attention_gap_status": m.attention_gap_status,
        "days_since_last_contact": m.days_since_last_contact,
        "days_overdue": max(0, m.days_since_last_contact - contact.desired_frequency_days),
        "heat_index": m.heat_index,
        "heat_status": m.heat_status,
    }


def contact_detail(contact: Contact, metrics: scoring.ContactMetrics | None = None) -> dict:
    base = contact_summary(contact, metrics)
    base.update({f: getattr(contact, f) or "" for f in ("phone", "email", "hobbies", "preferences",
                                                       "gift_preferences", "family_notes")})
    base["social_links"] = json_list(contact.social_links_json)
    base["contribution_details"] = json_parse(contact.contribution_details_json, {})
    base["potential_details"] = json_parse(contact.potential_details_json, {})
    base["created_at"] = _iso(contact.created_at)
    base["updated_at"] = _iso(contact.updated_at)
    base["interactions"] = [interaction_summary(i) for i in contact.interactions]
    return base


def interaction_summary(interaction: Interaction) -> dict:
    return {
        "id": interaction.id, "contact_id": interaction.contact_id,
        "occurred_on": _iso(interaction.occurred_on), "type": interaction.type,
        "channel": interaction.channel, "note": interaction.note or "",
        "is_meaningful": bool(interaction.is_meaningful),
        "created_at": _iso(interaction.created_at),
    }


def contribution_summary(c: Contribution) -> dict:
    return {
        "id": c.id, "contact_id": c.contact_id, "criterion_type": c.criterion_type,
        "title": c.title, "amount": c.amount, "currency": c.currency or "USD",
        "contributed_at": _iso(c.contributed_at), "notes": c.notes or "",
        "introduced_contact_id": c.introduced_contact_id,
    }


def purchase_summary(p: Purchase) -> dict:
    return {
        "id": p.id, "contact_id": p.contact_id, "product_name": p.product_name,
        "category": p.category or "", "amount": p.amount, "currency": p.currency or "USD",
        "purchased_at": _iso(p.purchased_at), "notes": p.notes or "",
    }


def gift_summary(g: Gift) -> dict:
    return {
        "id": g.id, "contact_id": g.contact_id, "title": g.title,
        "description": g.description or "", "direction": g.direction or "given",
        "occasion": g.occasion or "", "given_on": _iso(g.given_on),
        "amount": g.amount, "currency": g.currency or "USD",
    }


def attachment_summary(a: Attachment) -> dict:
    return {
        "id": a.id, "contact_id": a.contact_id, "category": a.category,
        "original_name": a.original_name, "file_type": a.file_type,
        "file_size": a.file_size, "uploaded_at": _iso(a.uploaded_at),
    }


def team_summary(contact: Contact, metrics: scoring.ContactMetrics | None = None) -> dict:
    """Compact view of a contact used by the portfolio-level AI prompts."""
    m = metrics or evaluate(contact)
    return {
        "full_name": contact.full_name, "company": contact.company or "",
        "heat_status": m.heat_status, "heat_index": m.heat_index,
        "importance_level": contact.importance_level,
        "value_category": contact.value_category,
        "last_contact_date": _iso(contact.last_contact_date),
        "desired_frequency_days": contact.desired_frequency_days,
        "days_overdue": max(0, m.days_since_last_contact - contact.desired_frequency_days),
    }


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            if field in _DATE_FIELDS:
                val = parse_date(val)
            setattr(obj, field, val)


def _merge_details(current_json: str | None, patch: dict[str, Any] | None) -> str:
    current = json_parse(current_json, {})
    if not isinstance(current, dict):
        current = {}
    current.update({k: v for k, v in (patch or {}).items() if v is not None})
    return json.dumps(current)


def _apply_contact_fields(contact: Contact, data: dict[str, Any]) -> None:
    apply_updates(contact, data, TEXT_FIELDS + INPUT_FIELDS)
    # An explicit null blanks an optional text field; full_name stays required.
    for field in TEXT_FIELDS[1:]:
        if field in data and data[field] is None:
            setattr(contact, field, "")
    for key, column in LIST_FIELDS.items():
        if data.get(key) is not None:
            setattr(contact, column, json.dumps([str(v).strip() for v in data[key] if str(v).strip()]))
    if "contribution_details" in data:
        contact.contribution_details_json = _merge_details(
            contact.contribution_details_json, data["contribution_details"])
    if "potential_details" in data:
        contact.potential_details_json = _merge_details(
            contact.potential_details_json, data["potential_details"])
    # An explicit null clears the date.
    if "last_contact_date" in data:
        contact.last_contact_date = parse_date(data["last_contact_date"])


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


def create_contact(session: Session, data: dict[str, Any], today: date | None = None) -> Contact:
    """Create a contact with derived fields computed (caller must commit)."""
    data = {**CONTACT_DEFAULTS, **{k: v for k, v in data.items() if v is not None or k == "last_contact_date"}}
    contact = Contact(
        full_name=data["full_name"],
        contribution_details_json="{}",
        potential_details_json="{}",
    )
    _apply_contact_fields(contact, data)
    recompute_contact(contact, today)
    session.add(contact)
    session.flush()
    return contact


def update_contact(session: Session, contact: Contact, data: dict[str, Any],
                   today: date | None = None) -> Contact:
    """Apply a partial update; *data* should come from ``model_dump(exclude_unset=True)``."""
    _apply_contact_fields(contact, data)
    recompute_contact(contact, today)
    session.flush()
    return contact


def bulk_update(session: Session, ids: list[int], data: dict[str, Any]) -> int:
    contacts = session.execute(select(Contact).where(Contact.id.in_(ids))).scalars().all()
    for contact in contacts:
        update_contact(session, contact, data)
    log.info("Bulk-updated %d of %d contacts", len(contacts), len(ids))
    return len(contacts)


def delete_contacts(session: Session, ids: list[int]) -> int:
    """Delete contacts and their records; attachment files are removed on commit."""
    contacts = session.execute(select(Contact).where(Contact.id.in_(ids))).scalars().all()
    for contact in contacts:
        for att in contact.attachments:
            _queue_file_removal(session, att)
        session.delete(contact)
    session.flush()
    return len(contacts)


def preview_metrics(session: Session, data: dict[str, Any], today: date | None = None) -> dict:
    """Evaluate derived fields for unsaved inputs. Never writes."""
    contact_id = data.pop("contact_id", None)
    base: dict[str, Any] = dict(CONTACT_DEFAULTS)
    if contact_id is not None:
        existing = get_entity(session, Contact, contact_id)
        if existing is None:
            raise LookupError(f"Contact {contact_id} not found")
        base = {f: getattr(existing, f) for f in INPUT_FIELDS}
        base["last_contact_date"] = existing.last_contact_date
        base["contribution_details"] = json_parse(existing.contribution_details_json, {})
        base["potential_details"] = json_parse(existing.potential_details_json, {})
    for key in ("contribution_details", "potential_details"):
        patch = data.pop(key, None) or {}
        base[key] = {**base[key], **{k: v for k, v in patch.items() if v is not None}}
    for key, value in data.items():
        if value is not None or key == "last_contact_date":
            base[key] = value
    metrics = scoring.evaluate_contact(
        contribution_details=base["contribution_details"],
        potential_details=base["potential_details"],
        attention_level=base["attention_level"],
        last_contact_date=parse_date(base["last_contact_date"]),
        desired_frequency_days=base["desired_frequency_days"],
        response_quality=base["response_quality"],
        relationship_energy=base["relationship_energy"],
        attention_trend=base["attention_trend"],
        today=today,
    )
    return metrics.as_dict()


# ---------------------------------------------------------------------------
# Filtering and sorting
# ---------------------------------------------------------------------------


def _csv_set(value: str, upper: bool = False) -> set[str]:
    parts = {v.strip() for v in value.split(",") if v.strip()}
    return {p.upper() for p in parts} if upper else {p.lower() for p in parts}


def filter_and_sort(
    items: list[dict], *, heat_status=None, importance=None, value_category=None,
    tag=None, role_tag=None, search=None, sort_by="heat_index", sort_dir="asc",
) -> list[dict]:
    if heat_status:
        hs = _csv_set(heat_status)
        items = [i for i in items if i["heat_status"] in hs]
    if importance:
        imp = _csv_set(importance, upper=True)
        items = [i for i in items if i["importance_level"] in imp]
    if value_category:
        vc = _csv_set(value_category, upper=True)
        items = [i for i in items if i["value_category"] in vc]
    if tag:
        ts = _csv_set(tag)
        items = [i for i in items if ts & {t.lower() for t in i["tags"]}]
    if role_tag:
        rs = _csv_set(role_tag)
        items = [i for i in items if rs & {t.lower() for t in i["role_tags"]}]
    if search:
        q = search.lower()
        items = [i for i in items if q in i["full_name"].lower()
                 or q in i["short_name"].lower() or q in i["company"].lower()
                 or q in i["company_role"].lower()
                 or any(q in t.lower() for t in i["tags"])]

    def sort_key(item: dict):
        if sort_by == "heat_index":
            return item["heat_index"]
        if sort_by == "name":
            return item["full_name"].lower()
        if sort_by == "importance":
            return _IMPORTANCE_ORDER.get(item["importance_level"], 9)
        if sort_by == "last_contact":
            return item["last_contact_date"] or ""
        if sort_by == "attention_gap":
            return item["attention_gap"]
        return item["full_name"].lower()

    items.sort(key=sort_key, reverse=(sort_dir == "desc"))
    return items


def _load_contacts(session: Session, today: date | None = None) -> list[tuple[Contact, scoring.ContactMetrics]]:
    contacts = session.execute(select(Contact)).scalars().all()
    return [(c, refresh_heat(c, today)) for c in contacts]


def query_contacts(
    session: Session, *, heat_status=None, importance=None, value_category=None,
    tag=None, role_tag=None, search=None, sort_by="heat_index", sort_dir="asc",
    page: int = 1, per_page: int = 200, today: date | None = None,
) -> tuple[list[dict], int]:
    items = [contact_summary(c, m) for c, m in _load_contacts(session, today)]
    items = filter_and_sort(
        items, heat_status=heat_status, importance=importance, value_category=value_category,
        tag=tag, role_tag=role_tag, search=search, sort_by=sort_by, sort_dir=sort_dir,
    )
    total = len(items)
    start = (page - 1) * per_page
    return items[start:start + per_page], total


def attention_queue(session: Session, limit: int | None = None, today: date | None = None) -> list[dict]:
    """Overdue contacts: every red one, plus yellow ones of importance A or B."""
    items = []
    for contact, metrics in _load_contacts(session, today):
        if metrics.heat_status == "red" or (
            metrics.heat_status == "yellow" and contact.importance_level in _QUEUE_IMPORTANCE
        ):
            items.append(contact_summary(contact, metrics))
    items.sort(key=lambda i: (_IMPORTANCE_ORDER.get(i["importance_level"], 9), -i["days_overdue"]))
    return items[:limit] if limit else items


def compute_stats(session: Session, today: date | None = None) -> dict:
    loaded = _load_contacts(session, today)
    by_heat: Counter[str] = Counter({s: 0 for s in scoring.HEAT_STATUSES})
    by_importance: Counter[str] = Counter({lvl: 0 for lvl in scoring.IMPORTANCE_LEVELS})
    by_value: Counter[str] = Counter()
    by_gap: Counter[str] = Counter({s: 0 for s in scoring.HEAT_STATUSES})
    matrix = {lvl: {s: 0 for s in scoring.HEAT_STATUSES} for lvl in scoring.IMPORTANCE_LEVELS}
    heat_sum = 0.0
    for contact, m in loaded:
        by_heat[m.heat_status] += 1
        by_importance[contact.importance_level] += 1
        by_value[contact.value_category] += 1
        by_gap[m.attention_gap_status] += 1
        matrix.setdefault(contact.importance_level, {s: 0 for s in scoring.HEAT_STATUSES})
        matrix[contact.importance_level][m.heat_status] += 1
        heat_sum += m.heat_index
    return {
        "total": len(loaded),
        "average_heat_index": round(heat_sum / len(loaded), 2) if loaded else 0.0,
        "by_heat_status": dict(by_heat), "by_importance": dict(by_importance),
        "by_value_category": dict(by_value), "by_attention_gap_status": dict(by_gap),
        "importance_heat_matrix": matrix,
    }


# ---------------------------------------------------------------------------
# Interactions
# ---------------------------------------------------------------------------


def add_interaction(session: Session, contact: Contact, data: dict[str, Any]) -> Interaction:
    """Log an interaction; a meaningful one newer than the last contact advances it."""
    interaction = Interaction(
        contact_id=contact.id, occurred_on=parse_date(data["occurred_on"]),
        type=data["type"], channel=data["channel"], note=data.get("note") or "",
        is_meaningful=bool(data.get("is_meaningful")),
    )
    contact.interactions.append(interaction)
    if interaction.is_meaningful and (
        contact.last_contact_date is None or interaction.occurred_on > contact.last_contact_date
    ):
        contact.last_contact_date = interaction.occurred_on
        recompute_contact(contact)
    session.flush()
    return interaction


def recalculate_last_contact(session: Session, contact: Contact, keep_manual: bool = False) -> date | None:
    """Set last_contact_date to the newest meaningful interaction.

    With no meaningful interactions the date is cleared, unless *keep_manual*
    is set, in which case a hand-entered date survives.
    """
    latest = session.execute(
        select(func.max(Interaction.occurred_on)).where(
            Interaction.contact_id == contact.id, Interaction.is_meaningful.is_(True),
        )
    ).scalar()
    if latest is None and keep_manual:
        return contact.last_contact_date
    contact.last_contact_date = parse_date(latest)
    return contact.last_contact_date


def delete_interaction(session: Session, interaction: Interaction) -> Contact:
    contact = interaction.contact
    was_meaningful = interaction.is_meaningful
    # delete-orphan removes the row
    contact.interactions.remove(interaction)
    session.flush()
    if was_meaningful:
        recalculate_last_contact(session, contact)
        recompute_contact(contact)
        session.flush()
    return contact


def recalculate_all(session: Session, today: date | None = None) -> int:
    """Rebuild last_contact_date from interactions and recompute every contact."""
    contacts = session.execute(select(Contact)).scalars().all()
    for contact in contacts:
        recalculate_last_contact(session, contact, keep_manual=True)
        recompute_contact(contact, today)
    session.flush()
    log.info("Recalculated metrics for %d contacts", len(contacts))
    return len(contacts)


# ---------------------------------------------------------------------------
# Contributions, purchases, gifts
# ---------------------------------------------------------------------------


def create_record(session: Session, model, contact: Contact, data: dict[str, Any],
                  fields: tuple[str, ...]):
    obj = model(contact_id=contact.id)
    apply_updates(obj, data, fields)
    session.add(obj)
    session.flush()
    return obj


def update_record(session: Session, obj, data: dict[str, Any], fields: tuple[str, ...]):
    apply_updates(obj, data, fields)
    # Nullable columns may be cleared explicitly.
    for field in ("amount", "introduced_contact_id", "contributed_at", "purchased_at", "given_on"):
        if field in fields and field in data and data[field] is None:
            setattr(obj, field, None)
    session.flush()
    return obj


def contribution_totals(session: Session, contact: Contact) -> dict[str, dict]:
    """Per-criterion aggregates; purchases count towards ``financial``."""
    totals = {k: {"total_amount": 0.0, "count": 0, "last_date": None} for k in scoring.CONTRIBUTION_KEYS}

    def _add(key: str, amount: float | None, when: date | None) -> None:
        bucket = totals[key]
        bucket["total_amount"] += amount or 0.0
        bucket["count"] += 1
        if when and (bucket["last_date"] is None or when > bucket["last_date"]):
            bucket["last_date"] = when

    contributions = session.execute(
        select(Contribution).where(Contribution.contact_id == contact.id)
    ).scalars().all()
    for c in contributions:
        if c.criterion_type in totals:
            _add(c.criterion_type, c.amount, c.contributed_at)
    purchases = session.execute(
        select(Purchase).where(Purchase.contact_id == contact.id)
    ).scalars().all()
    for p in purchases:
        _add("financial", p.amount, p.purchased_at)

    for bucket in totals.values():
        bucket["total_amount"] = round(bucket["total_amount"], 2)
        bucket["last_date"] = _iso(bucket["last_date"])
    return totals


def recalculate_contributions(session: Session, contact: Contact) -> dict[str, int]:
    """Replace the contribution sub-scores with ones derived from recorded totals."""
    subscores = scoring.contribution_subscores_from_totals(contribution_totals(session, contact))
    contact.contribution_details_json = json.dumps(subscores)
    recompute_contact(contact)
    session.flush()
    return subscores


def recalculate_all_contributions(session: Session) -> int:
    contacts = session.execute(select(Contact)).scalars().all()
    for contact in contacts:
        recalculate_contributions(session, contact)
    log.info("Recalculated contribution scores for %d contacts", len(contacts))
    return len(contacts)


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------


def _tag_column(tag_type: str) -> str:
    return LIST_FIELDS["role_tags" if tag_type == "role_tags" else "tags"]


def list_tags(session: Session, tag_type: str = "tags") -> list[dict]:
    column = _tag_column(tag_type)
    counts: Counter[str] = Counter()
    for contact in session.execute(select(Contact)).scalars().all():
        counts.update(set(json_list(getattr(contact, column))))
    return [{"name": name, "count": n}
            for name, n in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0].lower()))]


def _rewrite_tags(session: Session, tag_type: str, ids: list[int] | None, fn) -> int:
    """Apply *fn(list) -> list* to the tag list of each contact; returns changed count."""
    column = _tag_column(tag_type)
    query = select(Contact)
    if ids is not None:
        query = query.where(Contact.id.in_(ids))
    changed = 0
    for contact in session.execute(query).scalars().all():
        old = json_list(getattr(contact, column))
        new = fn(old)
        if new != old:
            setattr(contact, column, json.dumps(new))
            changed += 1
    session.flush()
    return changed


def apply_tags(session: Session, ids: list[int], tags: list[str], tag_type: str = "tags",
               action: str = "add") -> int:
    tags = [t.strip() for t in tags if t.strip()]
    if action == "remove":
        drop = set(tags)
        return _rewrite_tags(session, tag_type, ids, lambda old: [t for t in old if t not in drop])
    return _rewrite_tags(session, tag_type, ids, lambda old: old + [t for t in tags if t not in old])


def rename_tag(session: Session, old_name: str, new_name: str, tag_type: str = "tags") -> int:
    def _rename(old: list[str]) -> list[str]:
        if old_name not in old:
            return old
        out: list[str] = []
        for t in old:
            t = new_name if t == old_name else t
            if t not in out:
                out.append(t)
        return out
    return _rewrite_tags(session, tag_type, None, _rename)


def delete_tags(session: Session, tags: list[str], tag_type: str = "tags") -> int:
    drop = set(tags)
    return _rewrite_tags(session, tag_type, None, lambda old: [t for t in old if t not in drop])


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------


def store_attachment(session: Session, contact: Contact, category: str, filename: str,
                     content: bytes, content_type: str | None = None) -> Attachment:
    suffix = Path(filename).suffix.lower()
    if suffix not in ATTACHMENT_SUFFIXES:
        raise UnsupportedAttachment(f"Unsupported file type: {suffix or filename}")
    if len(content) > MAX_ATTACHMENT_BYTES:
        raise UnsupportedAttachment("File exceeds the 10 MB limit")
    relative = Path(str(contact.id)) / f"{uuid.uuid4().hex}{suffix}"
    target = db.attachments_dir() / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(content)
    att = Attachment(
        contact_id=contact.id, category=category, original_name=Path(filename).name,
        file_type=content_type or "application/octet-stream", file_size=len(content),
        storage_path=relative.as_posix(),
    )
    session.add(att)
    session.flush()
    return att


def attachment_path(att: Attachment) -> Path:
    return db.attachments_dir() / att.storage_path


_PENDING_UNLINKS = "rapport_pending_unlinks"


def _queue_file_removal(session: Session, att: Attachment) -> None:
    """Queue the file for removal once the session commits."""
    session.info.setdefault(_PENDING_UNLINKS, []).append(attachment_path(att))


@event.listens_for(Session, "after_commit")
def _remove_committed_files(session: Session) -> None:
    for path in session.info.pop(_PENDING_UNLINKS, []):
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            log.warning("Could not remove attachment file %s: %s", path, exc)


@event.listens_for(Session, "after_rollback")
def _keep_files_on_rollback(session: Session) -> None:
    session.info.pop(_PENDING_UNLINKS, None)


def delete_attachment(session: Session, att: Attachment) -> None:
    """Delete the row; the file goes when the caller commits."""
    _queue_file_removal(session, att)
    session.delete(att)
    session.flush()


# ---------------------------------------------------------------------------
# AI insights (cached)
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    # SQLite drops tzinfo, so cache timestamps are stored as naive UTC.
    return datetime.now(UTC).replace(tzinfo=None)


def insight_ttl() -> timedelta:
    return timedelta(hours=float(os.environ.get("RAPPORT_INSIGHT_TTL_HOURS", "24")))


def get_cached_insight(session: Session, contact_id: int | None, kind: str) -> InsightCache | None:
    query = select(InsightCache).where(InsightCache.kind == kind)
    if contact_id is None:
        query = query.where(InsightCache.contact_id.is_(None))
    else:
        query = query.where(InsightCache.contact_id == contact_id)
    entry = session.execute(query.order_by(InsightCache.created_at.desc())).scalars().first()
    if entry is None or _utcnow() - entry.created_at > insight_ttl():
        return None
    return entry


def store_insight(session: Session, contact_id: int | None, kind: str, payload: dict,
                  model: str = "") -> InsightCache:
    """Replace the cached payload for (contact_id, kind) (caller must commit)."""
    stmt = delete(InsightCache).where(InsightCache.kind == kind)
    if contact_id is None:
        stmt = stmt.where(InsightCache.contact_id.is_(None))
    else:
        stmt = stmt.where(InsightCache.contact_id == contact_id)
    session.execute(stmt)
    entry = InsightCache(
        contact_id=contact_id, kind=kind, payload_json=json.dumps(payload),
        llm_model=model, created_at=_utcnow(),
    )
    session.add(entry)
    session.flush()
    return entry


def insight_response(entry: InsightCache, cached: bool) -> dict:
    return {
        "contact_id": entry.contact_id, "kind": entry.kind, "cached": cached,
        "model": entry.llm_model, "generated_at": _iso(entry.created_at),
        "data": json_parse(entry.payload_json, {}),
    }


_CONTACT_GENERATORS = {
    "insights": insights.generate_contact_insights,
    "recommendations": insights.generate_recommendations,
    "summary": insights.summarize_interactions,
}


async def run_contact_insight(
    session: Session, contact: Contact, kind: str,
    client: LLMClient | None = None, refresh: bool = False,
) -> dict:
    """Return a cached AI payload for a contact, generating it on a miss.

    Raises ``LLMCallError`` when generation fails (caller must commit on success).
    """
    if kind not in _CONTACT_GENERATORS:
        raise ValueError(f"Unknown insight kind: {kind!r}")
    if not refresh:
        entry = get_cached_insight(session, contact.id, kind)
        if entry is not None:
            return insight_response(entry, cached=True)
    client = _ensure_client(client)
    payload = await _CONTACT_GENERATORS[kind](contact, client)
    entry = store_insight(session, contact.id, kind, payload, client.model)
    return insight_response(entry, cached=False)


async def run_contact_hint(
    session: Session, contact: Contact, client: LLMClient | None = None, refresh: bool = False,
) -> dict:
    summary = team_summary(contact, refresh_heat(contact))
    if summary["heat_status"] == "green":
        return {"contact_id": contact.id, "hint": insights.GREEN_HINT, "source": "fixed"}
    if not refresh:
        entry = get_cached_insight(session, contact.id, "hint")
        if entry is not None:
            return {"contact_id": contact.id, **json_parse(entry.payload_json, {}), "source": "cache"}
    try:
        client = _ensure_client(client)
    except LLMCallError as exc:
        log.warning("No LLM client for hint: %s", exc)
        return {"contact_id": contact.id, "hint": insights.fallback_hint(summary), "source": "fallback"}
    hint, ok = await insights.generate_contact_hint(summary, client)
    if ok:
        store_insight(session, contact.id, "hint", {"hint": hint}, client.model)
    return {"contact_id": contact.id, "hint": hint, "source": "llm" if ok else "fallback"}


async def run_dashboard(session: Session, client: LLMClient | None = None,
                        refresh: bool = False, today: date | None = None) -> dict:
    summaries = [team_summary(c, m) for c, m in _load_contacts(session, today)]
    if not summaries:
        return {"contact_id": None, "kind": "dashboard", "cached": False, "model": "",
                "generated_at": None, "data": insights.empty_dashboard()}
    if not refresh:
        entry = get_cached_insight(session, None, "dashboard")
        if entry is not None:
            return insight_response(entry, cached=True)
    try:
        client = _ensure_client(client)
    except LLMCallError as exc:
        log.warning("No LLM client for dashboard, using fallback: %s", exc)
        payload = insights.fallback_dashboard(summaries)
    else:
        payload = await insights.generate_daily_dashboard(summaries, client)
    if payload.get("source") == "fallback":
        return {"contact_id": None, "kind": "dashboard", "cached": False, "model": "",
                "generated_at": _iso(_utcnow()), "data": payload}
    entry = store_insight(session, None, "dashboard", payload, client.model)
    return insight_response(entry, cached=False)


async def run_analytics(session: Session, client: LLMClient | None = None,
                        refresh: bool = False, today: date | None = None) -> dict:
    """Portfolio analytics; raises ``LLMCallError`` when generation fails."""
    summaries = [team_summary(c, m) for c, m in _load_contacts(session, today)]
    if not summaries:
        return {"contact_id": None, "kind": "analytics", "cached": False, "model": "",
                "generated_at": None, "data": insights.empty_analytics()}
    if not refresh:
        entry = get_cached_insight(session, None, "analytics")
        if entry is not None:
            return insight_response(entry, cached=True)
    client = _ensure_client(client)
    payload = await insights.generate_portfolio_analytics(summaries, client)
    entry = store_insight(session, None, "analytics", payload, client.model)
    return insight_response(entry, cached=False)
