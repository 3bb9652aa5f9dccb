from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError
from sqlalchemy import select

from rapport import services
from rapport.db import current_db_path, init_db, session_scope
from rapport.insights import LLMCallError
from rapport.models import Contact
from rapport.schemas import ContactUpdate, InteractionCreate

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def rapport_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Rapport",
    instructions=(
        "Rapport is a personal relationship manager. Use these tools to see who "
        "needs attention, inspect contacts, log interactions and adjust scores. "
        "Start with get_stats() for an overview, then attention_queue() for "
        "overdue relationships, then get_contact(id) for full details."
    ),
    lifespan=rapport_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_or_error(session, model, entity_id, label="Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        return None, {"error": f"{label} {entity_id} not found"}
    return obj, None


def _validation_error(what: str, exc: ValidationError) -> dict:
    return {
        "error": f"Invalid {what}",
        "details": [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()],
    }


def _llm_error(exc: LLMCallError) -> dict:
    return {
        "error": f"AI request failed: {exc}",
        "error_code": "LLM_ERROR",
        "retryable": exc.retryable,
    }


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("rapport://overview")
def rapport_overview() -> str:
    """Overview of Rapport: data model, scoring rules and workflow."""
    return json.dumps({
        "system": "Rapport: personal relationship manager",
        "description": (
            "Rapport keeps contact profiles, logs interactions, scores each person's "
            "contribution and potential, and tracks how warm every relationship is."
        ),
        "data_model": {
            "contact": "A person with profile, scoring inputs and derived scores.",
            "interaction": "A call, meeting or message. Meaningful ones move the last contact date.",
            "contribution": "Something the contact gave: money, introductions, trust.",
            "purchase": "A purchase the contact made; counts towards financial contribution.",
            "gift": "A gift given to or received from the contact.",
        },
        "scores": {
            "contribution_score": "Sum of financial, network and trust (0-3 each), 0-9. Classes A/B/C/D.",
            "potential_score": "Sum of personal, resources, network, synergy, system_role (0-3 each), 0-15. Classes A/B/C/D.",
            "value_category": "Contribution class followed by potential class, e.g. 'AB'.",
            "importance_level": "A, B or C, derived from the value category.",
            "heat_index": "0..1 warmth from recency, response quality, energy and trend.",
            "heat_status": "green (>= 0.70), yellow (>= 0.40), red otherwise.",
        },
        "workflow": [
            "1. get_stats() to see totals and heat distribution.",
            "2. attention_queue() to see who is overdue.",
            "3. get_contact(id) for full details and interaction history.",
            "4. log_interaction(id, ...) after getting in touch.",
            "5. update_contact(id, ...) to correct inputs; derived fields recompute.",
            "6. contact_insights(id, kind) for AI insights, recommendations or summary.",
        ],
        "database": str(current_db_path()),
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Contacts
# ---------------------------------------------------------------------------


@mcp.tool()
def list_contacts(
    heat_status: str | None = None, importance: str | None = None,
    value_category: str | None = None, tag: str | None = None, search: str | None = None,
    sort_by: str = "heat_index", sort_dir: str = "asc", limit: int = 50,
) -> list[dict]:
    """List and filter contacts.

    Args:
        heat_status: Comma-separated from: green, yellow, red.
        importance: Comma-separated from: A, B, C.
        value_category: Comma-separated two-letter categories, e.g. "AA,AB".
        tag: Comma-separated tags; a contact matches if it has any of them.
        search: Free-text search across name, company, role and tags.
        sort_by: Sort field: heat_index, name, importance, last_contact, attention_gap.
        sort_dir: Sort direction: asc or desc.
        limit: Max results (default 50, max 500).
    """
    with session_scope() as session:
        items, _ = services.query_contacts(
            session, heat_status=heat_status, importance=importance,
            value_category=value_category, tag=tag, search=search,
            sort_by=sort_by, sort_dir=sort_dir, page=1, per_page=max(1, min(limit, 500)),
        )
        session.commit()
        return items


@mcp.tool()
def get_contact(contact_id: int) -> dict:
    """Get full details for a single contact including interaction history."""
    with session_scope() as session:
        contact, err = _get_or_error(session, Contact, contact_id, "Contact")
        if err:
            return err
        metrics = services.refresh_heat(contact)
        session.commit()
        return services.contact_detail(contact, metrics)


@mcp.tool()
def update_contact(
    contact_id: int,
    full_name: str | None = None, short_name: str | None = None,
    company: str | None = None, company_role: str | None = None,
    attention_level: int | None = None, desired_frequency_days: int | None = None,
    response_quality: int | None = None, relationship_energy: int | None = None,
    attention_trend: int | None = None, tags: list[str] | None = None,
) -> dict:
    """Update fields on a contact. Only provided (non-null) arguments are applied.

    Out-of-range scoring inputs are rejected. Every derived field is
    recomputed afterwards.
    """
    with session_scope() as session:
        contact, err = _get_or_error(session, Contact, contact_id, "Contact")
        if err:
            return err
        updates = {k: v for k, v in {
            "full_name": full_name, "short_name": short_name, "company": company,
            "company_role": company_role, "attention_level": attention_level,
            "desired_frequency_days": desired_frequency_days,
            "response_quality": response_quality, "relationship_energy": relationship_energy,
            "attention_trend": attention_trend, "tags": tags,
        }.items() if v is not None}
        try:
            validated = ContactUpdate.model_validate(updates)
        except ValidationError as exc:
            return _validation_error("update", exc)
        services.update_contact(session, contact, validated.model_dump(exclude_unset=True))
        session.commit()
        return services.contact_detail(contact)


@mcp.tool()
def log_interaction(
    contact_id: int, occurred_on: str, type: str = "message", channel: str = "other",
    note: str = "", is_meaningful: bool = True,
) -> dict:
    """Record an interaction with a contact.

    Args:
        contact_id: The contact's id.
        occurred_on: ISO date, e.g. "2026-03-14".
        type: call, meeting, message, event, gift, intro or other.
        channel: phone, telegram, whatsapp, email, offline or other.
        note: Free-text note.
        is_meaningful: Meaningful interactions advance the last contact date.
    """
    with session_scope() as session:
        contact, err = _get_or_error(session, Contact, contact_id, "Contact")
        if err:
            return err
        try:
            body = InteractionCreate.model_validate({
                "occurred_on": occurred_on, "type": type, "channel": channel,
                "note": note, "is_meaningful": is_meaningful,
            })
        except ValidationError as exc:
            return _validation_error("interaction", exc)
        interaction = services.add_interaction(session, contact, body.model_dump())
        session.commit()
        return {
            "interaction": services.interaction_summary(interaction),
            "contact": services.contact_summary(contact),
        }


# ---------------------------------------------------------------------------
# Tools: Stats
# ---------------------------------------------------------------------------


@mcp.tool()
def attention_queue(limit: int = 20) -> list[dict]:
    """Contacts that need attention, most important and most overdue first."""
    with session_scope() as session:
        items = services.attention_queue(session, limit=max(1, min(limit, 500)))
        session.commit()
        return items


@mcp.tool()
def get_stats() -> dict:
    """Get summary statistics about all contacts."""
    with session_scope() as session:
        stats = services.compute_stats(session)
        session.commit()
        return stats


# ---------------------------------------------------------------------------
# Tools: AI
# ---------------------------------------------------------------------------


@mcp.tool()
async def contact_insights(contact_id: int, kind: str = "insights", refresh: bool = False) -> dict:
    """Get AI-generated analysis for a contact. Requires an LLM API key.

    Args:
        contact_id: The contact's id.
        kind: insights, recommendations or summary.
        refresh: Bypass the cache and regenerate.
    """
    if kind not in services.INSIGHT_KINDS:
        return {"error": f"kind must be one of: {', '.join(services.INSIGHT_KINDS)}"}
    with session_scope() as session:
        contact, err = _get_or_error(session, Contact, contact_id, "Contact")
        if err:
            return err
        try:
            result = await services.run_contact_insight(session, contact, kind, refresh=refresh)
        except LLMCallError as exc:
            log.warning("AI %s failed for contact %s: %s", kind, contact_id, exc)
            return _llm_error(exc)
        session.commit()
        return result


@mcp.tool()
async def daily_dashboard(refresh: bool = False) -> dict:
    """Today's priorities across all contacts. Falls back to a rule-based list without an LLM."""
    with session_scope() as session:
        result = await services.run_dashboard(session, refresh=refresh)
        session.commit()
        return result


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Rapport MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
