from __future__ import annotations

import logging
import tempfile
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import Generator

from fastapi import Depends, FastAPI, File, HTTPException, Query, Response, UploadFile
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from rapport import services
from rapport.db import init_db, session_generator
from rapport.importer import export_records, import_records, import_xlsx
from rapport.insights import LLMCallError, model_info
from rapport.models import Attachment, Contact, Contribution, Gift, Interaction, Purchase
from rapport.schemas import (
    AttachmentCategory,
    AttachmentOut,
    BulkDelete,
    BulkResult,
    BulkUpdate,
    ContactCreate,
    ContactDetail,
    ContactListResponse,
    ContactOut,
    ContactPreview,
    ContactUpdate,
    ContributionCreate,
    ContributionOut,
    ContributionTotal,
    ContributionUpdate,
    GiftCreate,
    GiftOut,
    GiftUpdate,
    ImportRequest,
    ImportResult,
    InteractionCreate,
    InteractionOut,
    PreviewOut,
    PurchaseCreate,
    PurchaseOut,
    PurchaseUpdate,
    StatsOut,
    TagApply,
    TagCount,
    TagDelete,
    TagRename,
    TagType,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Rapport",
    version="0.1.0",
    description=(
        "Personal relationship manager. Tracks contacts, scores their contribution "
        "and potential, and flags relationships that are cooling down. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Contacts", "description": "Browse, create, update and delete contacts."},
        {"name": "Interactions", "description": "Log calls, meetings and messages."},
        {"name": "Contributions", "description": "Contributions, purchases and gifts per contact."},
        {"name": "Attachments", "description": "Files stored against a contact."},
        {"name": "Tags", "description": "Tag and role management across contacts."},
        {"name": "Import", "description": "JSON and XLSX import, JSON export."},
        {"name": "Stats", "description": "Aggregate statistics and the attention queue."},
        {"name": "AI", "description": "LLM-generated insights. Requires an API key for the configured provider."},
        {"name": "Admin", "description": "Administrative operations."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


def _require_ids(ids: list[int]) -> None:
    if not ids:
        raise HTTPException(400, "No contact IDs provided")


# ---------------------------------------------------------------------------
# Routes: Contacts (static paths before parameterized to avoid route shadowing)
# ---------------------------------------------------------------------------


@app.get("/api/contacts", response_model=ContactListResponse,
         tags=["Contacts"], summary="List contacts with filtering, sorting, and pagination")
async def list_contacts(
    heat_status: str | None = Query(None, description="Comma-separated: green, yellow, red"),
    importance: str | None = Query(None, description="Comma-separated: A, B, C"),
    value_category: str | None = Query(None, description="Comma-separated, e.g. AA,AB"),
    tag: str | None = Query(None, description="Comma-separated tags (any match)"),
    role_tag: str | None = Query(None, description="Comma-separated role tags (any match)"),
    search: str | None = Query(None, description="Free-text search across name, company, role and tags"),
    sort_by: str = Query("heat_index", description="Sort field: heat_index, name, importance, last_contact, attention_gap"),
    sort_dir: str = Query("asc", description="asc or desc"),
    page: int = Query(1, ge=1),
    per_page: int = Query(200, ge=1, le=500),
    session: Session = Depends(db_session),
):
    items, total = services.query_contacts(
        session, heat_status=heat_status, importance=importance,
        value_category=value_category, tag=tag, role_tag=role_tag, search=search,
        sort_by=sort_by, sort_dir=sort_dir, page=page, per_page=per_page,
    )
    session.commit()  # persist refreshed heat
    return {"items": items, "total": total}


@app.post("/api/contacts", response_model=ContactDetail, status_code=201,
          tags=["Contacts"], summary="Create a contact; derived scores are computed server-side")
async def create_contact(body: ContactCreate, session: Session = Depends(db_session)):
    contact = services.create_contact(session, body.model_dump())
    session.commit()
    return services.contact_detail(contact)


@app.post("/api/contacts/bulk-update", response_model=BulkResult,
          tags=["Contacts"], summary="Apply the same partial update to many contacts")
async def bulk_update_contacts(body: BulkUpdate, session: Session = Depends(db_session)):
    _require_ids(body.ids)
    count = services.bulk_update(session, body.ids, body.updates.model_dump(exclude_unset=True))
    session.commit()
    return {"message": f"Updated {count} contacts", "count": count}


@app.post("/api/contacts/bulk-delete", response_model=BulkResult,
          tags=["Contacts"], summary="Delete many contacts with all their records")
async def bulk_delete_contacts(body: BulkDelete, session: Session = Depends(db_session)):
    _require_ids(body.ids)
    count = services.delete_contacts(session, body.ids)
    session.commit()
    return {"message": f"Deleted {count} contacts", "count": count}


@app.post("/api/contacts/preview", response_model=PreviewOut,
          tags=["Contacts"], summary="Compute derived fields for unsaved inputs (never persisted)")
async def preview_contact(body: ContactPreview, session: Session = Depends(db_session)):
    if body.contact_id is not None:
        _get_or_404(session, Contact, body.contact_id, "Contact")
    return services.preview_metrics(session, body.model_dump(exclude_unset=True))


@app.get("/api/contacts/attention-queue", response_model=list[ContactOut],
         tags=["Stats"], summary="Overdue contacts ordered by importance, then days overdue")
async def get_attention_queue(
    limit: int | None = Query(None, ge=1, le=500),
    session: Session = Depends(db_session),
):
    items = services.attention_queue(session, limit=limit)
    session.commit()
    return items


@app.post("/api/contacts/recalculate-contributions", tags=["Contributions"],
          summary="Recalculate contribution sub-scores from records for every contact")
async def recalculate_all_contributions(session: Session = Depends(db_session)):
    count = services.recalculate_all_contributions(session)
    session.commit()
    return {"message": f"Recalculated {count} contacts", "count": count}


@app.get("/api/contacts/{contact_id}", response_model=ContactDetail,
         tags=["Contacts"], summary="Get full contact detail with interaction history")
async def get_contact(contact_id: int, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    metrics = services.refresh_heat(contact)
    session.commit()
    return services.contact_detail(contact, metrics)


@app.patch("/api/contacts/{contact_id}", response_model=ContactDetail,
           tags=["Contacts"], summary="Partial update; derived fields in the body are ignored")
async def update_contact(contact_id: int, body: ContactUpdate, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    services.update_contact(session, contact, body.model_dump(exclude_unset=True))
    session.commit()
    return services.contact_detail(contact)


@app.delete("/api/contacts/{contact_id}", status_code=204,
            tags=["Contacts"], summary="Delete a contact with all its records")
async def delete_contact(contact_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Contact, contact_id, "Contact")
    services.delete_contacts(session, [contact_id])
    session.commit()
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Routes: Interactions
# ---------------------------------------------------------------------------


@app.get("/api/contacts/{contact_id}/interactions", response_model=list[InteractionOut],
         tags=["Interactions"], summary="List a contact's interactions, newest first")
async def list_interactions(contact_id: int, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    return [services.interaction_summary(i) for i in contact.interactions]


@app.post("/api/contacts/{contact_id}/interactions", response_model=InteractionOut, status_code=201,
          tags=["Interactions"], summary="Log an interaction; meaningful ones advance the last contact date")
async def create_interaction(contact_id: int, body: InteractionCreate, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    interaction = services.add_interaction(session, contact, body.model_dump())
    session.commit()
    return services.interaction_summary(interaction)


@app.delete("/api/interactions/{interaction_id}", status_code=204,
            tags=["Interactions"], summary="Delete an interaction and recompute the last contact date")
async def delete_interaction(interaction_id: int, session: Session = Depends(db_session)):
    interaction = _get_or_404(session, Interaction, interaction_id, "Interaction")
    services.delete_interaction(session, interaction)
    session.commit()
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Routes: Contributions
# ---------------------------------------------------------------------------


@app.get("/api/contacts/{contact_id}/contributions", response_model=list[ContributionOut],
         tags=["Contributions"], summary="List a contact's contributions")
async def list_contributions(contact_id: int, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    return [services.contribution_summary(c) for c in contact.contributions]


@app.post("/api/contacts/{contact_id}/contributions", response_model=ContributionOut, status_code=201,
          tags=["Contributions"], summary="Record a contribution")
async def create_contribution(contact_id: int, body: ContributionCreate, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    c = services.create_record(session, Contribution, contact, body.model_dump(), services.CONTRIBUTION_FIELDS)
    session.commit()
    return services.contribution_summary(c)


@app.patch("/api/contributions/{contribution_id}", response_model=ContributionOut,
           tags=["Contributions"], summary="Update a contribution (partial)")
async def update_contribution(contribution_id: int, body: ContributionUpdate, session: Session = Depends(db_session)):
    c = _get_or_404(session, Contribution, contribution_id, "Contribution")
    services.update_record(session, c, body.model_dump(exclude_unset=True), services.CONTRIBUTION_FIELDS)
    session.commit()
    return services.contribution_summary(c)


@app.delete("/api/contributions/{contribution_id}", status_code=204,
            tags=["Contributions"], summary="Delete a contribution")
async def delete_contribution(contribution_id: int, session: Session = Depends(db_session)):
    session.delete(_get_or_404(session, Contribution, contribution_id, "Contribution"))
    session.commit()
    return Response(status_code=204)


@app.get("/api/contacts/{contact_id}/contribution-totals", response_model=dict[str, ContributionTotal],
         tags=["Contributions"], summary="Per-criterion totals (purchases count as financial)")
async def get_contribution_totals(contact_id: int, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    return services.contribution_totals(session, contact)


@app.post("/api/contacts/{contact_id}/recalculate-contributions", response_model=ContactDetail,
          tags=["Contributions"], summary="Derive contribution sub-scores from recorded totals")
async def recalculate_contributions(contact_id: int, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    services.recalculate_contributions(session, contact)
    session.commit()
    return services.contact_detail(contact)


# ---------------------------------------------------------------------------
# Routes: Purchases
# ---------------------------------------------------------------------------


@app.get("/api/contacts/{contact_id}/purchases", response_model=list[PurchaseOut],
         tags=["Contributions"], summary="List a contact's purchases")
async def list_purchases(contact_id: int, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    return [services.purchase_summary(p) for p in contact.purchases]


@app.post("/api/contacts/{contact_id}/purchases", response_model=PurchaseOut, status_code=201,
          tags=["Contributions"], summary="Record a purchase")
async def create_purchase(contact_id: int, body: PurchaseCreate, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    p = services.create_record(session, Purchase, contact, body.model_dump(), services.PURCHASE_FIELDS)
    session.commit()
    return services.purchase_summary(p)


@app.patch("/api/purchases/{purchase_id}", response_model=PurchaseOut,
           tags=["Contributions"], summary="Update a purchase (partial)")
async def update_purchase(purchase_id: int, body: PurchaseUpdate, session: Session = Depends(db_session)):
    p = _get_or_404(session, Purchase, purchase_id, "Purchase")
    services.update_record(session, p, body.model_dump(exclude_unset=True), services.PURCHASE_FIELDS)
    session.commit()
    return services.purchase_summary(p)


@app.delete("/api/purchases/{purchase_id}", status_code=204,
            tags=["Contributions"], summary="Delete a purchase")
async def delete_purchase(purchase_id: int, session: Session = Depends(db_session)):
    session.delete(_get_or_404(session, Purchase, purchase_id, "Purchase"))
    session.commit()
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Routes: Gifts
# ---------------------------------------------------------------------------


@app.get("/api/contacts/{contact_id}/gifts", response_model=list[GiftOut],
         tags=["Contributions"], summary="List gifts given to or received from a contact")
async def list_gifts(contact_id: int, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    return [services.gift_summary(g) for g in contact.gifts]


@app.post("/api/contacts/{contact_id}/gifts", response_model=GiftOut, status_code=201,
          tags=["Contributions"], summary="Record a gift")
async def create_gift(contact_id: int, body: GiftCreate, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    g = services.create_record(session, Gift, contact, body.model_dump(), services.GIFT_FIELDS)
    session.commit()
    return services.gift_summary(g)


@app.patch("/api/gifts/{gift_id}", response_model=GiftOut,
           tags=["Contributions"], summary="Update a gift (partial)")
async def update_gift(gift_id: int, body: GiftUpdate, session: Session = Depends(db_session)):
    g = _get_or_404(session, Gift, gift_id, "Gift")
    services.update_record(session, g, body.model_dump(exclude_unset=True), services.GIFT_FIELDS)
    session.commit()
    return services.gift_summary(g)


@app.delete("/api/gifts/{gift_id}", status_code=204,
            tags=["Contributions"], summary="Delete a gift")
async def delete_gift(gift_id: int, session: Session = Depends(db_session)):
    session.delete(_get_or_404(session, Gift, gift_id, "Gift"))
    session.commit()
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Routes: Attachments
# ---------------------------------------------------------------------------


@app.get("/api/contacts/{contact_id}/attachments", response_model=list[AttachmentOut],
         tags=["Attachments"], summary="List all attachments of a contact")
async def list_attachments(contact_id: int, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    return [services.attachment_summary(a) for a in contact.attachments]


@app.get("/api/contacts/{contact_id}/attachments/{category}", response_model=list[AttachmentOut],
         tags=["Attachments"], summary="List a contact's attachments in one category")
async def list_attachments_in_category(
    contact_id: int, category: AttachmentCategory, session: Session = Depends(db_session),
):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    return [services.attachment_summary(a) for a in contact.attachments if a.category == category]


@app.post("/api/contacts/{contact_id}/attachments/{category}", response_model=AttachmentOut, status_code=201,
          tags=["Attachments"], summary="Upload a file into a category")
async def upload_attachment(
    contact_id: int, category: AttachmentCategory,
    file: UploadFile = File(...), session: Session = Depends(db_session),
):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    if not file.filename:
        raise HTTPException(400, "Missing file name")
    content = await file.read()
    try:
        att = services.store_attachment(session, contact, category, file.filename, content, file.content_type)
    except services.UnsupportedAttachment as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return services.attachment_summary(att)


@app.get("/api/attachments/{attachment_id}/download", tags=["Attachments"], summary="Download an attachment")
async def download_attachment(attachment_id: int, session: Session = Depends(db_session)):
    att = _get_or_404(session, Attachment, attachment_id, "Attachment")
    path = services.attachment_path(att)
    if not path.exists():
        raise HTTPException(404, "Attachment file missing")
    return FileResponse(path, media_type=att.file_type, filename=att.original_name)


@app.delete("/api/attachments/{attachment_id}", status_code=204,
            tags=["Attachments"], summary="Delete an attachment and its file")
async def delete_attachment(attachment_id: int, session: Session = Depends(db_session)):
    att = _get_or_404(session, Attachment, attachment_id, "Attachment")
    services.delete_attachment(session, att)
    session.commit()
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Routes: Tags
# ---------------------------------------------------------------------------


@app.get("/api/tags", response_model=list[TagCount],
         tags=["Tags"], summary="List tags (or role tags) with usage counts")
async def list_tags(tag_type: TagType = Query("tags"), session: Session = Depends(db_session)):
    return services.list_tags(session, tag_type)


@app.post("/api/tags/apply", response_model=BulkResult,
          tags=["Tags"], summary="Add or remove tags on many contacts")
async def apply_tags(body: TagApply, session: Session = Depends(db_session)):
    _require_ids(body.ids)
    count = services.apply_tags(session, body.ids, body.tags, body.tag_type, body.action)
    session.commit()
    return {"message": f"Updated {count} contacts", "count": count}


@app.post("/api/tags/rename", response_model=BulkResult,
          tags=["Tags"], summary="Rename a tag on every contact")
async def rename_tag(body: TagRename, session: Session = Depends(db_session)):
    count = services.rename_tag(session, body.old_name, body.new_name, body.tag_type)
    session.commit()
    return {"message": f"Renamed on {count} contacts", "count": count}


@app.post("/api/tags/delete", response_model=BulkResult,
          tags=["Tags"], summary="Remove tags from every contact")
async def delete_tags(body: TagDelete, session: Session = Depends(db_session)):
    count = services.delete_tags(session, body.tags, body.tag_type)
    session.commit()
    return {"message": f"Removed from {count} contacts", "count": count}


# ---------------------------------------------------------------------------
# Routes: Import / Export
# ---------------------------------------------------------------------------


@app.post("/api/import", response_model=ImportResult,
          tags=["Import"], summary="Import contacts from JSON records")
async def import_json(body: ImportRequest, session: Session = Depends(db_session)):
    return import_records(body.contacts, session)


@app.post("/api/import/xlsx", response_model=ImportResult,
          tags=["Import"], summary="Import contacts from an XLSX spreadsheet (header row required)")
async def import_file(file: UploadFile = File(...), session: Session = Depends(db_session)):
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return import_xlsx(tmp_path, session)
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


@app.get("/api/export/json", tags=["Import"], summary="Export all contacts as JSON")
async def export_json(session: Session = Depends(db_session)):
    filename = f"contacts-{date.today().isoformat()}.json"
    return JSONResponse(
        export_records(session),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ---------------------------------------------------------------------------
# Routes: Stats & Admin
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Get aggregate statistics and breakdowns")
async def get_stats(session: Session = Depends(db_session)):
    stats = services.compute_stats(session)
    session.commit()
    return stats


@app.post("/api/recalculate", tags=["Admin"],
          summary="Rebuild last contact dates and recompute every contact's derived fields")
async def recalculate(session: Session = Depends(db_session)):
    count = services.recalculate_all(session)
    session.commit()
    return {"message": "All contacts recalculated successfully", "count": count}


# ---------------------------------------------------------------------------
# Routes: AI (portfolio routes before per-contact ones)
# ---------------------------------------------------------------------------


@app.get("/api/ai/model", tags=["AI"], summary="Show the configured LLM provider and model")
async def get_model_info():
    return model_info()


@app.get("/api/ai/dashboard", tags=["AI"],
         summary="Daily priorities across all contacts (falls back to a rule-based list)")
async def get_dashboard(refresh: bool = False, session: Session = Depends(db_session)):
    result = await services.run_dashboard(session, refresh=refresh)
    session.commit()
    return result


@app.get("/api/ai/analytics", tags=["AI"], summary="Portfolio-wide strategic analysis")
async def get_analytics(refresh: bool = False, session: Session = Depends(db_session)):
    try:
        result = await services.run_analytics(session, refresh=refresh)
    except LLMCallError as exc:
        log.warning("Analytics failed: %s", exc)
        raise HTTPException(502, f"Analytics failed: {exc}") from exc
    session.commit()
    return result


async def _contact_insight(contact_id: int, kind: str, refresh: bool, session: Session) -> dict:
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    try:
        result = await services.run_contact_insight(session, contact, kind, refresh=refresh)
    except LLMCallError as exc:
        log.warning("AI %s failed for contact %s: %s", kind, contact_id, exc)
        raise HTTPException(502, f"AI request failed: {exc}") from exc
    session.commit()
    return result


@app.get("/api/contacts/{contact_id}/ai/insights", tags=["AI"],
         summary="Relationship summary, key points, risks and opportunities")
async def get_contact_insights(contact_id: int, refresh: bool = False, session: Session = Depends(db_session)):
    return await _contact_insight(contact_id, "insights", refresh, session)


@app.get("/api/contacts/{contact_id}/ai/recommendations", tags=["AI"],
         summary="Next actions, conversation starters and gift ideas")
async def get_contact_recommendations(contact_id: int, refresh: bool = False, session: Session = Depends(db_session)):
    return await _contact_insight(contact_id, "recommendations", refresh, session)


@app.get("/api/contacts/{contact_id}/ai/summary", tags=["AI"], summary="Summary of the interaction history")
async def get_interaction_summary(contact_id: int, refresh: bool = False, session: Session = Depends(db_session)):
    return await _contact_insight(contact_id, "summary", refresh, session)


@app.get("/api/contacts/{contact_id}/ai/hint", tags=["AI"], summary="One-line hint for a contact card")
async def get_contact_hint(contact_id: int, refresh: bool = False, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    result = await services.run_contact_hint(session, contact, refresh=refresh)
    session.commit()
    return result


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("rapport.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
