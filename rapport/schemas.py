"""Pydantic request/response schemas for the Rapport API."""
from __future__ import annotations

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

InteractionType = Literal["call", "meeting", "message", "event", "gift", "intro", "other"]
InteractionChannel = Literal["phone", "telegram", "whatsapp", "email", "offline", "other"]
CriterionType = Literal["financial", "network", "trust"]
GiftDirection = Literal["given", "received"]
AttachmentCategory = Literal["personal", "family", "team", "work", "documents", "other"]
TagType = Literal["tags", "role_tags"]


# ---------------------------------------------------------------------------
# Score details
# ---------------------------------------------------------------------------


class ContributionDetails(BaseModel):
    financial: int = Field(0, ge=0, le=3)
    network: int = Field(0, ge=0, le=3)
    trust: int = Field(0, ge=0, le=3)


class ContributionDetailsPatch(BaseModel):
    financial: int | None = Field(None, ge=0, le=3)
    network: int | None = Field(None, ge=0, le=3)
    trust: int | None = Field(None, ge=0, le=3)


class PotentialDetails(BaseModel):
    personal: int = Field(0, ge=0, le=3)
    resources: int = Field(0, ge=0, le=3)
    network: int = Field(0, ge=0, le=3)
    synergy: int = Field(0, ge=0, le=3)
    system_role: int = Field(0, ge=0, le=3)


class PotentialDetailsPatch(BaseModel):
    personal: int | None = Field(None, ge=0, le=3)
    resources: int | None = Field(None, ge=0, le=3)
    network: int | None = Field(None, ge=0, le=3)
    synergy: int | None = Field(None, ge=0, le=3)
    system_role: int | None = Field(None, ge=0, le=3)


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


class _ScoringInputs(BaseModel):
    attention_level: int = Field(1, ge=1, le=10)
    desired_frequency_days: int = Field(30, ge=1)
    last_contact_date: date | None = None
    response_quality: int = Field(2, ge=0, le=3)
    relationship_energy: int = Field(3, ge=1, le=5)
    attention_trend: int = Field(0, ge=-1, le=1)


class ContactCreate(_ScoringInputs):
    full_name: str
    short_name: str = ""
    company: str = ""
    company_role: str = ""
    phone: str = ""
    email: str = ""
    social_links: list[str] = []
    tags: list[str] = []
    role_tags: list[str] = []
    hobbies: str = ""
    preferences: str = ""
    gift_preferences: str = ""
    family_notes: str = ""
    contribution_details: ContributionDetails = ContributionDetails()
    potential_details: PotentialDetails = PotentialDetails()

    @field_validator("full_name")
    @classmethod
    def full_name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("full_name must not be empty")
        return v


class ContactUpdate(BaseModel):
    """Partial update. Only fields present in the body are applied.

    Derived fields (scores, classes, heat, importance) are not part of this
    model and are silently dropped if a client sends them.
    """
    full_name: str | None = None
    short_name: str | None = None
    company: str | None = None
    company_role: str | None = None
    phone: str | None = None
    email: str | None = None
    social_links: list[str] | None = None
    tags: list[str] | None = None
    role_tags: list[str] | None = None
    hobbies: str | None = None
    preferences: str | None = None
    gift_preferences: str | None = None
    family_notes: str | None = None
    contribution_details: ContributionDetailsPatch | None = None
    potential_details: PotentialDetailsPatch | None = None
    attention_level: int | None = Field(None, ge=1, le=10)
    desired_frequency_days: int | None = Field(None, ge=1)
    last_contact_date: date | None = None
    response_quality: int | None = Field(None, ge=0, le=3)
    relationship_energy: int | None = Field(None, ge=1, le=5)
    attention_trend: int | None = Field(None, ge=-1, le=1)

    @field_validator("full_name")
    @classmethod
    def full_name_not_blank(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            raise ValueError("full_name must not be empty")
        return v.strip() if v is not None else v


class ContactOut(BaseModel):
    id: int
    full_name: str
    short_name: str
    company: str
    company_role: str
    tags: list[str] = []
    role_tags: list[str] = []
    attention_level: int
    desired_frequency_days: int
    last_contact_date: str | None = None
    response_quality: int
    relationship_energy: int
    attention_trend: int
    contribution_score: int
    contribution_class: str
    potential_score: int
    potential_class: str
    value_category: str
    importance_level: str
    recommended_attention_level: int
    attention_gap: int
    attention_gap_status: str
    days_since_last_contact: int
    days_overdue: int
    heat_index: float
    heat_status: str


class InteractionOut(BaseModel):
    id: int
    contact_id: int
    occurred_on: str
    type: str
    channel: str
    note: str
    is_meaningful: bool
    created_at: str | None = None


class ContactDetail(ContactOut):
    phone: str = ""
    email: str = ""
    social_links: list[str] = []
    hobbies: str = ""
    preferences: str = ""
    gift_preferences: str = ""
    family_notes: str = ""
    contribution_details: dict[str, int] = {}
    potential_details: dict[str, int] = {}
    created_at: str | None = None
    updated_at: str | None = None
    interactions: list[InteractionOut] = []


class ContactListResponse(BaseModel):
    items: list[ContactOut]
    total: int


class ContactPreview(BaseModel):
    """Scoring inputs to evaluate without saving.

    With ``contact_id`` the given fields are layered over that contact's
    stored inputs; otherwise creation defaults fill the gaps.
    """
    contact_id: int | None = None
    contribution_details: ContributionDetailsPatch | None = None
    potential_details: PotentialDetailsPatch | None = None
    attention_level: int | None = Field(None, ge=1, le=10)
    desired_frequency_days: int | None = Field(None, ge=1)
    last_contact_date: date | None = None
    response_quality: int | None = Field(None, ge=0, le=3)
    relationship_energy: int | None = Field(None, ge=1, le=5)
    attention_trend: int | None = Field(None, ge=-1, le=1)


class PreviewOut(BaseModel):
    contribution_details: dict[str, int]
    potential_details: dict[str, int]
    contribution_score: int
    contribution_class: str
    potential_score: int
    potential_class: str
    value_category: str
    importance_level: str
    attention_level: int
    recommended_attention_level: int
    attention_gap: int
    attention_gap_status: str
    days_since_last_contact: int
    heat_index: float
    heat_status: str


# ---------------------------------------------------------------------------
# Bulk operations
# ---------------------------------------------------------------------------


class BulkUpdate(BaseModel):
    ids: list[int]
    updates: ContactUpdate


class BulkDelete(BaseModel):
    ids: list[int]


class BulkResult(BaseModel):
    message: str
    count: int


# ---------------------------------------------------------------------------
# Interactions
# ---------------------------------------------------------------------------


class InteractionCreate(BaseModel):
    occurred_on: date
    type: InteractionType
    channel: InteractionChannel
    note: str = ""
    is_meaningful: bool = False


# ---------------------------------------------------------------------------
# Contributions, purchases, gifts
# ---------------------------------------------------------------------------


class ContributionCreate(BaseModel):
    criterion_type: CriterionType
    title: str
    amount: float | None = None
    currency: str = "USD"
    contributed_at: date | None = None
    notes: str = ""
    introduced_contact_id: int | None = None


class ContributionUpdate(BaseModel):
    criterion_type: CriterionType | None = None
    title: str | None = None
    amount: float | None = None
    currency: str | None = None
    contributed_at: date | None = None
    notes: str | None = None
    introduced_contact_id: int | None = None


class ContributionOut(BaseModel):
    id: int
    contact_id: int
    criterion_type: str
    title: str
    amount: float | None = None
    currency: str
    contributed_at: str | None = None
    notes: str
    introduced_contact_id: int | None = None


class ContributionTotal(BaseModel):
    total_amount: float
    count: int
    last_date: str | None = None


class PurchaseCreate(BaseModel):
    product_name: str
    category: str = ""
    amount: float | None = None
    currency: str = "USD"
    purchased_at: date | None = None
    notes: str = ""


class PurchaseUpdate(BaseModel):
    product_name: str | None = None
    category: str | None = None
    amount: float | None = None
    currency: str | None = None
    purchased_at: date | None = None
    notes: str | None = None


class PurchaseOut(BaseModel):
    id: int
    contact_id: int
    product_name: str
    category: str
    amount: float | None = None
    currency: str
    purchased_at: str | None = None
    notes: str


class GiftCreate(BaseModel):
    title: str
    description: str = ""
    direction: GiftDirection = "given"
    occasion: str = ""
    given_on: date | None = None
    amount: float | None = None
    currency: str = "USD"


class GiftUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    direction: GiftDirection | None = None
    occasion: str | None = None
    given_on: date | None = None
    amount: float | None = None
    currency: str | None = None


class GiftOut(BaseModel):
    id: int
    contact_id: int
    title: str
    description: str
    direction: str
    occasion: str
    given_on: str | None = None
    amount: float | None = None
    currency: str


class AttachmentOut(BaseModel):
    id: int
    contact_id: int
    category: str
    original_name: str
    file_type: str
    file_size: int
    uploaded_at: str | None = None


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------


class TagCount(BaseModel):
    name: str
    count: int


class TagApply(BaseModel):
    ids: list[int]
    tags: list[str]
    tag_type: TagType = "tags"
    action: Literal["add", "remove"] = "add"


class TagRename(BaseModel):
    old_name: str
    new_name: str
    tag_type: TagType = "tags"

    @field_validator("new_name")
    @classmethod
    def new_name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("new_name must not be empty")
        return v


class TagDelete(BaseModel):
    tags: list[str]
    tag_type: TagType = "tags"


# ---------------------------------------------------------------------------
# Import / stats
# ---------------------------------------------------------------------------


class ImportRequest(BaseModel):
    contacts: list[dict[str, Any]]


class ImportResult(BaseModel):
    success: int
    failed: int
    errors: list[str] = []


class StatsOut(BaseModel):
    total: int
    average_heat_index: float
    by_heat_status: dict[str, int]
    by_importance: dict[str, int]
    by_value_category: dict[str, int]
    by_attention_gap_status: dict[str, int]
    importance_heat_matrix: dict[str, dict[str, int]]
