from __future__ import annotations

import json
from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

_ZERO_CONTRIBUTION = json.dumps({"financial": 0, "network": 0, "trust": 0})
_ZERO_POTENTIAL = json.dumps({"personal": 0, "resources": 0, "network": 0, "synergy": 0, "system_role": 0})


class Base(DeclarativeBase):
    pass


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String(300), nullable=False)
    short_name: Mapped[str] = mapped_column(String(100), default="")
    company: Mapped[str] = mapped_column(String(300), default="")
    company_role: Mapped[str] = mapped_column(String(200), default="")
    phone: Mapped[str] = mapped_column(String(50), default="")
    email: Mapped[str] = mapped_column(String(300), default="")
    social_links_json: Mapped[str] = mapped_column(Text, default="[]")
    tags_json: Mapped[str] = mapped_column(Text, default="[]")
    role_tags_json: Mapped[str] = mapped_column(Text, default="[]")
    hobbies: Mapped[str] = mapped_column(Text, default="")
    preferences: Mapped[str] = mapped_column(Text, default="")
    gift_preferences: Mapped[str] = mapped_column(Text, default="")
    family_notes: Mapped[str] = mapped_column(Text, default="")

    # Scoring inputs
    contribution_details_json: Mapped[str] = mapped_column(Text, default=_ZERO_CONTRIBUTION)
    potential_details_json: Mapped[str] = mapped_column(Text, default=_ZERO_POTENTIAL)
    attention_level: Mapped[int] = mapped_column(Integer, default=1)
    desired_frequency_days: Mapped[int] = mapped_column(Integer, default=30)
    last_contact_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    response_quality: Mapped[int] = mapped_column(Integer, default=2)
    relationship_energy: Mapped[int] = mapped_column(Integer, default=3)
    attention_trend: Mapped[int] = mapped_column(Integer, default=0)

    # Derived, written only by services.recompute_contact
    contribution_score: Mapped[int] = mapped_column(Integer, default=0)
    contribution_class: Mapped[str] = mapped_column(String(1), default="D")
    potential_score: Mapped[int] = mapped_column(Integer, default=0)
    potential_class: Mapped[str] = mapped_column(String(1), default="D")
    value_category: Mapped[str] = mapped_column(String(2), default="DD")
    importance_level: Mapped[str] = mapped_column(String(1), default="C")
    recommended_attention_level: Mapped[int] = mapped_column(Integer, default=3)
    heat_index: Mapped[float] = mapped_column(Float, default=0.5)
    heat_status: Mapped[str] = mapped_column(String(10), default="yellow")

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    interactions: Mapped[list[Interaction]] = relationship(
        "Interaction", back_populates="contact", cascade="all, delete-orphan",
        order_by=lambda: Interaction.occurred_on.desc(),
    )
    contributions: Mapped[list[Contribution]] = relationship("Contribution", back_populates="contact", cascade="all, delete-orphan")
    purchases: Mapped[list[Purchase]] = relationship("Purchase", back_populates="contact", cascade="all, delete-orphan")
    gifts: Mapped[list[Gift]] = relationship("Gift", back_populates="contact", cascade="all, delete-orphan")
    attachments: Mapped[list[Attachment]] = relationship("Attachment", back_populates="contact", cascade="all, delete-orphan")
    insights: Mapped[list[InsightCache]] = relationship("InsightCache", back_populates="contact", cascade="all, delete-orphan")


class Interaction(Base):
    __tablename__ = "interactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contact_id: Mapped[int] = mapped_column(Integer, ForeignKey("contacts.id"), nullable=False)
    occurred_on: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # call | meeting | message | event | gift | intro | other
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # phone | telegram | whatsapp | email | offline | other
    note: Mapped[str] = mapped_column(Text, default="")
    is_meaningful: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    contact: Mapped[Contact] = relationship("Contact", back_populates="interactions")


class Contribution(Base):
    __tablename__ = "contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contact_id: Mapped[int] = mapped_column(Integer, ForeignKey("contacts.id"), nullable=False)
    criterion_type: Mapped[str] = mapped_column(String(20), nullable=False)  # financial | network | trust
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    contributed_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str] = mapped_column(Text, default="")
    introduced_contact_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    contact: Mapped[Contact] = relationship("Contact", back_populates="contributions")


class Purchase(Base):
    __tablename__ = "purchases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contact_id: Mapped[int] = mapped_column(Integer, ForeignKey("contacts.id"), nullable=False)
    product_name: Mapped[str] = mapped_column(String(300), nullable=False)
    category: Mapped[str] = mapped_column(String(100), default="")
    amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    purchased_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    contact: Mapped[Contact] = relationship("Contact", back_populates="purchases")


class Gift(Base):
    __tablename__ = "gifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contact_id: Mapped[int] = mapped_column(Integer, ForeignKey("contacts.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    direction: Mapped[str] = mapped_column(String(10), default="given")  # given | received
    occasion: Mapped[str] = mapped_column(String(200), default="")
    given_on: Mapped[date | None] = mapped_column(Date, nullable=True)
    amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    contact: Mapped[Contact] = relationship("Contact", back_populates="gifts")


class Attachment(Base):
    __tablename__ = "attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contact_id: Mapped[int] = mapped_column(Integer, ForeignKey("contacts.id"), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)  # personal | family | team | work | documents | other
    original_name: Mapped[str] = mapped_column(String(300), nullable=False)
    file_type: Mapped[str] = mapped_column(String(100), default="application/octet-stream")
    file_size: Mapped[int] = mapped_column(Integer, default=0)
    storage_path: Mapped[str] = mapped_column(String(500), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    contact: Mapped[Contact] = relationship("Contact", back_populates="attachments")


class InsightCache(Base):
    __tablename__ = "insight_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contact_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("contacts.id"), nullable=True)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)  # insights | recommendations | summary | hint | dashboard | analytics
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    llm_model: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    contact: Mapped[Contact | None] = relationship("Contact", back_populates="insights")
