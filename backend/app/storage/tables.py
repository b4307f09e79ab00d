"""
tables.py — ORM tables for the database storage backend.

    warnings               one row per warning; updates and response actions
                           live inside the JSON ``document`` (they are never
                           queried on their own), scalar columns are copies
                           kept for filtering and ordering
    recipients             profile, last known location, preferences
    channel_registrations  one delivery address; UNIQUE (kind, identity)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from backend.app.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WarningRow(Base):
    __tablename__ = "warnings"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    disaster_category: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    document: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class RecipientRow(Base):
    __tablename__ = "recipients"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    push_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    preferences: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    # True when preferences exist and are active; lets find_subscribers stay in SQL
    subscribed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    registrations: Mapped[List["ChannelRegistrationRow"]] = relationship(
        "ChannelRegistrationRow",
        back_populates="recipient",
        cascade="all, delete-orphan",
        order_by="ChannelRegistrationRow.created_at",
    )

    __table_args__ = (
        Index("ix_recipients_location", "latitude", "longitude"),
    )


class ChannelRegistrationRow(Base):
    __tablename__ = "channel_registrations"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    recipient_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("recipients.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    identity: Mapped[str] = mapped_column(String(2048), nullable=False)
    keys: Mapped[Dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    platform: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_active: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    recipient: Mapped[RecipientRow] = relationship("RecipientRow", back_populates="registrations")

    __table_args__ = (
        UniqueConstraint("kind", "identity", name="uq_channel_registrations_kind_identity"),
    )
