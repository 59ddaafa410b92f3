from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from leadcore.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BehavioralEventType(str, Enum):
    PAGE_VIEW = "PAGE_VIEW"
    FORM_INTERACTION = "FORM_INTERACTION"
    EMAIL_OPEN = "EMAIL_OPEN"
    EMAIL_CLICK = "EMAIL_CLICK"
    PRICING_VIEW = "PRICING_VIEW"
    DOWNLOAD = "DOWNLOAD"
    UNRECOGNIZED = "UNRECOGNIZED"

    @classmethod
    def parse(cls, raw: str | None) -> BehavioralEventType:
        normalized = (raw or "").strip().upper()
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNRECOGNIZED


class TouchpointType(str, Enum):
    AD_CLICK = "AD_CLICK"
    PAGE_VIEW = "PAGE_VIEW"
    FORM_START = "FORM_START"
    CHAT_INTERACTION = "CHAT_INTERACTION"
    LEAD_GENERATION = "LEAD_GENERATION"


class BehavioralEvent(Base):
    __tablename__ = "lead_behavioral_event"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def kind(self) -> BehavioralEventType:
        return BehavioralEventType.parse(self.event_type)


class Touchpoint(Base):
    __tablename__ = "lead_touchpoint"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # Insertion order breaks ties between touchpoints sharing a timestamp.
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    touchpoint_type: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str | None] = mapped_column(String(128), nullable=True)
    medium: Mapped[str | None] = mapped_column(String(128), nullable=True)
    campaign: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    term: Mapped[str | None] = mapped_column(Text, nullable=True)
    referrer: Mapped[str | None] = mapped_column(Text, nullable=True)
    page_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    touchpoint_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


Index("ix_lead_behavioral_event_lead_occurred", BehavioralEvent.lead_id, BehavioralEvent.occurred_at)
Index("ix_lead_touchpoint_lead_occurred", Touchpoint.lead_id, Touchpoint.occurred_at, Touchpoint.sequence)
