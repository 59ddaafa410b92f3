from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import JSON, Boolean, Date, DateTime, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from leadcore.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class LeadStatus(str, Enum):
    PROSPECT = "PROSPECT"
    PROSPECTION = "PROSPECTION"
    ATTEMPTED = "ATTEMPTED"
    CONTACTED = "CONTACTED"
    QUALIFIED = "QUALIFIED"
    RDV_FIXE = "RDV_FIXE"
    DISQUALIFIED = "DISQUALIFIED"
    ARCHIVED = "ARCHIVED"
    NRP = "NRP"


# A fresh lead placed straight into the CRM queue carries this stage.
SALES_STAGE_NEW = "NOUVEAU"
SALES_STAGE_CONVERTED = "TRANSFORMATION_APPRENANT"


class LeadChannel(str, Enum):
    FACEBOOK = "FACEBOOK"
    GOOGLE_ADS = "GOOGLE_ADS"
    WEBSITE = "WEBSITE"
    IMPORT = "IMPORT"


class Lead(Base):
    __tablename__ = "lead"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    branch_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    street: Mapped[str | None] = mapped_column(Text, nullable=True)
    zip_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    city: Mapped[str | None] = mapped_column(Text, nullable=True)
    exam_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=LeadStatus.PROSPECT.value)
    sales_stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=50, server_default="50")
    source: Mapped[str] = mapped_column(String(128), nullable=False, default="API_IMPORT")
    channel: Mapped[str] = mapped_column(String(32), nullable=False, default=LeadChannel.IMPORT.value)
    call_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    consent_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    response_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    __table_args__ = (
        Index("ix_lead_tenant_email", "tenant_id", "email"),
        Index("ix_lead_tenant_phone", "tenant_id", "phone"),
        Index("ix_lead_tenant_source", "tenant_id", "source"),
    )

    def set_score(self, value: int) -> None:
        self.score = max(0, min(100, int(value)))


class IngestionCredential(Base):
    __tablename__ = "lead_ingestion_credential"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[str] = mapped_column(String(128), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    api_key_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    allowed_ips: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("api_key_hash", name="uq_lead_ingestion_credential_key"),)


class BranchMapping(Base):
    __tablename__ = "lead_branch_mapping"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    external_branch_id: Mapped[str] = mapped_column(String(64), nullable=False)
    internal_tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_branch_id", name="uq_lead_branch_mapping_external"),
    )
