from __future__ import annotations

import uuid
from collections.abc import Collection
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from leadcore.leads.models import SALES_STAGE_CONVERTED, BranchMapping, IngestionCredential, Lead


class LeadRepository:
    def get(self, session: Session, lead_id: uuid.UUID) -> Lead | None:
        return session.get(Lead, lead_id)

    def find_by_email(self, session: Session, tenant_id: str, email: str) -> Lead | None:
        stmt = (
            select(Lead)
            .where(Lead.tenant_id == tenant_id, Lead.email == email)
            .order_by(Lead.created_at.desc())
            .limit(1)
        )
        return session.scalar(stmt)

    def find_by_phone(self, session: Session, tenant_id: str, phone: str) -> Lead | None:
        stmt = (
            select(Lead)
            .where(Lead.tenant_id == tenant_id, Lead.phone == phone)
            .order_by(Lead.created_at.desc())
            .limit(1)
        )
        return session.scalar(stmt)

    def find_duplicate(self, session: Session, tenant_id: str, email: str | None, phone: str | None) -> Lead | None:
        if email:
            existing = self.find_by_email(session, tenant_id, email)
            if existing is not None:
                return existing
        if phone:
            return self.find_by_phone(session, tenant_id, phone)
        return None

    def find_latest_by_email(self, session: Session, email: str, tenant_ids: Collection[str]) -> Lead | None:
        stmt = (
            select(Lead)
            .where(Lead.email == email, Lead.tenant_id.in_(list(tenant_ids)))
            .order_by(Lead.created_at.desc())
            .limit(1)
        )
        return session.scalar(stmt)

    def create(self, session: Session, values: dict[str, Any]) -> Lead:
        lead = Lead(**values)
        session.add(lead)
        session.flush()
        return lead

    def update(self, session: Session, lead: Lead, values: dict[str, Any]) -> Lead:
        for field_name, value in values.items():
            setattr(lead, field_name, value)
        lead.row_version += 1
        session.flush()
        return lead

    def write_score(self, session: Session, lead: Lead, score: int) -> None:
        lead.set_score(score)
        session.flush()

    def list_ids_for_tenant(self, session: Session, tenant_id: str) -> list[uuid.UUID]:
        stmt = select(Lead.id).where(Lead.tenant_id == tenant_id).order_by(Lead.created_at.asc())
        return list(session.scalars(stmt))

    def source_conversion_counts(self, session: Session, tenant_id: str, source: str) -> tuple[int, int]:
        """Return (total, converted) lead counts for one tenant and source."""
        total = session.scalar(
            select(func.count(Lead.id)).where(Lead.tenant_id == tenant_id, Lead.source == source)
        )
        converted = session.scalar(
            select(func.count(Lead.id)).where(
                Lead.tenant_id == tenant_id,
                Lead.source == source,
                Lead.sales_stage == SALES_STAGE_CONVERTED,
            )
        )
        return int(total or 0), int(converted or 0)


class CredentialRepository:
    def get_active_by_hash(self, session: Session, api_key_hash: str) -> IngestionCredential | None:
        stmt = select(IngestionCredential).where(
            IngestionCredential.api_key_hash == api_key_hash,
            IngestionCredential.is_active.is_(True),
        )
        return session.scalar(stmt)

    def create(self, session: Session, values: dict[str, Any]) -> IngestionCredential:
        credential = IngestionCredential(**values)
        session.add(credential)
        session.flush()
        return credential


class BranchMappingRepository:
    def get_internal_tenant(self, session: Session, tenant_id: str, external_branch_id: str) -> str | None:
        stmt = select(BranchMapping.internal_tenant_id).where(
            BranchMapping.tenant_id == tenant_id,
            BranchMapping.external_branch_id == external_branch_id,
        )
        return session.scalar(stmt)

    def list_for_tenant(self, session: Session, tenant_id: str) -> list[BranchMapping]:
        stmt = (
            select(BranchMapping)
            .where(BranchMapping.tenant_id == tenant_id)
            .order_by(BranchMapping.external_branch_id.asc())
        )
        return list(session.scalars(stmt))

    def create(self, session: Session, values: dict[str, Any]) -> BranchMapping:
        mapping = BranchMapping(**values)
        session.add(mapping)
        session.flush()
        return mapping
