from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from leadcore.errors import LeadNotFoundError
from leadcore.leads.models import Lead
from leadcore.leads.repository import BranchMappingRepository, LeadRepository
from leadcore.tracking.models import BehavioralEvent, BehavioralEventType, Touchpoint
from leadcore.tracking.repository import TrackingRepository
from leadcore.tracking.schemas import BehavioralEventCreate, BehavioralEventRead, TouchpointCreate

logger = logging.getLogger("leadcore.tracking")


class BehavioralEventLog:
    """Append-only log of lead behavior. Duplicate deliveries are stored twice.

    Callers only reach leads of their own tenant, or of the internal tenants their
    branches are mapped to. Any other lead is reported as not found.
    """

    def __init__(
        self,
        lead_repository: LeadRepository | None = None,
        tracking_repository: TrackingRepository | None = None,
        mapping_repository: BranchMappingRepository | None = None,
    ) -> None:
        self.lead_repository = lead_repository or LeadRepository()
        self.tracking_repository = tracking_repository or TrackingRepository()
        self.mapping_repository = mapping_repository or BranchMappingRepository()

    def tenant_scope(self, session: Session, tenant_id: str) -> set[str]:
        mapped = self.mapping_repository.list_for_tenant(session, tenant_id)
        return {tenant_id, *(mapping.internal_tenant_id for mapping in mapped)}

    def resolve_lead(self, session: Session, identifier: str, *, tenant_id: str) -> Lead:
        tenants = self.tenant_scope(session, tenant_id)
        lead: Lead | None = None
        try:
            lead_id = uuid.UUID(str(identifier))
        except ValueError:
            email = str(identifier).strip().lower()
            if email:
                lead = self.lead_repository.find_latest_by_email(session, email, tenants)
        else:
            lead = self.lead_repository.get(session, lead_id)
            if lead is not None and lead.tenant_id not in tenants:
                lead = None

        if lead is None:
            raise LeadNotFoundError(str(identifier))
        return lead

    def record(
        self,
        session: Session,
        identifier: str,
        event_type: str,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
        *,
        tenant_id: str,
    ) -> BehavioralEvent:
        lead = self.resolve_lead(session, identifier, tenant_id=tenant_id)
        raw_type = event_type.strip().upper()
        kind = BehavioralEventType.parse(raw_type)
        if kind is BehavioralEventType.UNRECOGNIZED:
            logger.info(
                "tracking.event.unrecognized",
                extra={"event_type": raw_type, "lead_id": str(lead.id), "tenant_id": lead.tenant_id},
            )
        event = self.tracking_repository.append_event(session, lead.id, raw_type, metadata, occurred_at)
        session.commit()
        return event

    def record_from_request(self, session: Session, dto: BehavioralEventCreate, *, tenant_id: str) -> BehavioralEventRead:
        event = self.record(
            session,
            dto.identifier,
            dto.event_type,
            dto.metadata,
            dto.occurred_at,
            tenant_id=tenant_id,
        )
        return BehavioralEventRead(
            id=event.id,
            lead_id=event.lead_id,
            event_type=event.event_type,
            recognized=event.kind is not BehavioralEventType.UNRECOGNIZED,
            metadata=event.event_metadata,
            occurred_at=event.occurred_at,
        )

    def record_touchpoint(
        self,
        session: Session,
        lead_id: uuid.UUID,
        dto: TouchpointCreate,
        *,
        tenant_id: str,
    ) -> Touchpoint:
        lead = self.resolve_lead(session, str(lead_id), tenant_id=tenant_id)
        values = dto.model_dump(exclude={"metadata", "touchpoint_type"})
        values["touchpoint_type"] = dto.touchpoint_type.value
        values["touchpoint_metadata"] = dict(dto.metadata)
        touchpoint = self.tracking_repository.append_touchpoint(session, lead.id, values)
        session.commit()
        return touchpoint


event_log = BehavioralEventLog()
