from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from leadcore.tracking.models import BehavioralEvent, Touchpoint, utcnow


class TrackingRepository:
    def append_event(
        self,
        session: Session,
        lead_id: uuid.UUID,
        event_type: str,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> BehavioralEvent:
        event = BehavioralEvent(
            lead_id=lead_id,
            event_type=event_type,
            event_metadata=dict(metadata or {}),
            occurred_at=occurred_at or utcnow(),
        )
        session.add(event)
        session.flush()
        return event

    def list_events(self, session: Session, lead_id: uuid.UUID) -> list[BehavioralEvent]:
        stmt = (
            select(BehavioralEvent)
            .where(BehavioralEvent.lead_id == lead_id)
            .order_by(BehavioralEvent.occurred_at.asc())
        )
        return list(session.scalars(stmt))

    def append_touchpoint(self, session: Session, lead_id: uuid.UUID, values: dict[str, Any]) -> Touchpoint:
        current = session.scalar(select(func.max(Touchpoint.sequence)).where(Touchpoint.lead_id == lead_id))
        touchpoint = Touchpoint(lead_id=lead_id, sequence=(current or 0) + 1, **values)
        if touchpoint.occurred_at is None:
            touchpoint.occurred_at = utcnow()
        session.add(touchpoint)
        session.flush()
        return touchpoint

    def list_touchpoints(self, session: Session, lead_id: uuid.UUID) -> list[Touchpoint]:
        stmt = (
            select(Touchpoint)
            .where(Touchpoint.lead_id == lead_id)
            .order_by(Touchpoint.occurred_at.asc(), Touchpoint.sequence.asc())
        )
        return list(session.scalars(stmt))

    def lead_ids_with_touchpoints(self, session: Session, lead_ids: list[uuid.UUID]) -> list[uuid.UUID]:
        if not lead_ids:
            return []
        stmt = select(Touchpoint.lead_id).where(Touchpoint.lead_id.in_(lead_ids)).distinct()
        return list(session.scalars(stmt))
