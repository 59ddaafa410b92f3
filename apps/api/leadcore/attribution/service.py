"""Multi-touch attribution over a lead's touchpoint history."""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from sqlalchemy.orm import Session

from leadcore.errors import LeadNotFoundError
from leadcore.leads.models import ensure_utc
from leadcore.leads.repository import LeadRepository
from leadcore.tracking.repository import TrackingRepository

DIRECT_SOURCE = "Direct"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class AttributionModel(str, Enum):
    FIRST_TOUCH = "FIRST_TOUCH"
    LAST_TOUCH = "LAST_TOUCH"
    LINEAR = "LINEAR"
    U_SHAPED = "U_SHAPED"


class AttributedTouch(Protocol):
    source: str | None
    occurred_at: datetime | None


def _sort_key(touch: AttributedTouch) -> datetime:
    return ensure_utc(touch.occurred_at) if touch.occurred_at is not None else _EPOCH


def _positional_weights(count: int, model: AttributionModel) -> list[float]:
    if count == 1:
        return [1.0]
    if model is AttributionModel.FIRST_TOUCH:
        return [1.0] + [0.0] * (count - 1)
    if model is AttributionModel.LAST_TOUCH:
        return [0.0] * (count - 1) + [1.0]
    if model is AttributionModel.LINEAR:
        return [1.0 / count] * count
    if count == 2:
        return [0.5, 0.5]
    middle = 0.2 / (count - 2)
    return [0.4] + [middle] * (count - 2) + [0.4]


def calculate_attribution(
    touchpoints: Iterable[AttributedTouch],
    model: AttributionModel = AttributionModel.LAST_TOUCH,
) -> dict[str, float]:
    """Split one unit of conversion credit across touchpoint sources.

    Touchpoints are ordered by time (stable for ties). FIRST_TOUCH and LAST_TOUCH
    give everything to one end, LINEAR splits evenly, U_SHAPED gives 40% to each end
    and shares 20% across the interior. Credits for a repeated source are summed and
    a touchpoint without a source counts as "Direct".
    """
    ordered = sorted(touchpoints, key=_sort_key)
    if not ordered:
        return {}

    credits: dict[str, float] = {}
    for touch, weight in zip(ordered, _positional_weights(len(ordered), AttributionModel(model))):
        if weight == 0.0:
            continue
        source = touch.source or DIRECT_SOURCE
        credits[source] = credits.get(source, 0.0) + weight
    return dict(sorted(credits.items(), key=lambda item: item[1], reverse=True))


class AttributionEngine:
    def __init__(
        self,
        lead_repository: LeadRepository | None = None,
        tracking_repository: TrackingRepository | None = None,
    ) -> None:
        self.lead_repository = lead_repository or LeadRepository()
        self.tracking_repository = tracking_repository or TrackingRepository()

    def attribute(self, session: Session, lead_id: uuid.UUID, model: AttributionModel) -> dict[str, float]:
        if self.lead_repository.get(session, lead_id) is None:
            raise LeadNotFoundError(str(lead_id))
        return calculate_attribution(self.tracking_repository.list_touchpoints(session, lead_id), model)

    def source_report(self, session: Session, tenant_id: str, model: AttributionModel) -> dict[str, float]:
        totals: dict[str, float] = {}
        lead_ids = self.lead_repository.list_ids_for_tenant(session, tenant_id)
        for lead_id in self.tracking_repository.lead_ids_with_touchpoints(session, lead_ids):
            touchpoints = self.tracking_repository.list_touchpoints(session, lead_id)
            for source, credit in calculate_attribution(touchpoints, model).items():
                totals[source] = totals.get(source, 0.0) + credit
        return dict(sorted(totals.items(), key=lambda item: item[1], reverse=True))


attribution_engine = AttributionEngine()
