from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel

from leadcore.attribution.service import AttributionModel


class SourceCredit(BaseModel):
    source: str
    credit: float


class LeadAttributionRead(BaseModel):
    lead_id: UUID
    model: AttributionModel
    credits: list[SourceCredit]


class AttributionReportRead(BaseModel):
    tenant_id: str
    model: AttributionModel
    leads_attributed: int
    credits: list[SourceCredit]


def to_credits(credits: dict[str, float]) -> list[SourceCredit]:
    return [SourceCredit(source=source, credit=round(credit, 6)) for source, credit in credits.items()]
