from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class BulkLeadError(BaseModel):
    index: int
    error: str


class BulkIngestionResult(BaseModel):
    success: bool = True
    total: int = 0
    created: int = 0
    created_prospection: int = 0
    created_crm: int = 0
    merged: int = 0
    skipped: int = 0
    quarantined: int = 0
    errors: list[BulkLeadError] = Field(default_factory=list)


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    branch_ref: str | None
    provider_id: str | None
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    street: str | None
    zip_code: str | None
    city: str | None
    exam_ref: str | None
    status: str
    sales_stage: str | None
    score: int
    source: str
    channel: str
    call_attempts: int
    consent_date: date | None
    response_date: date | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class BranchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(validation_alias="external_branch_id")


class BranchListResponse(BaseModel):
    success: bool = True
    branches: list[BranchRead] = Field(default_factory=list)
