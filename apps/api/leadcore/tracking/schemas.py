from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from leadcore.tracking.models import TouchpointType


class BehavioralEventCreate(BaseModel):
    lead_id: UUID | None = None
    email: str | None = None
    event_type: str = Field(min_length=1, max_length=64)
    metadata: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime | None = None

    @model_validator(mode="after")
    def _require_identifier(self) -> BehavioralEventCreate:
        if self.lead_id is None and not (self.email or "").strip():
            raise ValueError("Either lead_id or email is required")
        return self

    @property
    def identifier(self) -> str:
        return str(self.lead_id) if self.lead_id is not None else (self.email or "")


class BehavioralEventRead(BaseModel):
    id: UUID
    lead_id: UUID
    event_type: str
    recognized: bool
    metadata: dict[str, Any]
    occurred_at: datetime


class TouchpointCreate(BaseModel):
    touchpoint_type: TouchpointType
    source: str | None = None
    medium: str | None = None
    campaign: str | None = None
    content: str | None = None
    term: str | None = None
    referrer: str | None = None
    page_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime | None = None


class TouchpointRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    sequence: int
    touchpoint_type: str
    source: str | None
    medium: str | None
    campaign: str | None
    referrer: str | None
    page_url: str | None
    occurred_at: datetime
