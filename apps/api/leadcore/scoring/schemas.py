from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field


class LeadScoreRead(BaseModel):
    lead_id: UUID
    score: int
    stored_score: int


class ScoreRefreshRequest(BaseModel):
    lead_ids: list[UUID] | None = None
    tenant_id: str | None = None


class ScoreRefreshFailure(BaseModel):
    lead_id: str
    error: str


class ScoreRefreshResponse(BaseModel):
    refreshed: int
    failed: list[ScoreRefreshFailure] = Field(default_factory=list)
