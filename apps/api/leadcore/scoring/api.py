from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadcore.core.auth import AuthUser, get_current_user, require_role
from leadcore.core.database import get_db
from leadcore.core.responses import error_response
from leadcore.errors import LeadNotFoundError
from leadcore.leads.repository import LeadRepository
from leadcore.scoring.schemas import LeadScoreRead, ScoreRefreshRequest, ScoreRefreshResponse
from leadcore.scoring.service import scoring_engine

router = APIRouter(prefix="/api/v1/leads", tags=["leads.scoring"])

lead_repository = LeadRepository()


@router.get("/{lead_id}/score", response_model=LeadScoreRead)
def get_lead_score(
    lead_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> LeadScoreRead | JSONResponse:
    try:
        require_role(user, "leads.score.read")
        lead = lead_repository.get(db, lead_id)
        if lead is None:
            raise LeadNotFoundError(str(lead_id))
        return LeadScoreRead(
            lead_id=lead.id,
            score=scoring_engine.compute_for_lead(db, lead),
            stored_score=lead.score,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_score_read_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except LeadNotFoundError as exc:
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="lead_not_found",
            message=str(exc),
            details={"identifier": exc.identifier},
        )


@router.post("/scores/refresh", response_model=ScoreRefreshResponse)
def refresh_scores(
    dto: ScoreRefreshRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ScoreRefreshResponse | JSONResponse:
    try:
        require_role(user, "leads.score.refresh")
        if dto.lead_ids is None and dto.tenant_id is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Either lead_ids or tenant_id is required",
            )
        lead_ids = dto.lead_ids if dto.lead_ids is not None else lead_repository.list_ids_for_tenant(db, dto.tenant_id)
        result = scoring_engine.refresh_bulk(db, lead_ids)
        return ScoreRefreshResponse(refreshed=result.refreshed, failed=result.failed)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_score_refresh_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
