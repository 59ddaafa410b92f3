from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadcore.attribution.schemas import AttributionReportRead, LeadAttributionRead, to_credits
from leadcore.attribution.service import AttributionModel, attribution_engine
from leadcore.core.auth import AuthUser, get_current_user, require_role
from leadcore.core.database import get_db
from leadcore.core.responses import error_response
from leadcore.errors import LeadNotFoundError

router = APIRouter(prefix="/api/v1", tags=["leads.attribution"])


@router.get("/leads/{lead_id}/attribution", response_model=LeadAttributionRead)
def get_lead_attribution(
    lead_id: uuid.UUID,
    request: Request,
    model: AttributionModel = Query(default=AttributionModel.LAST_TOUCH),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> LeadAttributionRead | JSONResponse:
    try:
        require_role(user, "leads.attribution.read")
        credits = attribution_engine.attribute(db, lead_id, model)
        return LeadAttributionRead(lead_id=lead_id, model=model, credits=to_credits(credits))
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_attribution_read_failed",
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


@router.get("/attribution/report", response_model=AttributionReportRead)
def get_attribution_report(
    request: Request,
    tenant_id: str = Query(min_length=1),
    model: AttributionModel = Query(default=AttributionModel.LAST_TOUCH),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> AttributionReportRead | JSONResponse:
    try:
        require_role(user, "leads.attribution.read")
        credits = attribution_engine.source_report(db, tenant_id, model)
        return AttributionReportRead(
            tenant_id=tenant_id,
            model=model,
            leads_attributed=round(sum(credits.values())),
            credits=to_credits(credits),
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="attribution_report_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
