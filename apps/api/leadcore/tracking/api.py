from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadcore.context import reset_provider_id, set_provider_id
from leadcore.core.database import get_db
from leadcore.core.responses import error_response
from leadcore.errors import LeadNotFoundError
from leadcore.leads.api import authorize_caller, caller_tenant
from leadcore.tracking.schemas import BehavioralEventCreate, BehavioralEventRead, TouchpointCreate, TouchpointRead
from leadcore.tracking.service import event_log

router = APIRouter(prefix="/api/v1", tags=["leads.tracking"])


@router.post("/events", response_model=BehavioralEventRead, status_code=status.HTTP_201_CREATED)
def record_event(
    request: Request,
    dto: BehavioralEventCreate,
    db: Session = Depends(get_db),
) -> BehavioralEventRead | JSONResponse:
    caller = authorize_caller(request, db)
    if isinstance(caller, JSONResponse):
        return caller

    token = set_provider_id(caller.provider_id)
    try:
        return event_log.record_from_request(db, dto, tenant_id=caller_tenant(caller))
    except LeadNotFoundError as exc:
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="lead_not_found",
            message=str(exc),
            details={"identifier": exc.identifier},
        )
    finally:
        reset_provider_id(token)


@router.post("/leads/{lead_id}/touchpoints", response_model=TouchpointRead, status_code=status.HTTP_201_CREATED)
def record_touchpoint(
    lead_id: uuid.UUID,
    request: Request,
    dto: TouchpointCreate,
    db: Session = Depends(get_db),
) -> TouchpointRead | JSONResponse:
    caller = authorize_caller(request, db)
    if isinstance(caller, JSONResponse):
        return caller

    token = set_provider_id(caller.provider_id)
    try:
        touchpoint = event_log.record_touchpoint(db, lead_id, dto, tenant_id=caller_tenant(caller))
        return TouchpointRead.model_validate(touchpoint)
    except LeadNotFoundError as exc:
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="lead_not_found",
            message=str(exc),
            details={"identifier": exc.identifier},
        )
    finally:
        reset_provider_id(token)
