from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadcore.context import reset_provider_id, set_provider_id
from leadcore.core.config import get_settings
from leadcore.core.context import resolve_client_ip
from leadcore.core.database import get_db
from leadcore.core.responses import ingestion_error_response
from leadcore.leads.credentials import CredentialGate, GateDecision
from leadcore.leads.repository import BranchMappingRepository
from leadcore.leads.schemas import BranchListResponse, BranchRead, BulkIngestionResult
from leadcore.leads.service import ingestion_pipeline

router = APIRouter(prefix="/api/v1/leads", tags=["leads.ingestion"])
branches_router = APIRouter(prefix="/api/v1", tags=["leads.ingestion"])

credential_gate = CredentialGate()
branch_repository = BranchMappingRepository()

_INVALID_BODY = object()


async def read_json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return _INVALID_BODY
    try:
        return json.loads(raw)
    except ValueError:
        return _INVALID_BODY


def client_ip_for(request: Request) -> str:
    context = getattr(request.state, "context", None)
    client_ip = getattr(context, "client_ip", None)
    return client_ip or resolve_client_ip(request.headers)


def authorize_caller(request: Request, db: Session) -> GateDecision | JSONResponse:
    decision = credential_gate.authorize(db, request.headers.get("x-api-key"), client_ip_for(request))
    if decision.provider_id is None:
        return ingestion_error_response(request, status_code=status.HTTP_401_UNAUTHORIZED, error="Invalid API key")
    if not decision.ip_allowed:
        return ingestion_error_response(request, status_code=status.HTTP_403_FORBIDDEN, error="IP address not allowed")
    return decision


def caller_tenant(caller: GateDecision) -> str:
    return caller.tenant_id or get_settings().ingestion_default_tenant_id


@router.post("/bulk", response_model=BulkIngestionResult)
def ingest_bulk(
    request: Request,
    body: Any = Depends(read_json_body),
    db: Session = Depends(get_db),
) -> BulkIngestionResult | JSONResponse:
    caller = authorize_caller(request, db)
    if isinstance(caller, JSONResponse):
        return caller

    if body is _INVALID_BODY or not isinstance(body, dict):
        return ingestion_error_response(request, status_code=status.HTTP_400_BAD_REQUEST, error="Invalid JSON body")
    items = body.get("leads")
    if not isinstance(items, list):
        return ingestion_error_response(
            request,
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Invalid payload: 'leads' must be an array",
        )

    token = set_provider_id(caller.provider_id)
    try:
        return ingestion_pipeline.ingest_bulk(
            db,
            items,
            provider_id=caller.provider_id,
            default_tenant_id=caller_tenant(caller),
        )
    finally:
        reset_provider_id(token)


@branches_router.get("/branches", response_model=BranchListResponse)
def list_branches(request: Request, db: Session = Depends(get_db)) -> BranchListResponse | JSONResponse:
    """External branch ids the caller may send as `branch_id`."""
    caller = authorize_caller(request, db)
    if isinstance(caller, JSONResponse):
        return caller

    mappings = branch_repository.list_for_tenant(db, caller_tenant(caller))
    return BranchListResponse(branches=[BranchRead.model_validate(mapping) for mapping in mappings])
