from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi.responses import JSONResponse
from starlette.requests import Request

from leadcore.context import get_correlation_id


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def _request_correlation_id(request: Request) -> str | None:
    return get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=_request_correlation_id(request),
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def ingestion_error_response(request: Request, *, status_code: int, error: str) -> JSONResponse:
    """Error body for provider-facing endpoints, which speak `{success, error}`."""
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "correlation_id": _request_correlation_id(request)},
    )
