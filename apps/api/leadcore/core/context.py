from collections.abc import Mapping
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

UNKNOWN_CLIENT_IP = "unknown"


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    client_ip: str
    api_key_present: bool


def resolve_client_ip(headers: Mapping[str, str]) -> str:
    """First hop of X-Forwarded-For, then X-Real-IP, else "unknown".

    The transport peer address is deliberately ignored: behind a proxy that strips
    forwarding headers it would be the proxy's own address.
    """
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return UNKNOWN_CLIENT_IP


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None)
        request.state.context = RequestContext(
            request_id=correlation_id or "",
            correlation_id=correlation_id or "",
            client_ip=resolve_client_ip(request.headers),
            api_key_present=bool(request.headers.get("x-api-key")),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
