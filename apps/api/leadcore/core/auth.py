from dataclasses import dataclass

from fastapi import HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from leadcore.core.config import get_settings


@dataclass
class AuthUser:
    """Operator identity for the scoring, attribution and metrics endpoints."""

    sub: str
    roles: list[str]


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=subject, roles=[str(role) for role in roles])


def require_role(user: AuthUser, role: str) -> None:
    if role not in user.roles and "system.admin" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {role}")
