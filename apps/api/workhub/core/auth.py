from dataclasses import dataclass

from fastapi import HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from workhub.core.config import get_settings


MANAGE_PERMISSION = "custom_fields.manage"
METRICS_PERMISSION = "system.metrics.read"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]

    def can(self, permission: str) -> bool:
        return permission in self.roles


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

    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=str(payload.get("sub", "anonymous")), roles=[str(role) for role in roles])


def require_permission(user: AuthUser, permission: str) -> None:
    if not user.can(permission):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")
