from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    organization_id: str | None = None
    organizations: list[str] = field(default_factory=list)


ANONYMOUS = AuthUser(sub="anonymous", roles=["guest"])


def _string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


def create_access_token(
    subject: str,
    roles: list[str],
    *,
    organization_id: str | None = None,
    organizations: list[str] | None = None,
    expires_in: timedelta = timedelta(hours=1),
) -> str:
    settings = get_settings()
    claims: dict[str, object] = {
        "sub": subject,
        "roles": roles,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    if organization_id is not None:
        claims["org"] = organization_id
    if organizations:
        claims["orgs"] = organizations
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return ANONYMOUS

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return ANONYMOUS

    subject = str(payload.get("sub", "anonymous"))
    roles = _string_list(payload.get("roles")) or ["user"]
    organization = payload.get("org")
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(
        sub=subject,
        roles=roles,
        organization_id=str(organization) if organization else None,
        organizations=_string_list(payload.get("orgs")),
    )
