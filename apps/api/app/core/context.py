from dataclasses import dataclass, field

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


def split_header_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    organization_id: str | None
    allowed_organizations: list[str] = field(default_factory=list)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach the per-request context the routes and the error envelope read from."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        request.state.context = RequestContext(
            request_id=correlation_id,
            correlation_id=correlation_id,
            user_id=None,
            organization_id=(request.headers.get("x-organization-id") or "").strip() or None,
            allowed_organizations=split_header_list(request.headers.get("x-allowed-organizations")),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
