"""Request-context middleware: resolves the acting user and organization."""

from __future__ import annotations

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .. import config
from ..records import resolve_membership

log = logging.getLogger(__name__)

# Paths that never require an organization context
_PUBLIC_PATHS = ("/api/v1/health", "/docs", "/openapi.json")

ORG_HEADER = "X-Org-Id"
USER_HEADER = "X-User-Id"


def _context_from_membership(member: dict) -> dict:
    return {
        "id": member["user_id"],
        "email": member["email"],
        "name": member.get("name") or "",
        "role": member.get("role") or "member",
        "org_id": member["organization_id"],
        "organization_name": member.get("organization_name") or "",
    }


class OrgContextMiddleware(BaseHTTPMiddleware):
    """Populate request.state.user and request.state.org_id.

    The upstream identity layer passes the user and organization in headers;
    the pair is accepted only if an active membership links them.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request.state.user = None
        request.state.org_id = None

        if not config.LEADGEN_AUTH_ENABLED:
            return await self._bypass_mode(request, call_next)

        path = request.url.path
        if path.startswith(_PUBLIC_PATHS):
            return await call_next(request)

        org_id = request.headers.get(ORG_HEADER)
        user_id = request.headers.get(USER_HEADER)
        member = resolve_membership(org_id, user_id) if org_id and user_id else None
        if not member:
            return JSONResponse(
                {"error": "Unauthorized - Organization required"}, status_code=401,
            )

        request.state.user = _context_from_membership(member)
        request.state.org_id = member["organization_id"]
        return await call_next(request)

    async def _bypass_mode(self, request: Request, call_next) -> Response:
        """LEADGEN_AUTH_ENABLED=false: headers optional, else first active membership."""
        member = resolve_membership(
            request.headers.get(ORG_HEADER), request.headers.get(USER_HEADER),
        )
        if member:
            request.state.user = _context_from_membership(member)
            request.state.org_id = member["organization_id"]
        return await call_next(request)
