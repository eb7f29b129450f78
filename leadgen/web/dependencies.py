"""FastAPI dependencies for the request's organization context."""

from __future__ import annotations

from fastapi import HTTPException, Request

_ADMIN_ROLES = ("admin", "owner")


def get_org_context(request: Request) -> dict:
    """Return the resolved user/organization context or raise 401."""
    user = getattr(request.state, "user", None)
    if not user or not getattr(request.state, "org_id", None):
        raise HTTPException(status_code=401, detail="Organization membership required")
    return user


def require_admin(request: Request) -> dict:
    """Return the context if the member is an org admin, else raise 403."""
    user = get_org_context(request)
    if user.get("role") not in _ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
