"""JSON API routes for enrichment, cache status, and credits (/api/v1/)."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ...credits import get_credit_history, get_credit_summary, list_enrichment_transactions, set_plan
from ...database import get_connection
from ...employee_cache import check_employee_cache, mark_cache_for_refresh
from ...enrichment_provider import ProviderError
from ...errors import EnrichmentError, InsufficientCreditsError
from ...materializer import promote_to_leads
from ...models import EnrichmentFilters
from ...orchestrator import (
    bulk_enrich,
    company_enrichment_status,
    enrich_company,
    enrich_company_profile,
    icp_enrichment_overview,
    preview_enrichment,
)
from ...records import get_icp
from ..dependencies import get_org_context, require_admin

log = logging.getLogger(__name__)

router = APIRouter()


def _error_response(exc: EnrichmentError) -> JSONResponse:
    if isinstance(exc, InsufficientCreditsError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)
    if isinstance(exc, ProviderError):
        return JSONResponse(
            {"error": "Failed to enrich employees", "details": str(exc)},
            status_code=exc.status_code,
        )
    return JSONResponse({"error": str(exc)}, status_code=exc.status_code)


async def _json_body(request: Request) -> dict | None:
    """Parse the request body; empty body is {}, invalid JSON is None."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _invalid_json() -> JSONResponse:
    return JSONResponse({"error": "Invalid JSON"}, status_code=400)


# ------------------------------------------------------------------
# Health
# ------------------------------------------------------------------

@router.get("/health")
def health():
    return {"status": "ok", "version": "1.0.0"}


# ------------------------------------------------------------------
# Single-company enrichment
# ------------------------------------------------------------------

@router.post("/companies/{company_id}/enrich-employees")
async def enrich_employees_api(
    request: Request, company_id: str, user: dict = Depends(get_org_context),
):
    """Enrich one company's employees via the global cache."""
    body = await _json_body(request)
    if body is None:
        return _invalid_json()

    try:
        result = await run_in_threadpool(
            enrich_company,
            request.state.org_id,
            company_id,
            EnrichmentFilters.from_dict(body.get("filters")),
            user_id=user["id"],
            force_refresh=bool(body.get("force_refresh", False)),
            fetch_all=bool(body.get("fetch_all", False)),
            save_filters_to_icp=bool(body.get("save_filters_to_icp", False)),
            icp_id=body.get("icp_id"),
        )
    except EnrichmentError as exc:
        return _error_response(exc)
    return result


@router.get("/companies/{company_id}/enrich-employees")
def enrichment_status_api(
    request: Request, company_id: str, user: dict = Depends(get_org_context),
):
    try:
        return company_enrichment_status(request.state.org_id, company_id)
    except EnrichmentError as exc:
        return _error_response(exc)


@router.post("/companies/{company_id}/enrich")
async def enrich_company_profile_api(
    request: Request, company_id: str, user: dict = Depends(get_org_context),
):
    """Fill company firmographics from the global cache or provider."""
    body = await _json_body(request)
    if body is None:
        return _invalid_json()
    try:
        return await run_in_threadpool(
            enrich_company_profile,
            request.state.org_id,
            company_id,
            force_refresh=bool(body.get("force_refresh", False)),
        )
    except EnrichmentError as exc:
        if isinstance(exc, ProviderError):
            return JSONResponse(
                {"error": "Failed to enrich company", "details": str(exc)},
                status_code=exc.status_code,
            )
        return _error_response(exc)


# ------------------------------------------------------------------
# ICP quick enrich
# ------------------------------------------------------------------

@router.post("/icps/{icp_id}/quick-enrich")
async def quick_enrich_api(
    request: Request, icp_id: str, user: dict = Depends(get_org_context),
):
    """Bulk-enrich an ICP's companies (all, or the given company_ids)."""
    body = await _json_body(request)
    if body is None:
        return _invalid_json()
    try:
        return await run_in_threadpool(
            bulk_enrich,
            request.state.org_id,
            user_id=user["id"],
            company_ids=body.get("company_ids") or None,
            icp_id=icp_id,
            filters=EnrichmentFilters.from_dict(body.get("filters")),
            fetch_all=bool(body.get("fetch_all", False)),
            save_filters=bool(body.get("save_filters", True)),
            create_leads=bool(body.get("create_leads", False)),
        )
    except EnrichmentError as exc:
        return _error_response(exc)


@router.get("/icps/{icp_id}/quick-enrich")
def quick_enrich_overview_api(
    request: Request, icp_id: str, user: dict = Depends(get_org_context),
):
    try:
        return icp_enrichment_overview(request.state.org_id, icp_id)
    except EnrichmentError as exc:
        return _error_response(exc)


# ------------------------------------------------------------------
# Bulk enrich by company ids / lead companies
# ------------------------------------------------------------------

@router.post("/companies/enrich")
async def bulk_enrich_api(request: Request, user: dict = Depends(get_org_context)):
    """Bulk-enrich companies by id, or every company the org has leads at."""
    body = await _json_body(request)
    if body is None:
        return _invalid_json()
    try:
        return await run_in_threadpool(
            bulk_enrich,
            request.state.org_id,
            user_id=user["id"],
            company_ids=body.get("company_ids") or None,
            filters=EnrichmentFilters.from_dict(body.get("filters")),
            fetch_all=bool(body.get("fetch_all", False)),
            create_leads=bool(body.get("create_leads", False)),
        )
    except EnrichmentError as exc:
        return _error_response(exc)


@router.post("/companies/enrich/preview")
async def bulk_enrich_preview_api(request: Request, user: dict = Depends(get_org_context)):
    """Estimate new records and credits for a bulk run without charging."""
    body = await _json_body(request)
    if body is None:
        return _invalid_json()
    try:
        return await run_in_threadpool(
            preview_enrichment,
            request.state.org_id,
            company_ids=body.get("company_ids") or None,
            icp_id=body.get("icp_id"),
            filters=EnrichmentFilters.from_dict(body.get("filters")),
            fetch_all=bool(body.get("fetch_all", False)),
        )
    except EnrichmentError as exc:
        return _error_response(exc)


# ------------------------------------------------------------------
# Global cache
# ------------------------------------------------------------------

@router.get("/cache/{domain}")
def cache_status_api(domain: str, user: dict = Depends(get_org_context)):
    snapshot = check_employee_cache(domain)
    return {
        "domain": snapshot["domain"],
        **snapshot["status"].to_dict(),
        "cached_employees": len(snapshot["employees"]),
    }


@router.post("/cache/{domain}/refresh")
def cache_refresh_api(domain: str, user: dict = Depends(require_admin)):
    if not mark_cache_for_refresh(domain):
        return JSONResponse({"error": "Domain not in cache"}, status_code=404)
    return {"success": True, "domain": domain.lower()}


# ------------------------------------------------------------------
# Credits
# ------------------------------------------------------------------

@router.get("/credits")
def credits_api(request: Request, user: dict = Depends(get_org_context)):
    return get_credit_summary(request.state.org_id)


@router.patch("/credits")
async def update_plan_api(request: Request, user: dict = Depends(require_admin)):
    """Change the organization's plan (admin only)."""
    body = await _json_body(request)
    if body is None:
        return _invalid_json()
    plan_id = body.get("plan_id", "")
    try:
        summary = set_plan(request.state.org_id, plan_id)
    except ValueError:
        return JSONResponse({"error": "Invalid plan ID"}, status_code=400)
    return {"success": True, **summary}


@router.get("/credits/history")
def credit_history_api(
    request: Request,
    credit_type: str | None = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=500),
    user: dict = Depends(get_org_context),
):
    return {
        "history": get_credit_history(request.state.org_id, credit_type=credit_type, limit=limit),
        "transactions": list_enrichment_transactions(request.state.org_id, limit=limit),
    }


# ------------------------------------------------------------------
# Leads
# ------------------------------------------------------------------

@router.post("/employees/promote")
async def promote_employees_api(request: Request, user: dict = Depends(get_org_context)):
    """Create leads from enriched employees."""
    body = await _json_body(request)
    if body is None:
        return _invalid_json()
    employee_ids = body.get("employee_ids") or []
    if not employee_ids:
        return JSONResponse({"error": "employee_ids is required"}, status_code=400)

    icp_id = body.get("icp_id")
    with get_connection() as conn:
        if icp_id and not get_icp(conn, request.state.org_id, icp_id):
            return JSONResponse({"error": "ICP not found"}, status_code=404)
        lead_ids = promote_to_leads(
            conn, request.state.org_id, employee_ids,
            search_id=icp_id, created_by=user["id"],
        )
    return {"success": True, "leads_created": len(lead_ids), "lead_ids": lead_ids}
