"""Enrichment orchestration: single-company, bulk, and preview runs.

Each company is processed as: global cache lookup (possibly a provider
fetch), then one write transaction holding the credit check, the copy into
the organization's tables, and the credit deduction. Bulk runs handle
companies one at a time and keep going when a company fails.
"""

from __future__ import annotations

import logging
import time

from . import config
from .cache_store import CacheStore
from .credits import (
    TX_BULK_ENRICH,
    TX_COMPANY_ENRICH,
    TX_LEADS_COMPANY_ENRICH,
    get_remaining_credits,
    log_enrichment_transaction,
    record_usage,
    require_credits,
)
from .database import get_connection, write_transaction
from .employee_cache import (
    get_cache_stats,
    get_or_fetch_company_profile,
    get_or_fetch_employees,
)
from .enrichment_provider import PeopleSearchProvider
from .errors import EnrichmentError, MissingPrerequisiteError, NotFoundError
from .materializer import count_new_employees, materialize_employees, promote_to_leads
from .models import EnrichmentFilters, FetchResult
from .records import (
    apply_company_profile,
    count_company_employees,
    get_companies,
    get_company,
    get_icp,
    get_saved_enrichment_filters,
    list_icp_companies,
    list_lead_companies,
    mark_company_enriched,
    save_enrichment_filters,
)

log = logging.getLogger(__name__)

NO_DOMAIN_REASON = "No domain available"


def _filters_or_none(filters: EnrichmentFilters | None) -> EnrichmentFilters | None:
    return filters if filters and filters.has_filters else None


def _load_company(org_id: str, company_id: str) -> dict:
    with get_connection() as conn:
        company = get_company(conn, org_id, company_id)
    if not company:
        raise NotFoundError("Company not found")
    return company


def _resolve_targets(
    org_id: str,
    company_ids: list[str] | None,
    icp_id: str | None,
) -> tuple[list[dict], dict | None]:
    """Return the companies a bulk or preview run should cover, plus the ICP."""
    with get_connection() as conn:
        icp = None
        if icp_id:
            icp = get_icp(conn, org_id, icp_id)
            if not icp:
                raise NotFoundError("ICP not found")
            if company_ids:
                companies = [
                    c for c in get_companies(conn, org_id, company_ids)
                    if c["search_id"] == icp_id
                ]
            else:
                companies = list_icp_companies(conn, org_id, icp_id)
        elif company_ids:
            companies = get_companies(conn, org_id, company_ids)
        else:
            companies = list_lead_companies(conn, org_id)
    return companies, icp


def _materialize_for_company(
    org_id: str,
    company: dict,
    fetch: FetchResult,
    *,
    user_id: str | None,
    transaction_type: str,
    search_id: str | None,
    filters: EnrichmentFilters | None,
    fetch_all: bool,
    create_leads: bool = False,
    log_company_transaction: bool = False,
    icp_to_update: str | None = None,
) -> dict:
    """Credit check, copy, and deduction for one company in one transaction."""
    with write_transaction() as conn:
        new_count, _ = count_new_employees(conn, org_id, company["id"], fetch.employees)
        require_credits(conn, org_id, new_count, user_id)

        extra = {"fetch_all": fetch_all}
        if search_id:
            extra["icp_id"] = search_id
        mat = materialize_employees(
            conn, org_id, company["id"], fetch.employees,
            cache_hit=fetch.cache_hit, extra_metadata=extra,
        )
        tx_metadata = {
            "filters": filters.to_dict() if filters else None,
            "source_company_domain": company["domain"],
            "global_employee_ids": mat.global_employee_ids,
        }
        balance = record_usage(
            conn, org_id, mat.created,
            user_id=user_id,
            transaction_type=transaction_type,
            description=f"Enrichment credit usage for company {company['name']}",
            search_id=search_id,
            company_id=company["id"],
            metadata=tx_metadata,
        )

        lead_ids: list[str] = []
        if create_leads:
            # records the org already had are promoted too
            to_promote = mat.employee_ids + mat.existing_ids
            lead_ids = promote_to_leads(
                conn, org_id, to_promote, search_id=search_id, created_by=user_id,
            )

        if log_company_transaction:
            log_enrichment_transaction(
                conn, org_id, transaction_type,
                user_id=user_id,
                credits_used=mat.created,
                company_id=company["id"],
                search_id=search_id,
                employee_count=mat.created,
                cache_hit=fetch.cache_hit,
                provider_calls_made=fetch.provider_calls,
                metadata=tx_metadata,
            )

        if icp_to_update and filters:
            save_enrichment_filters(conn, icp_to_update, filters)

        mark_company_enriched(conn, company["id"])

    return {
        "company_id": company["id"],
        "company_name": company["name"],
        "domain": company["domain"],
        "employees_found": len(fetch.employees),
        "employees_created": mat.created,
        "duplicates_skipped": mat.skipped,
        "leads_created": len(lead_ids),
        "credits_used": mat.created,
        "credits_remaining": balance,
        "cache_hit": fetch.cache_hit,
        "total_available": fetch.total_available,
        "error": None,
    }


# ---------------------------------------------------------------------------
# Single company
# ---------------------------------------------------------------------------

def enrich_company(
    org_id: str,
    company_id: str,
    filters: EnrichmentFilters | None = None,
    *,
    user_id: str | None = None,
    force_refresh: bool = False,
    fetch_all: bool = False,
    save_filters_to_icp: bool = False,
    icp_id: str | None = None,
    provider: PeopleSearchProvider | None = None,
    store: CacheStore | None = None,
) -> dict:
    """Enrich one company's employees into the organization.

    Raises NotFoundError, MissingPrerequisiteError, InsufficientCreditsError
    or ProviderError; nothing is written to the org on failure.
    """
    filters = _filters_or_none(filters)
    company = _load_company(org_id, company_id)
    if not company["domain"]:
        raise MissingPrerequisiteError(
            "Company domain is required for employee enrichment. "
            "Please enrich the company first."
        )

    icp_to_update = None
    if save_filters_to_icp and icp_id and filters:
        with get_connection() as conn:
            if get_icp(conn, org_id, icp_id):
                icp_to_update = icp_id

    fetch = get_or_fetch_employees(
        company["domain"],
        company["name"],
        company["linkedin_url"],
        filters,
        force_refresh=force_refresh,
        fetch_all=fetch_all,
        provider=provider,
        store=store,
    )
    result = _materialize_for_company(
        org_id, company, fetch,
        user_id=user_id,
        transaction_type=TX_COMPANY_ENRICH,
        search_id=icp_id or company["search_id"],
        filters=filters,
        fetch_all=fetch_all,
        log_company_transaction=True,
        icp_to_update=icp_to_update,
    )
    log.info(
        "Enriched %s: %d found, %d created (cache hit: %s)",
        company["name"], result["employees_found"], result["employees_created"],
        result["cache_hit"],
    )
    result["success"] = True
    result["filters"] = filters.to_dict() if filters else None
    return result


def company_enrichment_status(
    org_id: str,
    company_id: str,
    *,
    store: CacheStore | None = None,
) -> dict:
    """Cache status of a company's domain plus how many employees the org holds."""
    company = _load_company(org_id, company_id)
    with get_connection() as conn:
        org_count = count_company_employees(conn, company_id)
    if not company["domain"]:
        return {
            "has_domain": False,
            "cache_exists": False,
            "employees_in_cache": 0,
            "is_stale": False,
            "last_fetched_at": None,
            "employees_in_org": org_count,
            "is_enriched": bool(company["is_enriched"]),
        }
    stats = get_cache_stats(company["domain"], store=store).to_dict()
    return {
        "has_domain": True,
        "domain": company["domain"],
        "cache_exists": stats["exists"],
        "employees_in_cache": stats["employees_count"],
        "is_stale": stats["is_stale"],
        "last_fetched_at": stats["last_fetched_at"],
        "employees_in_org": org_count,
        "is_enriched": bool(company["is_enriched"]),
    }


def enrich_company_profile(
    org_id: str,
    company_id: str,
    *,
    force_refresh: bool = False,
    provider: PeopleSearchProvider | None = None,
    store: CacheStore | None = None,
) -> dict:
    """Fill a company's firmographics from the global cache or provider."""
    company = _load_company(org_id, company_id)
    if not company["domain"]:
        raise MissingPrerequisiteError("Company domain is required for company enrichment")

    profile, cache_hit = get_or_fetch_company_profile(
        company["domain"], force_refresh, provider=provider, store=store,
    )
    if profile is None:
        raise NotFoundError(f"No company data found for {company['domain']}")

    with get_connection() as conn:
        apply_company_profile(conn, company_id, profile)
        updated = get_company(conn, org_id, company_id)
    return {"success": True, "cache_hit": cache_hit, "company": updated}


# ---------------------------------------------------------------------------
# Bulk
# ---------------------------------------------------------------------------

def bulk_enrich(
    org_id: str,
    *,
    user_id: str | None = None,
    company_ids: list[str] | None = None,
    icp_id: str | None = None,
    filters: EnrichmentFilters | None = None,
    fetch_all: bool = False,
    save_filters: bool = False,
    create_leads: bool = False,
    provider: PeopleSearchProvider | None = None,
    store: CacheStore | None = None,
) -> dict:
    """Enrich many companies in sequence, isolating per-company failures.

    Targets are *company_ids*, else every company in *icp_id*, else every
    company referenced by the organization's leads.
    """
    filters = _filters_or_none(filters)
    companies, icp = _resolve_targets(org_id, company_ids, icp_id)
    if not companies:
        raise MissingPrerequisiteError("No companies found to enrich")

    transaction_type = TX_BULK_ENRICH if icp else TX_LEADS_COMPANY_ENRICH
    with_domain = [c for c in companies if c["domain"]]
    without_domain = [c for c in companies if not c["domain"]]

    log.info(
        "Bulk enrich for org %s: %d companies (%d without domain), fetch_all=%s",
        org_id, len(companies), len(without_domain), fetch_all,
    )

    results: list[dict] = []
    errors: list[str] = []
    totals = {
        "employees_found": 0,
        "employees_created": 0,
        "leads_created": 0,
        "credits_used": 0,
        "cache_hits": 0,
        "provider_fetches": 0,
    }

    for index, company in enumerate(with_domain):
        if index and config.BULK_COMPANY_DELAY > 0:
            time.sleep(config.BULK_COMPANY_DELAY)
        fetch = None
        try:
            fetch = get_or_fetch_employees(
                company["domain"],
                company["name"],
                company["linkedin_url"],
                filters,
                fetch_all=fetch_all,
                provider=provider,
                store=store,
            )
            if fetch.cache_hit:
                totals["cache_hits"] += 1
            totals["provider_fetches"] += fetch.provider_calls

            result = _materialize_for_company(
                org_id, company, fetch,
                user_id=user_id,
                transaction_type=transaction_type,
                search_id=icp_id or company["search_id"],
                filters=filters,
                fetch_all=fetch_all,
                create_leads=create_leads,
            )
        except Exception as exc:
            if isinstance(exc, EnrichmentError):
                log.warning("Enrichment failed for %s: %s", company["name"], exc)
            else:
                log.exception("Unexpected error enriching %s", company["name"])
            errors.append(f"{company['name']}: {exc}")
            results.append({
                "company_id": company["id"],
                "company_name": company["name"],
                "domain": company["domain"],
                "employees_found": len(fetch.employees) if fetch else 0,
                "employees_created": 0,
                "leads_created": 0,
                "credits_used": 0,
                "cache_hit": fetch.cache_hit if fetch else False,
                "error": str(exc),
            })
            continue

        results.append(result)
        totals["employees_found"] += result["employees_found"]
        totals["employees_created"] += result["employees_created"]
        totals["leads_created"] += result["leads_created"]
        totals["credits_used"] += result["credits_used"]

    with get_connection() as conn:
        log_enrichment_transaction(
            conn, org_id, transaction_type,
            user_id=user_id,
            credits_used=totals["credits_used"],
            search_id=icp_id,
            employee_count=totals["employees_created"],
            cache_hit=bool(with_domain) and totals["cache_hits"] == len(with_domain),
            provider_calls_made=totals["provider_fetches"],
            metadata={
                "filters": filters.to_dict() if filters else None,
                "fetch_all": fetch_all,
                "company_ids": [c["id"] for c in with_domain],
                "companies_processed": len(with_domain),
                "cache_hits": totals["cache_hits"],
                "errors": len(errors),
            },
        )
        if save_filters and icp and filters:
            save_enrichment_filters(conn, icp["id"], filters)

    log.info(
        "Bulk enrich complete: %d employees, %d credits, %d cache hits, %d provider fetches",
        totals["employees_created"], totals["credits_used"],
        totals["cache_hits"], totals["provider_fetches"],
    )
    return {
        "success": True,
        "companies_processed": len(with_domain),
        "companies_skipped": len(without_domain),
        "total_employees_found": totals["employees_found"],
        "total_employees_created": totals["employees_created"],
        "total_leads_created": totals["leads_created"],
        "total_credits_used": totals["credits_used"],
        "cache_hits": totals["cache_hits"],
        "provider_fetches": totals["provider_fetches"],
        "results": results,
        "errors": errors,
        "skipped_companies": [
            {"id": c["id"], "name": c["name"], "reason": NO_DOMAIN_REASON}
            for c in without_domain
        ],
    }


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------

def _preview_row(company: dict, **values) -> dict:
    row = {
        "company_id": company["id"],
        "company_name": company["name"],
        "domain": company["domain"],
        "has_domain": bool(company["domain"]),
        "total_available": 0,
        "matching_employees": 0,
        "already_in_org": 0,
        "new_employees_to_add": 0,
        "cache_hit": False,
        "error": None,
    }
    row.update(values)
    return row


def preview_enrichment(
    org_id: str,
    *,
    company_ids: list[str] | None = None,
    icp_id: str | None = None,
    filters: EnrichmentFilters | None = None,
    fetch_all: bool = False,
    provider: PeopleSearchProvider | None = None,
    store: CacheStore | None = None,
) -> dict:
    """Estimate what a bulk run would add and cost, without charging credits.

    The global cache may be populated as a side effect; organization
    tables and the credit ledger are not touched.
    """
    filters = _filters_or_none(filters)
    companies, _ = _resolve_targets(org_id, company_ids, icp_id)

    rows: list[dict] = []
    with_domain = [c for c in companies if c["domain"]]
    for index, company in enumerate(with_domain):
        if index and config.PREVIEW_COMPANY_DELAY > 0:
            time.sleep(config.PREVIEW_COMPANY_DELAY)
        try:
            fetch = get_or_fetch_employees(
                company["domain"],
                company["name"],
                company["linkedin_url"],
                filters,
                fetch_all=fetch_all,
                provider=provider,
                store=store,
            )
            with get_connection() as conn:
                new_count, existing = count_new_employees(
                    conn, org_id, company["id"], fetch.employees,
                )
        except Exception as exc:
            if isinstance(exc, EnrichmentError):
                log.warning("Preview failed for %s: %s", company["name"], exc)
            else:
                log.exception("Unexpected error previewing %s", company["name"])
            rows.append(_preview_row(company, error=str(exc)))
            continue
        rows.append(_preview_row(
            company,
            total_available=fetch.total_available,
            matching_employees=len(fetch.employees),
            already_in_org=existing,
            new_employees_to_add=new_count,
            cache_hit=fetch.cache_hit,
        ))

    rows.sort(key=lambda r: (r["new_employees_to_add"] == 0, -r["new_employees_to_add"]))
    rows.extend(
        _preview_row(c, error=NO_DOMAIN_REASON) for c in companies if not c["domain"]
    )

    total_matching = sum(r["matching_employees"] for r in rows)
    total_new = sum(r["new_employees_to_add"] for r in rows)
    with_matches = sum(1 for r in rows if r["matching_employees"] > 0)
    with get_connection() as conn:
        remaining = get_remaining_credits(conn, org_id)

    return {
        "companies": rows,
        "totals": {
            "total_companies": len(companies),
            "companies_with_domains": len(with_domain),
            "companies_without_domains": len(companies) - len(with_domain),
            "companies_with_matches": with_matches,
            "companies_without_matches": len(with_domain) - with_matches,
            "total_matching_employees": total_matching,
            "total_new_employees": total_new,
            "total_credits_required": total_new,
        },
        "credits_remaining": remaining,
        "has_enough_credits": remaining >= total_new,
        "filters": filters.to_dict() if filters else None,
    }


def icp_enrichment_overview(
    org_id: str,
    icp_id: str,
    *,
    store: CacheStore | None = None,
) -> dict:
    """Company counts, cache coverage sample, credits, and saved filters for an ICP."""
    with get_connection() as conn:
        icp = get_icp(conn, org_id, icp_id)
        if not icp:
            raise NotFoundError("ICP not found")
        companies = list_icp_companies(conn, org_id, icp_id)
        remaining = get_remaining_credits(conn, org_id)

    with_domain = [c for c in companies if c["domain"]]
    enriched = [c for c in companies if c["is_enriched"]]
    unenriched = [c for c in with_domain if not c["is_enriched"]]

    sample = unenriched[:config.QUICK_ENRICH_PREVIEW_SIZE]
    in_cache = cached_employees = 0
    for company in sample:
        stats = get_cache_stats(company["domain"], store=store)
        if stats.exists:
            in_cache += 1
            cached_employees += stats.employees_count

    saved = get_saved_enrichment_filters(icp)
    return {
        "icp_name": icp["name"],
        "total_companies": len(companies),
        "companies_with_domains": len(with_domain),
        "companies_without_domains": len(companies) - len(with_domain),
        "enriched_companies": len(enriched),
        "unenriched_companies": len(unenriched),
        "cache_preview": {
            "companies_checked": len(sample),
            "companies_in_cache": in_cache,
            "total_cached_employees": cached_employees,
        },
        "credits_remaining": remaining,
        "saved_filters": saved.to_dict() if saved else None,
    }
