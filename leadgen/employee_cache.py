"""Global employee cache: cache-first lookup with provider fallback.

Company employee lists are shared across all organizations. A domain is
served from the cache while it is fresh (fetched within its staleness
window); otherwise the configured provider is called and the results are
upserted back into the cache before being returned.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from . import config
from .cache_store import CacheStore, SQLiteCacheStore
from .enrichment_provider import PeopleSearchProvider, ProviderError, get_provider
from .models import (
    CacheState,
    CacheStatus,
    CompanyProfile,
    EnrichedPerson,
    EnrichmentFilters,
    FetchResult,
)
from .throttle import with_retry

log = logging.getLogger(__name__)

_default_store: CacheStore | None = None


def get_store() -> CacheStore:
    global _default_store
    if _default_store is None:
        _default_store = SQLiteCacheStore()
    return _default_store


def resolve_provider(provider: PeopleSearchProvider | None = None) -> PeopleSearchProvider:
    """Return *provider* or the configured registered provider."""
    if provider is not None:
        return provider
    # Importing the adapter registers it
    from . import apollo  # noqa: F401

    found = get_provider(config.ENRICHMENT_PROVIDER)
    if found is None:
        raise ProviderError(
            f"Enrichment provider '{config.ENRICHMENT_PROVIDER}' is not registered",
            retryable=False,
        )
    return found


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _stale_days(row: dict) -> int:
    # 0 is meaningful (forced refresh); only NULL falls back to the default
    days = row.get("stale_after_days")
    return config.DEFAULT_STALE_DAYS if days is None else int(days)


# ---------------------------------------------------------------------------
# Staleness
# ---------------------------------------------------------------------------

def is_employee_cache_stale(
    fetched_at: datetime,
    stale_days: int | None = None,
    now: datetime | None = None,
) -> bool:
    """True once *now* is strictly past ``fetched_at + stale_days``."""
    days = config.DEFAULT_STALE_DAYS if stale_days is None else stale_days
    now = now or datetime.now(timezone.utc)
    return now > fetched_at + timedelta(days=days)


def compute_cache_status(row: dict | None, now: datetime | None = None) -> CacheStatus:
    """Classify a global_companies row as UNFETCHED, FRESH or STALE."""
    if row is None:
        return CacheStatus(state=CacheState.UNFETCHED)

    fetched_at = _parse_ts(row.get("employees_last_fetched_at"))
    days = _stale_days(row)
    count = row.get("employees_count") or 0
    if fetched_at is None:
        return CacheStatus(
            state=CacheState.UNFETCHED,
            employees_count=count,
            stale_after_days=days,
            row_exists=True,
        )
    state = CacheState.STALE if is_employee_cache_stale(fetched_at, days, now) else CacheState.FRESH
    return CacheStatus(
        state=state,
        fetched_at=fetched_at,
        employees_count=count,
        stale_after_days=days,
        row_exists=True,
    )


# ---------------------------------------------------------------------------
# Read-only lookups
# ---------------------------------------------------------------------------

def get_cache_stats(
    domain: str,
    *,
    store: CacheStore | None = None,
    now: datetime | None = None,
) -> CacheStatus:
    """Cache status for a domain without touching the provider."""
    store = store or get_store()
    return compute_cache_status(store.get_company(domain.lower()), now)


def get_employees_from_cache(
    domain: str,
    filters: EnrichmentFilters | None = None,
    *,
    store: CacheStore | None = None,
) -> list[EnrichedPerson]:
    store = store or get_store()
    return store.find_employees(domain.lower(), filters)


def check_employee_cache(
    domain: str,
    *,
    store: CacheStore | None = None,
    now: datetime | None = None,
) -> dict:
    """Return the cache status for a domain plus its cached employees."""
    store = store or get_store()
    status = get_cache_stats(domain, store=store, now=now)
    employees = store.find_employees(domain.lower()) if status.exists else []
    return {
        "domain": domain.lower(),
        "cache_hit": status.is_fresh,
        "status": status,
        "employees": employees,
    }


def mark_cache_for_refresh(domain: str, *, store: CacheStore | None = None) -> bool:
    """Force the next lookup for *domain* to go to the provider."""
    store = store or get_store()
    marked = store.mark_for_refresh(domain.lower())
    if marked:
        log.info("Marked %s for refresh", domain.lower())
    return marked


def get_global_cache_totals(*, store: CacheStore | None = None) -> dict:
    return (store or get_store()).totals()


# ---------------------------------------------------------------------------
# Cache-or-fetch
# ---------------------------------------------------------------------------

def fetch_and_cache_employees(
    domain: str,
    company_name: str,
    company_linkedin_url: str | None = None,
    filters: EnrichmentFilters | None = None,
    fetch_all: bool = False,
    *,
    provider: PeopleSearchProvider | None = None,
    store: CacheStore | None = None,
) -> list[EnrichedPerson]:
    """Call the provider for *domain* and write the results to the cache.

    An unfiltered fetch sets the company's employee count; a filtered one
    only refreshes the fetch timestamp so the full count is not replaced by
    a subset size.
    """
    provider = resolve_provider(provider)
    store = store or get_store()
    domain = domain.lower()
    filtered = bool(filters and filters.has_filters)

    log.info(
        "Fetching employees for %s from %s (filtered=%s, fetch_all=%s)",
        domain, provider.name, filtered, fetch_all,
    )
    people = with_retry(lambda: provider.search_people_at_company(
        domain,
        titles=filters.titles if filtered else None,
        seniorities=filters.seniorities if filtered else None,
        max_pages=config.APOLLO_MAX_PAGES,
        fetch_all=fetch_all,
    ))

    fetched_at = datetime.now(timezone.utc).isoformat()
    cached = store.upsert_employees(
        domain,
        people,
        company_name=company_name,
        company_linkedin_url=company_linkedin_url,
        fetched_at=fetched_at,
    )
    store.record_fetch(
        domain,
        name=company_name,
        linkedin_url=company_linkedin_url,
        employees_count=None if filtered else len(cached),
        fetched_at=fetched_at,
        source=provider.name,
    )
    log.info("Cached %d employees for %s", len(cached), domain)
    return cached


def get_or_fetch_employees(
    domain: str,
    company_name: str,
    company_linkedin_url: str | None = None,
    filters: EnrichmentFilters | None = None,
    force_refresh: bool = False,
    fetch_all: bool = False,
    *,
    provider: PeopleSearchProvider | None = None,
    store: CacheStore | None = None,
    now: datetime | None = None,
) -> FetchResult:
    """Return employees for *domain*, from cache when fresh, else from the provider.

    With filters on a fresh domain, cached matches are returned if any
    exist; no match falls through to a filtered provider call. Without
    filters a fresh domain is always a cache hit, including one cached with
    zero employees.
    """
    store = store or get_store()
    domain = domain.lower()
    status = compute_cache_status(store.get_company(domain), now)
    filtered = bool(filters and filters.has_filters)

    if status.is_fresh and not force_refresh:
        if filtered:
            matches = store.find_employees(domain, filters)
            if matches:
                log.info("Cache hit for %s: %d filtered employees", domain, len(matches))
                return FetchResult(employees=matches, cache_hit=True, total_available=len(matches))
            log.info("No cached matches for %s with filters; fetching", domain)
        else:
            employees = store.find_employees(domain)
            log.info("Cache hit for %s: %d employees", domain, len(employees))
            return FetchResult(employees=employees, cache_hit=True, total_available=len(employees))
    else:
        log.info("Cache %s for %s (force_refresh=%s)", status.state.value, domain, force_refresh)

    employees = fetch_and_cache_employees(
        domain,
        company_name,
        company_linkedin_url,
        filters if filtered else None,
        fetch_all,
        provider=provider,
        store=store,
    )
    return FetchResult(
        employees=employees,
        cache_hit=False,
        total_available=len(employees),
        provider_calls=1,
    )


# ---------------------------------------------------------------------------
# Company profile
# ---------------------------------------------------------------------------

def get_or_fetch_company_profile(
    domain: str,
    force_refresh: bool = False,
    *,
    provider: PeopleSearchProvider | None = None,
    store: CacheStore | None = None,
) -> tuple[CompanyProfile | None, bool]:
    """Return (profile, cache_hit) for a domain's firmographic data."""
    store = store or get_store()
    domain = domain.lower()
    row = store.get_company(domain)
    if row and row.get("profile_fetched_at") and not force_refresh:
        return CompanyProfile.from_row(row), True

    provider = resolve_provider(provider)
    profile = with_retry(lambda: provider.enrich_organization(domain))
    if profile is None:
        return None, False
    profile.domain = domain
    store.save_company_profile(profile, source=provider.name)
    return CompanyProfile.from_row(store.get_company(domain)), False
