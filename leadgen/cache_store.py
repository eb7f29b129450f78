"""Platform-wide employee cache storage (global_companies / global_employees)."""

from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from .database import get_connection
from .models import CompanyProfile, EnrichedPerson, EnrichmentFilters

log = logging.getLogger(__name__)

# Seniority levels -> values found in cached rows
SENIORITY_ALIASES = {
    "c_suite": ["c_suite", "founder", "owner"],
    "vp": ["vp", "vice_president"],
    "director": ["director"],
    "manager": ["manager"],
    "senior": ["senior"],
    "entry": ["entry", "intern"],
}


def expand_seniorities(seniorities: list[str]) -> list[str]:
    out: list[str] = []
    for level in seniorities:
        for value in SENIORITY_ALIASES.get(level.lower(), [level.lower()]):
            if value not in out:
                out.append(value)
    return out


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CacheStore(ABC):
    """Storage capability used by the global cache manager."""

    @abstractmethod
    def get_company(self, domain: str) -> dict | None:
        """Return the global_companies row for *domain*, or None."""
        ...

    @abstractmethod
    def record_fetch(
        self,
        domain: str,
        *,
        name: str,
        linkedin_url: str | None = None,
        employees_count: int | None = None,
        fetched_at: str | None = None,
        source: str = "apollo",
    ) -> None:
        """Upsert the company row after a provider fetch.

        With ``employees_count`` None only the timestamp and metadata move;
        a new row starts at 0.
        """
        ...

    @abstractmethod
    def upsert_employees(
        self,
        domain: str,
        people: list[EnrichedPerson],
        *,
        company_name: str = "",
        company_linkedin_url: str | None = None,
        fetched_at: str | None = None,
    ) -> list[EnrichedPerson]:
        """Upsert people keyed by provider id; returns them with cache ids set."""
        ...

    @abstractmethod
    def find_employees(
        self, domain: str, filters: EnrichmentFilters | None = None,
    ) -> list[EnrichedPerson]:
        ...

    @abstractmethod
    def save_company_profile(self, profile: CompanyProfile, source: str = "apollo") -> None:
        ...

    @abstractmethod
    def mark_for_refresh(self, domain: str) -> bool:
        ...

    @abstractmethod
    def totals(self) -> dict:
        ...


class SQLiteCacheStore(CacheStore):
    """CacheStore backed by the application SQLite database.

    Every write is a single upsert statement (or one short transaction), so
    concurrent writers for the same domain or provider id converge instead
    of duplicating rows.
    """

    def get_company(self, domain: str) -> dict | None:
        with get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM global_companies WHERE domain = ?", (domain.lower(),)
            ).fetchone()
        return dict(row) if row else None

    def record_fetch(
        self,
        domain: str,
        *,
        name: str,
        linkedin_url: str | None = None,
        employees_count: int | None = None,
        fetched_at: str | None = None,
        source: str = "apollo",
    ) -> None:
        now = _now_iso()
        params = {
            "id": str(uuid.uuid4()),
            "domain": domain.lower(),
            "name": name,
            "linkedin_url": linkedin_url,
            "employees_count": employees_count if employees_count is not None else 0,
            "fetched_at": fetched_at or now,
            "source": source,
            "now": now,
        }
        if employees_count is not None:
            count_sql = "employees_count = excluded.employees_count, "
        else:
            count_sql = ""
        with get_connection() as conn:
            conn.execute(
                "INSERT INTO global_companies "
                "(id, domain, name, linkedin_url, employees_count, "
                "employees_last_fetched_at, enrichment_source, created_at, updated_at) "
                "VALUES (:id, :domain, :name, :linkedin_url, :employees_count, "
                ":fetched_at, :source, :now, :now) "
                "ON CONFLICT(domain) DO UPDATE SET "
                "name = COALESCE(NULLIF(excluded.name, ''), global_companies.name), "
                "linkedin_url = COALESCE(excluded.linkedin_url, global_companies.linkedin_url), "
                + count_sql +
                "employees_last_fetched_at = excluded.employees_last_fetched_at, "
                # a refetch clears forced staleness from mark_for_refresh()
                "stale_after_days = NULL, "
                "enrichment_source = excluded.enrichment_source, "
                "updated_at = excluded.updated_at",
                params,
            )

    def upsert_employees(
        self,
        domain: str,
        people: list[EnrichedPerson],
        *,
        company_name: str = "",
        company_linkedin_url: str | None = None,
        fetched_at: str | None = None,
    ) -> list[EnrichedPerson]:
        stamp = fetched_at or _now_iso()
        rows = [
            p.to_row(
                domain,
                company_name=company_name,
                company_linkedin_url=company_linkedin_url,
                fetched_at=stamp,
            )
            for p in people
            if p.apollo_id
        ]
        if not rows:
            return []

        with get_connection() as conn:
            conn.executemany(
                "INSERT INTO global_employees "
                "(id, apollo_id, company_domain, company_name, company_linkedin_url, "
                "first_name, last_name, email, phone, job_title, linkedin_url, location, "
                "seniority, department, metadata, fetched_at, created_at, updated_at) "
                "VALUES (:id, :apollo_id, :company_domain, :company_name, "
                ":company_linkedin_url, :first_name, :last_name, :email, :phone, "
                ":job_title, :linkedin_url, :location, :seniority, :department, "
                ":metadata, :fetched_at, :created_at, :updated_at) "
                "ON CONFLICT(apollo_id) DO UPDATE SET "
                # people who changed employer move to the new domain
                "company_domain = excluded.company_domain, "
                "company_name = excluded.company_name, "
                "company_linkedin_url = excluded.company_linkedin_url, "
                "email = excluded.email, "
                "phone = excluded.phone, "
                "job_title = excluded.job_title, "
                "location = excluded.location, "
                "seniority = excluded.seniority, "
                "department = excluded.department, "
                "metadata = excluded.metadata, "
                "fetched_at = excluded.fetched_at, "
                "updated_at = excluded.updated_at",
                rows,
            )
            apollo_ids = [r["apollo_id"] for r in rows]
            placeholders = ",".join("?" * len(apollo_ids))
            stored = conn.execute(
                f"SELECT * FROM global_employees WHERE apollo_id IN ({placeholders})",
                apollo_ids,
            ).fetchall()

        by_apollo = {r["apollo_id"]: EnrichedPerson.from_row(r) for r in stored}
        return [by_apollo[a] for a in dict.fromkeys(apollo_ids) if a in by_apollo]

    def find_employees(
        self, domain: str, filters: EnrichmentFilters | None = None,
    ) -> list[EnrichedPerson]:
        clauses = ["company_domain = ?"]
        params: list = [domain.lower()]
        if filters and filters.titles:
            clauses.append(
                "(" + " OR ".join(["instr(lower(job_title), lower(?)) > 0"] * len(filters.titles)) + ")"
            )
            params.extend(filters.titles)
        if filters and filters.seniorities:
            values = expand_seniorities(filters.seniorities)
            clauses.append(f"lower(seniority) IN ({','.join('?' * len(values))})")
            params.extend(values)

        sql = (
            "SELECT * FROM global_employees WHERE " + " AND ".join(clauses)
            + " ORDER BY last_name, first_name"
        )
        with get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [EnrichedPerson.from_row(r) for r in rows]

    def save_company_profile(self, profile: CompanyProfile, source: str = "apollo") -> None:
        now = _now_iso()
        domain = profile.domain.lower()
        with get_connection() as conn:
            existing = conn.execute(
                "SELECT metadata FROM global_companies WHERE domain = ?", (domain,)
            ).fetchone()
            metadata = {}
            if existing and existing["metadata"]:
                metadata = json.loads(existing["metadata"])
            metadata.update({k: v for k, v in profile.extra.items() if v not in (None, [], "")})
            conn.execute(
                "INSERT INTO global_companies "
                "(id, domain, name, linkedin_url, website_url, industry, size, location, "
                "description, logo_url, enrichment_source, profile_fetched_at, metadata, "
                "created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(domain) DO UPDATE SET "
                "name = COALESCE(NULLIF(excluded.name, ''), global_companies.name), "
                "linkedin_url = COALESCE(excluded.linkedin_url, global_companies.linkedin_url), "
                "website_url = COALESCE(excluded.website_url, global_companies.website_url), "
                "industry = COALESCE(excluded.industry, global_companies.industry), "
                "size = COALESCE(excluded.size, global_companies.size), "
                "location = COALESCE(excluded.location, global_companies.location), "
                "description = COALESCE(excluded.description, global_companies.description), "
                "logo_url = COALESCE(excluded.logo_url, global_companies.logo_url), "
                "profile_fetched_at = excluded.profile_fetched_at, "
                "metadata = excluded.metadata, "
                "updated_at = excluded.updated_at",
                (
                    str(uuid.uuid4()), domain, profile.name, profile.linkedin_url,
                    profile.website_url, profile.industry, profile.size, profile.location,
                    profile.description, profile.logo_url, source, now,
                    json.dumps(metadata), now, now,
                ),
            )

    def mark_for_refresh(self, domain: str) -> bool:
        with get_connection() as conn:
            cur = conn.execute(
                "UPDATE global_companies SET stale_after_days = 0, updated_at = ? "
                "WHERE domain = ?",
                (_now_iso(), domain.lower()),
            )
        return cur.rowcount > 0

    def totals(self) -> dict:
        with get_connection() as conn:
            companies = conn.execute("SELECT COUNT(*) FROM global_companies").fetchone()[0]
            fetched = conn.execute(
                "SELECT COUNT(*) FROM global_companies "
                "WHERE employees_last_fetched_at IS NOT NULL"
            ).fetchone()[0]
            employees = conn.execute("SELECT COUNT(*) FROM global_employees").fetchone()[0]
        return {
            "companies": companies,
            "companies_with_employees": fetched,
            "employees": employees,
        }
