"""Data models for the contact-enrichment engine."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_json(value) -> dict:
    if not value:
        return {}
    if isinstance(value, dict):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return {}


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

@dataclass
class EnrichmentFilters:
    """Decision-maker filters: job-title substrings and seniority levels."""

    titles: list[str] = field(default_factory=list)
    seniorities: list[str] = field(default_factory=list)

    @property
    def has_filters(self) -> bool:
        return bool(self.titles or self.seniorities)

    def to_dict(self) -> dict:
        return {"titles": list(self.titles), "seniorities": list(self.seniorities)}

    @classmethod
    def from_dict(cls, data: dict | None) -> EnrichmentFilters:
        """Build from a request body or stored JSON; blank entries are dropped."""
        if not data:
            return cls()
        titles = [t.strip() for t in data.get("titles") or [] if t and t.strip()]
        seniorities = [
            s.strip().lower() for s in data.get("seniorities") or [] if s and s.strip()
        ]
        return cls(titles=titles, seniorities=seniorities)


# ---------------------------------------------------------------------------
# Provider payloads
# ---------------------------------------------------------------------------

@dataclass
class EnrichedPerson:
    """A person returned by the people-search provider or read from cache."""

    apollo_id: str | None
    first_name: str
    last_name: str
    email: str | None = None
    phone: str | None = None
    job_title: str | None = None
    linkedin_url: str | None = None
    location: str | None = None
    seniority: str | None = None
    department: str | None = None
    departments: list[str] = field(default_factory=list)
    global_id: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_row(
        self,
        company_domain: str,
        *,
        company_name: str = "",
        company_linkedin_url: str | None = None,
        fetched_at: str | None = None,
    ) -> dict:
        """Serialize to a dict suitable for upsert into global_employees."""
        now = fetched_at or _now_iso()
        return {
            "id": self.global_id or str(uuid.uuid4()),
            "apollo_id": self.apollo_id,
            "company_domain": company_domain.lower(),
            "company_name": company_name,
            "company_linkedin_url": company_linkedin_url,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "job_title": self.job_title,
            "linkedin_url": self.linkedin_url,
            "location": self.location,
            "seniority": self.seniority,
            "department": self.department,
            "metadata": json.dumps({"departments": self.departments}),
            "fetched_at": now,
            "created_at": now,
            "updated_at": now,
        }

    @classmethod
    def from_row(cls, row) -> EnrichedPerson:
        """Construct from a global_employees sqlite3.Row or dict."""
        r = dict(row)
        meta = _load_json(r.get("metadata"))
        return cls(
            apollo_id=r["apollo_id"],
            first_name=r["first_name"],
            last_name=r["last_name"],
            email=r.get("email"),
            phone=r.get("phone"),
            job_title=r.get("job_title"),
            linkedin_url=r.get("linkedin_url"),
            location=r.get("location"),
            seniority=r.get("seniority"),
            department=r.get("department"),
            departments=list(meta.get("departments") or []),
            global_id=r.get("id"),
        )


@dataclass
class CompanyProfile:
    """Firmographic data for a company domain."""

    domain: str
    name: str = ""
    linkedin_url: str | None = None
    website_url: str | None = None
    industry: str | None = None
    size: str | None = None
    location: str | None = None
    description: str | None = None
    logo_url: str | None = None
    estimated_employees: int | None = None
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "name": self.name,
            "linkedin_url": self.linkedin_url,
            "website_url": self.website_url,
            "industry": self.industry,
            "size": self.size,
            "location": self.location,
            "description": self.description,
            "logo_url": self.logo_url,
            "estimated_employees": self.estimated_employees,
        }

    @classmethod
    def from_row(cls, row) -> CompanyProfile:
        """Construct from a global_companies sqlite3.Row or dict."""
        r = dict(row)
        return cls(
            domain=r["domain"],
            name=r.get("name") or "",
            linkedin_url=r.get("linkedin_url"),
            website_url=r.get("website_url"),
            industry=r.get("industry"),
            size=r.get("size"),
            location=r.get("location"),
            description=r.get("description"),
            logo_url=r.get("logo_url"),
            extra=_load_json(r.get("metadata")),
        )


# ---------------------------------------------------------------------------
# Cache state
# ---------------------------------------------------------------------------

class CacheState(Enum):
    UNFETCHED = "unfetched"
    FRESH = "fresh"
    STALE = "stale"


@dataclass
class CacheStatus:
    """Freshness of one domain in the global cache, computed once per call."""

    state: CacheState
    fetched_at: datetime | None = None
    employees_count: int = 0
    stale_after_days: int | None = None
    row_exists: bool = False

    @property
    def exists(self) -> bool:
        return self.row_exists

    @property
    def is_fresh(self) -> bool:
        return self.state is CacheState.FRESH

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "exists": self.exists,
            "employees_count": self.employees_count,
            "last_fetched_at": self.fetched_at.isoformat() if self.fetched_at else None,
            "is_stale": self.row_exists and self.state is not CacheState.FRESH,
            "stale_after_days": self.stale_after_days,
        }


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

@dataclass
class FetchResult:
    """Outcome of a cache-or-fetch lookup for one domain."""

    employees: list[EnrichedPerson]
    cache_hit: bool
    total_available: int
    provider_calls: int = 0


@dataclass
class MaterializeResult:
    """Outcome of copying cached employees into an organization."""

    created: int = 0
    skipped: int = 0
    employee_ids: list[str] = field(default_factory=list)
    global_employee_ids: list[str] = field(default_factory=list)
    existing_ids: list[str] = field(default_factory=list)


@dataclass
class CreditCheck:
    """Answer of the credit ledger for a requested number of records."""

    allowed: bool
    remaining: int
    required: int
    limit_type: str | None = None
    reason: str | None = None
