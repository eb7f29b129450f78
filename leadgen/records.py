"""Organization-scoped records: orgs, members, ICPs, companies, leads."""

from __future__ import annotations

import json
import logging
import re
import uuid
from datetime import datetime, timezone

from .database import get_connection
from .models import CompanyProfile, EnrichmentFilters

log = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "org"


def normalize_domain(value: str | None) -> str | None:
    """Reduce a domain or website URL to a bare lower-case host."""
    if not value:
        return None
    d = value.strip().lower()
    d = re.sub(r"^https?://", "", d)
    d = d.split("/", 1)[0].split("?", 1)[0]
    if d.startswith("www."):
        d = d[4:]
    return d or None


# ---------------------------------------------------------------------------
# Organizations, users, membership
# ---------------------------------------------------------------------------

def create_organization(name: str, *, slug: str | None = None) -> dict:
    """Create an organization. Returns the new row as a dict."""
    now = _now_iso()
    row = {
        "id": str(uuid.uuid4()),
        "name": name,
        "slug": slug or _slugify(name),
        "created_at": now,
        "updated_at": now,
    }
    with get_connection() as conn:
        conn.execute(
            "INSERT INTO organizations (id, name, slug, is_active, created_at, updated_at) "
            "VALUES (:id, :name, :slug, 1, :created_at, :updated_at)",
            row,
        )
    return row


def get_organization(org_id: str) -> dict | None:
    with get_connection() as conn:
        row = conn.execute(
            "SELECT * FROM organizations WHERE id = ?", (org_id,)
        ).fetchone()
    return dict(row) if row else None


def list_organizations() -> list[dict]:
    with get_connection() as conn:
        rows = conn.execute(
            "SELECT * FROM organizations ORDER BY created_at"
        ).fetchall()
    return [dict(r) for r in rows]


def create_user(email: str, *, name: str = "") -> dict:
    """Create a user. Raises ValueError on duplicate email."""
    now = _now_iso()
    row = {
        "id": str(uuid.uuid4()),
        "email": email.lower(),
        "name": name,
        "created_at": now,
        "updated_at": now,
    }
    with get_connection() as conn:
        dup = conn.execute(
            "SELECT id FROM users WHERE email = ?", (row["email"],)
        ).fetchone()
        if dup:
            raise ValueError(f"User '{email}' already exists.")
        conn.execute(
            "INSERT INTO users (id, email, name, is_active, created_at, updated_at) "
            "VALUES (:id, :email, :name, 1, :created_at, :updated_at)",
            row,
        )
    return row


def add_member(
    org_id: str,
    user_id: str,
    *,
    role: str = "member",
    enrichment_limit: int | None = None,
    icp_limit: int | None = None,
) -> dict:
    """Add a user to an organization. Returns the membership row."""
    now = _now_iso()
    row = {
        "id": str(uuid.uuid4()),
        "organization_id": org_id,
        "user_id": user_id,
        "role": role,
        "enrichment_limit": enrichment_limit,
        "icp_limit": icp_limit,
        "created_at": now,
        "updated_at": now,
    }
    with get_connection() as conn:
        conn.execute(
            "INSERT INTO organization_members "
            "(id, organization_id, user_id, role, enrichment_limit, icp_limit, "
            "created_at, updated_at) "
            "VALUES (:id, :organization_id, :user_id, :role, :enrichment_limit, "
            ":icp_limit, :created_at, :updated_at)",
            row,
        )
    return row


def get_member(conn, org_id: str, user_id: str) -> dict | None:
    row = conn.execute(
        "SELECT * FROM organization_members WHERE organization_id = ? AND user_id = ?",
        (org_id, user_id),
    ).fetchone()
    return dict(row) if row else None


def update_member_limits(
    org_id: str,
    user_id: str,
    *,
    enrichment_limit: int | None = None,
    is_blocked: bool | None = None,
) -> dict | None:
    """Change a member's enrichment allowance or blocked flag."""
    sets, params = ["updated_at = ?"], [_now_iso()]
    if enrichment_limit is not None:
        sets.append("enrichment_limit = ?")
        params.append(enrichment_limit)
    if is_blocked is not None:
        sets.append("is_blocked = ?")
        params.append(int(is_blocked))
    params.extend([org_id, user_id])
    with get_connection() as conn:
        conn.execute(
            f"UPDATE organization_members SET {', '.join(sets)} "
            "WHERE organization_id = ? AND user_id = ?",
            params,
        )
        return get_member(conn, org_id, user_id)


def resolve_membership(org_id: str | None, user_id: str | None) -> dict | None:
    """Return the request context for a user acting in an organization.

    With both ids missing, the first active membership is used (CLI and
    auth-bypass mode).
    """
    sql = (
        "SELECT m.organization_id, m.user_id, m.role, m.is_blocked, "
        "u.email, u.name, o.name AS organization_name "
        "FROM organization_members m "
        "JOIN users u ON u.id = m.user_id "
        "JOIN organizations o ON o.id = m.organization_id "
        "WHERE u.is_active = 1 AND o.is_active = 1"
    )
    params: list = []
    if org_id:
        sql += " AND m.organization_id = ?"
        params.append(org_id)
    if user_id:
        sql += " AND m.user_id = ?"
        params.append(user_id)
    sql += " ORDER BY m.created_at LIMIT 1"
    with get_connection() as conn:
        row = conn.execute(sql, params).fetchone()
    return dict(row) if row else None


# ---------------------------------------------------------------------------
# ICPs (saved searches)
# ---------------------------------------------------------------------------

def create_icp(
    org_id: str,
    name: str,
    *,
    filters: dict | None = None,
    created_by: str | None = None,
) -> dict:
    """Create an ICP. Returns the new row as a dict."""
    now = _now_iso()
    row = {
        "id": str(uuid.uuid4()),
        "organization_id": org_id,
        "name": name,
        "filters": json.dumps(filters or {}),
        "created_by": created_by,
        "created_at": now,
        "updated_at": now,
    }
    with get_connection() as conn:
        conn.execute(
            "INSERT INTO searches "
            "(id, organization_id, name, filters, created_by, created_at, updated_at) "
            "VALUES (:id, :organization_id, :name, :filters, :created_by, "
            ":created_at, :updated_at)",
            row,
        )
    return row


def get_icp(conn, org_id: str, icp_id: str) -> dict | None:
    row = conn.execute(
        "SELECT * FROM searches WHERE id = ? AND organization_id = ?",
        (icp_id, org_id),
    ).fetchone()
    if not row:
        return None
    d = dict(row)
    d["filters"] = json.loads(d["filters"]) if d.get("filters") else {}
    return d


def get_saved_enrichment_filters(icp: dict) -> EnrichmentFilters | None:
    """Return the decision-maker filters last used for this ICP, if any."""
    saved = (icp.get("filters") or {}).get("enrichment_filters")
    if not saved:
        return None
    return EnrichmentFilters.from_dict(saved)


def save_enrichment_filters(conn, icp_id: str, filters: EnrichmentFilters) -> None:
    """Store *filters* as the ICP's last-used enrichment filters."""
    row = conn.execute("SELECT filters FROM searches WHERE id = ?", (icp_id,)).fetchone()
    if not row:
        return
    stored = json.loads(row["filters"]) if row["filters"] else {}
    stored["enrichment_filters"] = {**filters.to_dict(), "last_used_at": _now_iso()}
    conn.execute(
        "UPDATE searches SET filters = ?, updated_at = ? WHERE id = ?",
        (json.dumps(stored), _now_iso(), icp_id),
    )


# ---------------------------------------------------------------------------
# Companies
# ---------------------------------------------------------------------------

def create_company(
    org_id: str,
    name: str,
    *,
    domain: str | None = None,
    search_id: str | None = None,
    linkedin_url: str | None = None,
    website_url: str | None = None,
) -> dict:
    """Create an org company. The domain is normalized when given."""
    now = _now_iso()
    row = {
        "id": str(uuid.uuid4()),
        "organization_id": org_id,
        "search_id": search_id,
        "name": name,
        "domain": normalize_domain(domain) or normalize_domain(website_url),
        "website_url": website_url,
        "linkedin_url": linkedin_url,
        "created_at": now,
        "updated_at": now,
    }
    with get_connection() as conn:
        conn.execute(
            "INSERT INTO companies "
            "(id, organization_id, search_id, name, domain, website_url, linkedin_url, "
            "created_at, updated_at) "
            "VALUES (:id, :organization_id, :search_id, :name, :domain, :website_url, "
            ":linkedin_url, :created_at, :updated_at)",
            row,
        )
    return row


def get_company(conn, org_id: str, company_id: str) -> dict | None:
    row = conn.execute(
        "SELECT * FROM companies WHERE id = ? AND organization_id = ?",
        (company_id, org_id),
    ).fetchone()
    return dict(row) if row else None


def get_companies(conn, org_id: str, company_ids: list[str]) -> list[dict]:
    """Fetch org companies by id, preserving the requested order."""
    if not company_ids:
        return []
    placeholders = ",".join("?" * len(company_ids))
    rows = conn.execute(
        f"SELECT * FROM companies WHERE organization_id = ? AND id IN ({placeholders})",
        [org_id, *company_ids],
    ).fetchall()
    by_id = {r["id"]: dict(r) for r in rows}
    return [by_id[cid] for cid in dict.fromkeys(company_ids) if cid in by_id]


def list_icp_companies(conn, org_id: str, icp_id: str) -> list[dict]:
    rows = conn.execute(
        "SELECT * FROM companies WHERE organization_id = ? AND search_id = ? "
        "ORDER BY created_at",
        (org_id, icp_id),
    ).fetchall()
    return [dict(r) for r in rows]


def list_lead_companies(conn, org_id: str) -> list[dict]:
    """Companies referenced by at least one of the organization's leads."""
    rows = conn.execute(
        "SELECT c.* FROM companies c "
        "WHERE c.organization_id = ? AND c.id IN "
        "(SELECT DISTINCT company_id FROM leads WHERE organization_id = ?) "
        "ORDER BY c.created_at",
        (org_id, org_id),
    ).fetchall()
    return [dict(r) for r in rows]


def mark_company_enriched(conn, company_id: str) -> None:
    now = _now_iso()
    conn.execute(
        "UPDATE companies SET is_enriched = 1, enriched_at = ?, updated_at = ? WHERE id = ?",
        (now, now, company_id),
    )


def apply_company_profile(conn, company_id: str, profile: CompanyProfile) -> None:
    """Fill an org company's firmographic columns from a cached profile.

    Values already set on the company are kept.
    """
    conn.execute(
        "UPDATE companies SET "
        "domain = COALESCE(domain, ?), "
        "linkedin_url = COALESCE(linkedin_url, ?), "
        "website_url = COALESCE(website_url, ?), "
        "industry = COALESCE(industry, ?), "
        "size = COALESCE(size, ?), "
        "location = COALESCE(location, ?), "
        "description = COALESCE(description, ?), "
        "logo_url = COALESCE(logo_url, ?), "
        "updated_at = ? "
        "WHERE id = ?",
        (
            profile.domain, profile.linkedin_url, profile.website_url, profile.industry,
            profile.size, profile.location, profile.description, profile.logo_url,
            _now_iso(), company_id,
        ),
    )


def count_company_employees(conn, company_id: str) -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM employees WHERE company_id = ?", (company_id,)
    ).fetchone()[0]


def list_company_employees(company_id: str) -> list[dict]:
    with get_connection() as conn:
        rows = conn.execute(
            "SELECT * FROM employees WHERE company_id = ? ORDER BY last_name, first_name",
            (company_id,),
        ).fetchall()
    result = []
    for r in rows:
        d = dict(r)
        d["metadata"] = json.loads(d["metadata"]) if d.get("metadata") else {}
        result.append(d)
    return result


# ---------------------------------------------------------------------------
# Leads
# ---------------------------------------------------------------------------

def create_lead(
    org_id: str,
    company_id: str,
    first_name: str,
    last_name: str,
    *,
    email: str | None = None,
    job_title: str | None = None,
    search_id: str | None = None,
    created_by: str | None = None,
) -> dict:
    """Create a lead that is not tied to an enriched employee."""
    now = _now_iso()
    row = {
        "id": str(uuid.uuid4()),
        "organization_id": org_id,
        "company_id": company_id,
        "search_id": search_id,
        "first_name": first_name,
        "last_name": last_name,
        "email": email,
        "job_title": job_title,
        "created_by": created_by,
        "created_at": now,
        "updated_at": now,
    }
    with get_connection() as conn:
        conn.execute(
            "INSERT INTO leads "
            "(id, organization_id, company_id, search_id, first_name, last_name, email, "
            "job_title, status, created_by, created_at, updated_at) "
            "VALUES (:id, :organization_id, :company_id, :search_id, :first_name, "
            ":last_name, :email, :job_title, 'new', :created_by, :created_at, :updated_at)",
            row,
        )
    return row


def list_leads(org_id: str) -> list[dict]:
    with get_connection() as conn:
        rows = conn.execute(
            "SELECT * FROM leads WHERE organization_id = ? ORDER BY created_at",
            (org_id,),
        ).fetchall()
    return [dict(r) for r in rows]
