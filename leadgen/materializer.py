"""Copy global-cache employees into an organization's private tables."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone

from .models import EnrichedPerson, MaterializeResult

log = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Dedupe keys
# ---------------------------------------------------------------------------

class _SeenKeys:
    """Identity keys mirroring the unique indexes on the employees table."""

    def __init__(self) -> None:
        self.apollo_ids: set[str] = set()
        self.emails: set[str] = set()
        self.names: set[tuple[str, str]] = set()

    def add(self, apollo_id, email, first_name, last_name) -> None:
        if apollo_id:
            self.apollo_ids.add(apollo_id)
        if email:
            self.emails.add(email.lower())
        else:
            self.names.add(((first_name or "").lower(), (last_name or "").lower()))

    def contains(self, person: EnrichedPerson) -> bool:
        if person.apollo_id and person.apollo_id in self.apollo_ids:
            return True
        if person.email:
            return person.email.lower() in self.emails
        return (person.first_name.lower(), person.last_name.lower()) in self.names


def _load_seen(conn, org_id: str, company_id: str) -> _SeenKeys:
    seen = _SeenKeys()
    rows = conn.execute(
        "SELECT apollo_id, email, first_name, last_name FROM employees "
        "WHERE organization_id = ? AND company_id = ?",
        (org_id, company_id),
    ).fetchall()
    for r in rows:
        seen.add(r["apollo_id"], r["email"], r["first_name"], r["last_name"])
    return seen


def _find_existing_id(conn, org_id: str, company_id: str, person: EnrichedPerson) -> str | None:
    """Id of the org's employee row that *person* collided with, if any."""
    if person.apollo_id:
        row = conn.execute(
            "SELECT id FROM employees WHERE organization_id = ? AND company_id = ? "
            "AND apollo_id = ?",
            (org_id, company_id, person.apollo_id),
        ).fetchone()
        if row:
            return row["id"]
    if person.email:
        row = conn.execute(
            "SELECT id FROM employees WHERE organization_id = ? AND company_id = ? "
            "AND lower(email) = ?",
            (org_id, company_id, person.email.lower()),
        ).fetchone()
    else:
        row = conn.execute(
            "SELECT id FROM employees WHERE organization_id = ? AND company_id = ? "
            "AND email IS NULL AND lower(first_name) = ? AND lower(last_name) = ?",
            (org_id, company_id, (person.first_name or "").lower(), (person.last_name or "").lower()),
        ).fetchone()
    return row["id"] if row else None


def count_new_employees(
    conn,
    org_id: str,
    company_id: str,
    employees: list[EnrichedPerson],
) -> tuple[int, int]:
    """Return (new, already_present) for *employees* against the org's copy.

    Duplicates within *employees* count once.
    """
    seen = _load_seen(conn, org_id, company_id)
    new = existing = 0
    for person in employees:
        if seen.contains(person):
            existing += 1
            continue
        new += 1
        seen.add(person.apollo_id, person.email, person.first_name, person.last_name)
    return new, existing


# ---------------------------------------------------------------------------
# Materialization
# ---------------------------------------------------------------------------

def materialize_employees(
    conn,
    org_id: str,
    company_id: str,
    employees: list[EnrichedPerson],
    *,
    cache_hit: bool,
    extra_metadata: dict | None = None,
) -> MaterializeResult:
    """Insert *employees* for the org's company, silently skipping duplicates.

    Runs in the caller's transaction. Only rows actually inserted are
    reported as created; credits should be deducted for those alone.
    """
    result = MaterializeResult()
    now = _now_iso()
    for person in employees:
        metadata = {
            "source": "global_cache",
            "global_employee_id": person.global_id,
            "departments": person.departments,
            "enriched_at": now,
            "cache_hit": cache_hit,
        }
        if extra_metadata:
            metadata.update(extra_metadata)

        employee_id = str(uuid.uuid4())
        cur = conn.execute(
            "INSERT OR IGNORE INTO employees "
            "(id, organization_id, company_id, apollo_id, first_name, last_name, email, "
            "phone, job_title, linkedin_url, location, seniority, department, "
            "is_shortlisted, metadata, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)",
            (
                employee_id, org_id, company_id, person.apollo_id,
                person.first_name, person.last_name, person.email, person.phone,
                person.job_title, person.linkedin_url, person.location,
                person.seniority, person.department, json.dumps(metadata), now, now,
            ),
        )
        if cur.rowcount > 0:
            result.created += 1
            result.employee_ids.append(employee_id)
            if person.global_id:
                result.global_employee_ids.append(person.global_id)
        else:
            result.skipped += 1
            existing_id = _find_existing_id(conn, org_id, company_id, person)
            if existing_id and existing_id not in result.existing_ids:
                result.existing_ids.append(existing_id)

    log.debug(
        "Materialized %d employees for company %s (%d duplicates skipped)",
        result.created, company_id, result.skipped,
    )
    return result


# ---------------------------------------------------------------------------
# Leads
# ---------------------------------------------------------------------------

def promote_to_leads(
    conn,
    org_id: str,
    employee_ids: list[str],
    *,
    search_id: str | None = None,
    created_by: str | None = None,
) -> list[str]:
    """Create a lead for each employee that does not already have one.

    Promoted employees are marked shortlisted. Returns the new lead ids.
    """
    if not employee_ids:
        return []
    now = _now_iso()
    placeholders = ",".join("?" * len(employee_ids))
    rows = conn.execute(
        f"SELECT * FROM employees WHERE organization_id = ? AND id IN ({placeholders})",
        [org_id, *employee_ids],
    ).fetchall()

    lead_ids = []
    for emp in rows:
        lead_id = str(uuid.uuid4())
        cur = conn.execute(
            "INSERT OR IGNORE INTO leads "
            "(id, organization_id, company_id, employee_id, search_id, first_name, "
            "last_name, email, phone, job_title, linkedin_url, status, created_by, "
            "created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'new', ?, ?, ?)",
            (
                lead_id, org_id, emp["company_id"], emp["id"], search_id,
                emp["first_name"], emp["last_name"], emp["email"], emp["phone"],
                emp["job_title"], emp["linkedin_url"], created_by, now, now,
            ),
        )
        conn.execute(
            "UPDATE employees SET is_shortlisted = 1, updated_at = ? WHERE id = ?",
            (now, emp["id"]),
        )
        if cur.rowcount > 0:
            lead_ids.append(lead_id)
    return lead_ids
