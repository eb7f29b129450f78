"""Credit ledger: per-organization and per-member enrichment budgets.

One enrichment credit pays for one employee record newly added to an
organization. Balances are checked before materialization and deducted
afterwards with a guarded atomic increment, so concurrent requests cannot
push usage past the limit.
"""

from __future__ import annotations

import calendar
import json
import logging
import uuid
from datetime import datetime, timezone

from . import config
from .database import get_connection
from .errors import InsufficientCreditsError
from .models import CreditCheck
from .records import get_member

log = logging.getLogger(__name__)

CREDIT_TYPE_ENRICHMENT = "enrichment"

TX_COMPANY_ENRICH = "company_enrich"
TX_BULK_ENRICH = "bulk_enrich"
TX_LEADS_COMPANY_ENRICH = "leads_company_enrich"


def _plans() -> dict[str, dict]:
    return {
        "free": {
            "name": "Free",
            "enrichment_limit": config.DEFAULT_ENRICHMENT_LIMIT,
            "icp_limit": config.DEFAULT_ICP_LIMIT,
            "price": 0,
        },
        "basic": {"name": "Basic", "enrichment_limit": 200, "icp_limit": 1000, "price": 89},
        "advanced": {"name": "Advanced", "enrichment_limit": 650, "icp_limit": 10000, "price": 249},
        "premier": {"name": "Premier", "enrichment_limit": 1000, "icp_limit": 100000, "price": 599},
        "super": {"name": "Super", "enrichment_limit": 2500, "icp_limit": 200000, "price": 1000},
    }


def list_plans() -> dict[str, dict]:
    return _plans()


def get_plan(plan_id: str) -> dict | None:
    return _plans().get(plan_id)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def add_month(dt: datetime) -> datetime:
    """Same day next month, clamped to the month's last day."""
    year, month = (dt.year + 1, 1) if dt.month == 12 else (dt.year, dt.month + 1)
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


# ---------------------------------------------------------------------------
# Ledger row
# ---------------------------------------------------------------------------

def ensure_credit_usage(conn, org_id: str, now: datetime | None = None) -> dict:
    """Return the org's credit_usage row, creating or rolling it over as needed.

    A missing row is created on the free plan. When the billing cycle has
    ended, org and member usage reset and a new one-month cycle starts.
    """
    now = now or _now()
    row = conn.execute(
        "SELECT * FROM credit_usage WHERE organization_id = ?", (org_id,)
    ).fetchone()

    if row is None:
        plan = _plans()["free"]
        ts = now.isoformat()
        conn.execute(
            "INSERT OR IGNORE INTO credit_usage "
            "(id, organization_id, plan_id, enrichment_limit, enrichment_used, "
            "icp_limit, icp_used, billing_cycle_start, billing_cycle_end, "
            "created_at, updated_at) "
            "VALUES (?, ?, 'free', ?, 0, ?, 0, ?, ?, ?, ?)",
            (
                str(uuid.uuid4()), org_id, plan["enrichment_limit"], plan["icp_limit"],
                ts, add_month(now).isoformat(), ts, ts,
            ),
        )
        log.info("Created credit ledger for org %s on free plan", org_id)
        row = conn.execute(
            "SELECT * FROM credit_usage WHERE organization_id = ?", (org_id,)
        ).fetchone()

    usage = dict(row)
    cycle_end = datetime.fromisoformat(usage["billing_cycle_end"])
    if cycle_end.tzinfo is None:
        cycle_end = cycle_end.replace(tzinfo=timezone.utc)
    if cycle_end < now:
        ts = now.isoformat()
        conn.execute(
            "UPDATE credit_usage SET enrichment_used = 0, icp_used = 0, "
            "billing_cycle_start = ?, billing_cycle_end = ?, updated_at = ? "
            "WHERE organization_id = ?",
            (ts, add_month(now).isoformat(), ts, org_id),
        )
        conn.execute(
            "UPDATE organization_members SET enrichment_used = 0, icp_used = 0, "
            "updated_at = ? WHERE organization_id = ?",
            (ts, org_id),
        )
        log.info("Billing cycle rolled over for org %s", org_id)
        usage = dict(conn.execute(
            "SELECT * FROM credit_usage WHERE organization_id = ?", (org_id,)
        ).fetchone())
    return usage


def remaining_credits(usage: dict) -> int:
    return max(0, usage["enrichment_limit"] - usage["enrichment_used"])


# ---------------------------------------------------------------------------
# Check and deduct
# ---------------------------------------------------------------------------

def check_and_reserve(
    conn,
    org_id: str,
    requested_count: int,
    user_id: str | None = None,
) -> CreditCheck:
    """Decide whether *requested_count* new records can be paid for.

    The whole batch is refused when it exceeds what is left; there is no
    partial fill. Member limits apply on top of the organization's.
    """
    usage = ensure_credit_usage(conn, org_id)
    remaining = remaining_credits(usage)

    if user_id:
        member = get_member(conn, org_id, user_id)
        if member and member["is_blocked"]:
            return CreditCheck(
                allowed=False, remaining=0, required=requested_count,
                limit_type="member", reason="Member is blocked from enrichment",
            )
        if member and member["enrichment_limit"] is not None:
            member_remaining = max(0, member["enrichment_limit"] - member["enrichment_used"])
            if requested_count > member_remaining:
                return CreditCheck(
                    allowed=False, remaining=member_remaining, required=requested_count,
                    limit_type="member",
                    reason=(
                        f"Member credit limit reached: {requested_count} required, "
                        f"{member_remaining} remaining"
                    ),
                )
            remaining = min(remaining, member_remaining)

    if requested_count > remaining_credits(usage):
        return CreditCheck(
            allowed=False, remaining=remaining, required=requested_count,
            limit_type="organization",
            reason=f"Insufficient credits: {requested_count} required, {remaining} remaining",
        )
    return CreditCheck(allowed=True, remaining=remaining, required=requested_count)


def require_credits(conn, org_id: str, requested_count: int, user_id: str | None = None) -> CreditCheck:
    """check_and_reserve(), raising InsufficientCreditsError on refusal."""
    check = check_and_reserve(conn, org_id, requested_count, user_id)
    if not check.allowed:
        raise InsufficientCreditsError(
            check.required, check.remaining, check.limit_type or "organization", check.reason,
        )
    return check


def record_usage(
    conn,
    org_id: str,
    credits: int,
    *,
    user_id: str | None = None,
    transaction_type: str = TX_COMPANY_ENRICH,
    description: str = "",
    search_id: str | None = None,
    company_id: str | None = None,
    metadata: dict | None = None,
) -> int:
    """Deduct *credits* from the org (and member). Returns the org balance after.

    Each increment is a single guarded UPDATE; if the guard fails the
    caller's transaction must be rolled back.
    """
    usage = ensure_credit_usage(conn, org_id)
    if credits <= 0:
        return remaining_credits(usage)

    now = _now().isoformat()
    cur = conn.execute(
        "UPDATE credit_usage SET enrichment_used = enrichment_used + ?, updated_at = ? "
        "WHERE organization_id = ? AND enrichment_used + ? <= enrichment_limit",
        (credits, now, org_id, credits),
    )
    if cur.rowcount == 0:
        current = ensure_credit_usage(conn, org_id)
        raise InsufficientCreditsError(credits, remaining_credits(current))

    if user_id:
        cur = conn.execute(
            "UPDATE organization_members SET enrichment_used = enrichment_used + ?, "
            "updated_at = ? "
            "WHERE organization_id = ? AND user_id = ? AND is_blocked = 0 "
            "AND (enrichment_limit IS NULL OR enrichment_used + ? <= enrichment_limit)",
            (credits, now, org_id, user_id, credits),
        )
        if cur.rowcount == 0:
            member = get_member(conn, org_id, user_id)
            if member is not None:
                member_remaining = 0
                if member["enrichment_limit"] is not None and not member["is_blocked"]:
                    member_remaining = max(0, member["enrichment_limit"] - member["enrichment_used"])
                raise InsufficientCreditsError(credits, member_remaining, "member")

    balance = remaining_credits(dict(conn.execute(
        "SELECT * FROM credit_usage WHERE organization_id = ?", (org_id,)
    ).fetchone()))
    conn.execute(
        "INSERT INTO credit_history "
        "(id, organization_id, user_id, credit_type, transaction_type, credits_used, "
        "balance_after, description, search_id, company_id, metadata, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            str(uuid.uuid4()), org_id, user_id, CREDIT_TYPE_ENRICHMENT, transaction_type,
            credits, balance, description, search_id, company_id,
            json.dumps(metadata or {}), now,
        ),
    )
    log.info("Deducted %d credits from org %s (balance %d)", credits, org_id, balance)
    return balance


# ---------------------------------------------------------------------------
# Enrichment transactions (audit log)
# ---------------------------------------------------------------------------

def log_enrichment_transaction(
    conn,
    org_id: str,
    transaction_type: str,
    *,
    user_id: str | None = None,
    credits_used: int = 0,
    company_id: str | None = None,
    search_id: str | None = None,
    employee_count: int = 0,
    cache_hit: bool = False,
    provider_calls_made: int = 0,
    metadata: dict | None = None,
) -> str:
    """Append an enrichment_transactions row. Returns its id."""
    tx_id = str(uuid.uuid4())
    conn.execute(
        "INSERT INTO enrichment_transactions "
        "(id, organization_id, user_id, transaction_type, credits_used, company_id, "
        "search_id, employee_count, cache_hit, provider_calls_made, metadata, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            tx_id, org_id, user_id, transaction_type, credits_used, company_id,
            search_id, employee_count, int(cache_hit), provider_calls_made,
            json.dumps(metadata or {}), _now().isoformat(),
        ),
    )
    return tx_id


def list_enrichment_transactions(org_id: str, limit: int = 50) -> list[dict]:
    with get_connection() as conn:
        rows = conn.execute(
            "SELECT * FROM enrichment_transactions WHERE organization_id = ? "
            "ORDER BY created_at DESC LIMIT ?",
            (org_id, limit),
        ).fetchall()
    result = []
    for r in rows:
        d = dict(r)
        d["cache_hit"] = bool(d["cache_hit"])
        d["metadata"] = json.loads(d["metadata"]) if d.get("metadata") else {}
        result.append(d)
    return result


# ---------------------------------------------------------------------------
# Summary, plans, history
# ---------------------------------------------------------------------------

def _summarize(usage: dict) -> dict:
    plan = get_plan(usage["plan_id"]) or _plans()["free"]
    return {
        "enrichment": {
            "used": usage["enrichment_used"],
            "limit": usage["enrichment_limit"],
            "remaining": remaining_credits(usage),
        },
        "icp": {
            "used": usage["icp_used"],
            "limit": usage["icp_limit"],
            "remaining": max(0, usage["icp_limit"] - usage["icp_used"]),
        },
        "plan": {"id": usage["plan_id"], "name": plan["name"], "price": plan["price"]},
        "billing_cycle": {
            "start": usage["billing_cycle_start"],
            "end": usage["billing_cycle_end"],
        },
    }


def get_credit_summary(org_id: str) -> dict:
    """Current balances, plan, and billing cycle for an organization."""
    with get_connection() as conn:
        usage = ensure_credit_usage(conn, org_id)
    return _summarize(usage)


def get_remaining_credits(conn, org_id: str) -> int:
    return remaining_credits(ensure_credit_usage(conn, org_id))


def set_plan(org_id: str, plan_id: str) -> dict:
    """Switch an organization to *plan_id*; usage in the cycle is kept.

    Raises ValueError for an unknown plan.
    """
    plan = get_plan(plan_id)
    if plan is None:
        raise ValueError(f"Invalid plan ID: {plan_id}")
    with get_connection() as conn:
        ensure_credit_usage(conn, org_id)
        conn.execute(
            "UPDATE credit_usage SET plan_id = ?, enrichment_limit = ?, icp_limit = ?, "
            "updated_at = ? WHERE organization_id = ?",
            (plan_id, plan["enrichment_limit"], plan["icp_limit"], _now().isoformat(), org_id),
        )
        usage = ensure_credit_usage(conn, org_id)
    log.info("Org %s switched to plan %s", org_id, plan_id)
    return _summarize(usage)


def get_credit_history(
    org_id: str,
    credit_type: str | None = None,
    limit: int = 50,
) -> list[dict]:
    """Most recent credit movements, newest first."""
    sql = "SELECT * FROM credit_history WHERE organization_id = ?"
    params: list = [org_id]
    if credit_type:
        sql += " AND credit_type = ?"
        params.append(credit_type)
    sql += " ORDER BY created_at DESC LIMIT ?"
    params.append(limit)
    with get_connection() as conn:
        rows = conn.execute(sql, params).fetchall()
    result = []
    for r in rows:
        d = dict(r)
        d["metadata"] = json.loads(d["metadata"]) if d.get("metadata") else {}
        result.append(d)
    return result
