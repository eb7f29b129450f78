"""Tests for the credit ledger: balances, limits, deductions, plans."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from leadgen.credits import (
    TX_BULK_ENRICH,
    add_month,
    check_and_reserve,
    ensure_credit_usage,
    get_credit_history,
    get_credit_summary,
    get_remaining_credits,
    list_enrichment_transactions,
    log_enrichment_transaction,
    record_usage,
    require_credits,
    set_plan,
)
from leadgen.database import get_connection, init_db
from leadgen.errors import InsufficientCreditsError
from leadgen.records import add_member, create_organization, create_user, update_member_limits


@pytest.fixture()
def tmp_db(tmp_path, monkeypatch):
    """Create a temporary database and point config at it."""
    db_file = tmp_path / "test.db"
    monkeypatch.setattr("leadgen.config.DB_PATH", db_file)
    init_db(db_file)
    return db_file


@pytest.fixture()
def org(tmp_db):
    return create_organization("Acme Outbound")


@pytest.fixture()
def member(org):
    user = create_user("rep@acme.com", name="Rep")
    add_member(org["id"], user["id"], role="member", enrichment_limit=5)
    return user


def _used(org_id: str) -> int:
    with get_connection() as conn:
        return conn.execute(
            "SELECT enrichment_used FROM credit_usage WHERE organization_id = ?", (org_id,)
        ).fetchone()[0]


# ===========================================================================
# Ledger row
# ===========================================================================

class TestLedgerRow:
    def test_created_lazily_on_free_plan(self, org):
        summary = get_credit_summary(org["id"])
        assert summary["enrichment"] == {"used": 0, "limit": 30, "remaining": 30}
        assert summary["plan"]["id"] == "free"

    def test_default_limit_from_config(self, org, monkeypatch):
        monkeypatch.setattr("leadgen.config.DEFAULT_ENRICHMENT_LIMIT", 12)
        assert get_credit_summary(org["id"])["enrichment"]["limit"] == 12

    def test_created_once(self, org):
        get_credit_summary(org["id"])
        get_credit_summary(org["id"])
        with get_connection() as conn:
            n = conn.execute("SELECT COUNT(*) FROM credit_usage").fetchone()[0]
        assert n == 1

    def test_cycle_rollover_resets_usage(self, org, member):
        with get_connection() as conn:
            record_usage(conn, org["id"], 4, user_id=member["id"])
            past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
            conn.execute(
                "UPDATE credit_usage SET billing_cycle_end = ? WHERE organization_id = ?",
                (past, org["id"]),
            )

        with get_connection() as conn:
            usage = ensure_credit_usage(conn, org["id"])
            member_used = conn.execute(
                "SELECT enrichment_used FROM organization_members WHERE user_id = ?",
                (member["id"],),
            ).fetchone()[0]
        assert usage["enrichment_used"] == 0
        assert member_used == 0
        end = datetime.fromisoformat(usage["billing_cycle_end"])
        assert end > datetime.now(timezone.utc)

    def test_add_month_clamps_day(self):
        assert add_month(datetime(2024, 1, 31)).date().isoformat() == "2024-02-29"
        assert add_month(datetime(2023, 12, 15)).date().isoformat() == "2024-01-15"


# ===========================================================================
# Check
# ===========================================================================

class TestCheck:
    def test_within_balance(self, org):
        with get_connection() as conn:
            check = check_and_reserve(conn, org["id"], 30)
        assert check.allowed is True
        assert check.remaining == 30

    def test_no_partial_fill(self, org):
        with get_connection() as conn:
            check = check_and_reserve(conn, org["id"], 31)
        assert check.allowed is False
        assert check.limit_type == "organization"
        assert check.required == 31
        assert check.remaining == 30

    def test_zero_always_allowed(self, org):
        with get_connection() as conn:
            record_usage(conn, org["id"], 30)
            assert check_and_reserve(conn, org["id"], 0).allowed is True

    def test_member_limit(self, org, member):
        with get_connection() as conn:
            check = check_and_reserve(conn, org["id"], 6, member["id"])
        assert check.allowed is False
        assert check.limit_type == "member"
        assert check.remaining == 5

    def test_blocked_member(self, org, member):
        update_member_limits(org["id"], member["id"], is_blocked=True)
        with get_connection() as conn:
            check = check_and_reserve(conn, org["id"], 1, member["id"])
        assert check.allowed is False
        assert check.limit_type == "member"

    def test_require_credits_raises(self, org):
        with get_connection() as conn:
            with pytest.raises(InsufficientCreditsError) as excinfo:
                require_credits(conn, org["id"], 40)
        err = excinfo.value
        assert err.status_code == 402
        assert err.to_dict()["required"] == 40
        assert err.to_dict()["remaining"] == 30


# ===========================================================================
# Deduction
# ===========================================================================

class TestRecordUsage:
    def test_deducts_and_writes_history(self, org, member):
        with get_connection() as conn:
            balance = record_usage(
                conn, org["id"], 3,
                user_id=member["id"],
                description="Enrichment credit usage for company Acme",
                company_id="c-1",
            )
        assert balance == 27
        assert _used(org["id"]) == 3

        history = get_credit_history(org["id"])
        assert len(history) == 1
        assert history[0]["credits_used"] == 3
        assert history[0]["balance_after"] == 27
        assert history[0]["credit_type"] == "enrichment"
        assert history[0]["company_id"] == "c-1"

    def test_zero_credits_writes_nothing(self, org):
        with get_connection() as conn:
            assert record_usage(conn, org["id"], 0) == 30
        assert get_credit_history(org["id"]) == []

    def test_guard_refuses_overdraw(self, org):
        with pytest.raises(InsufficientCreditsError):
            with get_connection() as conn:
                record_usage(conn, org["id"], 25)
                record_usage(conn, org["id"], 10)
        # the failed block rolled back the first deduction too
        assert get_credit_summary(org["id"])["enrichment"]["used"] == 0

    def test_member_guard(self, org, member):
        with pytest.raises(InsufficientCreditsError) as excinfo:
            with get_connection() as conn:
                record_usage(conn, org["id"], 6, user_id=member["id"])
        assert excinfo.value.limit_type == "member"

    def test_remaining(self, org):
        with get_connection() as conn:
            record_usage(conn, org["id"], 7)
            assert get_remaining_credits(conn, org["id"]) == 23


# ===========================================================================
# Plans, history, transactions
# ===========================================================================

class TestPlansAndHistory:
    def test_set_plan_keeps_usage(self, org):
        with get_connection() as conn:
            record_usage(conn, org["id"], 10)
        summary = set_plan(org["id"], "basic")
        assert summary["plan"]["id"] == "basic"
        assert summary["enrichment"] == {"used": 10, "limit": 200, "remaining": 190}

    def test_set_plan_invalid(self, org):
        with pytest.raises(ValueError):
            set_plan(org["id"], "platinum")

    def test_history_newest_first_and_filtered(self, org):
        with get_connection() as conn:
            record_usage(conn, org["id"], 1, description="first")
        with get_connection() as conn:
            record_usage(conn, org["id"], 2, description="second")

        history = get_credit_history(org["id"])
        assert [h["description"] for h in history] == ["second", "first"]
        assert get_credit_history(org["id"], credit_type="icp") == []
        assert len(get_credit_history(org["id"], limit=1)) == 1

    def test_enrichment_transactions(self, org):
        with get_connection() as conn:
            log_enrichment_transaction(
                conn, org["id"], TX_BULK_ENRICH,
                credits_used=4, employee_count=4, cache_hit=True, provider_calls_made=0,
                metadata={"companies_processed": 2},
            )
        txs = list_enrichment_transactions(org["id"])
        assert len(txs) == 1
        assert txs[0]["transaction_type"] == "bulk_enrich"
        assert txs[0]["cache_hit"] is True
        assert txs[0]["metadata"]["companies_processed"] == 2
