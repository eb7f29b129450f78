"""Tests for single-company, bulk, and preview enrichment runs."""

from __future__ import annotations

import pytest

from leadgen.cache_store import SQLiteCacheStore
from leadgen.credits import get_credit_history, get_credit_summary, list_enrichment_transactions
from leadgen.database import get_connection, init_db
from leadgen.enrichment_provider import PeopleSearchProvider, ProviderError
from leadgen.errors import InsufficientCreditsError, MissingPrerequisiteError, NotFoundError
from leadgen.models import CompanyProfile, EnrichedPerson, EnrichmentFilters
from leadgen.orchestrator import (
    NO_DOMAIN_REASON,
    bulk_enrich,
    company_enrichment_status,
    enrich_company,
    enrich_company_profile,
    icp_enrichment_overview,
    preview_enrichment,
)
from leadgen.records import (
    add_member,
    create_company,
    create_icp,
    create_lead,
    create_organization,
    create_user,
    get_company,
    get_icp,
    list_leads,
)


@pytest.fixture()
def tmp_db(tmp_path, monkeypatch):
    """Create a temporary database and point config at it."""
    db_file = tmp_path / "test.db"
    monkeypatch.setattr("leadgen.config.DB_PATH", db_file)
    monkeypatch.setattr("leadgen.config.BULK_COMPANY_DELAY", 0)
    monkeypatch.setattr("leadgen.config.PREVIEW_COMPANY_DELAY", 0)
    monkeypatch.setattr("leadgen.config.PROVIDER_BACKOFF_SECONDS", 0)
    init_db(db_file)
    return db_file


@pytest.fixture()
def store(tmp_db):
    return SQLiteCacheStore()


@pytest.fixture()
def org(tmp_db):
    org = create_organization("Acme Outbound")
    user = create_user("owner@acme.com", name="Owner")
    add_member(org["id"], user["id"], role="admin")
    org["user_id"] = user["id"]
    return org


@pytest.fixture()
def icp(org):
    return create_icp(org["id"], "Mid-market SaaS", created_by=org["user_id"])


def _people(prefix, n, title="Engineer"):
    return [
        EnrichedPerson(
            apollo_id=f"{prefix}-{i}", first_name=f"First{i}", last_name=f"Last{i}",
            email=f"p{i}@{prefix}.com", job_title=title,
        )
        for i in range(n)
    ]


def _employee_count(org_id: str) -> int:
    with get_connection() as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM employees WHERE organization_id = ?", (org_id,)
        ).fetchone()[0]


# ---------------------------------------------------------------------------
# Mock provider for testing
# ---------------------------------------------------------------------------

class MockProvider(PeopleSearchProvider):
    """Serves people per domain; domains in *errors* raise instead."""

    def __init__(self, by_domain=None, errors=None, profile=None):
        self.by_domain = by_domain or {}
        self.errors = errors or {}
        self.profile = profile
        self.calls = []

    @property
    def name(self) -> str:
        return "mock"

    def search_people_at_company(self, domain, titles=None, seniorities=None,
                                 max_pages=10, fetch_all=False):
        self.calls.append(domain)
        if domain in self.errors:
            raise self.errors[domain]
        return list(self.by_domain.get(domain, []))

    def enrich_organization(self, domain):
        return self.profile


# ===========================================================================
# Single company
# ===========================================================================

class TestEnrichCompany:
    def test_fetch_materialize_and_charge(self, org, store):
        company = create_company(org["id"], "Globex", domain="globex.com")
        provider = MockProvider({"globex.com": _people("globex", 4)})

        result = enrich_company(
            org["id"], company["id"], user_id=org["user_id"], provider=provider, store=store,
        )

        assert result["success"] is True
        assert result["employees_found"] == 4
        assert result["employees_created"] == 4
        assert result["credits_used"] == 4
        assert result["credits_remaining"] == 26
        assert result["cache_hit"] is False
        assert result["filters"] is None

        with get_connection() as conn:
            assert get_company(conn, org["id"], company["id"])["is_enriched"] == 1
        txs = list_enrichment_transactions(org["id"])
        assert len(txs) == 1
        assert txs[0]["transaction_type"] == "company_enrich"
        assert txs[0]["provider_calls_made"] == 1
        history = get_credit_history(org["id"])
        assert history[0]["credits_used"] == 4

    def test_second_run_is_free_cache_hit(self, org, store):
        company = create_company(org["id"], "Globex", domain="globex.com")
        provider = MockProvider({"globex.com": _people("globex", 4)})
        enrich_company(org["id"], company["id"], provider=provider, store=store)

        result = enrich_company(org["id"], company["id"], provider=provider, store=store)
        assert result["cache_hit"] is True
        assert result["employees_created"] == 0
        assert result["duplicates_skipped"] == 4
        assert result["credits_used"] == 0
        assert len(provider.calls) == 1
        assert get_credit_summary(org["id"])["enrichment"]["used"] == 4

    def test_cache_shared_across_organizations(self, org, store):
        provider = MockProvider({"globex.com": _people("globex", 3)})
        first = create_company(org["id"], "Globex", domain="globex.com")
        enrich_company(org["id"], first["id"], provider=provider, store=store)

        other = create_organization("Other Org")
        theirs = create_company(other["id"], "Globex", domain="https://www.Globex.com/about")
        result = enrich_company(other["id"], theirs["id"], provider=provider, store=store)

        assert result["cache_hit"] is True
        assert result["employees_created"] == 3
        assert len(provider.calls) == 1
        assert get_credit_summary(other["id"])["enrichment"]["used"] == 3

    def test_unknown_company(self, org, store):
        with pytest.raises(NotFoundError):
            enrich_company(org["id"], "missing", provider=MockProvider(), store=store)

    def test_company_of_other_org_is_not_found(self, org, store):
        other = create_organization("Other Org")
        theirs = create_company(other["id"], "Globex", domain="globex.com")
        with pytest.raises(NotFoundError):
            enrich_company(org["id"], theirs["id"], provider=MockProvider(), store=store)

    def test_missing_domain(self, org, store):
        company = create_company(org["id"], "Stealth Co")
        provider = MockProvider()
        with pytest.raises(MissingPrerequisiteError):
            enrich_company(org["id"], company["id"], provider=provider, store=store)
        assert provider.calls == []

    def test_insufficient_credits_writes_nothing(self, org, store):
        company = create_company(org["id"], "Globex", domain="globex.com")
        provider = MockProvider({"globex.com": _people("globex", 31)})

        with pytest.raises(InsufficientCreditsError) as excinfo:
            enrich_company(org["id"], company["id"], provider=provider, store=store)

        assert excinfo.value.required == 31
        assert excinfo.value.remaining == 30
        assert _employee_count(org["id"]) == 0
        assert get_credit_history(org["id"]) == []
        assert list_enrichment_transactions(org["id"]) == []
        # the provider result is still cached for everyone
        assert store.get_company("globex.com")["employees_count"] == 31

    def test_provider_failure_writes_nothing(self, org, store):
        company = create_company(org["id"], "Globex", domain="globex.com")
        provider = MockProvider(errors={"globex.com": ProviderError("down", retryable=False)})
        with pytest.raises(ProviderError):
            enrich_company(org["id"], company["id"], provider=provider, store=store)
        assert _employee_count(org["id"]) == 0
        assert store.get_company("globex.com") is None

    def test_save_filters_to_icp(self, org, icp, store):
        company = create_company(org["id"], "Globex", domain="globex.com", search_id=icp["id"])
        provider = MockProvider({"globex.com": _people("globex", 2, title="CTO")})

        result = enrich_company(
            org["id"], company["id"], EnrichmentFilters(titles=["CTO"]),
            save_filters_to_icp=True, icp_id=icp["id"], provider=provider, store=store,
        )
        assert result["filters"] == {"titles": ["CTO"], "seniorities": []}
        with get_connection() as conn:
            saved = get_icp(conn, org["id"], icp["id"])["filters"]["enrichment_filters"]
        assert saved["titles"] == ["CTO"]
        assert "last_used_at" in saved

    def test_status(self, org, store):
        company = create_company(org["id"], "Globex", domain="globex.com")
        before = company_enrichment_status(org["id"], company["id"], store=store)
        assert before["cache_exists"] is False
        assert before["employees_in_org"] == 0

        enrich_company(
            org["id"], company["id"],
            provider=MockProvider({"globex.com": _people("globex", 2)}), store=store,
        )
        after = company_enrichment_status(org["id"], company["id"], store=store)
        assert after["cache_exists"] is True
        assert after["employees_in_cache"] == 2
        assert after["employees_in_org"] == 2
        assert after["is_stale"] is False
        assert after["is_enriched"] is True

    def test_status_without_domain(self, org, store):
        company = create_company(org["id"], "Stealth Co")
        status = company_enrichment_status(org["id"], company["id"], store=store)
        assert status["has_domain"] is False


class TestEnrichCompanyProfile:
    def test_fills_missing_fields_only(self, org, store):
        company = create_company(
            org["id"], "Globex", domain="globex.com", linkedin_url="https://linkedin.com/company/globex",
        )
        provider = MockProvider(profile=CompanyProfile(
            domain="globex.com", name="Globex Corp", industry="Manufacturing",
            linkedin_url="https://linkedin.com/company/other", size="500",
        ))
        result = enrich_company_profile(org["id"], company["id"], provider=provider, store=store)

        assert result["success"] is True
        assert result["cache_hit"] is False
        assert result["company"]["industry"] == "Manufacturing"
        assert result["company"]["size"] == "500"
        assert result["company"]["linkedin_url"] == "https://linkedin.com/company/globex"

    def test_no_profile(self, org, store):
        company = create_company(org["id"], "Globex", domain="globex.com")
        with pytest.raises(NotFoundError):
            enrich_company_profile(org["id"], company["id"], provider=MockProvider(), store=store)


# ===========================================================================
# Bulk
# ===========================================================================

class TestBulkEnrich:
    def test_icp_run_isolates_failures(self, org, icp, store):
        ok = create_company(org["id"], "Globex", domain="globex.com", search_id=icp["id"])
        bad = create_company(org["id"], "Initech", domain="initech.com", search_id=icp["id"])
        create_company(org["id"], "Stealth Co", search_id=icp["id"])
        provider = MockProvider(
            {"globex.com": _people("globex", 3)},
            errors={"initech.com": ProviderError("down", retryable=False)},
        )

        summary = bulk_enrich(
            org["id"], user_id=org["user_id"], icp_id=icp["id"], provider=provider, store=store,
        )

        assert summary["success"] is True
        assert summary["companies_processed"] == 2
        assert summary["companies_skipped"] == 1
        assert summary["skipped_companies"][0]["reason"] == NO_DOMAIN_REASON
        assert summary["total_employees_created"] == 3
        assert summary["total_credits_used"] == 3
        assert summary["provider_fetches"] == 1
        assert len(summary["errors"]) == 1 and "Initech" in summary["errors"][0]

        by_id = {r["company_id"]: r for r in summary["results"]}
        assert by_id[ok["id"]]["error"] is None
        assert by_id[bad["id"]]["error"] == "down"

        txs = list_enrichment_transactions(org["id"])
        assert len(txs) == 1
        assert txs[0]["transaction_type"] == "bulk_enrich"
        assert txs[0]["company_id"] is None
        assert txs[0]["credits_used"] == 3
        assert txs[0]["metadata"]["errors"] == 1

    def test_unexpected_error_does_not_abort(self, org, store):
        a = create_company(org["id"], "Alpha", domain="alpha.com")
        b = create_company(org["id"], "Beta", domain="beta.com")
        provider = MockProvider(
            {"beta.com": _people("beta", 2)},
            errors={"alpha.com": RuntimeError("kaboom")},
        )
        summary = bulk_enrich(org["id"], company_ids=[a["id"], b["id"]], provider=provider, store=store)
        assert summary["total_employees_created"] == 2
        assert summary["results"][0]["error"] == "kaboom"

    def test_middle_company_failure(self, org, store):
        ids = [
            create_company(org["id"], name, domain=f"{name.lower()}.com")["id"]
            for name in ("Alpha", "Beta", "Gamma")
        ]
        provider = MockProvider(
            {"alpha.com": _people("alpha", 1), "gamma.com": _people("gamma", 2)},
            errors={"beta.com": ProviderError("Apollo API error: 503", status_code=503)},
        )
        summary = bulk_enrich(org["id"], company_ids=ids, provider=provider, store=store)

        assert [r["company_id"] for r in summary["results"]] == ids
        assert [r["error"] is None for r in summary["results"]] == [True, False, True]
        assert summary["results"][1]["error"] == "Apollo API error: 503"
        assert summary["total_employees_created"] == 3
        # a failed fetch leaves the domain uncached so a rerun retries it
        assert store.get_company("beta.com") is None

    def test_credit_gating_per_company(self, org, store):
        with get_connection() as conn:
            conn.execute(
                "INSERT INTO credit_usage (id, organization_id, plan_id, enrichment_limit, "
                "enrichment_used, icp_limit, icp_used, billing_cycle_start, "
                "billing_cycle_end, created_at, updated_at) "
                "VALUES ('cu-1', ?, 'free', 30, 25, 1000, 0, '2020-01-01T00:00:00+00:00', "
                "'2999-01-01T00:00:00+00:00', '2020-01-01T00:00:00+00:00', "
                "'2020-01-01T00:00:00+00:00')",
                (org["id"],),
            )
        big = create_company(org["id"], "Big", domain="big.com")
        small = create_company(org["id"], "Small", domain="small.com")
        provider = MockProvider({"big.com": _people("big", 8), "small.com": _people("small", 3)})

        summary = bulk_enrich(org["id"], company_ids=[big["id"], small["id"]], provider=provider, store=store)

        by_id = {r["company_id"]: r for r in summary["results"]}
        assert by_id[big["id"]]["employees_created"] == 0
        assert by_id[big["id"]]["error"].startswith("Insufficient credits")
        assert by_id[small["id"]]["employees_created"] == 3
        assert summary["total_credits_used"] == 3
        assert get_credit_summary(org["id"])["enrichment"]["remaining"] == 2

    def test_credits_run_out_mid_batch(self, org, store):
        a = create_company(org["id"], "Alpha", domain="alpha.com")
        b = create_company(org["id"], "Beta", domain="beta.com")
        provider = MockProvider({"alpha.com": _people("alpha", 20), "beta.com": _people("beta", 20)})

        summary = bulk_enrich(org["id"], company_ids=[a["id"], b["id"]], provider=provider, store=store)

        assert summary["total_credits_used"] == 20
        assert summary["results"][1]["error"].startswith("Insufficient credits")
        assert summary["results"][1]["employees_found"] == 20
        assert _employee_count(org["id"]) == 20
        assert get_credit_summary(org["id"])["enrichment"]["used"] == 20

    def test_cache_hits_counted(self, org, store):
        a = create_company(org["id"], "Alpha", domain="alpha.com")
        provider = MockProvider({"alpha.com": _people("alpha", 2)})
        bulk_enrich(org["id"], company_ids=[a["id"]], provider=provider, store=store)
        summary = bulk_enrich(org["id"], company_ids=[a["id"]], provider=provider, store=store)
        assert summary["cache_hits"] == 1
        assert summary["provider_fetches"] == 0
        assert summary["total_credits_used"] == 0

    def test_save_filters_and_create_leads(self, org, icp, store):
        create_company(org["id"], "Globex", domain="globex.com", search_id=icp["id"])
        provider = MockProvider({"globex.com": _people("globex", 2, title="VP Sales")})

        summary = bulk_enrich(
            org["id"], user_id=org["user_id"], icp_id=icp["id"],
            filters=EnrichmentFilters(titles=["VP"]),
            save_filters=True, create_leads=True,
            provider=provider, store=store,
        )

        assert summary["total_leads_created"] == 2
        leads = list_leads(org["id"])
        assert len(leads) == 2
        assert all(lead["search_id"] == icp["id"] for lead in leads)
        with get_connection() as conn:
            saved = get_icp(conn, org["id"], icp["id"])["filters"]["enrichment_filters"]
        assert saved["titles"] == ["VP"]

    def test_create_leads_promotes_existing_employees(self, org, store):
        company = create_company(org["id"], "Globex", domain="globex.com")
        provider = MockProvider({"globex.com": _people("globex", 3)})
        enrich_company(org["id"], company["id"], provider=provider, store=store)
        assert list_leads(org["id"]) == []

        summary = bulk_enrich(
            org["id"], company_ids=[company["id"]], create_leads=True,
            provider=provider, store=store,
        )

        assert summary["total_credits_used"] == 0
        assert summary["total_leads_created"] == 3
        assert len(list_leads(org["id"])) == 3
        assert _employee_count(org["id"]) == 3

    def test_company_ids_restricted_to_icp(self, org, icp, store):
        inside = create_company(org["id"], "Globex", domain="globex.com", search_id=icp["id"])
        outside = create_company(org["id"], "Initech", domain="initech.com")
        provider = MockProvider({"globex.com": _people("globex", 1), "initech.com": _people("initech", 1)})

        summary = bulk_enrich(
            org["id"], icp_id=icp["id"], company_ids=[inside["id"], outside["id"]],
            provider=provider, store=store,
        )
        assert [r["company_id"] for r in summary["results"]] == [inside["id"]]

    def test_defaults_to_lead_companies(self, org, store):
        with_lead = create_company(org["id"], "Globex", domain="globex.com")
        create_company(org["id"], "Initech", domain="initech.com")
        create_lead(org["id"], with_lead["id"], "Pat", "Smith")
        provider = MockProvider({"globex.com": _people("globex", 1)})

        summary = bulk_enrich(org["id"], provider=provider, store=store)
        assert summary["companies_processed"] == 1
        assert provider.calls == ["globex.com"]
        assert list_enrichment_transactions(org["id"])[0]["transaction_type"] == "leads_company_enrich"

    def test_no_targets(self, org, store):
        with pytest.raises(MissingPrerequisiteError):
            bulk_enrich(org["id"], provider=MockProvider(), store=store)

    def test_unknown_icp(self, org, store):
        with pytest.raises(NotFoundError):
            bulk_enrich(org["id"], icp_id="missing", provider=MockProvider(), store=store)


# ===========================================================================
# Preview and overview
# ===========================================================================

class TestPreview:
    def test_sorted_and_read_only(self, org, icp, store):
        small = create_company(org["id"], "Small", domain="small.com", search_id=icp["id"])
        empty = create_company(org["id"], "Empty", domain="empty.com", search_id=icp["id"])
        big = create_company(org["id"], "Big", domain="big.com", search_id=icp["id"])
        create_company(org["id"], "Stealth Co", search_id=icp["id"])
        provider = MockProvider({"small.com": _people("small", 2), "big.com": _people("big", 5)})

        preview = preview_enrichment(org["id"], icp_id=icp["id"], provider=provider, store=store)

        order = [r["company_id"] for r in preview["companies"][:3]]
        assert order == [big["id"], small["id"], empty["id"]]
        assert preview["companies"][3]["error"] == NO_DOMAIN_REASON
        totals = preview["totals"]
        assert totals["total_companies"] == 4
        assert totals["companies_without_domains"] == 1
        assert totals["companies_with_matches"] == 2
        assert totals["companies_without_matches"] == 1
        assert totals["total_credits_required"] == 7
        assert preview["credits_remaining"] == 30
        assert preview["has_enough_credits"] is True

        assert _employee_count(org["id"]) == 0
        assert get_credit_history(org["id"]) == []
        assert list_enrichment_transactions(org["id"]) == []
        with get_connection() as conn:
            assert get_company(conn, org["id"], small["id"])["is_enriched"] == 0

    def test_counts_existing_records(self, org, store):
        company = create_company(org["id"], "Globex", domain="globex.com")
        provider = MockProvider({"globex.com": _people("globex", 3)})
        enrich_company(org["id"], company["id"], provider=provider, store=store)

        provider.by_domain["globex.com"] = _people("globex", 5)
        preview = preview_enrichment(org["id"], company_ids=[company["id"]], provider=provider, store=store)
        row = preview["companies"][0]
        assert row["cache_hit"] is True
        assert row["already_in_org"] == 3
        assert row["new_employees_to_add"] == 0

    def test_not_enough_credits(self, org, store):
        company = create_company(org["id"], "Globex", domain="globex.com")
        provider = MockProvider({"globex.com": _people("globex", 40)})
        preview = preview_enrichment(org["id"], company_ids=[company["id"]], provider=provider, store=store)
        assert preview["totals"]["total_credits_required"] == 40
        assert preview["has_enough_credits"] is False

    def test_provider_error_becomes_row_error(self, org, store):
        company = create_company(org["id"], "Globex", domain="globex.com")
        provider = MockProvider(errors={"globex.com": ProviderError("down", retryable=False)})
        preview = preview_enrichment(org["id"], company_ids=[company["id"]], provider=provider, store=store)
        assert preview["companies"][0]["error"] == "down"
        assert preview["totals"]["total_credits_required"] == 0

    def test_unexpected_error_does_not_abort(self, org, store):
        bad = create_company(org["id"], "Bad", domain="bad.com")
        good = create_company(org["id"], "Good", domain="good.com")
        provider = MockProvider(
            {"good.com": _people("good", 2)},
            errors={"bad.com": RuntimeError("boom")},
        )

        preview = preview_enrichment(
            org["id"], company_ids=[bad["id"], good["id"]], provider=provider, store=store,
        )

        rows = {r["company_id"]: r for r in preview["companies"]}
        assert rows[bad["id"]]["error"] == "boom"
        assert rows[good["id"]]["new_employees_to_add"] == 2
        assert preview["totals"]["total_credits_required"] == 2


class TestIcpOverview:
    def test_overview(self, org, icp, store):
        create_company(org["id"], "Globex", domain="globex.com", search_id=icp["id"])
        create_company(org["id"], "Initech", domain="initech.com", search_id=icp["id"])
        create_company(org["id"], "Stealth Co", search_id=icp["id"])
        # warm the cache for globex through another organization
        other = create_organization("Other Org")
        theirs = create_company(other["id"], "Globex", domain="globex.com")
        enrich_company(
            other["id"], theirs["id"],
            provider=MockProvider({"globex.com": _people("globex", 4)}), store=store,
        )

        overview = icp_enrichment_overview(org["id"], icp["id"], store=store)
        assert overview["icp_name"] == "Mid-market SaaS"
        assert overview["total_companies"] == 3
        assert overview["companies_with_domains"] == 2
        assert overview["unenriched_companies"] == 2
        assert overview["cache_preview"] == {
            "companies_checked": 2,
            "companies_in_cache": 1,
            "total_cached_employees": 4,
        }
        assert overview["credits_remaining"] == 30
        assert overview["saved_filters"] is None

    def test_unknown_icp(self, org, store):
        with pytest.raises(NotFoundError):
            icp_enrichment_overview(org["id"], "missing", store=store)
