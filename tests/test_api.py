"""Tests for the JSON API (/api/v1/)."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from leadgen.database import init_db
from leadgen.enrichment_provider import PeopleSearchProvider, ProviderError, register_provider
from leadgen.models import EnrichedPerson
from leadgen.records import (
    add_member,
    create_company,
    create_icp,
    create_organization,
    create_user,
    list_company_employees,
)


class MockProvider(PeopleSearchProvider):
    """Registered as the configured provider for the API tests."""

    def __init__(self):
        self.by_domain = {}
        self.errors = {}

    @property
    def name(self) -> str:
        return "api-mock"

    def search_people_at_company(self, domain, titles=None, seniorities=None,
                                 max_pages=10, fetch_all=False):
        if domain in self.errors:
            raise self.errors[domain]
        return list(self.by_domain.get(domain, []))


def _people(prefix, n):
    return [
        EnrichedPerson(apollo_id=f"{prefix}-{i}", first_name=f"F{i}", last_name=f"L{i}",
                       job_title="Engineer")
        for i in range(n)
    ]


@pytest.fixture()
def provider(monkeypatch):
    p = MockProvider()
    register_provider(p)
    monkeypatch.setattr("leadgen.config.ENRICHMENT_PROVIDER", "api-mock")
    return p


@pytest.fixture()
def tmp_db(tmp_path, monkeypatch):
    """Create a temporary database and point config at it."""
    db_file = tmp_path / "test.db"
    monkeypatch.setattr("leadgen.config.DB_PATH", db_file)
    monkeypatch.setattr("leadgen.config.LEADGEN_AUTH_ENABLED", False)
    monkeypatch.setattr("leadgen.config.BULK_COMPANY_DELAY", 0)
    monkeypatch.setattr("leadgen.config.PREVIEW_COMPANY_DELAY", 0)
    monkeypatch.setattr("leadgen.config.PROVIDER_BACKOFF_SECONDS", 0)
    init_db(db_file)
    return db_file


@pytest.fixture()
def seed(tmp_db):
    org = create_organization("Acme Outbound")
    admin = create_user("admin@acme.com", name="Admin")
    add_member(org["id"], admin["id"], role="admin")
    rep = create_user("rep@acme.com", name="Rep")
    add_member(org["id"], rep["id"], role="member")
    icp = create_icp(org["id"], "Mid-market SaaS", created_by=admin["id"])
    company = create_company(org["id"], "Globex", domain="globex.com", search_id=icp["id"])
    return {"org": org, "admin": admin, "rep": rep, "icp": icp, "company": company}


@pytest.fixture()
def client(tmp_db, provider):
    from leadgen.web.app import create_app
    app = create_app()
    return TestClient(app, raise_server_exceptions=False)


def _as(seed, who):
    return {"X-Org-Id": seed["org"]["id"], "X-User-Id": seed[who]["id"]}


# ===========================================================================
# Health
# ===========================================================================

class TestHealth:
    def test_health(self, client):
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


# ===========================================================================
# Single-company enrichment
# ===========================================================================

class TestEnrichEmployees:
    def test_enrich(self, client, seed, provider):
        provider.by_domain["globex.com"] = _people("g", 3)
        resp = client.post(
            f"/api/v1/companies/{seed['company']['id']}/enrich-employees",
            json={"filters": {"titles": ["Engineer"]}},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["employees_created"] == 3
        assert data["credits_remaining"] == 27
        assert data["filters"]["titles"] == ["Engineer"]

    def test_empty_body(self, client, seed, provider):
        provider.by_domain["globex.com"] = _people("g", 1)
        resp = client.post(f"/api/v1/companies/{seed['company']['id']}/enrich-employees")
        assert resp.status_code == 200
        assert resp.json()["employees_created"] == 1

    def test_status(self, client, seed, provider):
        provider.by_domain["globex.com"] = _people("g", 2)
        url = f"/api/v1/companies/{seed['company']['id']}/enrich-employees"
        client.post(url, json={})
        data = client.get(url).json()
        assert data["employees_in_cache"] == 2
        assert data["employees_in_org"] == 2

    def test_unknown_company(self, client, seed):
        resp = client.post("/api/v1/companies/missing/enrich-employees", json={})
        assert resp.status_code == 404
        assert resp.json()["error"] == "Company not found"

    def test_missing_domain(self, client, seed):
        company = create_company(seed["org"]["id"], "Stealth Co")
        resp = client.post(f"/api/v1/companies/{company['id']}/enrich-employees", json={})
        assert resp.status_code == 400
        assert "domain" in resp.json()["error"]

    def test_insufficient_credits(self, client, seed, provider):
        provider.by_domain["globex.com"] = _people("g", 31)
        resp = client.post(
            f"/api/v1/companies/{seed['company']['id']}/enrich-employees", json={},
        )
        assert resp.status_code == 402
        data = resp.json()
        assert data["required"] == 31
        assert data["remaining"] == 30
        assert list_company_employees(seed["company"]["id"]) == []

    def test_provider_failure(self, client, seed, provider):
        provider.errors["globex.com"] = ProviderError("Apollo API error: 401", retryable=False)
        resp = client.post(
            f"/api/v1/companies/{seed['company']['id']}/enrich-employees", json={},
        )
        assert resp.status_code == 502
        assert resp.json()["error"] == "Failed to enrich employees"
        assert "401" in resp.json()["details"]

    def test_invalid_json(self, client, seed):
        resp = client.post(
            f"/api/v1/companies/{seed['company']['id']}/enrich-employees",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400


# ===========================================================================
# Bulk, quick enrich, preview
# ===========================================================================

class TestBulk:
    def test_quick_enrich(self, client, seed, provider):
        provider.by_domain["globex.com"] = _people("g", 2)
        create_company(seed["org"]["id"], "Stealth Co", search_id=seed["icp"]["id"])

        resp = client.post(
            f"/api/v1/icps/{seed['icp']['id']}/quick-enrich",
            json={"filters": {"seniorities": ["Director"]}, "create_leads": True},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["companies_processed"] == 1
        assert data["companies_skipped"] == 1

        overview = client.get(f"/api/v1/icps/{seed['icp']['id']}/quick-enrich").json()
        assert overview["enriched_companies"] == 1
        assert overview["saved_filters"]["seniorities"] == ["director"]

    def test_quick_enrich_unknown_icp(self, client, seed):
        resp = client.post("/api/v1/icps/missing/quick-enrich", json={})
        assert resp.status_code == 404

    def test_bulk_by_ids(self, client, seed, provider):
        provider.by_domain["globex.com"] = _people("g", 2)
        resp = client.post(
            "/api/v1/companies/enrich", json={"company_ids": [seed["company"]["id"]]},
        )
        assert resp.status_code == 200
        assert resp.json()["total_credits_used"] == 2

    def test_bulk_no_targets(self, client, seed):
        resp = client.post("/api/v1/companies/enrich", json={})
        assert resp.status_code == 400
        assert resp.json()["error"] == "No companies found to enrich"

    def test_preview(self, client, seed, provider):
        provider.by_domain["globex.com"] = _people("g", 4)
        resp = client.post(
            "/api/v1/companies/enrich/preview", json={"icp_id": seed["icp"]["id"]},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["totals"]["total_credits_required"] == 4
        assert data["has_enough_credits"] is True
        assert client.get("/api/v1/credits").json()["enrichment"]["used"] == 0


# ===========================================================================
# Cache
# ===========================================================================

class TestCache:
    def test_cache_status_and_refresh(self, client, seed, provider):
        provider.by_domain["globex.com"] = _people("g", 2)
        client.post(f"/api/v1/companies/{seed['company']['id']}/enrich-employees", json={})

        data = client.get("/api/v1/cache/Globex.com").json()
        assert data["domain"] == "globex.com"
        assert data["state"] == "fresh"
        assert data["cached_employees"] == 2

        resp = client.post("/api/v1/cache/globex.com/refresh", headers=_as(seed, "admin"))
        assert resp.status_code == 200
        assert client.get("/api/v1/cache/globex.com").json()["state"] == "stale"

    def test_refresh_unknown_domain(self, client, seed):
        resp = client.post("/api/v1/cache/nowhere.example/refresh", headers=_as(seed, "admin"))
        assert resp.status_code == 404

    def test_refresh_requires_admin(self, client, seed):
        resp = client.post("/api/v1/cache/globex.com/refresh", headers=_as(seed, "rep"))
        assert resp.status_code == 403


# ===========================================================================
# Credits and leads
# ===========================================================================

class TestCredits:
    def test_summary(self, client, seed):
        data = client.get("/api/v1/credits").json()
        assert data["enrichment"]["limit"] == 30
        assert data["plan"]["id"] == "free"

    def test_change_plan(self, client, seed):
        resp = client.patch("/api/v1/credits", json={"plan_id": "advanced"}, headers=_as(seed, "admin"))
        assert resp.status_code == 200
        assert resp.json()["enrichment"]["limit"] == 650

    def test_invalid_plan(self, client, seed):
        resp = client.patch("/api/v1/credits", json={"plan_id": "gold"}, headers=_as(seed, "admin"))
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid plan ID"

    def test_change_plan_requires_admin(self, client, seed):
        resp = client.patch("/api/v1/credits", json={"plan_id": "basic"}, headers=_as(seed, "rep"))
        assert resp.status_code == 403

    def test_history(self, client, seed, provider):
        provider.by_domain["globex.com"] = _people("g", 2)
        client.post(f"/api/v1/companies/{seed['company']['id']}/enrich-employees", json={})
        data = client.get("/api/v1/credits/history", params={"type": "enrichment"}).json()
        assert data["history"][0]["credits_used"] == 2
        assert data["transactions"][0]["transaction_type"] == "company_enrich"


class TestPromote:
    def test_promote(self, client, seed, provider):
        provider.by_domain["globex.com"] = _people("g", 2)
        client.post(f"/api/v1/companies/{seed['company']['id']}/enrich-employees", json={})
        ids = [e["id"] for e in list_company_employees(seed["company"]["id"])]

        resp = client.post("/api/v1/employees/promote", json={"employee_ids": ids})
        assert resp.status_code == 200
        assert resp.json()["leads_created"] == 2
        again = client.post("/api/v1/employees/promote", json={"employee_ids": ids})
        assert again.json()["leads_created"] == 0

    def test_promote_requires_ids(self, client, seed):
        resp = client.post("/api/v1/employees/promote", json={})
        assert resp.status_code == 400

    def test_promote_unknown_icp(self, client, seed):
        resp = client.post(
            "/api/v1/employees/promote", json={"employee_ids": ["x"], "icp_id": "missing"},
        )
        assert resp.status_code == 404


# ===========================================================================
# Organization context
# ===========================================================================

class TestOrgContext:
    def test_headers_required_when_auth_enabled(self, client, seed, monkeypatch):
        monkeypatch.setattr("leadgen.config.LEADGEN_AUTH_ENABLED", True)
        resp = client.get("/api/v1/credits")
        assert resp.status_code == 401
        assert resp.json()["error"] == "Unauthorized - Organization required"

    def test_valid_membership_accepted(self, client, seed, monkeypatch):
        monkeypatch.setattr("leadgen.config.LEADGEN_AUTH_ENABLED", True)
        resp = client.get("/api/v1/credits", headers=_as(seed, "rep"))
        assert resp.status_code == 200

    def test_foreign_org_rejected(self, client, seed, monkeypatch):
        monkeypatch.setattr("leadgen.config.LEADGEN_AUTH_ENABLED", True)
        other = create_organization("Other Org")
        resp = client.get(
            "/api/v1/credits",
            headers={"X-Org-Id": other["id"], "X-User-Id": seed["rep"]["id"]},
        )
        assert resp.status_code == 401

    def test_health_is_public(self, client, seed, monkeypatch):
        monkeypatch.setattr("leadgen.config.LEADGEN_AUTH_ENABLED", True)
        assert client.get("/api/v1/health").status_code == 200

    def test_no_membership_in_bypass_mode(self, client):
        resp = client.get("/api/v1/credits")
        assert resp.status_code == 401
