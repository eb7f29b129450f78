"""SQLite connection management, schema initialization, and helpers."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from . import config

log = logging.getLogger(__name__)

_SCHEMA_SQL = """\
-- Organizations (tenants)
CREATE TABLE IF NOT EXISTS organizations (
    id         TEXT PRIMARY KEY,
    name       TEXT NOT NULL,
    slug       TEXT UNIQUE,
    is_active  INTEGER DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Users (minimal; FK target for membership and audit columns)
CREATE TABLE IF NOT EXISTS users (
    id         TEXT PRIMARY KEY,
    email      TEXT NOT NULL UNIQUE,
    name       TEXT,
    is_active  INTEGER DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Membership with per-member credit allowances (NULL limit = unlimited)
CREATE TABLE IF NOT EXISTS organization_members (
    id               TEXT PRIMARY KEY,
    organization_id  TEXT NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    user_id          TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    role             TEXT DEFAULT 'member',
    enrichment_limit INTEGER,
    enrichment_used  INTEGER NOT NULL DEFAULT 0,
    icp_limit        INTEGER,
    icp_used         INTEGER NOT NULL DEFAULT 0,
    is_blocked       INTEGER NOT NULL DEFAULT 0,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    UNIQUE(organization_id, user_id)
);

-- ICPs (saved searches grouping companies)
CREATE TABLE IF NOT EXISTS searches (
    id              TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    name            TEXT NOT NULL,
    filters         TEXT,
    created_by      TEXT REFERENCES users(id) ON DELETE SET NULL,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

-- Org-scoped companies
CREATE TABLE IF NOT EXISTS companies (
    id              TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    search_id       TEXT REFERENCES searches(id) ON DELETE SET NULL,
    name            TEXT NOT NULL,
    domain          TEXT,
    website_url     TEXT,
    linkedin_url    TEXT,
    industry        TEXT,
    size            TEXT,
    location        TEXT,
    description     TEXT,
    logo_url        TEXT,
    is_enriched     INTEGER NOT NULL DEFAULT 0,
    enriched_at     TEXT,
    metadata        TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

-- Org-scoped employees (materialized copies of global cache rows)
CREATE TABLE IF NOT EXISTS employees (
    id              TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    company_id      TEXT NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
    apollo_id       TEXT,
    first_name      TEXT NOT NULL,
    last_name       TEXT NOT NULL,
    email           TEXT,
    phone           TEXT,
    job_title       TEXT,
    linkedin_url    TEXT,
    location        TEXT,
    seniority       TEXT,
    department      TEXT,
    is_shortlisted  INTEGER NOT NULL DEFAULT 0,
    metadata        TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

-- Outreach pipeline
CREATE TABLE IF NOT EXISTS leads (
    id              TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    company_id      TEXT NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
    employee_id     TEXT REFERENCES employees(id) ON DELETE SET NULL,
    search_id       TEXT REFERENCES searches(id) ON DELETE SET NULL,
    first_name      TEXT NOT NULL,
    last_name       TEXT NOT NULL,
    email           TEXT,
    phone           TEXT,
    job_title       TEXT,
    linkedin_url    TEXT,
    status          TEXT NOT NULL DEFAULT 'new',
    created_by      TEXT REFERENCES users(id) ON DELETE SET NULL,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

-- Platform-wide company cache, keyed by domain
CREATE TABLE IF NOT EXISTS global_companies (
    id                        TEXT PRIMARY KEY,
    domain                    TEXT NOT NULL UNIQUE,
    name                      TEXT,
    linkedin_url              TEXT,
    website_url               TEXT,
    industry                  TEXT,
    size                      TEXT,
    location                  TEXT,
    description               TEXT,
    logo_url                  TEXT,
    employees_count           INTEGER NOT NULL DEFAULT 0,
    employees_last_fetched_at TEXT,
    stale_after_days          INTEGER,
    enrichment_source         TEXT,
    profile_fetched_at        TEXT,
    metadata                  TEXT,
    created_at                TEXT NOT NULL,
    updated_at                TEXT NOT NULL
);

-- Platform-wide employee cache, keyed by provider identity
CREATE TABLE IF NOT EXISTS global_employees (
    id                   TEXT PRIMARY KEY,
    apollo_id            TEXT NOT NULL UNIQUE,
    company_domain       TEXT NOT NULL,
    company_name         TEXT,
    company_linkedin_url TEXT,
    first_name           TEXT NOT NULL,
    last_name            TEXT NOT NULL,
    email                TEXT,
    phone                TEXT,
    job_title            TEXT,
    linkedin_url         TEXT,
    location             TEXT,
    seniority            TEXT,
    department           TEXT,
    metadata             TEXT,
    fetched_at           TEXT NOT NULL,
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL
);

-- One credit ledger row per organization
CREATE TABLE IF NOT EXISTS credit_usage (
    id                  TEXT PRIMARY KEY,
    organization_id     TEXT NOT NULL UNIQUE REFERENCES organizations(id) ON DELETE CASCADE,
    plan_id             TEXT NOT NULL DEFAULT 'free',
    enrichment_limit    INTEGER NOT NULL,
    enrichment_used     INTEGER NOT NULL DEFAULT 0,
    icp_limit           INTEGER NOT NULL,
    icp_used            INTEGER NOT NULL DEFAULT 0,
    billing_cycle_start TEXT NOT NULL,
    billing_cycle_end   TEXT NOT NULL,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

-- Append-only credit movements
CREATE TABLE IF NOT EXISTS credit_history (
    id               TEXT PRIMARY KEY,
    organization_id  TEXT NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    user_id          TEXT REFERENCES users(id) ON DELETE SET NULL,
    credit_type      TEXT NOT NULL,
    transaction_type TEXT NOT NULL,
    credits_used     INTEGER NOT NULL,
    balance_after    INTEGER NOT NULL,
    description      TEXT,
    search_id        TEXT,
    company_id       TEXT,
    metadata         TEXT,
    created_at       TEXT NOT NULL
);

-- Append-only enrichment audit log
CREATE TABLE IF NOT EXISTS enrichment_transactions (
    id                  TEXT PRIMARY KEY,
    organization_id     TEXT NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    user_id             TEXT REFERENCES users(id) ON DELETE SET NULL,
    transaction_type    TEXT NOT NULL,
    credits_used        INTEGER NOT NULL DEFAULT 0,
    company_id          TEXT,
    search_id           TEXT,
    employee_count      INTEGER NOT NULL DEFAULT 0,
    cache_hit           INTEGER NOT NULL DEFAULT 0,
    provider_calls_made INTEGER NOT NULL DEFAULT 0,
    metadata            TEXT,
    created_at          TEXT NOT NULL
);
"""

_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS idx_members_user ON organization_members(user_id);
CREATE INDEX IF NOT EXISTS idx_searches_org ON searches(organization_id);
CREATE INDEX IF NOT EXISTS idx_companies_org ON companies(organization_id);
CREATE INDEX IF NOT EXISTS idx_companies_search ON companies(search_id);
CREATE INDEX IF NOT EXISTS idx_companies_domain ON companies(domain);
CREATE INDEX IF NOT EXISTS idx_employees_company ON employees(company_id);
CREATE INDEX IF NOT EXISTS idx_leads_org ON leads(organization_id);
CREATE INDEX IF NOT EXISTS idx_leads_company ON leads(company_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_leads_employee ON leads(employee_id)
    WHERE employee_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_global_employees_domain ON global_employees(company_domain);
CREATE INDEX IF NOT EXISTS idx_credit_history_org ON credit_history(organization_id, created_at);
CREATE INDEX IF NOT EXISTS idx_enrichment_tx_org ON enrichment_transactions(organization_id, created_at);

-- Org employee dedupe: provider identity, email, or name when email is absent
CREATE UNIQUE INDEX IF NOT EXISTS idx_employees_apollo
    ON employees(organization_id, company_id, apollo_id)
    WHERE apollo_id IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS idx_employees_email
    ON employees(organization_id, company_id, lower(email))
    WHERE email IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS idx_employees_name
    ON employees(organization_id, company_id, lower(first_name), lower(last_name))
    WHERE email IS NULL;
"""


def _db_path() -> Path:
    return config.DB_PATH


def init_db(db_path: Path | None = None) -> None:
    """Create the database file and initialize all tables and indexes."""
    path = db_path or _db_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(path))
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.executescript(_SCHEMA_SQL)
        conn.executescript(_INDEX_SQL)
        conn.commit()
        log.info("Database initialized at %s", path)
    finally:
        conn.close()


@contextmanager
def get_connection(db_path: Path | None = None) -> Iterator[sqlite3.Connection]:
    """Context manager yielding a SQLite connection with WAL and FK enforcement.

    Commits on clean exit, rolls back on exception.
    """
    path = db_path or _db_path()
    conn = sqlite3.connect(str(path), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def write_transaction(db_path: Path | None = None) -> Iterator[sqlite3.Connection]:
    """Like get_connection(), but takes the write lock up front.

    Reads made inside the block (credit balance, existing employees) cannot
    be invalidated by a concurrent writer before the block commits.
    """
    with get_connection(db_path) as conn:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
