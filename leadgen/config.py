"""Configuration loading from environment variables and defaults."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")


def _env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)


# Database
DB_PATH = Path(_env("LEADGEN_DB_PATH", "") or str(_PROJECT_ROOT / "data" / "leadgen.db"))

# Apollo.io people search
APOLLO_API_KEY = _env("APOLLO_API_KEY")
APOLLO_BASE_URL = _env("APOLLO_BASE_URL", "https://api.apollo.io/api/v1")
APOLLO_TIMEOUT = float(_env("APOLLO_TIMEOUT", "30"))
APOLLO_PAGE_SIZE = 100
APOLLO_MAX_PAGES = int(_env("APOLLO_MAX_PAGES", "10"))

# Rate limiting (requests per second)
APOLLO_RATE_LIMIT = float(_env("APOLLO_RATE_LIMIT", "2"))

# Which registered provider the cache manager calls
ENRICHMENT_PROVIDER = _env("ENRICHMENT_PROVIDER", "apollo")

# Retry policy for provider calls
PROVIDER_MAX_ATTEMPTS = int(_env("PROVIDER_MAX_ATTEMPTS", "3"))
PROVIDER_BACKOFF_SECONDS = float(_env("PROVIDER_BACKOFF_SECONDS", "1.0"))

# Global cache freshness window (days)
DEFAULT_STALE_DAYS = int(_env("LEADGEN_STALE_DAYS", "30"))

# Credits granted to an organization with no plan on record
DEFAULT_ENRICHMENT_LIMIT = int(_env("LEADGEN_DEFAULT_ENRICHMENT_LIMIT", "30"))
DEFAULT_ICP_LIMIT = int(_env("LEADGEN_DEFAULT_ICP_LIMIT", "1000"))

# Pause between companies in bulk runs (seconds)
BULK_COMPANY_DELAY = float(_env("LEADGEN_BULK_COMPANY_DELAY", "0.1"))
PREVIEW_COMPANY_DELAY = float(_env("LEADGEN_PREVIEW_COMPANY_DELAY", "0.05"))

# Companies sampled by the ICP quick-enrich overview
QUICK_ENRICH_PREVIEW_SIZE = 20

# Authentication
LEADGEN_AUTH_ENABLED = _env("LEADGEN_AUTH_ENABLED", "true").lower() in ("true", "1", "yes")

# Logging
LOG_LEVEL = _env("LEADGEN_LOG_LEVEL", "INFO").upper()
