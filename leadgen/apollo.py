"""Apollo.io people-search provider."""

from __future__ import annotations

import logging
import math

import requests

from . import config
from .enrichment_provider import (
    PeopleSearchProvider,
    ProviderError,
    register_provider,
)
from .models import CompanyProfile, EnrichedPerson
from .throttle import RateLimiter

log = logging.getLogger(__name__)

_SEARCH_PATH = "/mixed_people/api_search"
_ORG_ENRICH_PATH = "/organizations/enrich"

# Our seniority levels -> Apollo person_seniorities values
SENIORITY_TO_APOLLO = {
    "c_suite": ["c_suite", "founder", "owner"],
    "vp": ["vp"],
    "director": ["director"],
    "manager": ["manager"],
    "senior": ["senior"],
    "entry": ["entry", "intern"],
}


def map_seniorities(seniorities: list[str] | None) -> list[str]:
    """Expand seniority levels into the Apollo values they cover."""
    out: list[str] = []
    for level in seniorities or []:
        for value in SENIORITY_TO_APOLLO.get(level.lower(), [level.lower()]):
            if value not in out:
                out.append(value)
    return out


def _join_location(obj: dict) -> str | None:
    parts = [obj.get(k) for k in ("city", "state", "country")]
    parts = [p for p in parts if p]
    return ", ".join(parts) if parts else None


def _primary_phone(person: dict) -> str | None:
    """Prefer a verified number, then the first one listed."""
    numbers = person.get("phone_numbers") or []
    for num in numbers:
        if num.get("status") == "verified" and num.get("sanitized_number"):
            return num["sanitized_number"]
    if numbers:
        return numbers[0].get("sanitized_number") or None
    return None


def parse_person(person: dict) -> EnrichedPerson | None:
    """Map one api_search result to an EnrichedPerson."""
    if not person:
        return None
    departments = list(person.get("departments") or [])
    return EnrichedPerson(
        apollo_id=person.get("id") or None,
        first_name=person.get("first_name") or "",
        # api_search returns obfuscated surnames for unrevealed people
        last_name=(
            person.get("last_name")
            or person.get("last_name_obfuscated")
            or "Unknown"
        ),
        email=person.get("email") or None,
        phone=_primary_phone(person),
        job_title=person.get("title") or None,
        linkedin_url=person.get("linkedin_url") or None,
        location=_join_location(person),
        seniority=person.get("seniority") or None,
        department=departments[0] if departments else None,
        departments=departments,
    )


def parse_organization(domain: str, org: dict) -> CompanyProfile:
    """Map an organizations/enrich payload to a CompanyProfile."""
    employees = org.get("estimated_num_employees")
    return CompanyProfile(
        domain=(org.get("primary_domain") or domain).lower(),
        name=org.get("name") or "",
        linkedin_url=org.get("linkedin_url") or None,
        website_url=org.get("website_url") or None,
        industry=org.get("industry") or None,
        size=str(employees) if employees else None,
        location=_join_location(org),
        description=org.get("short_description") or org.get("seo_description") or None,
        logo_url=org.get("logo_url") or None,
        estimated_employees=employees or None,
        extra={
            "phone": org.get("phone"),
            "founded_year": org.get("founded_year"),
            "annual_revenue": org.get("annual_revenue_printed"),
            "total_funding": org.get("total_funding_printed"),
            "technologies": org.get("technologies") or [],
            "keywords": org.get("keywords") or [],
        },
    )


class ApolloProvider(PeopleSearchProvider):
    """People search and organization enrichment via the Apollo.io REST API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        session: requests.Session | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._session = session
        self._limiter = rate_limiter

    @property
    def name(self) -> str:
        return "apollo"

    @property
    def rate_limit(self) -> float:
        return config.APOLLO_RATE_LIMIT

    @property
    def api_key(self) -> str:
        return self._api_key if self._api_key is not None else config.APOLLO_API_KEY

    @property
    def base_url(self) -> str:
        return (self._base_url or config.APOLLO_BASE_URL).rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({
                "Content-Type": "application/json",
                "Cache-Control": "no-cache",
            })
        return self._session

    def _get_limiter(self) -> RateLimiter:
        if self._limiter is None:
            self._limiter = RateLimiter(rate=self.rate_limit)
        return self._limiter

    def _post(self, path: str, body: dict) -> dict:
        if not self.api_key:
            raise ProviderError("APOLLO_API_KEY is not configured", retryable=False)

        self._get_limiter().acquire()
        try:
            resp = self._get_session().post(
                self.base_url + path,
                json=body,
                headers={"X-Api-Key": self.api_key},
                timeout=config.APOLLO_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise ProviderError(f"Apollo request failed: {exc}") from exc

        if resp.status_code != 200:
            retryable = resp.status_code == 429 or resp.status_code >= 500
            log.error("Apollo API error %d on %s: %s", resp.status_code, path, resp.text[:500])
            raise ProviderError(
                f"Apollo API error: {resp.status_code} - {resp.text[:200]}",
                status_code=resp.status_code,
                retryable=retryable,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError(f"Apollo returned invalid JSON: {exc}") from exc

    def search_people_at_company(
        self,
        domain: str,
        titles: list[str] | None = None,
        seniorities: list[str] | None = None,
        max_pages: int = 10,
        fetch_all: bool = False,
    ) -> list[EnrichedPerson]:
        per_page = config.APOLLO_PAGE_SIZE
        base_body: dict = {"q_organization_domains_list": [domain]}
        if titles:
            base_body["person_titles"] = list(titles)
        mapped = map_seniorities(seniorities)
        if mapped:
            base_body["person_seniorities"] = mapped

        people: list[EnrichedPerson] = []
        total_entries = 0
        page = 1
        while fetch_all or page <= max_pages:
            data = self._post(_SEARCH_PATH, {**base_body, "per_page": per_page, "page": page})
            if page == 1:
                pagination = data.get("pagination") or {}
                total_entries = pagination.get("total_entries") or data.get("total_entries") or 0
                log.info("Apollo: %d people available at %s", total_entries, domain)

            page_people = [p for p in map(parse_person, data.get("people") or []) if p]
            people.extend(page_people)
            log.debug("Apollo page %d: %d people (total %d)", page, len(page_people), len(people))

            total_pages = math.ceil(total_entries / per_page)
            if not page_people or page >= total_pages:
                break
            page += 1

        log.info("Apollo: fetched %d of %d people at %s", len(people), total_entries, domain)
        return people

    def enrich_organization(self, domain: str) -> CompanyProfile | None:
        data = self._post(_ORG_ENRICH_PATH, {"domain": domain})
        org = data.get("organization")
        if not org:
            log.info("Apollo: no organization found for %s", domain)
            return None
        return parse_organization(domain, org)


# Auto-register on import
_provider = ApolloProvider()
register_provider(_provider)
