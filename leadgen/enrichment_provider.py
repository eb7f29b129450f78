"""People-search provider interface, errors, and registry."""

from __future__ import annotations

from abc import ABC, abstractmethod

from .errors import EnrichmentError
from .models import CompanyProfile, EnrichedPerson


class ProviderError(EnrichmentError):
    """Raised when the external provider call fails.

    ``retryable`` marks transient failures (timeouts, 429, 5xx); a missing
    API key or a rejected request is not retryable.
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.http_status = status_code
        self.retryable = retryable


class PeopleSearchProvider(ABC):
    """Base class for people-search providers."""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    def rate_limit(self) -> float:
        return 1.0

    @property
    def is_configured(self) -> bool:
        return True

    @abstractmethod
    def search_people_at_company(
        self,
        domain: str,
        titles: list[str] | None = None,
        seniorities: list[str] | None = None,
        max_pages: int = 10,
        fetch_all: bool = False,
    ) -> list[EnrichedPerson]:
        """Return people currently employed at *domain*.

        An empty list is a successful answer. Failures raise ProviderError.
        """
        ...

    def enrich_organization(self, domain: str) -> CompanyProfile | None:
        """Return firmographic data for *domain*, or None if unknown."""
        return None


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------

_registry: dict[str, PeopleSearchProvider] = {}


def register_provider(provider: PeopleSearchProvider) -> None:
    """Register a provider instance by name."""
    _registry[provider.name] = provider


def get_provider(name: str) -> PeopleSearchProvider | None:
    """Look up a registered provider by name."""
    return _registry.get(name)


def list_providers() -> list[PeopleSearchProvider]:
    """Return all registered providers."""
    return list(_registry.values())
