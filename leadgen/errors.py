"""Exceptions raised by enrichment operations."""

from __future__ import annotations


class EnrichmentError(Exception):
    """Base class for errors that abort an enrichment request."""

    status_code = 500


class NotFoundError(EnrichmentError):
    """Raised when a company or ICP does not exist in the organization."""

    status_code = 404


class MissingPrerequisiteError(EnrichmentError):
    """Raised when a company lacks the data needed to enrich it (e.g. domain)."""

    status_code = 400


class InsufficientCreditsError(EnrichmentError):
    """Raised when the ledger cannot cover the new records of a request."""

    status_code = 402

    def __init__(
        self,
        required: int,
        remaining: int,
        limit_type: str = "organization",
        message: str | None = None,
    ) -> None:
        self.required = required
        self.remaining = remaining
        self.limit_type = limit_type
        super().__init__(
            message
            or f"Insufficient credits: {required} required, {remaining} remaining"
        )

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "required": self.required,
            "remaining": self.remaining,
            "limit_type": self.limit_type,
        }
