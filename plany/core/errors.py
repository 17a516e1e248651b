"""
plany/core/errors.py — Exception hierarchy for Plany.

Four families, by how the caller is expected to react:

- :class:`ConfigurationError` — fatal, stops startup.
- :class:`ValidationError` — recovered locally, shown as a retry prompt.
- :class:`ExternalServiceError` — retried by the orchestrator; only terminal
  outcomes become visible (as entry status).
- :class:`ConcurrencyError` — always recoverable ("already processing").
"""

from __future__ import annotations

from enum import Enum


class PlanyError(RuntimeError):
    """Base class for every error raised by Plany."""


# ──────────────────────────────────────────────────────────────
# Configuration / validation
# ──────────────────────────────────────────────────────────────

class ConfigurationError(PlanyError):
    """Raised for invalid settings or an attempt to re-wire a second store."""


class ValidationError(PlanyError):
    """Raised for unusable input such as an empty transcript."""


# ──────────────────────────────────────────────────────────────
# External services
# ──────────────────────────────────────────────────────────────

class ExternalServiceError(PlanyError):
    """Raised when a classifier, extractor or estimator call fails."""


class EnrichmentErrorKind(Enum):
    """Uniform failure surface of the enrichment client."""

    NETWORK = "NETWORK"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"


class EnrichmentError(ExternalServiceError):
    """
    Raised by an enrichment client when an estimate cannot be produced.

    Args:
        kind: Failure category; decides the orchestrator's retry policy.
        message: Optional human-readable detail.
    """

    def __init__(self, kind: EnrichmentErrorKind, message: str = "") -> None:
        self.kind = kind
        self.message = message
        super().__init__(
            f"{kind.value}" + (f": {message}" if message else "")
        )

    @property
    def retryable(self) -> bool:
        """True for transient failures (network, rate limiting)."""
        return self.kind in (EnrichmentErrorKind.NETWORK, EnrichmentErrorKind.RATE_LIMITED)


# ──────────────────────────────────────────────────────────────
# Concurrency / store
# ──────────────────────────────────────────────────────────────

class ConcurrencyError(PlanyError):
    """Base for recoverable conflicts on an entry id."""

    def __init__(self, entry_id: str, message: str) -> None:
        self.entry_id = entry_id
        super().__init__(f"{message}: {entry_id}")


class AlreadyInFlightError(ConcurrencyError):
    """An enrichment job for this entry is already queued or running."""

    def __init__(self, entry_id: str) -> None:
        super().__init__(entry_id, "Enrichment already in flight")


class DuplicateIdError(ConcurrencyError):
    """An entry with this id already exists in the store."""

    def __init__(self, entry_id: str) -> None:
        super().__init__(entry_id, "Duplicate entry id")


class EntryNotFoundError(PlanyError):
    """No entry with the given id exists in the store."""

    def __init__(self, entry_id: str) -> None:
        self.entry_id = entry_id
        super().__init__(f"Entry not found: {entry_id}")
