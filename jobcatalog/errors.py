"""Exception taxonomy for the job catalog pipeline.

Per-posting and per-source errors are isolated by the sync pipeline;
only a store outage is allowed to end a run early.
"""

from __future__ import annotations


class CatalogError(Exception):
    """Base class for every error raised by this package."""


class SourceError(CatalogError):
    """A source could not be fetched. Skips that source for this run."""

    classification = "error"

    def __init__(self, source: str, message: str):
        super().__init__(f"[{source}] {message}")
        self.source = source
        self.message = message


class TransientFetchError(SourceError):
    """Network failure, timeout, 429 or 5xx. Worth retrying next run."""

    classification = "transient"


class SourceNotFoundError(SourceError):
    """The source does not exist upstream (HTTP 404) or is not configured."""

    classification = "not_found"


class MalformedSourceError(SourceError):
    """The source answered, but not with the shape we expect."""

    classification = "malformed"


class ValidationError(CatalogError):
    """A single posting is missing required fields."""


class PersistenceError(CatalogError):
    """The catalog store (or delivery ledger) rejected a read or write."""


class DeliveryError(CatalogError):
    """The notification sender failed to deliver a message."""
