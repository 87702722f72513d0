"""Domain exceptions for the sync engine."""

from __future__ import annotations


class OathSyncError(Exception):
    """Base class for sync engine errors."""


class ConfigurationError(OathSyncError):
    """Configuration is missing or invalid for the requested operation."""


class SourceFetchError(OathSyncError):
    """A single query against the source dataset failed."""

    def __init__(self, term: str, message: str):
        super().__init__(f"Source query for '{term}' failed: {message}")
        self.term = term


class EnrichmentInvocationError(OathSyncError):
    """The enrichment worker could not be reached or answered garbage.

    ``responded`` is True when the worker did answer (the call counts
    against the daily quota) but the answer could not be interpreted.
    """

    def __init__(self, message: str, responded: bool = False):
        super().__init__(message)
        self.responded = responded


class RunLockedError(OathSyncError):
    """Another sync run currently holds the run lock."""

    def __init__(self, holder: str | None = None):
        super().__init__(f"Sync run already in progress (run_id={holder})")
        self.holder = holder
