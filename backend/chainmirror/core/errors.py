"""
Chain Mirror - Error Taxonomy

NetworkError   transient; the next scheduled pass retries
QueryError     ledger rejected the query; the entity type is skipped this pass
BlobNotFound   permanent for that content hash; record proceeds without enrichment
StoreError     one mirror write failed; the rest of the pass continues
"""

from typing import Any, Optional


class SyncError(Exception):
    """Base class for every synchronizer failure."""


class ConfigurationError(SyncError):
    """Required settings are missing or inconsistent."""


class NetworkError(SyncError):
    """Endpoint unreachable, timed out, or answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QueryError(SyncError):
    """The GraphQL envelope carried application-level errors."""

    def __init__(self, message: str, errors: Optional[list[Any]] = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class BlobNotFound(SyncError):
    """The ledger holds no data for a content hash."""

    def __init__(self, content_hash: str) -> None:
        super().__init__(f"No data blob for hash {content_hash}")
        self.content_hash = content_hash


class StoreError(SyncError):
    """A mirror store operation failed."""
