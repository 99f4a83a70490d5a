"""
Error taxonomy for the query pipeline.

Each error carries the HTTP status and machine-readable code the API layer
reports. ``CacheError`` and ``AnalyticsLogError`` are raised internally only:
the components that own the cache and the analytics log catch them, log a
warning and carry on.
"""

from __future__ import annotations


class WarehouseKBError(Exception):
    """Base class for all pipeline errors."""

    status_code: int = 500
    code: str = "internal_error"


class InvalidQueryError(WarehouseKBError, ValueError):
    """Raised when client input violates length or shape constraints."""

    status_code = 400
    code = "invalid_query"


class NotFoundError(WarehouseKBError, LookupError):
    """Raised when a referenced document, search or conversation is missing."""

    status_code = 404
    code = "not_found"


class PermissionDeniedError(WarehouseKBError):
    """Raised when an administrative endpoint is called without the admin role."""

    status_code = 403
    code = "permission_denied"


class SearchCancelledError(WarehouseKBError):
    """Raised for a search superseded by a newer request in the same slot."""

    status_code = 409
    code = "search_cancelled"


class ProviderError(WarehouseKBError):
    """A remote provider kept failing after bounded retries."""

    status_code = 503
    code = "provider_unavailable"


class EmbeddingProviderError(ProviderError):
    """The embedding provider failed or returned an unusable vector."""

    code = "embedding_unavailable"


class CompletionProviderError(ProviderError):
    """The completion provider failed or timed out."""

    code = "completion_unavailable"


class SearchUnavailableError(WarehouseKBError):
    """Wraps provider or storage failures for callers of the orchestrator."""

    status_code = 503
    code = "search_unavailable"


class CacheError(WarehouseKBError):
    """Cache read or write failure. Never propagated past the cache layer."""

    code = "cache_error"


class AnalyticsLogError(WarehouseKBError):
    """Analytics write failure. Never propagated past the analytics service."""

    code = "analytics_error"
