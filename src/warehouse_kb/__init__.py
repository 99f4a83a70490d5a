"""
Warehouse knowledge base - semantic search and grounded answers.

This package embeds warehouse documents into DuckDB, answers free-text
searches with reranked chunks, and synthesizes cited answers with Google
Gemini.

Example usage:
    >>> from warehouse_kb import Settings, build_services, SearchRequest
    >>> services = build_services(Settings.from_env())
    >>> response = await services.orchestrator.search(SearchRequest(query="forklift safety"))
"""

from .config import RankingWeights, Settings, resolve_db_path
from .errors import (
    CompletionProviderError,
    EmbeddingProviderError,
    InvalidQueryError,
    NotFoundError,
    PermissionDeniedError,
    SearchCancelledError,
    SearchUnavailableError,
    WarehouseKBError,
)
from .models import (
    Answer,
    AnswerRequest,
    AnswerResponse,
    MultiSearchRequest,
    SearchRequest,
    SearchResponse,
    SearchResult,
)
from .search.filters import SearchFilters
from .search.orchestrator import QueryOrchestrator
from .services import Services, build_services

__all__ = [
    # Configuration
    "RankingWeights",
    "Settings",
    "resolve_db_path",
    # Errors
    "CompletionProviderError",
    "EmbeddingProviderError",
    "InvalidQueryError",
    "NotFoundError",
    "PermissionDeniedError",
    "SearchCancelledError",
    "SearchUnavailableError",
    "WarehouseKBError",
    # Models
    "Answer",
    "AnswerRequest",
    "AnswerResponse",
    "MultiSearchRequest",
    "SearchFilters",
    "SearchRequest",
    "SearchResponse",
    "SearchResult",
    # Pipeline
    "QueryOrchestrator",
    "Services",
    "build_services",
]
