"""Search helpers: filters, reranking and suggestions.

The orchestrator lives in :mod:`warehouse_kb.search.orchestrator` and is not
re-exported here, so storage modules can import the filters without a cycle.
"""

from .filters import (
    FilterParseError,
    SearchFilters,
    build_filter_clause,
    parse_filter_string,
    supported_filter_syntax,
)
from .ranker import Reranker, query_terms
from .suggestions import combine_suggestions, extract_key_phrases

__all__ = [
    "FilterParseError",
    "Reranker",
    "SearchFilters",
    "build_filter_clause",
    "combine_suggestions",
    "extract_key_phrases",
    "parse_filter_string",
    "query_terms",
    "supported_filter_syntax",
]
