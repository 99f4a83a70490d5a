"""Storage backends for the warehouse knowledge base."""

from .analytics import AnalyticsRepository, FeedbackRecord, SearchLogEntry
from .base import ChunkRecord, DocumentRecord, ScoredChunk, SimilarDocument, VectorStore
from .conversations import ConversationRepository, MessageRecord
from .duckdb import DuckDBVectorStore

__all__ = [
    "AnalyticsRepository",
    "ChunkRecord",
    "ConversationRepository",
    "DocumentRecord",
    "DuckDBVectorStore",
    "FeedbackRecord",
    "MessageRecord",
    "ScoredChunk",
    "SearchLogEntry",
    "SimilarDocument",
    "VectorStore",
]
