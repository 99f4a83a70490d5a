"""
Storage interfaces and data models for the knowledge base.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from ..search.filters import SearchFilters


def utcnow() -> datetime:
    """Naive UTC timestamp, the form DuckDB TIMESTAMP columns round-trip."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class DocumentRecord:
    """Document metadata. Text lives in its chunks."""

    id: str
    title: str
    category: str | None = None
    document_type: str | None = None
    language: str = "en"
    warehouse_id: str | None = None
    department_id: str | None = None
    tags: tuple[str, ...] = ()
    url: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    embedding: list[float] | None = None
    view_count: int = 0
    avg_rating: float | None = None


@dataclass(frozen=True)
class ChunkRecord:
    """A contiguous piece of a document's extracted text."""

    id: str
    document_id: str
    content: str
    chunk_index: int
    language: str = "en"
    keywords: tuple[str, ...] = ()
    importance_score: float = 1.0
    embedding: list[float] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ScoredChunk:
    """A chunk returned by similarity search, joined with its document."""

    chunk_id: str
    document_id: str
    content: str
    chunk_index: int
    score: float
    title: str
    category: str | None = None
    document_type: str | None = None
    language: str = "en"
    url: str | None = None
    updated_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    highlights: tuple[str, ...] = ()


@dataclass(frozen=True)
class SimilarDocument:
    document_id: str
    title: str
    category: str | None
    document_type: str | None
    score: float


class VectorStore(Protocol):
    """Protocol for the chunk/document persistence used by the query pipeline."""

    dim: int

    def initialize(self) -> None:
        """Create required tables."""

    def upsert_document(
        self, document: DocumentRecord, chunks: list[ChunkRecord]
    ) -> None:
        """Insert or update a document and replace its chunks."""

    def get_document(self, document_id: str) -> DocumentRecord | None:
        """Fetch a document by id."""

    def delete_document(self, document_id: str) -> bool:
        """Delete a document and its chunks. Return True if it existed."""

    def store_chunk_embeddings(
        self, chunk_embeddings: list[tuple[str, list[float]]]
    ) -> int:
        """Attach embeddings to chunks and refresh document means."""

    def similarity_search(
        self,
        query_vector: list[float],
        *,
        k: int = 10,
        threshold: float = 0.7,
        filters: "SearchFilters | None" = None,
        offset: int = 0,
    ) -> list[ScoredChunk]:
        """Top-k chunks by cosine similarity, at or above ``threshold``."""

    def search_within_document(
        self,
        document_id: str,
        query_vector: list[float],
        *,
        k: int = 5,
        threshold: float = 0.0,
    ) -> list[ScoredChunk]:
        """Similarity search restricted to one document."""

    def find_similar_documents(
        self, document_id: str, *, k: int = 5, threshold: float = 0.5
    ) -> list[SimilarDocument]:
        """Documents whose mean embedding is close to the given document's."""
