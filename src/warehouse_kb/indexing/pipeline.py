"""
Ingestion of already-extracted document text into the vector store.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from pathlib import Path

from ..providers.embeddings import EmbeddingProvider
from ..storage import ChunkRecord, DocumentRecord, DuckDBVectorStore
from ..tasks import EmbeddingTaskQueue, embed_chunks
from .chunker import SmartChunker, extract_keywords


logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {".txt", ".md"}


@dataclass(frozen=True)
class IngestionResult:
    """Summary of one ingestion call."""

    document_id: str | None
    chunks_written: int
    embeddings_written: int = 0
    failed_chunk_ids: tuple[str, ...] = ()
    task_id: str | None = None


class IngestionPipeline:
    """Chunk text, store chunks, then embed them inline or via the task queue."""

    def __init__(
        self,
        store: DuckDBVectorStore,
        *,
        embeddings: EmbeddingProvider | None = None,
        queue: EmbeddingTaskQueue | None = None,
        chunker: SmartChunker | None = None,
    ) -> None:
        self.store = store
        self.embeddings = embeddings
        self.queue = queue
        self.chunker = chunker or SmartChunker()

    def build_chunks(self, document: DocumentRecord, text: str) -> list[ChunkRecord]:
        return [
            ChunkRecord(
                id=self.store.make_chunk_id(document.id, piece.chunk_index),
                document_id=document.id,
                content=piece.text,
                chunk_index=piece.chunk_index,
                language=document.language,
                keywords=tuple(extract_keywords(piece.text)),
                metadata={"start_char": piece.start_char, "end_char": piece.end_char},
            )
            for piece in self.chunker.chunk_text(text)
        ]

    async def ingest(
        self, document: DocumentRecord, text: str, *, priority: int = 5
    ) -> IngestionResult:
        """Replace ``document``'s chunks with chunks of ``text`` and embed them.

        With a task queue the embedding work is enqueued and ``task_id`` is
        set; otherwise it runs inline when an embedding provider is present.
        """
        chunks = self.build_chunks(document, text)
        await asyncio.to_thread(self.store.upsert_document, document, chunks)
        logger.info("Stored %d chunks for document %s", len(chunks), document.id)
        return await self._embed([chunk.id for chunk in chunks], document.id, priority)

    async def regenerate_missing(self, *, limit: int = 100, priority: int = 10) -> IngestionResult:
        """Schedule (or run) embedding for chunks that have none."""
        chunks = await asyncio.to_thread(self.store.chunks_missing_embeddings, limit)
        logger.info("Found %d chunks without embeddings", len(chunks))
        return await self._embed([chunk.id for chunk in chunks], None, priority)

    async def _embed(
        self, chunk_ids: list[str], document_id: str | None, priority: int
    ) -> IngestionResult:
        if not chunk_ids:
            return IngestionResult(document_id=document_id, chunks_written=0)
        if self.queue is not None:
            task = self.queue.enqueue(chunk_ids, priority=priority)
            return IngestionResult(
                document_id=document_id, chunks_written=len(chunk_ids), task_id=task.id
            )
        if self.embeddings is None:
            return IngestionResult(document_id=document_id, chunks_written=len(chunk_ids))

        written, failed = await embed_chunks(self.store, self.embeddings, chunk_ids)
        return IngestionResult(
            document_id=document_id,
            chunks_written=len(chunk_ids),
            embeddings_written=written,
            failed_chunk_ids=tuple(failed),
        )


def document_from_file(path: str | Path, **fields: object) -> tuple[DocumentRecord, str]:
    """Read a plain-text or Markdown file into a document record and its text."""
    file_path = Path(path)
    if file_path.suffix.lower() not in TEXT_EXTENSIONS:
        raise ValueError(
            f"Unsupported file extension {file_path.suffix!r}; "
            f"expected one of {sorted(TEXT_EXTENSIONS)}"
        )
    text = file_path.read_text(encoding="utf-8")
    title = str(fields.pop("title", None) or file_path.stem.replace("_", " ").title())
    document = DocumentRecord(
        id=DuckDBVectorStore.make_document_id(title, str(file_path.resolve())),
        title=title,
        url=str(file_path.resolve()),
    )
    return replace(document, **fields), text
