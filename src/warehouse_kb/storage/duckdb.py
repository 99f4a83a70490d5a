"""
DuckDB storage backend for documents, chunks and embeddings.

Vectors live in side tables (``chunk_embeddings``, ``document_embeddings``)
that are only ever inserted into or deleted from, so list columns are never
updated in place. Similarity is computed in SQL with
``list_cosine_similarity``; only the requested page of rows reaches Python.
"""

from __future__ import annotations

import hashlib
import json
from datetime import timedelta
from pathlib import Path
from typing import Any

import duckdb

from ..search.filters import SearchFilters, build_filter_clause
from .base import ChunkRecord, DocumentRecord, ScoredChunk, SimilarDocument, utcnow


def _stable_id(prefix: str, value: str) -> str:
    digest = hashlib.sha1(value.encode("utf-8")).hexdigest()
    return f"{prefix}_{digest}"


_SCORED_CHUNK_COLUMNS = """
    c.id, c.document_id, c.content, c.chunk_index, c.language, c.metadata_json,
    d.title, d.category, d.document_type, d.url, d.updated_at
"""


class DuckDBVectorStore:
    """DuckDB-backed persistence for documents, chunks and vectors."""

    def __init__(
        self,
        db_path: str,
        *,
        dim: int = 768,
        read_only: bool = False,
        initialize: bool = True,
    ) -> None:
        if db_path == ":memory:":
            self.db_path = db_path
        else:
            self.db_path = str(Path(db_path).expanduser().resolve())
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.dim = dim
        self.read_only = read_only
        self._conn = duckdb.connect(self.db_path, read_only=read_only)
        if initialize and not read_only:
            self.initialize()

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        """Shared connection; other repositories open their own cursors on it."""
        return self._conn

    def close(self) -> None:
        """Close the underlying DuckDB connection."""
        self._conn.close()

    def initialize(self) -> None:
        with self._conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id VARCHAR PRIMARY KEY,
                    title VARCHAR NOT NULL,
                    category VARCHAR,
                    document_type VARCHAR,
                    language VARCHAR NOT NULL DEFAULT 'en',
                    warehouse_id VARCHAR,
                    department_id VARCHAR,
                    tags VARCHAR[] NOT NULL,
                    url VARCHAR,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    view_count INTEGER NOT NULL DEFAULT 0,
                    avg_rating DOUBLE
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    id VARCHAR PRIMARY KEY,
                    document_id VARCHAR NOT NULL,
                    content VARCHAR NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    language VARCHAR NOT NULL DEFAULT 'en',
                    keywords VARCHAR[] NOT NULL,
                    importance_score DOUBLE NOT NULL DEFAULT 1.0,
                    metadata_json VARCHAR NOT NULL DEFAULT '{}'
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS chunk_embeddings (
                    chunk_id VARCHAR NOT NULL,
                    embedding DOUBLE[] NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS document_embeddings (
                    document_id VARCHAR NOT NULL,
                    embedding DOUBLE[] NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS cached_embeddings (
                    text_hash VARCHAR PRIMARY KEY,
                    embedding DOUBLE[] NOT NULL,
                    model VARCHAR NOT NULL,
                    dimensions INTEGER NOT NULL,
                    usage_count INTEGER NOT NULL DEFAULT 1,
                    created_at TIMESTAMP NOT NULL,
                    last_used_at TIMESTAMP NOT NULL
                );
                """
            )

    # -- documents and chunks -------------------------------------------------

    def upsert_document(self, document: DocumentRecord, chunks: list[ChunkRecord]) -> None:
        """Insert or replace a document and all of its chunks.

        Chunk embeddings carried on the records are stored too; chunks without
        one stay unembedded until :meth:`store_chunk_embeddings` is called.
        """
        with self._conn.cursor() as cur:
            self._delete_chunks(cur, document.id)
            cur.execute("DELETE FROM document_embeddings WHERE document_id = ?", [document.id])
            cur.execute("DELETE FROM documents WHERE id = ?", [document.id])
            cur.execute(
                """
                INSERT INTO documents (
                    id, title, category, document_type, language, warehouse_id,
                    department_id, tags, url, created_at, updated_at, view_count,
                    avg_rating
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    document.id,
                    document.title,
                    document.category,
                    document.document_type,
                    document.language,
                    document.warehouse_id,
                    document.department_id,
                    list(document.tags),
                    document.url,
                    document.created_at,
                    document.updated_at,
                    document.view_count,
                    document.avg_rating,
                ],
            )
            if chunks:
                cur.executemany(
                    """
                    INSERT INTO chunks (
                        id, document_id, content, chunk_index, language, keywords,
                        importance_score, metadata_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            chunk.id,
                            document.id,
                            chunk.content,
                            chunk.chunk_index,
                            chunk.language,
                            list(chunk.keywords),
                            chunk.importance_score,
                            json.dumps(chunk.metadata, sort_keys=True),
                        )
                        for chunk in chunks
                    ],
                )

        embedded = [(chunk.id, chunk.embedding) for chunk in chunks if chunk.embedding is not None]
        if embedded:
            self.store_chunk_embeddings(embedded)

    def get_document(self, document_id: str) -> DocumentRecord | None:
        with self._conn.cursor() as cur:
            row = cur.execute(
                """
                SELECT d.id, d.title, d.category, d.document_type, d.language,
                       d.warehouse_id, d.department_id, d.tags, d.url, d.created_at,
                       d.updated_at, e.embedding, d.view_count, d.avg_rating
                FROM documents d
                LEFT JOIN document_embeddings e ON e.document_id = d.id
                WHERE d.id = ?
                """,
                [document_id],
            ).fetchone()
        if row is None:
            return None
        return DocumentRecord(
            id=str(row[0]),
            title=str(row[1]),
            category=row[2],
            document_type=row[3],
            language=str(row[4]),
            warehouse_id=row[5],
            department_id=row[6],
            tags=tuple(row[7] or ()),
            url=row[8],
            created_at=row[9],
            updated_at=row[10],
            embedding=list(row[11]) if row[11] is not None else None,
            view_count=int(row[12]),
            avg_rating=row[13],
        )

    def delete_document(self, document_id: str) -> bool:
        with self._conn.cursor() as cur:
            row = cur.execute(
                "SELECT COUNT(*) FROM documents WHERE id = ?", [document_id]
            ).fetchone()
            existed = bool(row and row[0])
            self._delete_chunks(cur, document_id)
            cur.execute("DELETE FROM document_embeddings WHERE document_id = ?", [document_id])
            cur.execute("DELETE FROM documents WHERE id = ?", [document_id])
        return existed

    def get_chunks(self, chunk_ids: list[str]) -> list[ChunkRecord]:
        if not chunk_ids:
            return []
        placeholders = ", ".join(["?"] * len(chunk_ids))
        with self._conn.cursor() as cur:
            rows = cur.execute(
                f"""
                SELECT c.id, c.document_id, c.content, c.chunk_index, c.language,
                       c.keywords, c.importance_score, c.metadata_json, e.embedding
                FROM chunks c
                LEFT JOIN chunk_embeddings e ON e.chunk_id = c.id
                WHERE c.id IN ({placeholders})
                ORDER BY c.document_id, c.chunk_index
                """,
                list(chunk_ids),
            ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def count_chunks(self, document_id: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM chunks"
        params: list[Any] = []
        if document_id is not None:
            sql += " WHERE document_id = ?"
            params.append(document_id)
        with self._conn.cursor() as cur:
            row = cur.execute(sql, params).fetchone()
        return int(row[0]) if row else 0

    # -- embeddings -------------------------------------------------------------

    def store_chunk_embeddings(self, chunk_embeddings: list[tuple[str, list[float]]]) -> int:
        """Attach vectors to chunks and refresh the owning documents' means.

        Raises ``ValueError`` when any vector has the wrong dimension; nothing
        is written in that case.
        """
        if not chunk_embeddings:
            return 0
        for chunk_id, embedding in chunk_embeddings:
            if len(embedding) != self.dim:
                raise ValueError(
                    f"Embedding for chunk {chunk_id!r} has dimension {len(embedding)}, "
                    f"expected {self.dim}."
                )

        chunk_ids = [chunk_id for chunk_id, _ in chunk_embeddings]
        placeholders = ", ".join(["?"] * len(chunk_ids))
        with self._conn.cursor() as cur:
            cur.execute(
                f"DELETE FROM chunk_embeddings WHERE chunk_id IN ({placeholders})",
                chunk_ids,
            )
            cur.executemany(
                "INSERT INTO chunk_embeddings (chunk_id, embedding) VALUES (?, ?)",
                [(chunk_id, [float(v) for v in embedding]) for chunk_id, embedding in chunk_embeddings],
            )
            rows = cur.execute(
                f"SELECT DISTINCT document_id FROM chunks WHERE id IN ({placeholders})",
                chunk_ids,
            ).fetchall()

        for (document_id,) in rows:
            self._refresh_document_embedding(str(document_id))
        return len(chunk_embeddings)

    def _refresh_document_embedding(self, document_id: str) -> None:
        with self._conn.cursor() as cur:
            rows = cur.execute(
                """
                SELECT e.embedding
                FROM chunk_embeddings e
                JOIN chunks c ON c.id = e.chunk_id
                WHERE c.document_id = ? AND len(e.embedding) = ?
                """,
                [document_id, self.dim],
            ).fetchall()
            cur.execute("DELETE FROM document_embeddings WHERE document_id = ?", [document_id])
            if not rows:
                return
            vectors = [list(row[0]) for row in rows]
            mean = [sum(column) / len(vectors) for column in zip(*vectors)]
            cur.execute(
                "INSERT INTO document_embeddings (document_id, embedding) VALUES (?, ?)",
                [document_id, mean],
            )

    def chunks_missing_embeddings(self, limit: int = 100) -> list[ChunkRecord]:
        with self._conn.cursor() as cur:
            rows = cur.execute(
                """
                SELECT c.id, c.document_id, c.content, c.chunk_index, c.language,
                       c.keywords, c.importance_score, c.metadata_json, NULL
                FROM chunks c
                WHERE NOT EXISTS (
                    SELECT 1 FROM chunk_embeddings e WHERE e.chunk_id = c.id
                )
                ORDER BY c.document_id, c.chunk_index
                LIMIT ?
                """,
                [limit],
            ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def embedding_health(self) -> dict[str, int]:
        """Counts of chunks with a valid, wrongly sized, or missing embedding."""
        with self._conn.cursor() as cur:
            row = cur.execute(
                """
                SELECT
                    COUNT(*) FILTER (WHERE e.chunk_id IS NOT NULL AND len(e.embedding) = ?),
                    COUNT(*) FILTER (WHERE e.chunk_id IS NOT NULL AND len(e.embedding) <> ?),
                    COUNT(*) FILTER (WHERE e.chunk_id IS NULL)
                FROM chunks c
                LEFT JOIN chunk_embeddings e ON e.chunk_id = c.id
                """,
                [self.dim, self.dim],
            ).fetchone()
        valid, wrong, missing = (int(value or 0) for value in row) if row else (0, 0, 0)
        return {
            "total_chunks": valid + wrong + missing,
            "valid": valid,
            "wrong_dimension": wrong,
            "missing": missing,
        }

    # -- search -------------------------------------------------------------------

    def similarity_search(
        self,
        query_vector: list[float],
        *,
        k: int = 10,
        threshold: float = 0.7,
        filters: SearchFilters | None = None,
        offset: int = 0,
    ) -> list[ScoredChunk]:
        """Top-k chunks by cosine similarity, at or above ``threshold``.

        Ordering: score desc, document ``updated_at`` desc, ``chunk_index``,
        chunk id.
        """
        self._check_query_vector(query_vector)
        filter_sql, filter_params = build_filter_clause(filters)
        where = f"AND {filter_sql}" if filter_sql else ""
        sql = f"""
            SELECT * FROM (
                SELECT {_SCORED_CHUNK_COLUMNS},
                       CASE WHEN len(e.embedding) = ?
                            THEN least(list_cosine_similarity(e.embedding, ?::DOUBLE[]), 1.0)
                       END AS score
                FROM chunks c
                JOIN chunk_embeddings e ON e.chunk_id = c.id
                JOIN documents d ON d.id = c.document_id
                WHERE 1 = 1 {where}
            ) scored
            WHERE score IS NOT NULL AND score >= ?
            ORDER BY score DESC, updated_at DESC, chunk_index ASC, id ASC
            LIMIT ? OFFSET ?
        """
        params: list[Any] = [self.dim, list(query_vector), *filter_params, threshold, k, offset]
        with self._conn.cursor() as cur:
            rows = cur.execute(sql, params).fetchall()
        return [self._row_to_scored(row) for row in rows]

    def search_within_document(
        self,
        document_id: str,
        query_vector: list[float],
        *,
        k: int = 5,
        threshold: float = 0.0,
    ) -> list[ScoredChunk]:
        self._check_query_vector(query_vector)
        sql = f"""
            SELECT * FROM (
                SELECT {_SCORED_CHUNK_COLUMNS},
                       CASE WHEN len(e.embedding) = ?
                            THEN least(list_cosine_similarity(e.embedding, ?::DOUBLE[]), 1.0)
                       END AS score
                FROM chunks c
                JOIN chunk_embeddings e ON e.chunk_id = c.id
                JOIN documents d ON d.id = c.document_id
                WHERE c.document_id = ?
            ) scored
            WHERE score IS NOT NULL AND score >= ?
            ORDER BY score DESC, chunk_index ASC, id ASC
            LIMIT ?
        """
        with self._conn.cursor() as cur:
            rows = cur.execute(
                sql, [self.dim, list(query_vector), document_id, threshold, k]
            ).fetchall()
        return [self._row_to_scored(row) for row in rows]

    def find_similar_documents(
        self, document_id: str, *, k: int = 5, threshold: float = 0.5
    ) -> list[SimilarDocument]:
        """Documents whose mean chunk vector is close to ``document_id``'s."""
        with self._conn.cursor() as cur:
            row = cur.execute(
                "SELECT embedding FROM document_embeddings WHERE document_id = ?",
                [document_id],
            ).fetchone()
            if row is None:
                return []
            rows = cur.execute(
                """
                SELECT * FROM (
                    SELECT d.id, d.title, d.category, d.document_type,
                           least(list_cosine_similarity(e.embedding, ?::DOUBLE[]), 1.0) AS score
                    FROM document_embeddings e
                    JOIN documents d ON d.id = e.document_id
                    WHERE e.document_id <> ? AND len(e.embedding) = ?
                ) scored
                WHERE score >= ?
                ORDER BY score DESC, id ASC
                LIMIT ?
                """,
                [list(row[0]), document_id, self.dim, threshold, k],
            ).fetchall()
        return [
            SimilarDocument(
                document_id=str(r[0]),
                title=str(r[1]),
                category=r[2],
                document_type=r[3],
                score=float(r[4]),
            )
            for r in rows
        ]

    # -- persistent embedding cache ----------------------------------------------

    def get_cached_embedding(self, text_hash: str) -> list[float] | None:
        """Return a cached vector and bump its usage counter."""
        with self._conn.cursor() as cur:
            row = cur.execute(
                "SELECT embedding FROM cached_embeddings WHERE text_hash = ? AND dimensions = ?",
                [text_hash, self.dim],
            ).fetchone()
            if row is None:
                return None
            cur.execute(
                """
                UPDATE cached_embeddings
                SET usage_count = usage_count + 1, last_used_at = ?
                WHERE text_hash = ?
                """,
                [utcnow(), text_hash],
            )
        return list(row[0])

    def put_cached_embedding(self, text_hash: str, embedding: list[float], model: str) -> None:
        now = utcnow()
        with self._conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO cached_embeddings (
                    text_hash, embedding, model, dimensions, usage_count, created_at,
                    last_used_at
                )
                VALUES (?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT (text_hash) DO NOTHING
                """,
                [text_hash, list(embedding), model, len(embedding), now, now],
            )

    def cleanup_cached_embeddings(
        self, *, older_than_days: int = 30, min_usage: int = 5
    ) -> int:
        """Drop rarely used entries that have not been touched recently."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        with self._conn.cursor() as cur:
            row = cur.execute(
                """
                SELECT COUNT(*) FROM cached_embeddings
                WHERE last_used_at < ? AND usage_count < ?
                """,
                [cutoff, min_usage],
            ).fetchone()
            cur.execute(
                "DELETE FROM cached_embeddings WHERE last_used_at < ? AND usage_count < ?",
                [cutoff, min_usage],
            )
        return int(row[0]) if row else 0

    # -- helpers ------------------------------------------------------------------

    @staticmethod
    def make_document_id(title: str, url: str | None = None) -> str:
        return _stable_id("doc", f"{title}:{url or ''}")

    @staticmethod
    def make_chunk_id(document_id: str, chunk_index: int) -> str:
        return _stable_id("chunk", f"{document_id}:{chunk_index}")

    def _check_query_vector(self, query_vector: list[float]) -> None:
        if len(query_vector) != self.dim:
            raise ValueError(
                f"Query vector has dimension {len(query_vector)}, expected {self.dim}."
            )

    @staticmethod
    def _delete_chunks(cur: duckdb.DuckDBPyConnection, document_id: str) -> None:
        cur.execute(
            """
            DELETE FROM chunk_embeddings
            WHERE chunk_id IN (SELECT id FROM chunks WHERE document_id = ?)
            """,
            [document_id],
        )
        cur.execute("DELETE FROM chunks WHERE document_id = ?", [document_id])

    @staticmethod
    def _row_to_chunk(row: tuple[Any, ...]) -> ChunkRecord:
        return ChunkRecord(
            id=str(row[0]),
            document_id=str(row[1]),
            content=str(row[2]),
            chunk_index=int(row[3]),
            language=str(row[4]),
            keywords=tuple(row[5] or ()),
            importance_score=float(row[6]),
            metadata=json.loads(str(row[7])),
            embedding=list(row[8]) if row[8] is not None else None,
        )

    @staticmethod
    def _row_to_scored(row: tuple[Any, ...]) -> ScoredChunk:
        return ScoredChunk(
            chunk_id=str(row[0]),
            document_id=str(row[1]),
            content=str(row[2]),
            chunk_index=int(row[3]),
            language=str(row[4]),
            metadata=json.loads(str(row[5])),
            title=str(row[6]),
            category=row[7],
            document_type=row[8],
            url=row[9],
            updated_at=row[10],
            score=float(row[11]),
        )
