"""
DuckDB persistence for search logs, feedback and derived suggestion tables.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

import duckdb

from .base import utcnow


Rating = Literal["helpful", "not_helpful", "partially_helpful"]
Relationship = Literal["synonym", "broader", "narrower", "related"]


@dataclass(frozen=True)
class SearchLogEntry:
    """One executed search. Rows are append-only."""

    query: str
    user_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    query_embedding: list[float] | None = None
    filters: dict[str, Any] = field(default_factory=dict)
    results_count: int = 0
    execution_time_ms: int = 0
    language: str = "en"
    successful: bool = True
    error: str | None = None
    cached: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class FeedbackRecord:
    search_log_id: str
    rating: Rating
    user_id: str | None = None
    result_id: str | None = None
    clicked: bool = False
    time_to_click_ms: int | None = None
    dwell_time_ms: int | None = None
    comment: str | None = None
    result_position: int | None = None


@dataclass(frozen=True)
class QueryCount:
    query: str
    count: int
    last_seen: datetime


class AnalyticsRepository:
    """Tables behind the analytics service. Every call opens its own cursor."""

    def __init__(self, conn: duckdb.DuckDBPyConnection, *, initialize: bool = True) -> None:
        self._conn = conn
        if initialize:
            self.initialize()

    def initialize(self) -> None:
        with self._conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS search_logs (
                    id VARCHAR PRIMARY KEY,
                    user_id VARCHAR,
                    query VARCHAR NOT NULL,
                    query_embedding DOUBLE[],
                    filters_json VARCHAR NOT NULL DEFAULT '{}',
                    results_count INTEGER NOT NULL DEFAULT 0,
                    execution_time_ms INTEGER NOT NULL DEFAULT 0,
                    language VARCHAR NOT NULL DEFAULT 'en',
                    successful BOOLEAN NOT NULL DEFAULT TRUE,
                    error VARCHAR,
                    cached BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMP NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS search_feedback (
                    id VARCHAR NOT NULL,
                    search_log_id VARCHAR NOT NULL,
                    user_id VARCHAR NOT NULL,
                    result_id VARCHAR NOT NULL,
                    rating VARCHAR NOT NULL,
                    clicked BOOLEAN NOT NULL DEFAULT FALSE,
                    time_to_click_ms INTEGER,
                    dwell_time_ms INTEGER,
                    comment VARCHAR,
                    result_position INTEGER,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    UNIQUE (search_log_id, user_id, result_id)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS related_searches (
                    query VARCHAR NOT NULL,
                    related_query VARCHAR NOT NULL,
                    relationship VARCHAR NOT NULL,
                    strength DOUBLE NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS search_suggestions (
                    suggestion VARCHAR PRIMARY KEY,
                    display VARCHAR NOT NULL,
                    language VARCHAR NOT NULL,
                    usage_count INTEGER NOT NULL DEFAULT 1,
                    last_used_at TIMESTAMP NOT NULL
                );
                """
            )

    # -- search logs ----------------------------------------------------------------

    def insert_search_log(self, entry: SearchLogEntry) -> None:
        with self._conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO search_logs (
                    id, user_id, query, query_embedding, filters_json, results_count,
                    execution_time_ms, language, successful, error, cached, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    entry.id,
                    entry.user_id,
                    entry.query,
                    entry.query_embedding,
                    json.dumps(entry.filters, sort_keys=True),
                    entry.results_count,
                    entry.execution_time_ms,
                    entry.language,
                    entry.successful,
                    entry.error,
                    entry.cached,
                    entry.created_at,
                ],
            )

    def get_search_log(self, search_log_id: str) -> SearchLogEntry | None:
        with self._conn.cursor() as cur:
            row = cur.execute(
                """
                SELECT id, user_id, query, filters_json, results_count, execution_time_ms,
                       language, successful, error, cached, created_at
                FROM search_logs
                WHERE id = ?
                """,
                [search_log_id],
            ).fetchone()
        return self._row_to_log(row) if row is not None else None

    def user_history(self, user_id: str, *, limit: int = 20, offset: int = 0) -> list[SearchLogEntry]:
        with self._conn.cursor() as cur:
            rows = cur.execute(
                """
                SELECT id, user_id, query, filters_json, results_count, execution_time_ms,
                       language, successful, error, cached, created_at
                FROM search_logs
                WHERE user_id = ?
                ORDER BY created_at DESC, id
                LIMIT ? OFFSET ?
                """,
                [user_id, limit, offset],
            ).fetchall()
        return [self._row_to_log(row) for row in rows]

    def query_counts(self, *, since: datetime, language: str | None = None) -> list[QueryCount]:
        """Successful searches per normalized query since ``since``."""
        sql = """
            SELECT lower(trim(query)) AS q, COUNT(*) AS n, MAX(created_at) AS last_seen
            FROM search_logs
            WHERE created_at >= ? AND successful
        """
        params: list[Any] = [since]
        if language is not None:
            sql += " AND language = ?"
            params.append(language)
        sql += " GROUP BY q"
        with self._conn.cursor() as cur:
            rows = cur.execute(sql, params).fetchall()
        return [QueryCount(query=str(r[0]), count=int(r[1]), last_seen=r[2]) for r in rows]

    def similar_queries(
        self, query: str, *, limit: int = 5, min_similarity: float = 0.85
    ) -> list[str]:
        """Past successful queries close to ``query`` by Jaro-Winkler similarity."""
        with self._conn.cursor() as cur:
            rows = cur.execute(
                """
                SELECT q, MAX(sim) AS sim, COUNT(*) AS n FROM (
                    SELECT lower(trim(query)) AS q,
                           jaro_winkler_similarity(lower(trim(query)), lower(trim(?))) AS sim
                    FROM search_logs
                    WHERE successful AND results_count > 0
                )
                WHERE sim >= ? AND q <> lower(trim(?))
                GROUP BY q
                ORDER BY sim DESC, n DESC, q
                LIMIT ?
                """,
                [query, min_similarity, query, limit],
            ).fetchall()
        return [str(row[0]) for row in rows]

    # -- feedback -------------------------------------------------------------------

    def upsert_feedback(self, feedback: FeedbackRecord) -> None:
        """Insert feedback, replacing any earlier row for the same key."""
        now = utcnow()
        with self._conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO search_feedback (
                    id, search_log_id, user_id, result_id, rating, clicked,
                    time_to_click_ms, dwell_time_ms, comment, result_position,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (search_log_id, user_id, result_id) DO UPDATE SET
                    rating = excluded.rating,
                    clicked = excluded.clicked,
                    time_to_click_ms = excluded.time_to_click_ms,
                    dwell_time_ms = excluded.dwell_time_ms,
                    comment = excluded.comment,
                    result_position = excluded.result_position,
                    updated_at = excluded.updated_at
                """,
                [
                    str(uuid.uuid4()),
                    feedback.search_log_id,
                    feedback.user_id or "",
                    feedback.result_id or "",
                    feedback.rating,
                    feedback.clicked,
                    feedback.time_to_click_ms,
                    feedback.dwell_time_ms,
                    feedback.comment,
                    feedback.result_position,
                    now,
                    now,
                ],
            )

    def list_feedback(self, search_log_id: str) -> list[dict[str, Any]]:
        with self._conn.cursor() as cur:
            rows = cur.execute(
                """
                SELECT user_id, result_id, rating, clicked, time_to_click_ms,
                       dwell_time_ms, comment, result_position
                FROM search_feedback
                WHERE search_log_id = ?
                ORDER BY created_at, result_id
                """,
                [search_log_id],
            ).fetchall()
        keys = (
            "user_id",
            "result_id",
            "rating",
            "clicked",
            "time_to_click_ms",
            "dwell_time_ms",
            "comment",
            "result_position",
        )
        return [dict(zip(keys, row)) for row in rows]

    # -- suggestions ----------------------------------------------------------------

    def upsert_suggestion(self, query: str, language: str) -> None:
        display = " ".join(query.split())
        with self._conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO search_suggestions (suggestion, display, language, usage_count, last_used_at)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT (suggestion) DO UPDATE SET
                    usage_count = usage_count + 1,
                    last_used_at = excluded.last_used_at
                """,
                [display.lower(), display, language, utcnow()],
            )

    def autocomplete(self, prefix: str, *, limit: int = 5) -> list[str]:
        with self._conn.cursor() as cur:
            rows = cur.execute(
                """
                SELECT display FROM search_suggestions
                WHERE starts_with(suggestion, lower(?))
                ORDER BY usage_count DESC, last_used_at DESC, suggestion
                LIMIT ?
                """,
                [" ".join(prefix.split()), limit],
            ).fetchall()
        return [str(row[0]) for row in rows]

    def related_for(self, query: str, *, limit: int = 5) -> list[str]:
        with self._conn.cursor() as cur:
            rows = cur.execute(
                """
                SELECT related_query FROM related_searches
                WHERE query = lower(trim(?))
                ORDER BY strength DESC, related_query
                LIMIT ?
                """,
                [query, limit],
            ).fetchall()
        return [str(row[0]) for row in rows]

    def rebuild_related_searches(self, *, window_minutes: int = 30) -> int:
        """Recompute ``related`` rows from queries issued by the same user
        within ``window_minutes`` of each other. Strength is the pair's
        co-occurrence count relative to the query's strongest pair."""
        with self._conn.cursor() as cur:
            cur.execute("DELETE FROM related_searches WHERE relationship = 'related'")
            cur.execute(
                """
                INSERT INTO related_searches (query, related_query, relationship, strength, updated_at)
                SELECT q, rq, 'related', n * 1.0 / MAX(n) OVER (PARTITION BY q), ?
                FROM (
                    SELECT lower(trim(a.query)) AS q, lower(trim(b.query)) AS rq, COUNT(*) AS n
                    FROM search_logs a
                    JOIN search_logs b
                      ON a.user_id = b.user_id
                     AND a.id <> b.id
                     AND lower(trim(a.query)) <> lower(trim(b.query))
                     AND abs(epoch(a.created_at) - epoch(b.created_at)) <= ?
                    WHERE a.user_id IS NOT NULL AND a.successful AND b.successful
                    GROUP BY q, rq
                )
                """,
                [utcnow(), window_minutes * 60],
            )
            row = cur.execute(
                "SELECT COUNT(*) FROM related_searches WHERE relationship = 'related'"
            ).fetchone()
        return int(row[0]) if row else 0

    def add_related_search(
        self, query: str, related_query: str, relationship: Relationship, strength: float
    ) -> None:
        with self._conn.cursor() as cur:
            cur.execute(
                "DELETE FROM related_searches WHERE query = ? AND related_query = ?",
                [query.lower().strip(), related_query.lower().strip()],
            )
            cur.execute(
                """
                INSERT INTO related_searches (query, related_query, relationship, strength, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [query.lower().strip(), related_query.lower().strip(), relationship, strength, utcnow()],
            )

    # -- reporting -------------------------------------------------------------------

    def stats(self, *, since: datetime, top_n: int = 10) -> dict[str, Any]:
        with self._conn.cursor() as cur:
            totals = cur.execute(
                """
                SELECT COUNT(*),
                       COUNT(*) FILTER (WHERE NOT successful),
                       COUNT(*) FILTER (WHERE cached),
                       AVG(execution_time_ms),
                       AVG(results_count),
                       COUNT(DISTINCT user_id)
                FROM search_logs
                WHERE created_at >= ?
                """,
                [since],
            ).fetchone()
            daily = cur.execute(
                """
                SELECT CAST(created_at AS DATE) AS day, COUNT(*), AVG(execution_time_ms)
                FROM search_logs
                WHERE created_at >= ?
                GROUP BY day
                ORDER BY day
                """,
                [since],
            ).fetchall()
            top = cur.execute(
                """
                SELECT lower(trim(query)) AS q, COUNT(*) AS n
                FROM search_logs
                WHERE created_at >= ? AND successful
                GROUP BY q
                ORDER BY n DESC, q
                LIMIT ?
                """,
                [since, top_n],
            ).fetchall()
            feedback = cur.execute(
                """
                SELECT f.rating, COUNT(*)
                FROM search_feedback f
                JOIN search_logs l ON l.id = f.search_log_id
                WHERE l.created_at >= ?
                GROUP BY f.rating
                ORDER BY f.rating
                """,
                [since],
            ).fetchall()

        total, failed, cached, avg_ms, avg_results, users = totals or (0, 0, 0, None, None, 0)
        return {
            "total_searches": int(total or 0),
            "failed_searches": int(failed or 0),
            "cached_searches": int(cached or 0),
            "avg_execution_time_ms": float(avg_ms or 0.0),
            "avg_results_count": float(avg_results or 0.0),
            "unique_users": int(users or 0),
            "daily": [
                {"day": row[0].isoformat(), "searches": int(row[1]), "avg_execution_time_ms": float(row[2] or 0.0)}
                for row in daily
            ],
            "top_queries": [{"query": str(row[0]), "count": int(row[1])} for row in top],
            "feedback": {str(row[0]): int(row[1]) for row in feedback},
        }

    @staticmethod
    def _row_to_log(row: tuple[Any, ...]) -> SearchLogEntry:
        return SearchLogEntry(
            id=str(row[0]),
            user_id=row[1],
            query=str(row[2]),
            filters=json.loads(str(row[3])),
            results_count=int(row[4]),
            execution_time_ms=int(row[5]),
            language=str(row[6]),
            successful=bool(row[7]),
            error=row[8],
            cached=bool(row[9]),
            created_at=row[10],
        )
