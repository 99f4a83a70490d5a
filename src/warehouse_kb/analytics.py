"""
Search analytics: logging, feedback, trending queries and autocomplete.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from .errors import AnalyticsLogError, NotFoundError
from .storage.analytics import AnalyticsRepository, FeedbackRecord, SearchLogEntry
from .storage.base import utcnow


logger = logging.getLogger(__name__)


def trend_score(count: int, age_days: float, decay: float = 0.1) -> float:
    """``count * e^(-decay * age_days)``: recent traffic outweighs old bursts."""
    return count * math.exp(-decay * max(age_days, 0.0))


@dataclass(frozen=True)
class TrendingQuery:
    query: str
    count: int
    score: float
    last_seen: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "count": self.count,
            "score": round(self.score, 6),
            "lastSeen": self.last_seen.isoformat(),
        }


class AnalyticsService:
    """Async facade over :class:`AnalyticsRepository`."""

    def __init__(
        self,
        repository: AnalyticsRepository,
        *,
        decay: float = 0.1,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.decay = decay
        self._clock = clock

    async def log_search(self, entry: SearchLogEntry) -> bool:
        """Persist a search log entry. Never raises; returns False on failure."""
        try:
            await asyncio.to_thread(self.repository.insert_search_log, entry)
            if entry.successful and entry.results_count > 0 and not entry.cached:
                await asyncio.to_thread(
                    self.repository.upsert_suggestion, entry.query, entry.language
                )
        except Exception as exc:
            logger.warning("%s", AnalyticsLogError(f"Could not log search {entry.id}: {exc}"))
            return False
        return True

    async def record_feedback(self, feedback: FeedbackRecord) -> None:
        """Upsert feedback for a logged search; NotFoundError if it is unknown."""
        log = await asyncio.to_thread(self.repository.get_search_log, feedback.search_log_id)
        if log is None:
            raise NotFoundError(f"Search {feedback.search_log_id} not found")
        await asyncio.to_thread(self.repository.upsert_feedback, feedback)

    async def trending(
        self,
        *,
        days: int = 7,
        limit: int = 10,
        language: str | None = None,
    ) -> list[TrendingQuery]:
        """Queries ranked by decayed frequency.

        Age is measured from each query's most recent occurrence.
        """
        now = self._clock()
        counts = await asyncio.to_thread(
            self.repository.query_counts, since=now - timedelta(days=days), language=language
        )
        ranked = [
            TrendingQuery(
                query=row.query,
                count=row.count,
                score=trend_score(
                    row.count, (now - row.last_seen).total_seconds() / 86400, self.decay
                ),
                last_seen=row.last_seen,
            )
            for row in counts
        ]
        ranked.sort(key=lambda item: (-item.score, item.query))
        return ranked[:limit]

    async def related_queries(self, query: str, *, limit: int = 5) -> list[str]:
        """Stored related searches first, then similar past queries."""
        stored = await asyncio.to_thread(self.repository.related_for, query, limit=limit)
        similar = await asyncio.to_thread(self.repository.similar_queries, query, limit=limit)
        merged: list[str] = []
        for candidate in [*stored, *similar]:
            if candidate not in merged:
                merged.append(candidate)
        return merged[:limit]

    async def autocomplete(self, prefix: str, *, limit: int = 5) -> list[str]:
        if len(prefix.strip()) < 2:
            return []
        return await asyncio.to_thread(self.repository.autocomplete, prefix, limit=limit)

    async def refresh_related_searches(self, *, window_minutes: int = 30) -> int:
        count = await asyncio.to_thread(
            self.repository.rebuild_related_searches, window_minutes=window_minutes
        )
        logger.info("Rebuilt %d related-search rows", count)
        return count

    async def stats(self, *, days: int = 7) -> dict[str, Any]:
        since = self._clock() - timedelta(days=days)
        return await asyncio.to_thread(self.repository.stats, since=since)

    async def history(self, user_id: str, *, limit: int = 20, offset: int = 0) -> list[SearchLogEntry]:
        return await asyncio.to_thread(
            self.repository.user_history, user_id, limit=limit, offset=offset
        )
