"""Tests for search analytics, feedback and suggestions."""

from __future__ import annotations

import math
from datetime import datetime, timedelta

import duckdb
import pytest

from warehouse_kb.analytics import AnalyticsService, trend_score
from warehouse_kb.errors import NotFoundError
from warehouse_kb.storage import AnalyticsRepository, FeedbackRecord, SearchLogEntry
from warehouse_kb.storage.base import utcnow


@pytest.fixture
def repository() -> AnalyticsRepository:
    conn = duckdb.connect(":memory:")
    yield AnalyticsRepository(conn)
    conn.close()


def _log(query: str, *, at: datetime, user_id: str | None = "u1", **kwargs) -> SearchLogEntry:
    kwargs.setdefault("results_count", 3)
    return SearchLogEntry(query=query, user_id=user_id, created_at=at, **kwargs)


# ---------------------------------------------------------------------------
# Trending
# ---------------------------------------------------------------------------


def test_trend_score_decays_exponentially() -> None:
    assert trend_score(10, 0) == 10
    assert trend_score(100, 10, decay=0.1) == pytest.approx(100 * math.exp(-1))
    assert trend_score(10, -5) == 10


@pytest.mark.asyncio
async def test_recent_queries_outrank_older_bursts(repository: AnalyticsRepository) -> None:
    now = utcnow()
    for _ in range(50):
        repository.insert_search_log(_log("Dock safety", at=now - timedelta(hours=1)))
    for _ in range(100):
        repository.insert_search_log(_log("racking", at=now - timedelta(days=10)))
    repository.insert_search_log(
        _log("broken", at=now, successful=False, error="timeout")
    )
    service = AnalyticsService(repository, decay=0.1, clock=lambda: now)

    trending = await service.trending(days=14)

    assert [item.query for item in trending] == ["dock safety", "racking"]
    assert trending[0].count == 50
    assert trending[0].score > trending[1].score
    assert trending[1].score == pytest.approx(100 * math.exp(-1), rel=1e-3)


@pytest.mark.asyncio
async def test_trending_respects_window_and_language(repository: AnalyticsRepository) -> None:
    now = utcnow()
    repository.insert_search_log(_log("old", at=now - timedelta(days=30)))
    repository.insert_search_log(_log("سلامة", at=now, language="ar"))
    repository.insert_search_log(_log("new", at=now))
    service = AnalyticsService(repository, clock=lambda: now)

    assert [t.query for t in await service.trending(days=7)] == ["new", "سلامة"]
    assert [t.query for t in await service.trending(days=7, language="ar")] == ["سلامة"]


# ---------------------------------------------------------------------------
# Logging and feedback
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_log_search_records_suggestion_for_useful_searches(
    repository: AnalyticsRepository,
) -> None:
    service = AnalyticsService(repository)

    assert await service.log_search(_log("Forklift  safety", at=utcnow()))
    assert await service.log_search(_log("forklift fines", at=utcnow(), results_count=0))
    assert await service.log_search(_log("forklift cached", at=utcnow(), cached=True))

    assert await service.autocomplete("fo") == ["Forklift safety"]
    assert await service.autocomplete("f") == []


@pytest.mark.asyncio
async def test_log_search_never_raises() -> None:
    conn = duckdb.connect(":memory:")
    service = AnalyticsService(AnalyticsRepository(conn))
    conn.close()

    assert await service.log_search(_log("anything", at=utcnow())) is False


@pytest.mark.asyncio
async def test_feedback_upsert_keeps_a_single_row(repository: AnalyticsRepository) -> None:
    entry = _log("dock doors", at=utcnow())
    repository.insert_search_log(entry)
    service = AnalyticsService(repository)

    await service.record_feedback(
        FeedbackRecord(search_log_id=entry.id, rating="not_helpful", user_id="u1", result_id="c1")
    )
    await service.record_feedback(
        FeedbackRecord(
            search_log_id=entry.id,
            rating="helpful",
            user_id="u1",
            result_id="c1",
            clicked=True,
            dwell_time_ms=4000,
        )
    )

    [row] = repository.list_feedback(entry.id)
    assert row["rating"] == "helpful"
    assert row["clicked"] is True
    assert row["dwell_time_ms"] == 4000


@pytest.mark.asyncio
async def test_feedback_without_result_id_is_still_unique(repository: AnalyticsRepository) -> None:
    entry = _log("dock doors", at=utcnow())
    repository.insert_search_log(entry)
    service = AnalyticsService(repository)

    await service.record_feedback(FeedbackRecord(search_log_id=entry.id, rating="helpful"))
    await service.record_feedback(FeedbackRecord(search_log_id=entry.id, rating="partially_helpful"))

    assert [row["rating"] for row in repository.list_feedback(entry.id)] == ["partially_helpful"]


@pytest.mark.asyncio
async def test_feedback_for_unknown_search_raises(repository: AnalyticsRepository) -> None:
    service = AnalyticsService(repository)
    with pytest.raises(NotFoundError):
        await service.record_feedback(FeedbackRecord(search_log_id="nope", rating="helpful"))


# ---------------------------------------------------------------------------
# Related searches, history and stats
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_related_searches_from_same_user_sessions(repository: AnalyticsRepository) -> None:
    now = utcnow()
    repository.insert_search_log(_log("forklift safety", at=now - timedelta(minutes=5)))
    repository.insert_search_log(_log("seatbelt rules", at=now - timedelta(minutes=2)))
    repository.insert_search_log(_log("seatbelt rules", at=now, user_id="u2"))
    repository.insert_search_log(_log("cold store", at=now - timedelta(hours=5)))
    service = AnalyticsService(repository)

    written = await service.refresh_related_searches(window_minutes=30)

    assert written == 2
    assert repository.related_for("Forklift Safety") == ["seatbelt rules"]
    assert (await service.related_queries("forklift safety"))[0] == "seatbelt rules"


@pytest.mark.asyncio
async def test_similar_queries_match_close_spellings(repository: AnalyticsRepository) -> None:
    repository.insert_search_log(_log("forklift safety", at=utcnow()))
    repository.insert_search_log(_log("pallet racking", at=utcnow()))

    similar = repository.similar_queries("forklift safty")

    assert similar == ["forklift safety"]


@pytest.mark.asyncio
async def test_history_and_stats(repository: AnalyticsRepository) -> None:
    now = utcnow()
    repository.insert_search_log(_log("first", at=now - timedelta(minutes=2), execution_time_ms=10))
    repository.insert_search_log(_log("second", at=now - timedelta(minutes=1), execution_time_ms=30))
    repository.insert_search_log(
        _log("third", at=now, user_id="u2", successful=False, error="down", results_count=0)
    )
    service = AnalyticsService(repository, clock=lambda: now + timedelta(seconds=1))

    history = await service.history("u1")
    stats = await service.stats(days=1)

    assert [entry.query for entry in history] == ["second", "first"]
    assert stats["total_searches"] == 3
    assert stats["failed_searches"] == 1
    assert stats["unique_users"] == 2


@pytest.mark.asyncio
async def test_curated_relations_survive_rebuild(repository: AnalyticsRepository) -> None:
    repository.add_related_search("Forklift safety", "lift truck safety", "synonym", 0.2)
    repository.add_related_search("forklift safety", "lift truck safety", "synonym", 0.9)
    repository.add_related_search("forklift safety", "seatbelt rules", "narrower", 0.5)
    service = AnalyticsService(repository)

    await service.refresh_related_searches()

    assert repository.related_for("forklift safety") == ["lift truck safety", "seatbelt rules"]
