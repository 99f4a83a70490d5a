"""Tests for the in-process caches."""

from __future__ import annotations

import pytest

from conftest import DIM
from warehouse_kb.cache import (
    EmbeddingCache,
    SearchCache,
    TTLCache,
    embedding_cache_key,
    make_search_cache_key,
)
from warehouse_kb.models import SearchResponse
from warehouse_kb.search.filters import SearchFilters
from warehouse_kb.storage import DuckDBVectorStore


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _response(search_id: str = "s-1") -> SearchResponse:
    return SearchResponse(
        search_id=search_id,
        query="forklift safety",
        results=[],
        total_count=0,
        execution_time_ms=3,
        filters=SearchFilters(category="safety"),
    )


# ---------------------------------------------------------------------------
# TTLCache
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_entries_expire_after_ttl() -> None:
    clock = _Clock()
    cache = TTLCache(ttl_seconds=10, clock=clock)
    await cache.set("k", "v")

    assert await cache.get("k") == "v"
    clock.now += 10
    assert await cache.get("k") is None
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_per_entry_ttl_override() -> None:
    clock = _Clock()
    cache = TTLCache(ttl_seconds=10, clock=clock)
    await cache.set("short", 1, ttl=1)
    await cache.set("long", 2)

    clock.now += 5

    assert await cache.get("short") is None
    assert await cache.get("long") == 2


@pytest.mark.asyncio
async def test_eviction_drops_least_used_entry() -> None:
    clock = _Clock()
    cache = TTLCache(ttl_seconds=100, max_entries=2, clock=clock)
    await cache.set("popular", 1)
    await cache.set("idle", 2)
    await cache.get("popular")

    await cache.set("new", 3)

    assert await cache.get("idle") is None
    assert await cache.get("popular") == 1
    assert await cache.get("new") == 3


@pytest.mark.asyncio
async def test_clear_by_pattern() -> None:
    cache = TTLCache()
    await cache.set("search:a", 1)
    await cache.set("search:b", 2)
    await cache.set("other", 3)

    assert await cache.clear("search:*") == 2
    assert await cache.get("other") == 3
    assert await cache.clear() == 1


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def test_search_cache_key_normalizes_query_and_filters() -> None:
    a = make_search_cache_key(
        "  Forklift   SAFETY ",
        limit=10,
        offset=0,
        filters=SearchFilters(tags=["ppe", "forklift"]),
        threshold=0.7,
    )
    b = make_search_cache_key(
        "forklift safety",
        limit=10,
        offset=0,
        filters=SearchFilters(tags=["forklift", "ppe"]),
        threshold=0.7,
    )
    assert a == b
    assert a.startswith("search:")


def test_search_cache_key_changes_with_answer_options_and_threshold() -> None:
    base = dict(limit=10, offset=0, filters=None, threshold=0.7)
    plain = make_search_cache_key("q", **base)

    assert make_search_cache_key("q", include_answer=True, **base) != plain
    assert make_search_cache_key("q", **{**base, "threshold": 0.5}) != plain
    assert make_search_cache_key("q", **{**base, "offset": 10}) != plain
    # Answer options only matter when an answer is requested.
    assert make_search_cache_key("q", answer_type="summary", **base) == plain


def test_embedding_cache_key_includes_model_and_dimension() -> None:
    key = embedding_cache_key("hello  world", "m", 768)
    assert key == embedding_cache_key("hello world", "m", 768)
    assert key != embedding_cache_key("hello world", "m", 256)
    assert key != embedding_cache_key("hello world", "other", 768)


# ---------------------------------------------------------------------------
# SearchCache and EmbeddingCache
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_search_cache_round_trip() -> None:
    cache = SearchCache(TTLCache())
    await cache.set("search:x", _response())

    loaded = await cache.get("search:x")

    assert loaded == _response()


@pytest.mark.asyncio
async def test_search_cache_drops_corrupt_entries() -> None:
    store = TTLCache()
    cache = SearchCache(store)
    await store.set("search:bad", {"not": "a response"})

    assert await cache.get("search:bad") is None
    assert len(store) == 0


@pytest.mark.asyncio
async def test_embedding_cache_falls_back_to_persistent_tier() -> None:
    store = DuckDBVectorStore(":memory:", dim=DIM)
    try:
        writer = EmbeddingCache(TTLCache(), store, model="m")
        await writer.put("h", [0.25, 0.75])

        reader = EmbeddingCache(TTLCache(), store, model="m")

        assert await reader.get("h") == pytest.approx([0.25, 0.75])
        assert await reader.get("missing") is None
    finally:
        store.close()


@pytest.mark.asyncio
async def test_embedding_cache_swallows_store_errors() -> None:
    store = DuckDBVectorStore(":memory:", dim=DIM)
    cache = EmbeddingCache(TTLCache(), store, model="m")
    store.close()

    await cache.put("h", [1.0, 0.0])

    assert await cache.get("h") == [1.0, 0.0]
    assert await cache.get("other") is None
    assert await cache.cleanup() == 0
