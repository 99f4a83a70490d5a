"""
In-process caches for search responses and embeddings.

Cache failures never reach callers: every public method of
:class:`SearchCache` and :class:`EmbeddingCache` logs a warning and behaves
like a miss instead.
"""

from __future__ import annotations

import asyncio
import fnmatch
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import ValidationError

from .errors import CacheError
from .models import AnswerType, SearchResponse
from .search.filters import SearchFilters
from .storage.duckdb import DuckDBVectorStore


logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: float
    hits: int
    last_access: float


class TTLCache:
    """Async-safe key/value store with per-entry TTL and bounded size.

    When full, expired entries are dropped first, then the entry with the
    fewest hits (least recently used among equals).
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 3600,
        max_entries: int = 5000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            now = self._clock()
            if entry.expires_at <= now:
                del self._entries[key]
                return None
            entry.hits += 1
            entry.last_access = now
            return entry.value

    async def set(self, key: str, value: Any, *, ttl: float | None = None) -> None:
        async with self._lock:
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict(now)
            self._entries[key] = _Entry(
                value=value,
                expires_at=now + (self.ttl_seconds if ttl is None else ttl),
                hits=0,
                last_access=now,
            )

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def clear(self, pattern: str | None = None) -> int:
        """Remove entries whose key matches the glob ``pattern`` (all if None)."""
        async with self._lock:
            if pattern is None:
                removed = len(self._entries)
                self._entries.clear()
                return removed
            keys = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def __len__(self) -> int:
        return len(self._entries)

    def _evict(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        if len(self._entries) < self.max_entries:
            return
        victim = min(
            self._entries,
            key=lambda key: (self._entries[key].hits, self._entries[key].last_access),
        )
        del self._entries[victim]


SEARCH_KEY_PREFIX = "search:"


def normalize_query(query: str) -> str:
    return " ".join(query.split()).lower()


def make_search_cache_key(
    query: str,
    *,
    limit: int,
    offset: int,
    filters: SearchFilters | None,
    threshold: float,
    include_answer: bool = False,
    answer_type: AnswerType = "qa",
    language: str = "en",
) -> str:
    """Deterministic key over everything that changes the response body."""
    payload = {
        "q": normalize_query(query),
        "limit": limit,
        "offset": offset,
        "threshold": threshold,
        "filters": json.loads(filters.canonical_json()) if filters is not None else {},
        "answer": [include_answer, answer_type, language] if include_answer else None,
    }
    digest = hashlib.sha256(
        json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    ).hexdigest()
    return f"{SEARCH_KEY_PREFIX}{digest}"


class SearchCache:
    """Best-effort cache of full search responses."""

    def __init__(self, store: TTLCache) -> None:
        self._store = store

    async def get(self, key: str) -> SearchResponse | None:
        try:
            return await self._read(key)
        except Exception as exc:
            logger.warning("Search cache read failed for %s: %s", key, exc)
            return None

    async def set(self, key: str, response: SearchResponse) -> None:
        try:
            await self._store.set(key, response.model_dump(mode="json"))
        except Exception as exc:
            logger.warning("Search cache write failed for %s: %s", key, exc)

    async def clear(self, pattern: str | None = None) -> int:
        try:
            return await self._store.clear(pattern or f"{SEARCH_KEY_PREFIX}*")
        except Exception as exc:
            logger.warning("Search cache clear failed: %s", exc)
            return 0

    async def _read(self, key: str) -> SearchResponse | None:
        raw = await self._store.get(key)
        if raw is None:
            return None
        try:
            return SearchResponse.model_validate(raw)
        except ValidationError as exc:
            await self._store.delete(key)
            raise CacheError(f"Corrupt cache entry {key}") from exc


def embedding_cache_key(text: str, model: str, dim: int) -> str:
    """SHA-256 over the model, dimension and normalized text."""
    material = f"{model}:{dim}:{' '.join(text.split())}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class EmbeddingCache:
    """Two tiers: a fast in-memory TTL tier and the persistent DuckDB table.

    A persistent hit bumps the stored usage counter and repopulates the
    fast tier.
    """

    def __init__(
        self,
        fast: TTLCache,
        store: DuckDBVectorStore | None = None,
        *,
        model: str,
    ) -> None:
        self._fast = fast
        self._store = store
        self.model = model

    async def get(self, text_hash: str) -> list[float] | None:
        try:
            cached = await self._fast.get(text_hash)
            if cached is not None:
                return list(cached)
            if self._store is None:
                return None
            vector = await asyncio.to_thread(self._store.get_cached_embedding, text_hash)
            if vector is not None:
                await self._fast.set(text_hash, tuple(vector))
            return vector
        except Exception as exc:
            logger.warning("Embedding cache read failed: %s", exc)
            return None

    async def put(self, text_hash: str, vector: list[float]) -> None:
        try:
            await self._fast.set(text_hash, tuple(vector))
            if self._store is not None:
                await asyncio.to_thread(
                    self._store.put_cached_embedding, text_hash, list(vector), self.model
                )
        except Exception as exc:
            logger.warning("Embedding cache write failed: %s", exc)

    async def cleanup(self, *, older_than_days: int = 30, min_usage: int = 5) -> int:
        """Evict persistent entries by usage count and recency."""
        if self._store is None:
            return 0
        try:
            return await asyncio.to_thread(
                self._store.cleanup_cached_embeddings,
                older_than_days=older_than_days,
                min_usage=min_usage,
            )
        except Exception as exc:
            logger.warning("Embedding cache cleanup failed: %s", exc)
            return 0
