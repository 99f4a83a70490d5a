"""
Query orchestration: validate, cache, embed, retrieve, rerank, answer, log.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable

from ..analytics import AnalyticsService
from ..answers.synthesis import AnswerSynthesizer
from ..cache import SearchCache, make_search_cache_key
from ..config import Settings
from ..errors import InvalidQueryError, NotFoundError, SearchCancelledError, SearchUnavailableError
from ..models import (
    Answer,
    AnswerRequest,
    AnswerResponse,
    AnswerStatus,
    AnswerType,
    MultiSearchRequest,
    SearchRequest,
    SearchResponse,
    SearchResult,
)
from ..providers.embeddings import EmbeddingProvider
from ..storage.analytics import SearchLogEntry
from ..storage.base import ScoredChunk, SimilarDocument, VectorStore, utcnow
from .filters import SearchFilters
from .ranker import Reranker, sort_key
from .suggestions import combine_suggestions, extract_key_phrases


logger = logging.getLogger(__name__)

SEARCH_QUERY_BOUNDS = (2, 500)
ANSWER_QUERY_BOUNDS = (5, 1000)


def validate_query(query: str, bounds: tuple[int, int] = SEARCH_QUERY_BOUNDS) -> str:
    """Strip ``query`` and check its length; raises InvalidQueryError."""
    cleaned = query.strip() if isinstance(query, str) else ""
    low, high = bounds
    if not low <= len(cleaned) <= high:
        raise InvalidQueryError(
            f"Query must be between {low} and {high} characters (got {len(cleaned)})."
        )
    return cleaned


def to_result(chunk: ScoredChunk) -> SearchResult:
    return SearchResult(
        id=chunk.chunk_id,
        document_id=chunk.document_id,
        document_title=chunk.title,
        content=chunk.content,
        score=chunk.score,
        chunk_index=chunk.chunk_index,
        highlights=list(chunk.highlights),
        category=chunk.category,
        document_type=chunk.document_type,
        language=chunk.language,
        url=chunk.url,
        metadata=dict(chunk.metadata),
    )


class QueryOrchestrator:
    """Runs the retrieval-augmented query pipeline.

    Holds no cross-request locks. Concurrent requests that share a search
    slot supersede each other: the older one is cancelled and its caller
    receives :class:`SearchCancelledError`.
    """

    def __init__(
        self,
        *,
        store: VectorStore,
        embeddings: EmbeddingProvider,
        settings: Settings,
        synthesizer: AnswerSynthesizer | None = None,
        analytics: AnalyticsService | None = None,
        cache: SearchCache | None = None,
        reranker: Reranker | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.embeddings = embeddings
        self.settings = settings
        self.synthesizer = synthesizer
        self.analytics = analytics
        self.cache = cache
        self.reranker = reranker or Reranker(settings.ranking)
        self._clock = clock
        self._slots: dict[str, asyncio.Task[SearchResponse]] = {}
        self._superseded: set[asyncio.Task[SearchResponse]] = set()
        self._background: set[asyncio.Task[Any]] = set()

    # -- search ---------------------------------------------------------------------

    async def search(
        self,
        request: SearchRequest,
        *,
        user_id: str | None = None,
        slot: str | None = None,
    ) -> SearchResponse:
        """Run a search. With ``slot``, a newer search in the same slot wins."""
        if slot is None:
            return await self._search(request, user_id)

        previous = self._slots.get(slot)
        if previous is not None and not previous.done():
            self._superseded.add(previous)
            previous.cancel()

        task = asyncio.create_task(self._search(request, user_id))
        self._slots[slot] = task
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._superseded:
                logger.info("Search in slot %s superseded by a newer request", slot)
                raise SearchCancelledError(
                    "Search was cancelled by a newer request."
                ) from None
            task.cancel()
            raise
        finally:
            self._superseded.discard(task)
            if self._slots.get(slot) is task:
                del self._slots[slot]

    async def _search(self, request: SearchRequest, user_id: str | None) -> SearchResponse:
        started = time.perf_counter()
        query = validate_query(request.query)
        threshold = self._threshold(request.threshold)
        cache_key = make_search_cache_key(
            query,
            limit=request.limit,
            offset=request.offset,
            filters=request.filters,
            threshold=threshold,
            include_answer=request.include_answer,
            answer_type=request.answer_type,
            language=request.language,
        )

        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                self._log(
                    SearchLogEntry(
                        query=query,
                        user_id=user_id,
                        filters=self._filters_dict(request.filters),
                        results_count=cached.total_count,
                        execution_time_ms=self._elapsed_ms(started),
                        language=request.language,
                        cached=True,
                    )
                )
                return cached

        search_id = str(uuid.uuid4())
        vector, ranked = await self._retrieve(
            query,
            search_id=search_id,
            user_id=user_id,
            filters=request.filters,
            limit=request.limit,
            offset=request.offset,
            threshold=threshold,
            language=request.language,
            started=started,
        )
        suggestions = await self._suggestions(query, ranked)

        answer: Answer | None = None
        answer_status: AnswerStatus = "skipped"
        if request.include_answer:
            answer, answer_status = await self._answer_for(
                query,
                ranked,
                conversation_id=request.conversation_id,
                language=request.language,
                answer_type=request.answer_type,
            )

        results = [to_result(chunk) for chunk in ranked]
        response = SearchResponse(
            search_id=search_id,
            query=query,
            results=results,
            total_count=len(results),
            execution_time_ms=self._elapsed_ms(started),
            filters=request.filters,
            suggestions=suggestions,
            answer=answer,
            answer_status=answer_status,
        )
        if self.cache is not None and answer_status != "failed":
            await self.cache.set(cache_key, response)

        self._log(
            SearchLogEntry(
                id=search_id,
                query=query,
                user_id=user_id,
                query_embedding=vector,
                filters=self._filters_dict(request.filters),
                results_count=len(results),
                execution_time_ms=response.execution_time_ms,
                language=request.language,
            )
        )
        return response

    async def load_more(
        self, request: SearchRequest, *, user_id: str | None = None
    ) -> SearchResponse:
        """Fetch the page after ``request``'s. No answer and no suggestions."""
        started = time.perf_counter()
        query = validate_query(request.query)
        next_offset = request.offset + request.limit
        search_id = str(uuid.uuid4())
        _, ranked = await self._retrieve(
            query,
            search_id=search_id,
            user_id=user_id,
            filters=request.filters,
            limit=request.limit,
            offset=next_offset,
            threshold=self._threshold(request.threshold),
            language=request.language,
            started=started,
        )
        results = [to_result(chunk) for chunk in ranked]
        return SearchResponse(
            search_id=search_id,
            query=query,
            results=results,
            total_count=len(results),
            execution_time_ms=self._elapsed_ms(started),
            filters=request.filters,
        )

    async def multi_search(
        self, request: MultiSearchRequest, *, user_id: str | None = None
    ) -> SearchResponse:
        """Run several queries and merge their results per chunk.

        ``best`` keeps a chunk's highest score; ``average`` uses the mean
        over the queries that returned it.
        """
        started = time.perf_counter()
        queries = [validate_query(query) for query in request.queries]
        threshold = self._threshold(request.threshold)
        search_id = str(uuid.uuid4())

        scores: dict[str, list[float]] = {}
        chunks: dict[str, ScoredChunk] = {}
        for query in queries:
            _, ranked = await self._retrieve(
                query,
                search_id=search_id,
                user_id=user_id,
                filters=request.filters,
                limit=request.limit,
                offset=0,
                threshold=threshold,
                language=request.language,
                started=started,
            )
            for chunk in ranked:
                scores.setdefault(chunk.chunk_id, []).append(chunk.score)
                current = chunks.get(chunk.chunk_id)
                if current is None or chunk.score > current.score:
                    chunks[chunk.chunk_id] = chunk

        combined: list[ScoredChunk] = []
        for chunk_id, chunk in chunks.items():
            values = scores[chunk_id]
            score = max(values) if request.strategy == "best" else sum(values) / len(values)
            combined.append(_with_score(chunk, score))
        combined.sort(key=sort_key)
        results = [to_result(chunk) for chunk in combined[: request.limit]]

        joined = " | ".join(queries)
        response = SearchResponse(
            search_id=search_id,
            query=joined,
            results=results,
            total_count=len(results),
            execution_time_ms=self._elapsed_ms(started),
            filters=request.filters,
        )
        self._log(
            SearchLogEntry(
                id=search_id,
                query=joined,
                user_id=user_id,
                filters=self._filters_dict(request.filters),
                results_count=len(results),
                execution_time_ms=response.execution_time_ms,
                language=request.language,
            )
        )
        return response

    async def search_in_document(
        self,
        document_id: str,
        query: str,
        *,
        limit: int = 5,
        threshold: float = 0.0,
    ) -> list[SearchResult]:
        query = validate_query(query)
        await self._require_document(document_id)
        try:
            vector = await self.embeddings.embed(query)
            chunks = await self._store_call(
                self.store.search_within_document,
                document_id,
                vector,
                k=limit,
                threshold=threshold,
            )
        except Exception as exc:
            raise SearchUnavailableError(f"Document search failed: {exc}") from exc
        ranked = self.reranker.apply(query, chunks, now=self._clock())
        return [to_result(chunk) for chunk in ranked]

    async def find_similar(self, document_id: str, *, limit: int = 5) -> list[SimilarDocument]:
        await self._require_document(document_id)
        try:
            return await self._store_call(
                self.store.find_similar_documents, document_id, k=limit, threshold=0.5
            )
        except Exception as exc:
            raise SearchUnavailableError(f"Similar document lookup failed: {exc}") from exc

    # -- answers --------------------------------------------------------------------

    async def answer(
        self, request: AnswerRequest, *, user_id: str | None = None
    ) -> AnswerResponse:
        """Answer-only request. Provider failures propagate to the caller."""
        started = time.perf_counter()
        query = validate_query(request.query, ANSWER_QUERY_BOUNDS)
        chunks = await self.retrieve_for_answer(query, document_ids=request.context)
        search_id = str(uuid.uuid4())

        answer: Answer | None = None
        status: AnswerStatus = "no_context"
        if chunks:
            if self.synthesizer is None:
                status = "skipped"
            else:
                answer = await self.synthesizer.generate(
                    query,
                    chunks,
                    conversation_id=request.conversation_id,
                    language=request.language,
                    answer_type=request.type,
                )
                status = "ok" if answer is not None else "no_context"

        self._log(
            SearchLogEntry(
                id=search_id,
                query=query,
                user_id=user_id,
                results_count=len(chunks),
                execution_time_ms=self._elapsed_ms(started),
                language=request.language,
            )
        )
        return AnswerResponse(search_id=search_id, answer=answer, answer_status=status)

    async def retrieve_for_answer(
        self,
        query: str,
        *,
        document_ids: list[str] | None = None,
        filters: SearchFilters | None = None,
    ) -> list[ScoredChunk]:
        """Top chunks to ground an answer on, optionally limited to documents."""
        size = self.settings.answer_context_size
        threshold = self.settings.answer_threshold
        try:
            vector = await self.embeddings.embed(query)
            if document_ids:
                chunks: list[ScoredChunk] = []
                for document_id in document_ids:
                    chunks.extend(
                        await self._store_call(
                            self.store.search_within_document,
                            document_id,
                            vector,
                            k=size,
                            threshold=threshold,
                        )
                    )
                chunks = sorted(chunks, key=sort_key)[:size]
            else:
                chunks = await self._store_call(
                    self.store.similarity_search,
                    vector,
                    k=size,
                    threshold=threshold,
                    filters=filters,
                )
        except Exception as exc:
            raise SearchUnavailableError(f"Retrieval failed: {exc}") from exc
        return self.reranker.apply(query, chunks, now=self._clock())

    async def _answer_for(
        self,
        query: str,
        ranked: list[ScoredChunk],
        *,
        conversation_id: str | None,
        language: str,
        answer_type: AnswerType,
    ) -> tuple[Answer | None, AnswerStatus]:
        if not ranked:
            return None, "no_context"
        if self.synthesizer is None:
            return None, "skipped"
        try:
            answer = await self.synthesizer.generate(
                query,
                ranked,
                conversation_id=conversation_id,
                language=language,
                answer_type=answer_type,
            )
        except Exception as exc:
            logger.warning("Answer synthesis failed for %r: %s", query, exc)
            return None, "failed"
        return answer, "ok" if answer is not None else "no_context"

    # -- maintenance ----------------------------------------------------------------

    async def clear_cache(self, pattern: str | None = None) -> int:
        if self.cache is None:
            return 0
        removed = await self.cache.clear(pattern)
        logger.info("Cleared %d cached search responses", removed)
        return removed

    async def drain(self) -> None:
        """Wait for outstanding background analytics writes."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -- helpers --------------------------------------------------------------------

    async def _retrieve(
        self,
        query: str,
        *,
        search_id: str,
        user_id: str | None,
        filters: SearchFilters | None,
        limit: int,
        offset: int,
        threshold: float,
        language: str,
        started: float,
    ) -> tuple[list[float], list[ScoredChunk]]:
        try:
            vector = await self.embeddings.embed(query)
            chunks = await self._store_call(
                self.store.similarity_search,
                vector,
                k=limit,
                threshold=threshold,
                filters=filters,
                offset=offset,
            )
        except Exception as exc:
            logger.error("Search %s failed: %s", search_id, exc)
            self._log(
                SearchLogEntry(
                    id=search_id,
                    query=query,
                    user_id=user_id,
                    filters=self._filters_dict(filters),
                    execution_time_ms=self._elapsed_ms(started),
                    language=language,
                    successful=False,
                    error=str(exc),
                )
            )
            raise SearchUnavailableError(f"Search is temporarily unavailable: {exc}") from exc
        return vector, self.reranker.apply(query, chunks, now=self._clock())

    async def _suggestions(self, query: str, ranked: list[ScoredChunk]) -> list[str]:
        related: list[str] = []
        if self.analytics is not None:
            try:
                related = await self.analytics.related_queries(query)
            except Exception as exc:
                logger.warning("Related query lookup failed: %s", exc)
        phrases = extract_key_phrases(" ".join(chunk.content for chunk in ranked[:3]))
        return combine_suggestions(query, related, phrases)

    async def _store_call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args, **kwargs),
            timeout=self.settings.request_timeout,
        )

    async def _require_document(self, document_id: str) -> None:
        document = await self._store_call(self.store.get_document, document_id)
        if document is None:
            raise NotFoundError(f"Document {document_id} not found")

    def _log(self, entry: SearchLogEntry) -> None:
        if self.analytics is None:
            return
        task = asyncio.create_task(self.analytics.log_search(entry))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _threshold(self, value: float | None) -> float:
        return self.settings.default_threshold if value is None else value

    @staticmethod
    def _filters_dict(filters: SearchFilters | None) -> dict[str, Any]:
        if filters is None:
            return {}
        return filters.model_dump(mode="json", exclude_none=True)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)


def _with_score(chunk: ScoredChunk, score: float) -> ScoredChunk:
    return replace(chunk, score=score)
