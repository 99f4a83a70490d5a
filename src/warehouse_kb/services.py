"""Dependency wiring for the warehouse knowledge base."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from google.genai import Client as GenAIClient

from .analytics import AnalyticsService
from .answers.synthesis import AnswerSynthesizer
from .answers.workflow import AnswerWorkflow
from .cache import EmbeddingCache, SearchCache, TTLCache
from .config import Settings
from .indexing import IngestionPipeline
from .providers.completion import CompletionProvider
from .providers.embeddings import EmbeddingProvider
from .providers.usage import UsageTracker
from .search.orchestrator import QueryOrchestrator
from .storage import AnalyticsRepository, ConversationRepository, DuckDBVectorStore
from .tasks import EmbeddingTaskQueue


@dataclass
class Services:
    """Every long-lived component, built once per process."""

    settings: Settings
    store: DuckDBVectorStore
    usage: UsageTracker
    embeddings: EmbeddingProvider
    completion: CompletionProvider
    conversations: ConversationRepository
    analytics: AnalyticsService
    search_cache: SearchCache
    embedding_cache: EmbeddingCache
    synthesizer: AnswerSynthesizer
    orchestrator: QueryOrchestrator
    task_queue: EmbeddingTaskQueue
    ingestion: IngestionPipeline

    def answer_workflow(self) -> AnswerWorkflow:
        """A fresh workflow instance for one streamed answer."""
        return AnswerWorkflow(
            self.orchestrator,
            self.synthesizer,
            timeout=self.settings.request_timeout * 4,
        )

    async def aclose(self) -> None:
        await self.task_queue.stop()
        await self.orchestrator.drain()
        self.store.close()


def build_services(settings: Settings | None = None, *, genai_client: Any | None = None) -> Services:
    """Instantiate the default stack. ``genai_client`` replaces the GenAI client."""
    cfg = settings or Settings.from_env()
    if genai_client is None:
        api_key = os.getenv("GOOGLE_API_KEY")
        if api_key is None:
            raise ValueError(
                "GOOGLE_API_KEY not found. Set the environment variable or pass genai_client."
            )
        genai_client = GenAIClient(api_key=api_key)

    store = DuckDBVectorStore(cfg.db_path, dim=cfg.embedding_dim)
    usage = UsageTracker()
    embedding_cache = EmbeddingCache(
        TTLCache(ttl_seconds=cfg.embedding_cache_ttl, max_entries=cfg.cache_max_entries),
        store,
        model=cfg.embedding_model,
    )
    embeddings = EmbeddingProvider(
        model=cfg.embedding_model,
        dim=cfg.embedding_dim,
        batch_size=cfg.embedding_batch_size,
        batch_delay=cfg.embedding_batch_delay,
        max_chars=cfg.max_embed_chars,
        timeout=cfg.request_timeout,
        max_retries=cfg.max_retries,
        retry_base_delay=cfg.retry_base_delay,
        cache=embedding_cache,
        usage=usage,
        client=genai_client,
    )
    completion = CompletionProvider(
        model=cfg.chat_model,
        temperature=cfg.temperature,
        max_output_tokens=cfg.max_output_tokens,
        timeout=cfg.request_timeout,
        max_retries=cfg.max_retries,
        retry_base_delay=cfg.retry_base_delay,
        usage=usage,
        client=genai_client,
    )
    conversations = ConversationRepository(store.connection)
    analytics = AnalyticsService(AnalyticsRepository(store.connection), decay=cfg.trend_decay)
    search_cache = SearchCache(
        TTLCache(ttl_seconds=cfg.search_cache_ttl, max_entries=cfg.cache_max_entries)
    )
    synthesizer = AnswerSynthesizer(
        completion,
        conversations,
        history_turns=cfg.history_turns,
        confidence_scale=cfg.confidence_scale,
        max_context_chunks=cfg.answer_context_size,
    )
    orchestrator = QueryOrchestrator(
        store=store,
        embeddings=embeddings,
        settings=cfg,
        synthesizer=synthesizer,
        analytics=analytics,
        cache=search_cache,
    )
    task_queue = EmbeddingTaskQueue(
        store,
        embeddings,
        concurrency=cfg.worker_concurrency,
        max_attempts=cfg.task_max_attempts,
        retry_delay=cfg.task_retry_delay,
    )
    ingestion = IngestionPipeline(store, embeddings=embeddings, queue=task_queue)
    return Services(
        settings=cfg,
        store=store,
        usage=usage,
        embeddings=embeddings,
        completion=completion,
        conversations=conversations,
        analytics=analytics,
        search_cache=search_cache,
        embedding_cache=embedding_cache,
        synthesizer=synthesizer,
        orchestrator=orchestrator,
        task_queue=task_queue,
        ingestion=ingestion,
    )
