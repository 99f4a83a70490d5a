"""
Embedding provider for vector-based semantic search.

Wraps the Google GenAI embedding API with text normalization, a two-tier
cache, bounded retries and usage accounting.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from google.genai import Client as GenAIClient

from ..cache import EmbeddingCache, embedding_cache_key
from ..errors import EmbeddingProviderError
from .remote import call_with_retries
from .usage import TokenUsage, UsageTracker, estimate_tokens


logger = logging.getLogger(__name__)

_DEFAULT_MODEL = "gemini-embedding-001"
_DEFAULT_DIM = 768
_DEFAULT_BATCH_SIZE = 100
_DEFAULT_MAX_CHARS = 32_000


def normalize_text(text: str, max_chars: int = _DEFAULT_MAX_CHARS) -> str:
    """Collapse whitespace and cap length. Slicing is by code point."""
    return " ".join(text.split())[:max_chars]


class EmbeddingProvider:
    """Generate text embeddings via Google GenAI."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        dim: int | None = None,
        batch_size: int | None = None,
        batch_delay: float = 1.0,
        max_chars: int = _DEFAULT_MAX_CHARS,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        cache: EmbeddingCache | None = None,
        usage: UsageTracker | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model or os.getenv("WAREHOUSE_KB_EMBEDDING_MODEL", _DEFAULT_MODEL)
        self.dim = dim or int(os.getenv("WAREHOUSE_KB_EMBEDDING_DIM", str(_DEFAULT_DIM)))
        self.batch_size = batch_size or int(
            os.getenv("WAREHOUSE_KB_EMBEDDING_BATCH_SIZE", str(_DEFAULT_BATCH_SIZE))
        )
        self.batch_delay = batch_delay
        self.max_chars = max_chars
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.cache = cache
        self.usage = usage or UsageTracker()

        if client is not None:
            self._client = client
        else:
            resolved_key = api_key or os.getenv("GOOGLE_API_KEY")
            if resolved_key is None:
                raise ValueError(
                    "GOOGLE_API_KEY not found. "
                    "Provide api_key or set the environment variable."
                )
            self._client = GenAIClient(api_key=resolved_key)

    async def embed(self, text: str, *, task_type: str = "RETRIEVAL_QUERY") -> list[float]:
        """Embed one text. Raises EmbeddingProviderError after bounded retries."""
        normalized = normalize_text(text, self.max_chars)
        if not normalized:
            raise EmbeddingProviderError("Cannot embed empty text.")

        key = embedding_cache_key(normalized, self.model, self.dim)
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                return cached

        [vector] = await self._embed_remote([normalized], task_type=task_type)
        if self.cache is not None:
            await self.cache.put(key, vector)
        return vector

    async def embed_batch(
        self,
        texts: list[str],
        *,
        task_type: str = "RETRIEVAL_DOCUMENT",
    ) -> list[list[float] | None]:
        """Embed many texts; the result is aligned with ``texts``.

        Sub-batches are sent sequentially with ``batch_delay`` seconds between
        them. A failing sub-batch is retried item by item; items that still
        fail come back as ``None``.
        """
        results: list[list[float] | None] = [None] * len(texts)
        pending: list[tuple[int, str, str]] = []
        for index, text in enumerate(texts):
            normalized = normalize_text(text, self.max_chars)
            if not normalized:
                logger.warning("Skipping empty text at position %d", index)
                continue
            key = embedding_cache_key(normalized, self.model, self.dim)
            cached = await self.cache.get(key) if self.cache is not None else None
            if cached is not None:
                results[index] = cached
            else:
                pending.append((index, normalized, key))

        for start in range(0, len(pending), self.batch_size):
            if start > 0 and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)
            batch = pending[start : start + self.batch_size]
            try:
                vectors: list[list[float] | None] = list(
                    await self._embed_remote([text for _, text, _ in batch], task_type=task_type)
                )
            except EmbeddingProviderError as exc:
                logger.warning(
                    "Embedding sub-batch of %d failed, retrying items individually: %s",
                    len(batch),
                    exc,
                )
                vectors = [await self._embed_single_or_none(text, task_type) for _, text, _ in batch]

            for (index, _, key), vector in zip(batch, vectors):
                results[index] = vector
                if vector is not None and self.cache is not None:
                    await self.cache.put(key, vector)

        return results

    async def _embed_single_or_none(self, text: str, task_type: str) -> list[float] | None:
        try:
            [vector] = await self._embed_remote([text], task_type=task_type)
        except EmbeddingProviderError as exc:
            logger.error("Embedding failed for text of %d chars: %s", len(text), exc)
            return None
        return vector

    async def _embed_remote(self, contents: list[str], *, task_type: str) -> list[list[float]]:
        result = await call_with_retries(
            lambda: self._client.aio.models.embed_content(
                model=self.model,
                contents=contents,
                config={
                    "task_type": task_type,
                    "output_dimensionality": self.dim,
                },
            ),
            what=f"embed_content({len(contents)} texts)",
            timeout=self.timeout,
            attempts=self.max_retries,
            base_delay=self.retry_base_delay,
            error_cls=EmbeddingProviderError,
        )
        embeddings = list(result.embeddings or [])
        if len(embeddings) != len(contents):
            raise EmbeddingProviderError(
                f"Provider returned {len(embeddings)} embeddings for {len(contents)} texts."
            )
        vectors = [list(emb.values) for emb in embeddings]
        for vector in vectors:
            if len(vector) != self.dim:
                raise EmbeddingProviderError(
                    f"Provider returned dimension {len(vector)}, expected {self.dim}."
                )

        prompt_tokens = sum(estimate_tokens(text) for text in contents)
        self.usage.record(self.model, TokenUsage.for_model(self.model, prompt_tokens))
        return vectors
