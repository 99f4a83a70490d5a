"""
Reranking and highlight extraction for similarity-search results.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from datetime import datetime, timedelta

from ..config import RankingWeights
from ..storage.base import ScoredChunk


logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+", re.UNICODE)
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


def query_terms(query: str, *, min_length: int = 3) -> list[str]:
    """Lower-cased unique query words of at least ``min_length`` characters."""
    terms: list[str] = []
    for word in _WORD_RE.findall(query.lower()):
        if len(word) >= min_length and word not in terms:
            terms.append(word)
    return terms


def sort_key(chunk: ScoredChunk) -> tuple[float, float, int, str]:
    """Score desc, then newest document, then chunk position, then id."""
    updated = chunk.updated_at.timestamp() if chunk.updated_at is not None else float("-inf")
    return (-chunk.score, -updated, chunk.chunk_index, chunk.chunk_id)


class Reranker:
    """Apply term, recency and title bonuses on top of vector similarity."""

    def __init__(self, weights: RankingWeights | None = None) -> None:
        self.weights = weights or RankingWeights()

    def bonus(self, query: str, terms: list[str], chunk: ScoredChunk, now: datetime) -> float:
        weights = self.weights
        bonus = 0.0
        if terms:
            content = chunk.content.lower()
            matched = sum(1 for term in terms if term in content)
            bonus += weights.term_overlap * matched / len(terms)

        if chunk.updated_at is not None:
            age = now - chunk.updated_at
            if age < timedelta(days=7):
                bonus += weights.recent_week
            elif age < timedelta(days=30):
                bonus += weights.recent_month

        normalized_query = " ".join(query.split()).lower()
        if normalized_query and normalized_query in chunk.title.lower():
            bonus += weights.title_match
        return bonus

    def rerank(self, query: str, chunks: list[ScoredChunk], *, now: datetime) -> list[ScoredChunk]:
        """Return new chunks with bonus-adjusted scores (capped at 1.0), sorted.

        Pure: the same inputs and ``now`` always give the same output.
        """
        terms = query_terms(query, min_length=self.weights.min_term_length)
        rescored = [
            replace(chunk, score=min(1.0, chunk.score + self.bonus(query, terms, chunk, now)))
            for chunk in chunks
        ]
        return sorted(rescored, key=sort_key)

    def with_highlights(self, query: str, chunks: list[ScoredChunk]) -> list[ScoredChunk]:
        """Attach highlight sentences to each chunk, keeping the given order."""
        terms = query_terms(query, min_length=self.weights.min_term_length)
        return [
            replace(chunk, highlights=tuple(self.highlights(chunk.content, terms)))
            for chunk in chunks
        ]

    def highlights(self, content: str, terms: list[str]) -> list[str]:
        """Sentences containing a query term, with matches wrapped in ``**``."""
        if not terms:
            return []
        ordered = sorted(terms, key=len, reverse=True)
        pattern = re.compile("(" + "|".join(re.escape(term) for term in ordered) + ")", re.IGNORECASE)
        found: list[str] = []
        for sentence in _SENTENCE_SPLIT_RE.split(content):
            sentence = sentence.strip()
            if not sentence or not pattern.search(sentence):
                continue
            found.append(pattern.sub(r"**\1**", sentence))
            if len(found) >= self.weights.max_highlights:
                break
        return found

    def apply(self, query: str, chunks: list[ScoredChunk], *, now: datetime) -> list[ScoredChunk]:
        """Rerank and highlight, keeping the store's order if reranking fails."""
        try:
            ranked = self.rerank(query, chunks, now=now)
        except Exception as exc:
            logger.warning("Reranking failed, keeping similarity order: %s", exc)
            ranked = list(chunks)
        return self.with_highlights(query, ranked)
