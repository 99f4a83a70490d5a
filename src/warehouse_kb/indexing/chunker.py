"""
Splitting extracted document text into overlapping chunks.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass


_WORD_RE = re.compile(r"\w+", re.UNICODE)

STOP_WORDS = frozenset(
    """
    a an and are as at be been but by can for from has have if in into is it its
    may must not of on or should that the their then there these this to was were
    will with you your when which while who all any each more most other some such
    """.split()
)


@dataclass(frozen=True)
class TextChunk:
    """A slice of document text with its character offsets."""

    text: str
    chunk_index: int
    start_char: int
    end_char: int


class SmartChunker:
    """
    Paragraph-aware chunker with overlap.

    Prefers to cut at a blank line in the second half of the window, then at
    a sentence end, and only then mid-text.
    """

    def __init__(self, chunk_size: int = 1000, overlap: int = 200) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        if overlap < 0:
            raise ValueError("overlap must be >= 0")
        if overlap >= chunk_size:
            raise ValueError("overlap must be smaller than chunk_size")

        self.chunk_size = chunk_size
        self.overlap = overlap

    def chunk_text(self, text: str) -> list[TextChunk]:
        normalized = text.strip()
        if not normalized:
            return []

        chunks: list[TextChunk] = []
        start = 0
        total = len(normalized)

        while start < total:
            end = min(start + self.chunk_size, total)
            if end < total:
                end = self._boundary(normalized, start, end)

            piece = normalized[start:end].strip()
            if piece:
                chunks.append(
                    TextChunk(
                        text=piece,
                        chunk_index=len(chunks),
                        start_char=start,
                        end_char=end,
                    )
                )

            if end >= total:
                break
            start = max(start + 1, end - self.overlap)

        return chunks

    def _boundary(self, text: str, start: int, end: int) -> int:
        floor = start + self.chunk_size // 2
        paragraph = text.rfind("\n\n", floor, end)
        if paragraph != -1:
            return paragraph + 2
        sentence = max(text.rfind(mark, floor, end) for mark in (". ", "! ", "? ", ".\n"))
        if sentence != -1:
            return sentence + 2
        return end


def extract_keywords(text: str, *, limit: int = 10) -> list[str]:
    """Most frequent non-stop-words of four or more letters."""
    words = [
        word
        for word in _WORD_RE.findall(text.lower())
        if len(word) >= 4 and word not in STOP_WORDS and not word.isdigit()
    ]
    return [word for word, _ in Counter(words).most_common(limit)]
