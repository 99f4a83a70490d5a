"""
Query suggestions built from result content and past traffic.
"""

from __future__ import annotations

import re
from collections import Counter


_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
MAX_SUGGESTIONS = 5


def extract_key_phrases(text: str, *, limit: int = 5) -> list[str]:
    """Most frequent 2- and 3-word phrases in ``text``.

    Bigrams must be 6-49 characters long and trigrams 9-49, which keeps out
    runs of stop words.
    """
    words = _TOKEN_RE.findall(text.lower())
    counts: Counter[str] = Counter()
    first_seen: dict[str, int] = {}
    for size, min_len in ((2, 5), (3, 8)):
        for start in range(len(words) - size + 1):
            phrase = " ".join(words[start : start + size])
            if min_len < len(phrase) < 50:
                counts[phrase] += 1
                first_seen.setdefault(phrase, len(first_seen))
    ranked = sorted(counts, key=lambda phrase: (-counts[phrase], first_seen[phrase]))
    return ranked[:limit]


def combine_suggestions(
    query: str,
    *sources: list[str],
    limit: int = MAX_SUGGESTIONS,
) -> list[str]:
    """Merge suggestion lists in priority order.

    Case-insensitive duplicates and the query itself are dropped.
    """
    seen = {" ".join(query.split()).lower()}
    merged: list[str] = []
    for source in sources:
        for suggestion in source:
            cleaned = " ".join(suggestion.split())
            key = cleaned.lower()
            if not cleaned or key in seen:
                continue
            seen.add(key)
            merged.append(cleaned)
            if len(merged) >= limit:
                return merged
    return merged
