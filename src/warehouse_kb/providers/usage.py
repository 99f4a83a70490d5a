"""
Token estimation and cost accounting for provider calls.
"""

from __future__ import annotations

import math
import re
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable


# USD per 1K tokens: (input, output).
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gemini-embedding-001": (0.00002, 0.0),
    "text-embedding-004": (0.00002, 0.0),
    "gemini-2.5-flash": (0.01, 0.03),
    "gemini-2.5-pro": (0.01, 0.03),
}
_DEFAULT_PRICING = (0.01, 0.03)

_ARABIC_RE = re.compile(r"[\u0600-\u06FF]")


def estimate_tokens(text: str) -> int:
    """Rough token count: four characters per token, two for Arabic script."""
    if not text:
        return 0
    divisor = 2 if _ARABIC_RE.search(text) else 4
    return math.ceil(len(text) / divisor)


def estimate_cost(model: str, prompt_tokens: int, completion_tokens: int = 0) -> float:
    input_rate, output_rate = MODEL_PRICING.get(model, _DEFAULT_PRICING)
    return (prompt_tokens / 1000) * input_rate + (completion_tokens / 1000) * output_rate


@dataclass(frozen=True)
class TokenUsage:
    """Token counts and estimated cost of a single provider call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0

    @classmethod
    def for_model(
        cls, model: str, prompt_tokens: int, completion_tokens: int = 0
    ) -> "TokenUsage":
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            estimated_cost=estimate_cost(model, prompt_tokens, completion_tokens),
        )

    def to_dict(self) -> dict[str, float | int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "estimated_cost": round(self.estimated_cost, 6),
        }


@dataclass
class DailyUsage:
    day: date
    requests: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0

    def to_dict(self) -> dict[str, float | int | str]:
        return {
            "day": self.day.isoformat(),
            "requests": self.requests,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "cost": round(self.cost, 6),
        }


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class UsageTracker:
    """Accumulate usage per (calendar day, model), keeping ``retention_days`` of history."""

    def __init__(
        self, clock: Callable[[], date] | None = None, *, retention_days: int = 30
    ) -> None:
        self._clock = clock or _utc_today
        self.retention_days = max(1, retention_days)
        self._lock = threading.Lock()
        self._totals: dict[tuple[date, str], DailyUsage] = {}

    def record(self, model: str, usage: TokenUsage) -> None:
        key = (self._clock(), model)
        with self._lock:
            if key not in self._totals:
                self._prune(key[0])
            entry = self._totals.setdefault(key, DailyUsage(day=key[0]))
            entry.requests += 1
            entry.prompt_tokens += usage.prompt_tokens
            entry.completion_tokens += usage.completion_tokens
            entry.cost += usage.estimated_cost

    def _prune(self, today: date) -> None:
        cutoff = today - timedelta(days=self.retention_days)
        for key in [key for key in self._totals if key[0] <= cutoff]:
            del self._totals[key]

    def daily(self, day: date | None = None) -> dict[str, DailyUsage]:
        """Usage for one day (today by default), keyed by model."""
        target = day or self._clock()
        with self._lock:
            return {
                model: entry
                for (entry_day, model), entry in self._totals.items()
                if entry_day == target
            }

    def summary(self) -> list[dict[str, float | int | str]]:
        with self._lock:
            rows = [
                {"model": model, **entry.to_dict()}
                for (_, model), entry in self._totals.items()
            ]
        return sorted(rows, key=lambda row: (str(row["day"]), str(row["model"])))
