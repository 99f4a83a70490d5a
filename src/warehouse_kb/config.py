"""
Configuration helpers for the knowledge assistant.

Every setting can be overridden with a ``WAREHOUSE_KB_*`` environment
variable; explicit keyword overrides passed to :meth:`Settings.from_env`
win over the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any


DEFAULT_DB_PATH = "~/.warehouse_kb/knowledge.duckdb"
ENV_PREFIX = "WAREHOUSE_KB_"
ENV_DB_PATH = f"{ENV_PREFIX}DB_PATH"
IN_MEMORY_DB = ":memory:"


def resolve_db_path(override_path: str | None = None) -> str:
    """
    Resolve the DuckDB path from an explicit override, env var, or default.

    Precedence:
    1) explicit override_path
    2) WAREHOUSE_KB_DB_PATH
    3) default path
    """
    raw_path = override_path or os.getenv(ENV_DB_PATH) or DEFAULT_DB_PATH
    if raw_path == IN_MEMORY_DB:
        return raw_path
    resolved = Path(raw_path).expanduser().resolve()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return str(resolved)


@dataclass(frozen=True)
class RankingWeights:
    """Bonus weights used by the reranker.

    The defaults are heuristic constants carried over from the first
    deployment; they were never tuned against relevance judgements.
    """

    term_overlap: float = 0.1
    recent_week: float = 0.05
    recent_month: float = 0.02
    title_match: float = 0.15
    min_term_length: int = 3
    max_highlights: int = 3


@dataclass(frozen=True)
class Settings:
    """Runtime settings shared by every component."""

    db_path: str = DEFAULT_DB_PATH

    embedding_model: str = "gemini-embedding-001"
    embedding_dim: int = 768
    embedding_batch_size: int = 100
    embedding_batch_delay: float = 1.0
    max_embed_chars: int = 32_000

    chat_model: str = "gemini-2.5-flash"
    temperature: float = 0.7
    max_output_tokens: int = 1000

    request_timeout: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 1.0

    search_cache_ttl: int = 3600
    embedding_cache_ttl: int = 3600
    cache_max_entries: int = 5000

    default_limit: int = 10
    default_threshold: float = 0.7
    answer_threshold: float = 0.5
    answer_context_size: int = 5

    trend_decay: float = 0.1
    history_turns: int = 5
    confidence_scale: float = 1.2

    worker_concurrency: int = 2
    task_max_attempts: int = 3
    task_retry_delay: float = 2.0

    ranking: RankingWeights = field(default_factory=RankingWeights)

    @classmethod
    def from_env(cls, **overrides: Any) -> "Settings":
        """Build settings from ``WAREHOUSE_KB_*`` variables plus overrides."""
        values: dict[str, Any] = {}
        for spec in fields(cls):
            if spec.name in {"db_path", "ranking"}:
                continue
            raw = os.getenv(f"{ENV_PREFIX}{spec.name.upper()}")
            if raw is not None:
                values[spec.name] = _coerce(raw, spec.default)

        ranking_values: dict[str, Any] = {}
        for spec in fields(RankingWeights):
            raw = os.getenv(f"{ENV_PREFIX}RANK_{spec.name.upper()}")
            if raw is not None:
                ranking_values[spec.name] = _coerce(raw, spec.default)

        settings = cls(
            db_path=resolve_db_path(overrides.pop("db_path", None)),
            ranking=replace(RankingWeights(), **ranking_values),
            **values,
        )
        return replace(settings, **overrides) if overrides else settings


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw
