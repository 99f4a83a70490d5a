"""
Request and response models shared by the orchestrator, the cache and the API.

Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .search.filters import SearchFilters

AnswerType: TypeAlias = Literal["qa", "summary", "explanation", "troubleshooting", "safety"]
AnswerStatus: TypeAlias = Literal["ok", "no_context", "failed", "skipped"]
Rating: TypeAlias = Literal["helpful", "not_helpful", "partially_helpful"]
CombineStrategy: TypeAlias = Literal["best", "average"]


class APIModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SearchRequest(APIModel):
    """A free-text search, optionally asking for a synthesized answer."""

    query: str
    filters: SearchFilters | None = None
    limit: int = Field(default=10, ge=1, le=100)
    offset: int = Field(default=0, ge=0)
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    include_answer: bool = False
    answer_type: AnswerType = "qa"
    language: str = "en"
    conversation_id: str | None = None
    stream: bool = Field(default=False, description="Accepted for compatibility; ignored.")


class AnswerRequest(APIModel):
    """Answer-only request. ``context`` restricts retrieval to these document ids."""

    query: str
    type: AnswerType = "qa"
    conversation_id: str | None = None
    language: str = "en"
    context: list[str] | None = None
    stream: bool = False


class MultiSearchRequest(APIModel):
    queries: list[str] = Field(min_length=1, max_length=5)
    filters: SearchFilters | None = None
    limit: int = Field(default=10, ge=1, le=100)
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    strategy: CombineStrategy = "best"
    language: str = "en"


class DocumentSearchRequest(APIModel):
    query: str
    limit: int = Field(default=5, ge=1, le=50)
    threshold: float = Field(default=0.0, ge=0.0, le=1.0)


class FeedbackRequest(APIModel):
    search_id: str
    rating: Rating
    result_id: str | None = None
    comment: str | None = Field(default=None, max_length=2000)
    clicked: bool = False
    time_to_click_ms: int | None = Field(default=None, ge=0)
    dwell_time_ms: int | None = Field(default=None, ge=0)
    result_position: int | None = Field(default=None, ge=0)


class SearchResult(APIModel):
    id: str
    document_id: str
    document_title: str
    content: str
    score: float
    chunk_index: int
    highlights: list[str] = Field(default_factory=list)
    category: str | None = None
    document_type: str | None = None
    language: str = "en"
    url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SourceRef(APIModel):
    id: str
    title: str
    score: float


class Answer(APIModel):
    """A grounded answer. ``confidence`` is a heuristic, not a probability."""

    text: str
    confidence: float = Field(ge=0.0, le=1.0)
    sources: list[SourceRef] = Field(default_factory=list)
    related_questions: list[str] = Field(default_factory=list)
    usage: dict[str, float | int] = Field(default_factory=dict)


class SearchResponse(APIModel):
    search_id: str
    query: str
    results: list[SearchResult]
    total_count: int
    execution_time_ms: int
    filters: SearchFilters | None = None
    suggestions: list[str] = Field(default_factory=list)
    answer: Answer | None = None
    answer_status: AnswerStatus = "skipped"


class AnswerResponse(APIModel):
    search_id: str
    answer: Answer | None
    answer_status: AnswerStatus
