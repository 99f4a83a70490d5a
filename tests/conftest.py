from __future__ import annotations

import asyncio
from collections.abc import Iterator
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Any

import pytest
from google.genai.types import Candidate, Content, GenerateContentResponse, Part

from warehouse_kb.config import Settings
from warehouse_kb.services import Services, build_services
from warehouse_kb.storage import ChunkRecord, DocumentRecord, DuckDBVectorStore
from warehouse_kb.storage.base import utcnow


DIM = 2


def make_response(text: str) -> GenerateContentResponse:
    return GenerateContentResponse(
        candidates=[
            Candidate(
                content=Content(role="model", parts=[Part.from_text(text=text)])
            )
        ]
    )


class MockModels:
    """Deterministic stand-in for ``client.aio.models``.

    Texts containing a key of ``vectors`` embed to that vector; everything
    else embeds to ``default_vector``. Answer prompts carry a system
    instruction, related-question prompts do not.
    """

    def __init__(
        self,
        *,
        vectors: dict[str, list[float]] | None = None,
        default_vector: list[float] | None = None,
        answer: str = "Wear a seatbelt and keep the load low [Source 1].",
        related: str = '["How often are forklifts inspected?", "Who may drive a forklift?"]',
        stream_chunks: list[str] | None = None,
    ) -> None:
        self.vectors = vectors or {}
        self.default_vector = default_vector or [0.0, 1.0]
        self.answer = answer
        self.related = related
        self.stream_chunks = stream_chunks or ["Wear a seatbelt ", "at all times."]
        self.embed_calls: list[list[str]] = []
        self.generate_calls: list[dict[str, Any]] = []
        self.embed_error: Exception | None = None
        self.generate_error: Exception | None = None
        self.embed_delay = 0.0

    def vector_for(self, text: str) -> list[float]:
        lowered = text.lower()
        for key, vector in self.vectors.items():
            if key in lowered:
                return list(vector)
        return list(self.default_vector)

    async def embed_content(self, *, model: str, contents: list[str], config: dict) -> Any:
        self.embed_calls.append(list(contents))
        if self.embed_delay:
            await asyncio.sleep(self.embed_delay)
        if self.embed_error is not None:
            raise self.embed_error
        return SimpleNamespace(
            embeddings=[SimpleNamespace(values=self.vector_for(text)) for text in contents]
        )

    async def generate_content(self, *, model: str, contents: Any, config: dict) -> Any:
        self.generate_calls.append({"model": model, "contents": contents, "config": config})
        if self.generate_error is not None:
            raise self.generate_error
        if "system_instruction" in config:
            return make_response(self.answer)
        return make_response(self.related)

    async def generate_content_stream(self, *, model: str, contents: Any, config: dict) -> Any:
        self.generate_calls.append({"model": model, "contents": contents, "config": config})
        if self.generate_error is not None:
            raise self.generate_error

        async def chunks():
            for text in self.stream_chunks:
                yield make_response(text)

        return chunks()


class MockGenAIClient:
    def __init__(self, models: MockModels | None = None) -> None:
        self.models = models or MockModels()

    @property
    def aio(self) -> SimpleNamespace:
        return SimpleNamespace(models=self.models)


def settings_for_tests(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "db_path": ":memory:",
        "embedding_dim": DIM,
        "embedding_batch_delay": 0.0,
        "request_timeout": 5.0,
        "max_retries": 1,
        "retry_base_delay": 0.0,
        "task_retry_delay": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_services(models: MockModels | None = None, **overrides: Any) -> Services:
    return build_services(settings_for_tests(**overrides), genai_client=MockGenAIClient(models))


def add_document(
    store: DuckDBVectorStore,
    title: str,
    chunks: list[tuple[str, list[float] | None]],
    *,
    category: str | None = None,
    document_type: str | None = None,
    language: str = "en",
    chunk_language: str | None = None,
    tags: tuple[str, ...] = (),
    warehouse_id: str | None = None,
    age_days: float = 0.0,
) -> DocumentRecord:
    """Store a document whose chunks carry the given embeddings."""
    stamp = utcnow() - timedelta(days=age_days)
    document = DocumentRecord(
        id=store.make_document_id(title),
        title=title,
        category=category,
        document_type=document_type,
        language=language,
        tags=tags,
        warehouse_id=warehouse_id,
        created_at=stamp,
        updated_at=stamp,
    )
    records = [
        ChunkRecord(
            id=store.make_chunk_id(document.id, index),
            document_id=document.id,
            content=content,
            chunk_index=index,
            language=chunk_language or language,
            embedding=vector,
        )
        for index, (content, vector) in enumerate(chunks)
    ]
    store.upsert_document(document, records)
    return document


FORKLIFT_TEXT = (
    "Forklift operators must wear a seatbelt at all times. "
    "Keep the load low while driving. Report any damage before the shift."
)
RACKING_TEXT = "Pallet racking is inspected every quarter by a certified engineer."


@pytest.fixture
def models() -> MockModels:
    return MockModels(vectors={"forklift": [1.0, 0.0], "seatbelt": [1.0, 0.0]})


@pytest.fixture
def services(models: MockModels) -> Iterator[Services]:
    built = make_services(models)
    add_document(
        built.store,
        "Forklift Safety Manual",
        [(FORKLIFT_TEXT, [0.9, 0.43589])],
        category="Safety",
        document_type="manual",
        tags=("forklift", "ppe"),
    )
    add_document(
        built.store,
        "Racking Inspection Guide",
        [(RACKING_TEXT, [0.0, 1.0])],
        category="maintenance",
        document_type="guide",
        age_days=40,
    )
    yield built
    built.store.close()


@pytest.fixture
def now() -> datetime:
    return utcnow()
