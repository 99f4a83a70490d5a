"""Tests for the DuckDB vector store."""

from __future__ import annotations

from datetime import date

import pytest

from conftest import DIM, add_document
from warehouse_kb.search.filters import SearchFilters
from warehouse_kb.storage import ChunkRecord, DocumentRecord, DuckDBVectorStore


@pytest.fixture
def store() -> DuckDBVectorStore:
    store = DuckDBVectorStore(":memory:", dim=DIM)
    yield store
    store.close()


# ---------------------------------------------------------------------------
# Documents and chunks
# ---------------------------------------------------------------------------


def test_upsert_replaces_chunks(store: DuckDBVectorStore) -> None:
    document = add_document(store, "Dock Rules", [("one", [1.0, 0.0]), ("two", [0.0, 1.0])])
    assert store.count_chunks(document.id) == 2

    add_document(store, "Dock Rules", [("only", [1.0, 0.0])])

    assert store.count_chunks(document.id) == 1
    [chunk] = store.get_chunks([store.make_chunk_id(document.id, 0)])
    assert chunk.content == "only"


def test_get_document_round_trips_tags_and_mean_embedding(store: DuckDBVectorStore) -> None:
    document = add_document(
        store,
        "Cold Store",
        [("a", [1.0, 0.0]), ("b", [0.0, 1.0])],
        tags=("cold", "ppe"),
        category="safety",
    )

    loaded = store.get_document(document.id)

    assert loaded is not None
    assert loaded.title == "Cold Store"
    assert loaded.tags == ("cold", "ppe")
    assert loaded.category == "safety"
    assert loaded.embedding == pytest.approx([0.5, 0.5])


def test_delete_document_cascades(store: DuckDBVectorStore) -> None:
    document = add_document(store, "Old Memo", [("x", [1.0, 0.0])])

    assert store.delete_document(document.id) is True
    assert store.get_document(document.id) is None
    assert store.count_chunks() == 0
    assert store.delete_document(document.id) is False


def test_missing_embeddings_and_health(store: DuckDBVectorStore) -> None:
    document = add_document(store, "Half Done", [("embedded", [1.0, 0.0]), ("pending", None)])

    missing = store.chunks_missing_embeddings()

    assert [chunk.content for chunk in missing] == ["pending"]
    assert store.embedding_health() == {
        "total_chunks": 2,
        "valid": 1,
        "wrong_dimension": 0,
        "missing": 1,
    }

    store.store_chunk_embeddings([(store.make_chunk_id(document.id, 1), [0.0, 1.0])])
    assert store.chunks_missing_embeddings() == []


def test_store_chunk_embeddings_rejects_wrong_dimension(store: DuckDBVectorStore) -> None:
    document = add_document(store, "Bad Vector", [("text", None)])

    with pytest.raises(ValueError, match="dimension"):
        store.store_chunk_embeddings([(store.make_chunk_id(document.id, 0), [1.0, 0.0, 0.0])])

    assert store.embedding_health()["missing"] == 1


# ---------------------------------------------------------------------------
# Similarity search
# ---------------------------------------------------------------------------


def test_similarity_search_applies_threshold_and_order(store: DuckDBVectorStore) -> None:
    add_document(store, "Near", [("near", [0.9, 0.43589])])
    add_document(store, "Exact", [("exact", [1.0, 0.0])])
    add_document(store, "Far", [("far", [0.0, 1.0])])

    results = store.similarity_search([1.0, 0.0], k=10, threshold=0.5)

    assert [r.title for r in results] == ["Exact", "Near"]
    assert results[0].score == pytest.approx(1.0)
    assert results[1].score == pytest.approx(0.9, abs=1e-4)
    assert all(0.5 <= r.score <= 1.0 for r in results)


def test_similarity_search_ties_prefer_recent_documents(store: DuckDBVectorStore) -> None:
    add_document(store, "Old", [("same", [1.0, 0.0])], age_days=10)
    add_document(store, "New", [("same", [1.0, 0.0])])

    results = store.similarity_search([1.0, 0.0], k=10, threshold=0.0)

    assert [r.title for r in results] == ["New", "Old"]


def test_similarity_search_limit_and_offset(store: DuckDBVectorStore) -> None:
    for n in range(5):
        add_document(store, f"Doc {n}", [(f"text {n}", [1.0, n / 10])])

    first = store.similarity_search([1.0, 0.0], k=2, threshold=0.0)
    second = store.similarity_search([1.0, 0.0], k=2, threshold=0.0, offset=2)

    assert [r.title for r in first] == ["Doc 0", "Doc 1"]
    assert [r.title for r in second] == ["Doc 2", "Doc 3"]


def test_similarity_search_filters(store: DuckDBVectorStore) -> None:
    add_document(store, "Safety", [("a", [1.0, 0.0])], category="safety", tags=("ppe", "forklift"))
    add_document(store, "Ops", [("b", [1.0, 0.0])], category="operations", tags=("ppe",))
    add_document(store, "Arabic", [("c", [1.0, 0.0])], category="safety", language="ar")

    by_category = store.similarity_search(
        [1.0, 0.0], threshold=0.0, filters=SearchFilters(category="safety")
    )
    by_tags = store.similarity_search(
        [1.0, 0.0], threshold=0.0, filters=SearchFilters(tags=["ppe", "forklift"])
    )
    by_language = store.similarity_search(
        [1.0, 0.0], threshold=0.0, filters=SearchFilters(language="ar")
    )

    assert {r.title for r in by_category} == {"Safety", "Arabic"}
    assert [r.title for r in by_tags] == ["Safety"]
    assert [r.title for r in by_language] == ["Arabic"]


def test_language_filter_uses_document_language(store: DuckDBVectorStore) -> None:
    add_document(store, "Bilingual", [("a", [1.0, 0.0])], language="ar", chunk_language="en")
    add_document(store, "English", [("b", [1.0, 0.0])], language="en", chunk_language="ar")

    results = store.similarity_search(
        [1.0, 0.0], threshold=0.0, filters=SearchFilters(language="ar")
    )

    assert [r.title for r in results] == ["Bilingual"]


def test_similarity_search_date_range_is_inclusive(store: DuckDBVectorStore) -> None:
    document = add_document(store, "Dated", [("a", [1.0, 0.0])])
    day = document.created_at.date()

    inside = store.similarity_search(
        [1.0, 0.0], threshold=0.0, filters=SearchFilters(date_from=day, date_to=day)
    )
    before = store.similarity_search(
        [1.0, 0.0], threshold=0.0, filters=SearchFilters(date_to=date(2000, 1, 1))
    )

    assert [r.title for r in inside] == ["Dated"]
    assert before == []


def test_similarity_search_rejects_wrong_query_dimension(store: DuckDBVectorStore) -> None:
    with pytest.raises(ValueError):
        store.similarity_search([1.0, 0.0, 0.0], threshold=0.0)


def test_search_within_document_and_similar_documents(store: DuckDBVectorStore) -> None:
    manual = add_document(store, "Manual", [("m0", [1.0, 0.0]), ("m1", [0.0, 1.0])])
    add_document(store, "Close", [("c0", [0.8, 0.6])])
    add_document(store, "Opposite", [("o0", [-1.0, 0.0])])

    within = store.search_within_document(manual.id, [1.0, 0.0], k=5, threshold=0.5)
    similar = store.find_similar_documents(manual.id, k=5, threshold=0.5)

    assert [r.content for r in within] == ["m0"]
    assert [doc.title for doc in similar] == ["Close"]


# ---------------------------------------------------------------------------
# Persistent embedding cache
# ---------------------------------------------------------------------------


def test_cached_embedding_usage_and_cleanup(store: DuckDBVectorStore) -> None:
    store.put_cached_embedding("abc", [0.1, 0.2], "model")
    store.put_cached_embedding("abc", [9.0, 9.0], "model")

    assert store.get_cached_embedding("abc") == pytest.approx([0.1, 0.2])
    assert store.get_cached_embedding("missing") is None
    assert store.cleanup_cached_embeddings(older_than_days=0, min_usage=1) == 0
    assert store.cleanup_cached_embeddings(older_than_days=-1, min_usage=10) == 1
    assert store.get_cached_embedding("abc") is None


def test_stable_ids() -> None:
    assert DuckDBVectorStore.make_document_id("A", "u") == DuckDBVectorStore.make_document_id("A", "u")
    assert DuckDBVectorStore.make_chunk_id("d", 0) != DuckDBVectorStore.make_chunk_id("d", 1)


def test_document_record_defaults() -> None:
    record = DocumentRecord(id="d", title="t")
    chunk = ChunkRecord(id="c", document_id="d", content="x", chunk_index=0)
    assert record.language == "en"
    assert chunk.importance_score == 1.0
