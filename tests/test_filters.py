"""Tests for search filters and the CLI filter parser."""

from __future__ import annotations

from datetime import date, datetime

import pytest
from pydantic import ValidationError

from warehouse_kb.search.filters import (
    FilterParseError,
    SearchFilters,
    build_filter_clause,
    parse_filter_string,
    supported_filter_syntax,
)


def test_filters_accept_camel_case_and_forbid_unknown_fields() -> None:
    filters = SearchFilters.model_validate({"documentType": "manual", "dateFrom": "2024-01-01"})

    assert filters.document_type == "manual"
    assert filters.date_from == date(2024, 1, 1)
    with pytest.raises(ValidationError):
        SearchFilters.model_validate({"colour": "red"})


def test_canonical_json_sorts_list_values() -> None:
    a = SearchFilters(tags=["ppe", "forklift", "ppe"], category="safety")
    b = SearchFilters(category="safety", tags=["forklift", "ppe"])

    assert a.canonical_json() == b.canonical_json()
    assert SearchFilters().is_empty()
    assert not a.is_empty()


def test_build_filter_clause_empty() -> None:
    assert build_filter_clause(None) == ("", [])
    assert build_filter_clause(SearchFilters()) == ("", [])


def test_build_filter_clause_binds_every_value() -> None:
    sql, params = build_filter_clause(
        SearchFilters(
            department_id="dep-1",
            categories=["safety", "ops"],
            language="ar",
            date_to=date(2024, 3, 31),
            tags=["ppe"],
        )
    )

    assert sql == (
        "d.department_id = ? AND d.category IN (?, ?) AND d.language = ? "
        "AND d.created_at < ? AND list_has_all(d.tags, ?::VARCHAR[])"
    )
    assert params == ["dep-1", "safety", "ops", "ar", datetime(2024, 4, 1), ["ppe"]]
    assert "dep-1" not in sql


# ---------------------------------------------------------------------------
# Filter string parsing
# ---------------------------------------------------------------------------


def test_parse_filter_string_supports_eq_and_in() -> None:
    filters = parse_filter_string(
        "category=safety and tags in (forklift, ppe), date_from=2024-01-01"
    )

    assert filters == SearchFilters(
        category="safety", tags=["forklift", "ppe"], date_from=date(2024, 1, 1)
    )


def test_parse_filter_string_empty_is_none() -> None:
    assert parse_filter_string(None) is None
    assert parse_filter_string("   ") is None


@pytest.mark.parametrize(
    "raw",
    [
        "colour=red",
        "category in (a, b)",
        "category=a, category=b",
        "nonsense",
    ],
)
def test_parse_filter_string_rejects_bad_input(raw: str) -> None:
    with pytest.raises(FilterParseError):
        parse_filter_string(raw)


def test_supported_filter_syntax_lists_fields() -> None:
    help_text = supported_filter_syntax()
    assert "tags" in help_text
    assert "field in (a, b, c)" in help_text
