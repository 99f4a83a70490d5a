"""
Typed search filters, their SQL rendering, and the CLI filter parser.
"""

from __future__ import annotations

import json
import re
from datetime import date, datetime, time, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SearchFilters(BaseModel):
    """Restrictions applied to similarity search. All set fields are ANDed."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    department_id: str | None = None
    warehouse_id: str | None = None
    document_type: str | None = None
    category: str | None = None
    categories: list[str] | None = None
    language: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    tags: list[str] | None = Field(
        default=None, description="Every listed tag must be present on the document."
    )

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)

    def canonical_json(self) -> str:
        """Stable JSON form used in cache keys and search logs."""
        data = self.model_dump(mode="json", exclude_none=True)
        for key in ("categories", "tags"):
            if key in data:
                data[key] = sorted(set(data[key]))
        return json.dumps(data, sort_keys=True, separators=(",", ":"))


def build_filter_clause(
    filters: SearchFilters | None,
    *,
    doc_alias: str = "d",
) -> tuple[str, list[Any]]:
    """Render filters as a parameterized ``AND``-joined SQL fragment.

    Returns ``("", [])`` when nothing is set. Values are always bound as
    parameters, never interpolated.
    """
    if filters is None:
        return "", []

    clauses: list[str] = []
    params: list[Any] = []

    for field_name in ("department_id", "warehouse_id", "document_type", "category"):
        value = getattr(filters, field_name)
        if value is not None:
            clauses.append(f"{doc_alias}.{field_name} = ?")
            params.append(value)

    if filters.categories:
        placeholders = ", ".join(["?"] * len(filters.categories))
        clauses.append(f"{doc_alias}.category IN ({placeholders})")
        params.extend(filters.categories)

    if filters.language is not None:
        clauses.append(f"{doc_alias}.language = ?")
        params.append(filters.language)

    if filters.date_from is not None:
        clauses.append(f"{doc_alias}.created_at >= ?")
        params.append(datetime.combine(filters.date_from, time.min))

    if filters.date_to is not None:
        clauses.append(f"{doc_alias}.created_at < ?")
        params.append(datetime.combine(filters.date_to + timedelta(days=1), time.min))

    if filters.tags:
        clauses.append(f"list_has_all({doc_alias}.tags, ?::VARCHAR[])")
        params.append(list(filters.tags))

    return " AND ".join(clauses), params


class FilterParseError(ValueError):
    """Raised when CLI filter syntax is invalid."""


_LIST_FIELDS = {"categories", "tags"}
_DATE_FIELDS = {"date_from", "date_to"}
_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def supported_filter_syntax() -> str:
    """Return a short help text for filter syntax."""
    fields = ", ".join(sorted(SearchFilters.model_fields))
    return (
        "Supported filter syntax: `field=value`, `field in (a, b, c)`; "
        f"combine with comma or `and`. Fields: {fields}."
    )


def parse_filter_string(raw_filters: str | None) -> SearchFilters | None:
    """Parse ``category=Safety and tags in (forklift, ppe)`` into filters."""
    if raw_filters is None or not raw_filters.strip():
        return None

    values: dict[str, Any] = {}
    for condition in _split_conditions(raw_filters):
        field, value = _parse_condition(condition)
        if field in values:
            raise FilterParseError(f"Filter field given twice: {field!r}")
        values[field] = value
    return SearchFilters(**values)


def _parse_condition(condition: str) -> tuple[str, Any]:
    in_match = re.match(
        r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s+in\s+(.+)\s*$", condition, flags=re.IGNORECASE
    )
    if in_match:
        field = _validate_field(in_match.group(1))
        if field not in _LIST_FIELDS:
            raise FilterParseError(f"`in` is only supported for {sorted(_LIST_FIELDS)}")
        items = _parse_list_value(in_match.group(2))
        if not items:
            raise FilterParseError(f"`in` filter has no values: {condition!r}")
        return field, items

    eq_match = re.match(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*[=:]\s*(.+)\s*$", condition)
    if not eq_match:
        raise FilterParseError(f"Invalid filter syntax: {condition!r}")

    field = _validate_field(eq_match.group(1))
    value = _unquote(eq_match.group(2))
    if field in _LIST_FIELDS:
        return field, [value]
    if field in _DATE_FIELDS:
        try:
            return field, date.fromisoformat(value)
        except ValueError as exc:
            raise FilterParseError(f"Invalid date for {field}: {value!r}") from exc
    return field, value


def _validate_field(field: str) -> str:
    if not _FIELD_RE.match(field) or field not in SearchFilters.model_fields:
        allowed = ", ".join(sorted(SearchFilters.model_fields))
        raise FilterParseError(f"Unknown filter field {field!r}. Allowed fields: {allowed}")
    return field


def _split_conditions(raw: str) -> list[str]:
    parts: list[str] = []
    current: list[str] = []
    quote: str | None = None
    depth = 0
    i = 0
    while i < len(raw):
        ch = raw[i]

        if quote is not None:
            current.append(ch)
            if ch == quote:
                quote = None
            i += 1
            continue

        if ch in {"'", '"'}:
            quote = ch
        elif ch in "([":
            depth += 1
        elif ch in ")]":
            depth = max(depth - 1, 0)
        elif depth == 0 and ch == ",":
            _flush_part(parts, current)
            i += 1
            continue
        elif (
            depth == 0
            and raw[i : i + 3].lower() == "and"
            and (i == 0 or raw[i - 1].isspace())
            and (i + 3 == len(raw) or raw[i + 3].isspace())
        ):
            _flush_part(parts, current)
            i += 3
            continue

        current.append(ch)
        i += 1

    _flush_part(parts, current)
    return parts


def _flush_part(parts: list[str], current: list[str]) -> None:
    text = "".join(current).strip()
    if text:
        parts.append(text)
    current.clear()


def _parse_list_value(raw_value: str) -> list[str]:
    text = raw_value.strip()
    if (text.startswith("(") and text.endswith(")")) or (
        text.startswith("[") and text.endswith("]")
    ):
        text = text[1:-1]
    if not text.strip():
        return []
    return [_unquote(item) for item in _split_conditions(text)]


def _unquote(raw_value: str) -> str:
    text = raw_value.strip()
    if not text:
        raise FilterParseError("Missing filter value.")
    if (text.startswith("'") and text.endswith("'")) or (
        text.startswith('"') and text.endswith('"')
    ):
        return text[1:-1]
    return text
