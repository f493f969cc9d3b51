"""catalog_mirror.families

Record types for the three catalog families and the per-family strategy the
merge engine is parameterized with.  A strategy knows how to build a record
from a dump row or an API item, which field decides whether a stored record
is stale, and which columns need supporting indexes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Sequence

from catalog_mirror.normalize import (
    normalize_format,
    normalize_md5,
    normalize_space,
    parse_int,
    parse_ts,
    parse_year,
    trim,
)
from catalog_mirror.table_schemas import Family, ParsedTableDefinition


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RecordConversionError(ValueError):
    """Raised when a dump row or API item cannot become a record."""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class CatalogRecord:
    remote_id: int
    id: int | None = None
    file_id: int | None = None
    language: str | None = None
    format: str | None = None


@dataclass
class NonFictionBook(CatalogRecord):
    title: str | None = None
    author: str | None = None
    publisher: str | None = None
    year: int | None = None
    md5: str | None = None
    file_size: int | None = None
    added_at: datetime | None = None
    last_modified_at: datetime | None = None


@dataclass
class FictionBook(CatalogRecord):
    title: str | None = None
    author: str | None = None
    publisher: str | None = None
    year: int | None = None
    md5: str | None = None
    file_size: int | None = None
    added_at: datetime | None = None
    last_modified_at: datetime | None = None


@dataclass
class SciMagArticle(CatalogRecord):
    doi: str | None = None
    title: str | None = None
    authors: str | None = None
    journal: str | None = None
    year: int | None = None
    md5: str | None = None
    file_size: int | None = None
    added_at: datetime | None = None


# ---------------------------------------------------------------------------
# Strategy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FamilyStrategy:
    family: Family
    record_type: type
    local_table: str
    # record field → upstream column name (dump and API share names)
    field_map: Mapping[str, str]
    change_field: str
    index_columns: Sequence[str]
    converters: Mapping[str, Callable[[Any], Any]] = field(default_factory=dict)

    @property
    def record_fields(self) -> list[str]:
        return ["remote_id", "language", "format", *self.field_map.keys()]

    @property
    def watermark_column(self) -> str:
        """Column the remote delta API orders by; same as the change field."""
        return self.change_field

    def change_marker(self, record: CatalogRecord) -> datetime | None:
        return getattr(record, self.change_field)

    def _build(self, get: Callable[[str], Any]) -> CatalogRecord:
        remote_id = parse_int(_as_str(get("ID")))
        if remote_id is None or remote_id < 0:
            raise RecordConversionError(f"invalid remote id {get('ID')!r}")
        kwargs: dict[str, Any] = {
            "remote_id": remote_id,
            "language": normalize_space(_as_str(get("Language"))),
            "format": normalize_format(_as_str(get("Extension"))),
        }
        for attr, column in self.field_map.items():
            convert = self.converters.get(attr, normalize_space)
            kwargs[attr] = convert(_as_str(get(column)))
        return self.record_type(**kwargs)

    def from_dump_row(
        self,
        table_definition: ParsedTableDefinition,
        values: Sequence[str | None],
        column_index: Mapping[str, int] | None = None,
    ) -> CatalogRecord:
        index = column_index if column_index is not None else table_definition.column_index()

        def get(column: str) -> Any:
            i = index.get(column.lower())
            return values[i] if i is not None and i < len(values) else None

        return self._build(get)

    def from_api_item(self, item: Mapping[str, Any]) -> CatalogRecord:
        lowered = {str(k).lower(): v for k, v in item.items()}
        return self._build(lambda column: lowered.get(column.lower()))


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


_BOOK_CONVERTERS = {
    "year": parse_year,
    "md5": normalize_md5,
    "file_size": parse_int,
    "added_at": parse_ts,
    "last_modified_at": parse_ts,
}

NON_FICTION = FamilyStrategy(
    family=Family.NON_FICTION,
    record_type=NonFictionBook,
    local_table="non_fiction_book",
    field_map={
        "title": "Title",
        "author": "Author",
        "publisher": "Publisher",
        "year": "Year",
        "md5": "MD5",
        "file_size": "Filesize",
        "added_at": "TimeAdded",
        "last_modified_at": "TimeLastModified",
    },
    change_field="last_modified_at",
    index_columns=("last_modified_at", "remote_id"),
    converters=_BOOK_CONVERTERS,
)

FICTION = FamilyStrategy(
    family=Family.FICTION,
    record_type=FictionBook,
    local_table="fiction_book",
    field_map=NON_FICTION.field_map,
    change_field="last_modified_at",
    index_columns=("last_modified_at", "remote_id"),
    converters=_BOOK_CONVERTERS,
)

SCI_MAG = FamilyStrategy(
    family=Family.SCI_MAG,
    record_type=SciMagArticle,
    local_table="sci_mag_article",
    field_map={
        "doi": "DOI",
        "title": "Title",
        "authors": "Author",
        "journal": "Journal",
        "year": "Year",
        "md5": "MD5",
        "file_size": "Filesize",
        "added_at": "TimeAdded",
    },
    change_field="added_at",
    index_columns=("added_at", "remote_id"),
    converters={
        "doi": trim,
        "year": parse_year,
        "md5": normalize_md5,
        "file_size": parse_int,
        "added_at": parse_ts,
    },
)

STRATEGIES: Mapping[Family, FamilyStrategy] = {
    Family.NON_FICTION: NON_FICTION,
    Family.FICTION: FICTION,
    Family.SCI_MAG: SCI_MAG,
}
