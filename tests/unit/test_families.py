"""Unit tests for catalog_mirror.families (record conversion strategies)."""

from __future__ import annotations

from datetime import datetime

import pytest

from catalog_mirror.families import (
    FICTION,
    NON_FICTION,
    SCI_MAG,
    STRATEGIES,
    FictionBook,
    NonFictionBook,
    RecordConversionError,
    SciMagArticle,
)
from catalog_mirror.table_schemas import (
    ColumnType,
    Family,
    ParsedColumnDefinition,
    ParsedTableDefinition,
)


def _parsed(*names: str) -> ParsedTableDefinition:
    return ParsedTableDefinition(
        "updated", [ParsedColumnDefinition(n, ColumnType.VARCHAR) for n in names]
    )


class TestStrategies:
    def test_registry_covers_every_family(self):
        assert set(STRATEGIES) == set(Family)
        for family, strategy in STRATEGIES.items():
            assert strategy.family is family

    def test_change_markers(self):
        assert NON_FICTION.change_field == "last_modified_at"
        assert FICTION.change_field == "last_modified_at"
        assert SCI_MAG.change_field == "added_at"
        assert SCI_MAG.watermark_column == "added_at"

    def test_index_columns(self):
        assert tuple(NON_FICTION.index_columns) == ("last_modified_at", "remote_id")
        assert tuple(SCI_MAG.index_columns) == ("added_at", "remote_id")

    def test_record_types(self):
        assert NON_FICTION.record_type is NonFictionBook
        assert FICTION.record_type is FictionBook
        assert SCI_MAG.record_type is SciMagArticle


class TestFromDumpRow:
    def test_builds_book(self):
        parsed = _parsed("ID", "Title", "Language", "Extension", "MD5", "Filesize", "Year", "TimeLastModified")
        values = ["12", "  Dune ", "English", ".EPUB", "ABCDEF0123456789ABCDEF0123456789", "2048", "c1965",
                  "2020-05-06 07:08:09"]
        record = NON_FICTION.from_dump_row(parsed, values)
        assert isinstance(record, NonFictionBook)
        assert record.remote_id == 12
        assert record.title == "Dune"
        assert record.format == "epub"
        assert record.md5 == "abcdef0123456789abcdef0123456789"
        assert record.file_size == 2048
        assert record.year == 1965
        assert record.last_modified_at == datetime(2020, 5, 6, 7, 8, 9)
        assert record.id is None

    def test_missing_columns_are_none(self):
        record = NON_FICTION.from_dump_row(_parsed("ID"), ["3"])
        assert record.remote_id == 3
        assert record.title is None
        assert record.last_modified_at is None

    def test_column_order_follows_definition(self):
        parsed = _parsed("Title", "ID")
        record = FICTION.from_dump_row(parsed, ["Emma", "4"])
        assert record.remote_id == 4
        assert record.title == "Emma"

    def test_invalid_id_raises(self):
        with pytest.raises(RecordConversionError):
            NON_FICTION.from_dump_row(_parsed("ID"), ["abc"])

    def test_null_id_raises(self):
        with pytest.raises(RecordConversionError):
            NON_FICTION.from_dump_row(_parsed("ID"), [None])


class TestFromApiItem:
    def test_keys_are_case_insensitive(self):
        item = {
            "id": "77",
            "title": "Neuromancer",
            "timelastmodified": "2021-01-01 00:00:00",
            "extension": "pdf",
        }
        record = NON_FICTION.from_api_item(item)
        assert record.remote_id == 77
        assert record.title == "Neuromancer"
        assert record.last_modified_at == datetime(2021, 1, 1)

    def test_integer_id(self):
        assert NON_FICTION.from_api_item({"ID": 5}).remote_id == 5

    def test_article(self):
        item = {"ID": "9", "DOI": " 10.1000/xyz ", "Journal": "Nature", "TimeAdded": "2019-02-03 04:05:06"}
        record = SCI_MAG.from_api_item(item)
        assert isinstance(record, SciMagArticle)
        assert record.doi == "10.1000/xyz"
        assert record.journal == "Nature"
        assert SCI_MAG.change_marker(record) == datetime(2019, 2, 3, 4, 5, 6)
