"""catalog_mirror.table_schemas

Static registry of the upstream dump tables and the schema matcher that
maps a parsed CREATE TABLE statement to a record family.

Matching is conservative: every parsed column must exist in the expected
schema (case-insensitive name) with the same declared base type.  A table
that fails the check is reported as unknown and skipped by the importer
rather than being loaded into the wrong family.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Families and column types
# ---------------------------------------------------------------------------

class Family(str, enum.Enum):
    NON_FICTION = "non_fiction"
    FICTION = "fiction"
    SCI_MAG = "sci_mag"


class ColumnType(str, enum.Enum):
    INT = "int"
    BIGINT = "bigint"
    CHAR = "char"
    VARCHAR = "varchar"
    TEXT = "text"
    TIMESTAMP = "timestamp"
    DATETIME = "datetime"
    DATE = "date"
    DOUBLE = "double"
    DECIMAL = "decimal"
    OTHER = "other"


_TYPE_ALIASES = {
    "tinyint": ColumnType.INT,
    "smallint": ColumnType.INT,
    "mediumint": ColumnType.INT,
    "int": ColumnType.INT,
    "integer": ColumnType.INT,
    "bigint": ColumnType.BIGINT,
    "char": ColumnType.CHAR,
    "varchar": ColumnType.VARCHAR,
    "tinytext": ColumnType.TEXT,
    "text": ColumnType.TEXT,
    "mediumtext": ColumnType.TEXT,
    "longtext": ColumnType.TEXT,
    "timestamp": ColumnType.TIMESTAMP,
    "datetime": ColumnType.DATETIME,
    "date": ColumnType.DATE,
    "double": ColumnType.DOUBLE,
    "float": ColumnType.DOUBLE,
    "decimal": ColumnType.DECIMAL,
}

_TYPE_WORD_RE = re.compile(r"^\s*([A-Za-z]+)")


def parse_column_type(raw: str) -> ColumnType:
    """Map a raw MySQL type such as ``int(15) unsigned`` to a ColumnType."""
    m = _TYPE_WORD_RE.match(raw or "")
    if not m:
        return ColumnType.OTHER
    return _TYPE_ALIASES.get(m.group(1).lower(), ColumnType.OTHER)


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColumnDefinition:
    name: str
    column_type: ColumnType


@dataclass(frozen=True)
class TableDefinition:
    family: Family
    table_name: str
    columns: Mapping[str, ColumnDefinition]

    def column(self, name: str) -> ColumnDefinition | None:
        return self.columns.get(name.lower())


@dataclass(frozen=True)
class ParsedColumnDefinition:
    column_name: str
    column_type: ColumnType


@dataclass
class ParsedTableDefinition:
    table_name: str
    columns: list[ParsedColumnDefinition] = field(default_factory=list)

    def column_index(self) -> dict[str, int]:
        """Lower-case column name → position in the INSERT value tuple."""
        return {c.column_name.lower(): i for i, c in enumerate(self.columns)}


def _table(family: Family, table_name: str, columns: list[tuple[str, ColumnType]]) -> TableDefinition:
    mapping = {
        name.lower(): ColumnDefinition(name, column_type)
        for name, column_type in columns
    }
    return TableDefinition(family, table_name, MappingProxyType(mapping))


_V = ColumnType.VARCHAR
_I = ColumnType.INT
_C = ColumnType.CHAR
_T = ColumnType.TEXT
_TS = ColumnType.TIMESTAMP
_B = ColumnType.BIGINT

NON_FICTION_TABLE = _table(Family.NON_FICTION, "updated", [
    ("ID", _I), ("Title", _V), ("VolumeInfo", _V), ("Series", _V),
    ("Periodical", _V), ("Author", _V), ("Year", _V), ("Edition", _V),
    ("Publisher", _V), ("City", _V), ("Pages", _V), ("PagesInFile", _I),
    ("Language", _V), ("Topic", _V), ("Library", _V), ("Issue", _V),
    ("Identifier", _V), ("ISSN", _V), ("ASIN", _V), ("UDC", _V),
    ("LBC", _V), ("DDC", _V), ("LCC", _V), ("Doi", _V),
    ("Googlebookid", _V), ("OpenLibraryID", _V), ("Commentary", _V),
    ("DPI", _I), ("Color", _V), ("Cleaned", _V), ("Orientation", _V),
    ("Paginated", _V), ("Scanned", _V), ("Bookmarked", _V),
    ("Searchable", _V), ("Filesize", _B), ("Extension", _V), ("MD5", _C),
    ("Generic", _C), ("Visible", _C), ("Locator", _V), ("Local", _I),
    ("TimeAdded", _TS), ("TimeLastModified", _TS), ("Coverurl", _V),
    ("Tags", _V), ("IdentifierWODash", _V),
])

FICTION_TABLE = _table(Family.FICTION, "fiction", [
    ("ID", _I), ("MD5", _C), ("Title", _V), ("Author", _V),
    ("Series", _V), ("Edition", _V), ("Language", _V), ("Year", _V),
    ("Publisher", _V), ("Pages", _V), ("Identifier", _V),
    ("GooglebookID", _V), ("ASIN", _V), ("Coverurl", _V),
    ("Extension", _V), ("Filesize", _I), ("Library", _V), ("Issue", _V),
    ("Locator", _V), ("Commentary", _V), ("Generic", _C), ("Visible", _C),
    ("TimeAdded", _TS), ("TimeLastModified", _TS),
])

SCI_MAG_TABLE = _table(Family.SCI_MAG, "scimag", [
    ("ID", _I), ("DOI", _V), ("DOI2", _V), ("Title", _V),
    ("Author", _V), ("Year", _V), ("Month", _V), ("Day", _V),
    ("Volume", _V), ("Issue", _V), ("First_page", _V), ("Last_page", _V),
    ("Journal", _V), ("ISBN", _V), ("ISSNP", _V), ("ISSNE", _V),
    ("MD5", _V), ("Filesize", _I), ("TimeAdded", _TS), ("JOURNALID", _V),
    ("AbstractURL", _V), ("Attribute1", _V), ("Attribute2", _V),
    ("Attribute3", _V), ("Attribute4", _V), ("Attribute5", _V),
    ("Attribute6", _V), ("visible", _V), ("PubmedID", _V), ("PMC", _V),
    ("PII", _V),
])

TABLE_DEFINITIONS: Mapping[str, TableDefinition] = MappingProxyType({
    t.table_name: t for t in (NON_FICTION_TABLE, FICTION_TABLE, SCI_MAG_TABLE)
})


def lookup(table_name: str) -> TableDefinition | None:
    return TABLE_DEFINITIONS.get(table_name)


# ---------------------------------------------------------------------------
# Schema matcher
# ---------------------------------------------------------------------------

def detect_table_family(parsed: ParsedTableDefinition) -> Family | None:
    """Return the family of a parsed table definition, or None if unknown.

    The table name must be registered.  Each parsed column must exist in
    the registered schema with an equal ColumnType; registered columns the
    dump does not carry are tolerated.
    """
    table = lookup(parsed.table_name)
    if table is None:
        log.debug("Table %r is not a catalog table", parsed.table_name)
        return None
    if not parsed.columns:
        return None
    for parsed_column in parsed.columns:
        expected = table.column(parsed_column.column_name)
        if expected is None or expected.column_type != parsed_column.column_type:
            log.info(
                "Table %r column %r (%s) does not match the %s schema",
                parsed.table_name,
                parsed_column.column_name,
                parsed_column.column_type.value,
                table.family.value,
            )
            return None
    return table.family
