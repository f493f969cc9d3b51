"""catalog_mirror.sql_dump

Streaming reader for MySQL-style catalog dump files.

The reader walks the dump one line at a time and classifies each line as a
CREATE TABLE statement, an INSERT statement, or anything else.  Callers
scan forward with ``read_line()`` until they see the statement they want,
then materialize it:

  - ``parse_table_definition()`` consumes the CREATE TABLE body and returns
    the table name plus its (column, type) list.
  - ``iter_rows()`` yields one value list per tuple, across every
    consecutive INSERT statement of the same table, however many tuples
    each statement batches.

Plain ``.sql`` files are read directly; ``.gz`` and ``.zip`` dumps are
decompressed on the fly.  ``current_position`` always reports bytes of the
file on disk so that ``current_position / file_size`` is a usable progress
ratio for compressed input too.

Fault scope:
  - A malformed tuple is a local fault (DumpLineError): it is logged and
    counted, input up to the end of that tuple is discarded, and reading
    continues with the next tuple.  A malformed statement header discards
    the statement through its terminating ';'.
  - A CREATE TABLE or INSERT statement still open at end of file means the
    dump is truncated (DumpCorruptedError) and is fatal.
"""

from __future__ import annotations

import enum
import gzip
import logging
import os
import re
import zipfile
from pathlib import Path
from typing import BinaryIO, Iterator

from catalog_mirror.table_schemas import (
    ParsedColumnDefinition,
    ParsedTableDefinition,
    parse_column_type,
)

log = logging.getLogger(__name__)

SUPPORTED_DUMP_FILE_EXTENSIONS = (".sql", ".gz", ".zip")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class DumpCorruptedError(Exception):
    """Raised when the dump ends inside a table definition or statement."""


class DumpLineError(ValueError):
    """Raised for a single malformed line; callers skip the line."""


# ---------------------------------------------------------------------------
# Line classification
# ---------------------------------------------------------------------------

class LineCommand(enum.Enum):
    CREATE_TABLE = "create_table"
    INSERT = "insert"
    OTHER = "other"


_CREATE_TABLE_RE = re.compile(
    r"^\s*CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?`?([\w$]+)`?",
    re.IGNORECASE,
)
_INSERT_RE = re.compile(
    r"^\s*(?:INSERT|REPLACE)\s+(?:(?:LOW_PRIORITY|DELAYED|HIGH_PRIORITY|IGNORE)\s+)*"
    r"(?:INTO\s+)?`?([\w$]+)`?\s*",
    re.IGNORECASE,
)
_COLUMN_RE = re.compile(r"^\s*`?([A-Za-z_][\w$]*)`?\s+([A-Za-z]+(?:\([^)]*\))?)")
_KEY_LINE_RE = re.compile(
    r"^\s*(?:PRIMARY\s+KEY|UNIQUE\s+KEY|UNIQUE\s+INDEX|UNIQUE|FULLTEXT|SPATIAL|KEY|INDEX|CONSTRAINT|CHECK)\b",
    re.IGNORECASE,
)
_VALUES_RE = re.compile(r"VALUES\s*", re.IGNORECASE)

_ESCAPES = {
    "0": "\x00",
    "b": "\b",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "Z": "\x1a",
    "'": "'",
    '"': '"',
    "\\": "\\",
    # MySQL keeps the backslash for LIKE wildcards
    "%": "\\%",
    "_": "\\_",
}


def classify_line(line: str) -> LineCommand:
    if _CREATE_TABLE_RE.match(line):
        return LineCommand.CREATE_TABLE
    if _INSERT_RE.match(line):
        return LineCommand.INSERT
    return LineCommand.OTHER


def _is_comment_or_blank(line: str) -> bool:
    s = line.strip()
    return not s or s.startswith("--") or s.startswith("#")


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------

class SqlDumpReader:
    """Line-oriented reader over a (possibly compressed) dump file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self.file_size = os.path.getsize(self._path)
        self._raw: BinaryIO = open(self._path, "rb")
        self._zip: zipfile.ZipFile | None = None
        try:
            self._stream: BinaryIO = self._open_stream()
        except Exception:
            if self._zip is not None:
                self._zip.close()
            self._raw.close()
            raise
        self.current_line: str | None = None
        self.current_line_command = LineCommand.OTHER
        self.current_table_name: str | None = None
        self.line_number = 0
        self.skipped_lines = 0
        self._replay = False

    def _open_stream(self) -> BinaryIO:
        suffix = self._path.suffix.lower()
        if suffix == ".gz":
            return gzip.GzipFile(fileobj=self._raw, mode="rb")  # type: ignore[return-value]
        if suffix == ".zip":
            self._zip = zipfile.ZipFile(self._raw)
            members = [i for i in self._zip.infolist() if not i.is_dir()]
            if not members:
                raise DumpCorruptedError(f"zip archive {self._path} is empty")
            return self._zip.open(members[0])  # type: ignore[return-value]
        return self._raw

    # -- context manager ---------------------------------------------------

    def __enter__(self) -> "SqlDumpReader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        if self._stream is not self._raw:
            self._stream.close()
        if self._zip is not None:
            self._zip.close()
        self._raw.close()

    # -- position ----------------------------------------------------------

    @property
    def current_position(self) -> int:
        try:
            return self._raw.tell()
        except (OSError, ValueError):
            return self.file_size

    # -- line stream -------------------------------------------------------

    def _next_raw_line(self) -> str | None:
        data = self._stream.readline()
        if not data:
            return None
        self.line_number += 1
        return data.decode("utf-8", errors="replace").rstrip("\r\n")

    def read_line(self) -> bool:
        """Advance to the next line.  Returns False at end of file."""
        if self._replay:
            self._replay = False
            return self.current_line is not None
        line = self._next_raw_line()
        self.current_line = line
        if line is None:
            self.current_line_command = LineCommand.OTHER
            return False
        self.current_line_command = classify_line(line)
        if self.current_line_command is LineCommand.CREATE_TABLE:
            self.current_table_name = _CREATE_TABLE_RE.match(line).group(1)
        elif self.current_line_command is LineCommand.INSERT:
            self.current_table_name = _INSERT_RE.match(line).group(1)
        return True

    def _push_back(self) -> None:
        self._replay = True

    # -- CREATE TABLE ------------------------------------------------------

    def parse_table_definition(self) -> ParsedTableDefinition:
        """Consume the CREATE TABLE statement that starts at the current line."""
        if self.current_line_command is not LineCommand.CREATE_TABLE:
            raise DumpLineError(f"line {self.line_number} is not a CREATE TABLE statement")
        parsed = ParsedTableDefinition(table_name=self.current_table_name or "")
        header = self.current_line or ""
        # single-line definitions: CREATE TABLE t (a int, b varchar(10));
        paren = header.find("(")
        if paren != -1 and header.rstrip().endswith(";"):
            body = header[paren + 1:header.rstrip().rfind(")")]
            for part in _split_top_level(body):
                self._add_column(parsed, part)
            return parsed
        while True:
            line = self._next_raw_line()
            if line is None:
                raise DumpCorruptedError(
                    f"unterminated definition of table {parsed.table_name!r} at end of file"
                )
            stripped = line.strip()
            if stripped.startswith(")"):
                break
            if _is_comment_or_blank(line):
                continue
            self._add_column(parsed, stripped)
        self.current_line = line
        self.current_line_command = LineCommand.OTHER
        log.debug(
            "Parsed definition of table %r with %d columns",
            parsed.table_name, len(parsed.columns),
        )
        return parsed

    def _add_column(self, parsed: ParsedTableDefinition, text: str) -> None:
        if _KEY_LINE_RE.match(text):
            return
        m = _COLUMN_RE.match(text)
        if not m:
            log.debug("Ignoring unrecognized table definition line %d: %r", self.line_number, text)
            return
        parsed.columns.append(
            ParsedColumnDefinition(m.group(1), parse_column_type(m.group(2)))
        )

    # -- INSERT ------------------------------------------------------------

    def iter_rows(
        self,
        table_definition: ParsedTableDefinition | None = None,
    ) -> Iterator[list[str | None]]:
        """Yield one value list per tuple, starting at the current INSERT line.

        Consecutive INSERT statements for the same table are read as one
        data section.  The first line that is neither an INSERT into that
        table nor a comment ends the section and is left for the next
        ``read_line()`` call.
        """
        if self.current_line_command is not LineCommand.INSERT:
            raise DumpLineError(f"line {self.line_number} is not an INSERT statement")
        section_table = _INSERT_RE.match(self.current_line or "").group(1)
        width = len(table_definition.columns) if table_definition else None
        while True:
            scanner = _StatementScanner(self, self.current_line or "")
            try:
                for values in self._iter_statement(scanner, table_definition):
                    if width is not None and len(values) != width:
                        self.skipped_lines += 1
                        log.warning(
                            "Skipping tuple with %d values (expected %d) at line %d",
                            len(values), width, self.line_number,
                        )
                        continue
                    yield values
            except DumpLineError as exc:
                self.skipped_lines += 1
                log.warning("Skipping malformed INSERT at line %d: %s", self.line_number, exc)
                scanner.skip_statement()
            while True:
                if not self.read_line():
                    return
                if self.current_line_command is LineCommand.INSERT:
                    break
                if self.current_line_command is LineCommand.OTHER and _is_comment_or_blank(
                    self.current_line or ""
                ):
                    continue
                self._push_back()
                return
            if _INSERT_RE.match(self.current_line or "").group(1) != section_table:
                self._push_back()
                return

    def _iter_statement(
        self,
        scanner: "_StatementScanner",
        table_definition: ParsedTableDefinition | None,
    ) -> Iterator[list[str | None]]:
        m = _INSERT_RE.match(scanner.buf)
        scanner.pos = m.end()
        insert_columns = scanner.read_column_list()
        vm = _VALUES_RE.match(scanner.buf, scanner.pos)
        if not vm:
            raise DumpLineError("missing VALUES keyword")
        scanner.pos = vm.end()
        reorder = None
        if insert_columns is not None and table_definition is not None:
            index = table_definition.column_index()
            reorder = [index.get(c.lower()) for c in insert_columns]
            if any(i is None for i in reorder):
                raise DumpLineError(f"INSERT names unknown columns {insert_columns}")
        while True:
            try:
                values = scanner.read_tuple()
            except DumpLineError as exc:
                self.skipped_lines += 1
                log.warning("Skipping malformed tuple at line %d: %s", self.line_number, exc)
                if not scanner.skip_tuple():
                    return
            else:
                if reorder is not None:
                    row: list[str | None] = [None] * len(table_definition.columns)
                    for src, dst in enumerate(reorder):
                        if src < len(values):
                            row[dst] = values[src]
                    values = row
                yield values
            sep = scanner.next_significant()
            if sep == ",":
                continue
            if sep == ";":
                return
            raise DumpLineError(f"unexpected {sep!r} after tuple")


def _split_top_level(body: str) -> list[str]:
    parts, depth, start = [], 0, 0
    for i, ch in enumerate(body):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append(body[start:i].strip())
            start = i + 1
    parts.append(body[start:].strip())
    return [p for p in parts if p]


# ---------------------------------------------------------------------------
# Statement scanner
# ---------------------------------------------------------------------------

class _StatementScanner:
    """Character scanner over one INSERT statement.

    A statement normally fits on one line; when a line ends before the
    statement does, the next line is pulled from the reader.  Running out
    of input before the terminating ';' is a corruption signal.
    """

    def __init__(self, reader: SqlDumpReader, line: str) -> None:
        self._reader = reader
        self.buf = line
        self.pos = 0
        # start of the tuple being read; input from here on stays buffered
        self.mark = 0

    def _more(self) -> bool:
        line = self._reader._next_raw_line()
        if line is None:
            return False
        keep = min(self.pos, self.mark)
        self.buf = self.buf[keep:] + "\n" + line
        self.pos -= keep
        self.mark -= keep
        self._reader.current_line = line
        return True

    def _peek(self) -> str | None:
        while self.pos >= len(self.buf):
            if not self._more():
                return None
        return self.buf[self.pos]

    def _skip_ws_and_comments(self) -> None:
        while True:
            ch = self._peek()
            if ch is None:
                return
            if ch.isspace():
                self.pos += 1
                continue
            if self.buf.startswith("/*", self.pos):
                end = self.buf.find("*/", self.pos + 2)
                while end == -1:
                    if not self._more():
                        return
                    end = self.buf.find("*/", self.pos + 2)
                self.pos = end + 2
                continue
            return

    def next_significant(self) -> str | None:
        self._skip_ws_and_comments()
        ch = self._peek()
        if ch is None:
            raise DumpCorruptedError(
                f"unterminated INSERT statement at end of file (line {self._reader.line_number})"
            )
        self.pos += 1
        return ch

    def read_column_list(self) -> list[str] | None:
        self._skip_ws_and_comments()
        if self._peek() != "(":
            return None
        end = self.buf.find(")", self.pos)
        if end == -1:
            raise DumpLineError("unterminated INSERT column list")
        names = [n.strip().strip("`") for n in self.buf[self.pos + 1:end].split(",")]
        self.pos = end + 1
        self._skip_ws_and_comments()
        return names

    def read_tuple(self) -> list[str | None]:
        opening = self.next_significant()
        self.mark = self.pos - 1
        if opening != "(":
            raise DumpLineError("expected '(' at start of tuple")
        values: list[str | None] = []
        while True:
            self._skip_ws_and_comments()
            ch = self._peek()
            if ch is None:
                raise DumpCorruptedError(
                    f"unterminated INSERT statement at end of file (line {self._reader.line_number})"
                )
            if ch == ")" and not values:
                self.pos += 1
                return values
            values.append(self._read_value())
            sep = self.next_significant()
            if sep == ",":
                continue
            if sep == ")":
                return values
            raise DumpLineError(f"unexpected {sep!r} inside tuple")

    def skip_tuple(self) -> bool:
        """Discard the rest of the tuple that starts at the mark.

        Returns False when the statement's ';' turned up first, in which
        case the whole statement has been consumed.
        """
        return self._discard(tuple_only=True)

    def skip_statement(self) -> None:
        """Discard input from the mark through the statement's ';'."""
        self._discard(tuple_only=False)

    def _discard(self, tuple_only: bool) -> bool:
        self.pos = self.mark
        quote: str | None = None
        depth = 0
        while True:
            ch = self._peek()
            if ch is None:
                raise DumpCorruptedError(
                    f"unterminated INSERT statement at end of file (line {self._reader.line_number})"
                )
            self.pos += 1
            if quote is not None:
                if ch == "\\":
                    if self._peek() is None:
                        raise DumpCorruptedError("dangling escape at end of file")
                    self.pos += 1
                elif ch == quote:
                    quote = None
            elif ch in ("'", '"'):
                quote = ch
            elif ch == ";":
                return False
            elif tuple_only and ch == "(":
                depth += 1
            elif tuple_only and ch == ")":
                depth -= 1
                if depth <= 0:
                    return True

    def _read_value(self) -> str | None:
        ch = self._peek()
        if ch == "_" and re.match(r"_\w+\s*'", self.buf[self.pos:]):
            # charset introducer: _binary 'abc'
            self.pos = self.buf.index("'", self.pos)
            ch = "'"
        if ch in ("'", '"'):
            return self._read_quoted(ch)
        start = self.pos
        while True:
            if self.pos >= len(self.buf):
                break
            c = self.buf[self.pos]
            if c in ",)" or c.isspace():
                break
            if c in "('\"":
                raise DumpLineError(f"unexpected {c!r} in bare value")
            self.pos += 1
        token = self.buf[start:self.pos]
        if not token:
            raise DumpLineError("empty value")
        if token.upper() == "NULL":
            return None
        return token

    def _read_quoted(self, quote: str) -> str:
        self.pos += 1
        out: list[str] = []
        while True:
            if self.pos >= len(self.buf):
                if not self._more():
                    raise DumpCorruptedError(
                        f"unterminated string literal at end of file (line {self._reader.line_number})"
                    )
                continue
            c = self.buf[self.pos]
            if c == "\\":
                if self.pos + 1 >= len(self.buf):
                    if not self._more():
                        raise DumpCorruptedError("dangling escape at end of file")
                    continue
                nxt = self.buf[self.pos + 1]
                out.append(_ESCAPES.get(nxt, nxt))
                self.pos += 2
                continue
            if c == quote:
                if self.buf.startswith(quote * 2, self.pos):
                    out.append(quote)
                    self.pos += 2
                    continue
                self.pos += 1
                return "".join(out)
            out.append(c)
            self.pos += 1
