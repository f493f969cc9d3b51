"""catalog_mirror.store

Storage collaborator for the ingestion pipeline.

``CatalogStore`` is the interface the merge engine and the ingestor consume;
``PostgresCatalogStore`` implements it over the tables in ``catalog_mirror/migrations/``
with a single psycopg connection.  The connection runs with
autocommit=False; the merge engine decides when to ``commit()``.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Protocol

import psycopg
from psycopg import sql

from catalog_mirror.families import STRATEGIES, CatalogRecord, FamilyStrategy
from catalog_mirror.presence import PresenceIndex
from catalog_mirror.sql_dump import SUPPORTED_DUMP_FILE_EXTENSIONS
from catalog_mirror.table_schemas import Family

log = logging.getLogger(__name__)

APP_NAME = "catalog-mirror"
SERVER_APP_NAME = "catalog-mirror-server"
CURRENT_DATABASE_VERSION = "1.0"
DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

@dataclass
class DatabaseMetadata:
    app_name: str | None = APP_NAME
    version: str | None = CURRENT_DATABASE_VERSION
    non_fiction_first_import_complete: bool = False
    fiction_first_import_complete: bool = False
    sci_mag_first_import_complete: bool = False

    def parsed_version(self) -> tuple[int, ...] | None:
        if not self.version:
            return None
        try:
            return tuple(int(p) for p in self.version.split("."))
        except ValueError:
            return None

    def set_first_import_complete(self, family: Family) -> None:
        setattr(self, f"{family.value}_first_import_complete", True)

    def first_import_complete(self, family: Family) -> bool:
        return getattr(self, f"{family.value}_first_import_complete")


_BOOL_KEYS = (
    "non_fiction_first_import_complete",
    "fiction_first_import_complete",
    "sci_mag_first_import_complete",
)


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class CatalogStore(Protocol):
    def count(self, family: Family) -> int: ...

    def list_indexes(self, family: Family) -> list[str]: ...

    def index_name(self, family: Family, column: str) -> str: ...

    def create_index(self, family: Family, column: str) -> None: ...

    def load_remote_ids(self, family: Family) -> PresenceIndex: ...

    def max_remote_id(self, family: Family) -> int | None: ...

    def get_change_marker(self, family: Family, remote_id: int) -> datetime | None: ...

    def insert_record(self, family: Family, record: CatalogRecord) -> int: ...

    def update_record(self, family: Family, record: CatalogRecord) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def get_last_modified(self, family: Family) -> CatalogRecord | None: ...

    def get_metadata(self) -> DatabaseMetadata | None: ...

    def update_metadata(self, metadata: DatabaseMetadata) -> None: ...

    def free_disk_space(self) -> int | None: ...


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

class PostgresCatalogStore:
    """CatalogStore over a psycopg connection."""

    def __init__(self, conn: psycopg.Connection, data_dir: str | Path | None = None) -> None:
        self.conn = conn
        self._data_dir = Path(data_dir) if data_dir else None

    @staticmethod
    def _strategy(family: Family) -> FamilyStrategy:
        return STRATEGIES[family]

    def _table(self, family: Family) -> sql.Identifier:
        return sql.Identifier(self._strategy(family).local_table)

    # -- counts / indexes --------------------------------------------------

    def count(self, family: Family) -> int:
        row = self.conn.execute(
            sql.SQL("SELECT count(*) FROM {}").format(self._table(family))
        ).fetchone()
        return int(row[0])

    def index_name(self, family: Family, column: str) -> str:
        return f"{self._strategy(family).local_table}_ix_{column}"

    def list_indexes(self, family: Family) -> list[str]:
        rows = self.conn.execute(
            "SELECT indexname FROM pg_indexes WHERE tablename = %s ORDER BY indexname",
            (self._strategy(family).local_table,),
        ).fetchall()
        return [r[0] for r in rows]

    def create_index(self, family: Family, column: str) -> None:
        self.conn.execute(
            sql.SQL("CREATE INDEX IF NOT EXISTS {} ON {} ({})").format(
                sql.Identifier(self.index_name(family, column)),
                self._table(family),
                sql.Identifier(column),
            )
        )
        self.conn.commit()

    # -- presence ----------------------------------------------------------

    def max_remote_id(self, family: Family) -> int | None:
        row = self.conn.execute(
            sql.SQL("SELECT max(remote_id) FROM {}").format(self._table(family))
        ).fetchone()
        return row[0] if row else None

    def load_remote_ids(self, family: Family) -> PresenceIndex:
        max_id = self.max_remote_id(family)
        index = PresenceIndex((max_id or 0) + 1)
        with self.conn.cursor(name=f"remote_ids_{family.value}") as cur:
            cur.itersize = 100_000
            cur.execute(sql.SQL("SELECT remote_id FROM {}").format(self._table(family)))
            for (remote_id,) in cur:
                index.add(remote_id)
        log.info("Loaded %d %s remote ids (capacity %d)", len(index), family.value, index.capacity)
        return index

    # -- records -----------------------------------------------------------

    def get_change_marker(self, family: Family, remote_id: int) -> datetime | None:
        strategy = self._strategy(family)
        row = self.conn.execute(
            sql.SQL("SELECT {} FROM {} WHERE remote_id = %s ORDER BY id ASC LIMIT 1").format(
                sql.Identifier(strategy.change_field), self._table(family)
            ),
            (remote_id,),
        ).fetchone()
        return row[0] if row else None

    def insert_record(self, family: Family, record: CatalogRecord) -> int:
        strategy = self._strategy(family)
        columns = ["file_id", *strategy.record_fields]
        row = self.conn.execute(
            sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING id").format(
                self._table(family),
                sql.SQL(", ").join(sql.Identifier(c) for c in columns),
                sql.SQL(", ").join(sql.Placeholder() * len(columns)),
            ),
            [getattr(record, c) for c in columns],
        ).fetchone()
        record.id = int(row[0])
        return record.id

    def update_record(self, family: Family, record: CatalogRecord) -> None:
        strategy = self._strategy(family)
        columns = [c for c in strategy.record_fields if c != "remote_id"]
        self.conn.execute(
            sql.SQL("UPDATE {} SET {} WHERE remote_id = %s").format(
                self._table(family),
                sql.SQL(", ").join(
                    sql.SQL("{} = %s").format(sql.Identifier(c)) for c in columns
                ),
            ),
            [*(getattr(record, c) for c in columns), record.remote_id],
        )

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    def get_last_modified(self, family: Family) -> CatalogRecord | None:
        strategy = self._strategy(family)
        columns = ["id", "file_id", *strategy.record_fields]
        row = self.conn.execute(
            sql.SQL(
                "SELECT {} FROM {} WHERE {} IS NOT NULL ORDER BY {} DESC, remote_id DESC LIMIT 1"
            ).format(
                sql.SQL(", ").join(sql.Identifier(c) for c in columns),
                self._table(family),
                sql.Identifier(strategy.change_field),
                sql.Identifier(strategy.change_field),
            )
        ).fetchone()
        if row is None:
            return None
        return strategy.record_type(**dict(zip(columns, row)))

    # -- metadata ----------------------------------------------------------

    def metadata_exists(self) -> bool:
        row = self.conn.execute("SELECT to_regclass('catalog_metadata')").fetchone()
        return row is not None and row[0] is not None

    def get_metadata(self) -> DatabaseMetadata | None:
        rows = self.conn.execute("SELECT key, value FROM catalog_metadata").fetchall()
        if not rows:
            return None
        values = dict(rows)
        return DatabaseMetadata(
            app_name=values.get("app_name"),
            version=values.get("version"),
            **{k: values.get(k) == "true" for k in _BOOL_KEYS},
        )

    def update_metadata(self, metadata: DatabaseMetadata) -> None:
        values = {
            "app_name": metadata.app_name,
            "version": metadata.version,
            **{k: "true" if getattr(metadata, k) else "false" for k in _BOOL_KEYS},
        }
        with self.conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO catalog_metadata (key, value) VALUES (%s, %s)
                ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value
                """,
                list(values.items()),
            )
        self.conn.commit()

    # -- disk --------------------------------------------------------------

    def free_disk_space(self) -> int | None:
        if self._data_dir is None:
            return None
        try:
            return shutil.disk_usage(self._data_dir).free
        except OSError as exc:
            log.warning("Cannot read free disk space for %s: %s", self._data_dir, exc)
            return None


# ---------------------------------------------------------------------------
# Open / create
# ---------------------------------------------------------------------------

class DatabaseStatus(Enum):
    OPENED = "opened"
    NOT_FOUND = "not_found"
    NOT_SET = "not_set"
    POSSIBLE_DUMP_FILE = "possible_dump_file"
    CORRUPTED = "corrupted"
    SERVER_DATABASE = "server_database"


def classify_target(target: str | None) -> DatabaseStatus | None:
    """Statuses decidable without connecting; None means "try to connect"."""
    if target is None or not target.strip():
        return DatabaseStatus.NOT_SET
    path = Path(target)
    if path.suffix.lower() in SUPPORTED_DUMP_FILE_EXTENSIONS and path.is_file():
        return DatabaseStatus.POSSIBLE_DUMP_FILE
    return None


def open_catalog(
    target: str | None,
    data_dir: str | Path | None = None,
) -> tuple[DatabaseStatus, PostgresCatalogStore | None]:
    """Connect to the catalog database at DSN ``target`` and validate it.

    The caller owns the returned store's connection when the status is
    OPENED; for every other status the connection is already closed.
    """
    status = classify_target(target)
    if status is not None:
        return status, None
    try:
        conn = psycopg.connect(target, autocommit=False)
    except psycopg.OperationalError as exc:
        log.error("Cannot connect to catalog database: %s", exc)
        return DatabaseStatus.NOT_FOUND, None

    store = PostgresCatalogStore(conn, data_dir)
    try:
        if not store.metadata_exists():
            status = DatabaseStatus.CORRUPTED
        else:
            metadata = store.get_metadata()
            if metadata is None:
                status = DatabaseStatus.CORRUPTED
            elif metadata.app_name and metadata.app_name.lower() == SERVER_APP_NAME:
                status = DatabaseStatus.SERVER_DATABASE
            elif metadata.parsed_version() is None:
                status = DatabaseStatus.CORRUPTED
            else:
                status = DatabaseStatus.OPENED
        conn.rollback()
    except psycopg.Error:
        log.exception("Catalog metadata check failed")
        status = DatabaseStatus.CORRUPTED

    if status is not DatabaseStatus.OPENED:
        conn.close()
        return status, None
    return status, store


def create_catalog(
    conn: psycopg.Connection,
    migrations_dir: Path = DEFAULT_MIGRATIONS_DIR,
) -> DatabaseMetadata:
    """Apply migrations and write fresh metadata.  Caller manages the connection."""
    migrations = sorted(migrations_dir.glob("*.sql"))
    if not migrations:
        raise FileNotFoundError(f"no migrations found in {migrations_dir}")
    for migration in migrations:
        log.info("Applying %s", migration.name)
        conn.execute(migration.read_text(encoding="utf-8"))
    conn.commit()
    metadata = DatabaseMetadata()
    PostgresCatalogStore(conn).update_metadata(metadata)
    return metadata
