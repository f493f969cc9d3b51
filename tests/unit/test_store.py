"""Unit tests for catalog_mirror.store helpers that need no database."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from catalog_mirror import store
from catalog_mirror.store import (
    DEFAULT_MIGRATIONS_DIR,
    DatabaseStatus,
    classify_target,
    create_catalog,
)

# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------


class TestMigrations:
    def test_shipped_inside_package(self):
        package_dir = Path(store.__file__).resolve().parent
        assert DEFAULT_MIGRATIONS_DIR.parent == package_dir
        names = sorted(p.name for p in DEFAULT_MIGRATIONS_DIR.glob("*.sql"))
        assert names == ["0001_metadata.sql", "0002_catalog_tables.sql"]

    def test_create_catalog_applies_in_order(self):
        conn = MagicMock()
        metadata = create_catalog(conn)
        applied = [c.args[0] for c in conn.execute.call_args_list]
        assert len(applied) == 2
        assert "catalog_metadata" in applied[0]
        assert "non_fiction_book" in applied[1]
        assert metadata.version == store.CURRENT_DATABASE_VERSION

    def test_empty_migrations_dir_raises(self, tmp_path):
        conn = MagicMock()
        with pytest.raises(FileNotFoundError, match="no migrations"):
            create_catalog(conn, tmp_path)
        conn.execute.assert_not_called()


# ---------------------------------------------------------------------------
# Target classification
# ---------------------------------------------------------------------------


class TestClassifyTarget:
    def test_blank_is_not_set(self):
        assert classify_target(None) is DatabaseStatus.NOT_SET
        assert classify_target("   ") is DatabaseStatus.NOT_SET

    def test_dump_file(self, tmp_path):
        dump = tmp_path / "fiction.sql.gz"
        dump.write_bytes(b"")
        assert classify_target(str(dump)) is DatabaseStatus.POSSIBLE_DUMP_FILE

    def test_dsn_needs_connection(self):
        assert classify_target("host=localhost dbname=catalog") is None
