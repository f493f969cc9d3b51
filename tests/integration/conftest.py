"""Integration test fixtures.

Applies the catalog migrations against an ephemeral PostgreSQL database
provided by pytest-postgresql.
"""

from __future__ import annotations

import psycopg
import pytest
from pytest_postgresql import factories

from catalog_mirror.store import DEFAULT_MIGRATIONS_DIR, DatabaseMetadata, PostgresCatalogStore

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

MIGRATIONS = [
    DEFAULT_MIGRATIONS_DIR / "0001_metadata.sql",
    DEFAULT_MIGRATIONS_DIR / "0002_catalog_tables.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


def _dsn(postgresql) -> str:
    return (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )


# ---------------------------------------------------------------------------
# Schema fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def empty_dsn(postgresql):
    """DSN of a fresh database with no catalog schema."""
    return _dsn(postgresql)


@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (connection, dsn) with the catalog schema and metadata applied.

    Each test gets a fresh schema via function scope so tests are isolated.
    """
    dsn = _dsn(postgresql)
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        conn.autocommit = False
        PostgresCatalogStore(conn).update_metadata(DatabaseMetadata())
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def pg_store(db_conn, tmp_path):
    conn, _ = db_conn
    return PostgresCatalogStore(conn, tmp_path)
