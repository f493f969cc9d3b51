"""Unit test fixtures: an in-memory CatalogStore and a dump-file writer."""

from __future__ import annotations

import copy
from pathlib import Path

import pytest

from catalog_mirror.families import STRATEGIES, CatalogRecord
from catalog_mirror.presence import PresenceIndex
from catalog_mirror.store import DatabaseMetadata
from catalog_mirror.table_schemas import Family


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class FakeCatalogStore:
    """CatalogStore double.

    Writes are visible immediately through ``rows`` and become durable in
    ``committed`` on ``commit()``; ``rollback()`` discards uncommitted writes.
    ``free_space_readings`` is consumed one value per reading, then
    ``free_space`` is returned.
    """

    def __init__(self) -> None:
        self.rows: dict[Family, dict[int, CatalogRecord]] = {f: {} for f in Family}
        self.committed: dict[Family, dict[int, CatalogRecord]] = {f: {} for f in Family}
        self.indexes: dict[Family, set[str]] = {f: set() for f in Family}
        self.created_indexes: list[tuple[Family, str]] = []
        self.metadata: DatabaseMetadata | None = DatabaseMetadata()
        self.free_space: int | None = None
        self.free_space_readings: list[int | None] = []
        self.commits = 0
        self.updates: list[int] = []
        self._next_id = 1

    # -- seeding -----------------------------------------------------------

    def seed(self, family: Family, *records: CatalogRecord) -> None:
        for record in records:
            record.id = self._next_id
            self._next_id += 1
            self.rows[family][record.remote_id] = record
        self.commit()
        self.commits = 0

    # -- CatalogStore ------------------------------------------------------

    def count(self, family: Family) -> int:
        return len(self.rows[family])

    def index_name(self, family: Family, column: str) -> str:
        return f"{STRATEGIES[family].local_table}_ix_{column}"

    def list_indexes(self, family: Family) -> list[str]:
        return sorted(self.indexes[family])

    def create_index(self, family: Family, column: str) -> None:
        self.indexes[family].add(self.index_name(family, column))
        self.created_indexes.append((family, column))

    def load_remote_ids(self, family: Family) -> PresenceIndex:
        return PresenceIndex.from_ids(self.rows[family], (self.max_remote_id(family) or 0) + 1)

    def max_remote_id(self, family: Family) -> int | None:
        return max(self.rows[family], default=None)

    def get_change_marker(self, family: Family, remote_id: int):
        record = self.rows[family].get(remote_id)
        return STRATEGIES[family].change_marker(record) if record else None

    def insert_record(self, family: Family, record: CatalogRecord) -> int:
        record.id = self._next_id
        self._next_id += 1
        self.rows[family][record.remote_id] = record
        return record.id

    def update_record(self, family: Family, record: CatalogRecord) -> None:
        record.id = self.rows[family][record.remote_id].id
        self.rows[family][record.remote_id] = record
        self.updates.append(record.remote_id)

    def commit(self) -> None:
        self.commits += 1
        self.committed = copy.deepcopy(self.rows)

    def rollback(self) -> None:
        self.rows = copy.deepcopy(self.committed)

    def get_last_modified(self, family: Family) -> CatalogRecord | None:
        strategy = STRATEGIES[family]
        candidates = [r for r in self.rows[family].values() if strategy.change_marker(r) is not None]
        if not candidates:
            return None
        return max(candidates, key=lambda r: (strategy.change_marker(r), r.remote_id))

    def get_metadata(self) -> DatabaseMetadata | None:
        return self.metadata

    def update_metadata(self, metadata: DatabaseMetadata) -> None:
        self.metadata = metadata

    def free_disk_space(self) -> int | None:
        if self.free_space_readings:
            return self.free_space_readings.pop(0)
        return self.free_space


@pytest.fixture
def fake_store() -> FakeCatalogStore:
    return FakeCatalogStore()


# ---------------------------------------------------------------------------
# Dump files
# ---------------------------------------------------------------------------

@pytest.fixture
def write_dump(tmp_path: Path):
    """Write dump text to a file under tmp_path and return its path."""

    def _write(text: str, name: str = "dump.sql") -> Path:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path

    return _write
