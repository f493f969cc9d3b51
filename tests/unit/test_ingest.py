"""Unit tests for catalog_mirror.ingest state machines with an in-memory store."""

from __future__ import annotations

import json
from datetime import datetime
from unittest.mock import MagicMock

import requests

from catalog_mirror.cancellation import CancellationToken
from catalog_mirror.families import FictionBook, NonFictionBook
from catalog_mirror.ingest import CatalogIngestor
from catalog_mirror.progress import (
    CompletedProgress,
    DiskSpaceProgress,
    IndexCreationProgress,
    ObjectsProgress,
    SyncObjectsProgress,
    TableDefinitionFoundProgress,
    WrongTableDefinitionProgress,
)
from catalog_mirror.settings import IngestSettings
from catalog_mirror.shared import IngestStatus
from catalog_mirror.table_schemas import Family

from dump_builders import (
    FICTION_CREATE,
    NON_FICTION_CREATE,
    SCI_MAG_CREATE,
    article_tuple,
    book_tuple,
    insert_statement,
)

NF = Family.NON_FICTION
SYNC_URL = "https://mirror.example.org/json.php"


def _settings(**overrides) -> IngestSettings:
    defaults = dict(
        low_disk_space_threshold_bytes=100,
        import_checkpoint_interval=2,
        sync_checkpoint_interval=2,
        progress_min_interval_seconds=0.0,
        sync_urls={NF: SYNC_URL},
    )
    defaults.update(overrides)
    return IngestSettings(**defaults)


def _fiction_tuple(remote_id: int) -> str:
    md5 = f"{remote_id:032x}"
    return (
        f"({remote_id},'{md5}','Novel {remote_id}','Writer','English','2001','Pub','epub',"
        f"512,'2019-01-01 00:00:00','2020-01-01 00:00:00')"
    )


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def of(self, kind):
        return [e for e in self.events if isinstance(e, kind)]


# ---------------------------------------------------------------------------
# Bulk import
# ---------------------------------------------------------------------------

class TestImportDump:
    def test_end_to_end_three_tuples(self, fake_store, write_dump):
        path = write_dump(NON_FICTION_CREATE + insert_statement("updated", [book_tuple(i) for i in (1, 2, 3)]))
        progress = Recorder()
        result = CatalogIngestor(fake_store, _settings()).import_dump(path, progress)
        assert result.status is IngestStatus.COMPLETED
        assert (result.added, result.updated) == (3, 0)
        assert sorted(fake_store.committed[NF]) == [1, 2, 3]
        assert progress.of(TableDefinitionFoundProgress) == [TableDefinitionFoundProgress(NF)]
        assert progress.of(CompletedProgress)[-1] == CompletedProgress("completed", 3, 0)

    def test_counts_and_metadata_refreshed(self, fake_store, write_dump):
        path = write_dump(NON_FICTION_CREATE + insert_statement("updated", [book_tuple(1)]))
        ingestor = CatalogIngestor(fake_store, _settings())
        assert ingestor.counts[NF] == 0
        ingestor.import_dump(path)
        assert ingestor.counts[NF] == 1
        assert fake_store.metadata.non_fiction_first_import_complete is True
        assert fake_store.metadata.fiction_first_import_complete is False

    def test_reimport_is_idempotent(self, fake_store, write_dump):
        path = write_dump(NON_FICTION_CREATE + insert_statement("updated", [book_tuple(i) for i in (1, 2, 3)]))
        ingestor = CatalogIngestor(fake_store, _settings())
        ingestor.import_dump(path)
        second = ingestor.import_dump(path)
        assert second.status is IngestStatus.COMPLETED
        assert (second.added, second.updated) == (0, 0)
        assert fake_store.count(NF) == 3

    def test_reimport_counts_newer_rows_as_updates(self, fake_store, write_dump):
        ingestor = CatalogIngestor(fake_store, _settings())
        ingestor.import_dump(write_dump(NON_FICTION_CREATE + insert_statement("updated", [book_tuple(1), book_tuple(2)])))
        newer = insert_statement("updated", [book_tuple(1), book_tuple(2, "Revised", "2023-01-01 00:00:00")])
        result = ingestor.import_dump(write_dump(NON_FICTION_CREATE + newer, "second.sql"))
        assert (result.added, result.updated) == (0, 1)
        assert fake_store.committed[NF][2].title == "Revised"

    def test_indexes_created_only_once_family_has_rows(self, fake_store, write_dump):
        path = write_dump(NON_FICTION_CREATE + insert_statement("updated", [book_tuple(1)]))
        ingestor = CatalogIngestor(fake_store, _settings())
        progress = Recorder()
        ingestor.import_dump(path, progress)
        assert fake_store.created_indexes == []
        ingestor.import_dump(path, progress)
        assert fake_store.created_indexes == [(NF, "last_modified_at"), (NF, "remote_id")]
        assert progress.of(IndexCreationProgress) == [
            IndexCreationProgress(NF, "last_modified_at"),
            IndexCreationProgress(NF, "remote_id"),
        ]

    def test_multiple_tables_in_one_dump(self, fake_store, write_dump):
        text = (
            NON_FICTION_CREATE + insert_statement("updated", [book_tuple(1), book_tuple(2)])
            + FICTION_CREATE + insert_statement("fiction", [_fiction_tuple(10)])
            + SCI_MAG_CREATE + insert_statement("scimag", [article_tuple(20), article_tuple(21)])
        )
        result = CatalogIngestor(fake_store, _settings()).import_dump(write_dump(text))
        assert result.status is IngestStatus.COMPLETED
        assert result.added == 5
        assert fake_store.count(Family.FICTION) == 1
        assert fake_store.count(Family.SCI_MAG) == 2
        assert result.counters.families == ["non_fiction", "fiction", "sci_mag"]

    def test_unknown_tables_are_skipped(self, fake_store, write_dump):
        text = (
            "CREATE TABLE `description` (\n  `id` int(11),\n  `descr` text\n);\n"
            + insert_statement("description", ["(1,'x')"])
            + NON_FICTION_CREATE + insert_statement("updated", [book_tuple(1)])
        )
        result = CatalogIngestor(fake_store, _settings()).import_dump(write_dump(text))
        assert result.status is IngestStatus.COMPLETED
        assert result.counters.tables_skipped == 1
        assert result.added == 1

    def test_no_recognized_table_is_data_not_found(self, fake_store, write_dump):
        text = "CREATE TABLE `topics` (\n  `id` int(11)\n);\n" + insert_statement("topics", ["(1)"])
        result = CatalogIngestor(fake_store, _settings()).import_dump(write_dump(text))
        assert result.status is IngestStatus.DATA_NOT_FOUND

    def test_table_without_data_is_data_not_found(self, fake_store, write_dump):
        result = CatalogIngestor(fake_store, _settings()).import_dump(write_dump(NON_FICTION_CREATE))
        assert result.status is IngestStatus.DATA_NOT_FOUND

    def test_wrong_family_is_error(self, fake_store, write_dump):
        path = write_dump(FICTION_CREATE + insert_statement("fiction", [_fiction_tuple(1)]))
        progress = Recorder()
        result = CatalogIngestor(fake_store, _settings()).import_dump(path, progress, expected_family=NF)
        assert result.status is IngestStatus.ERROR
        assert progress.of(WrongTableDefinitionProgress) == [WrongTableDefinitionProgress(NF, Family.FICTION)]
        assert fake_store.count(Family.FICTION) == 0

    def test_malformed_tuple_does_not_drop_later_statements(self, fake_store, write_dump):
        text = (
            NON_FICTION_CREATE
            + f"INSERT INTO `updated` VALUES {book_tuple(1)},\n"
            + "(2,'A Book' x,'Some Author','1999','Pub','English','PDF',NULL,1,NULL,NULL),\n"
            + f"{book_tuple(3)};\n"
            + insert_statement("updated", [book_tuple(i) for i in (4, 5, 6)])
            + insert_statement("updated", [book_tuple(7), book_tuple(8)])
        )
        result = CatalogIngestor(fake_store, _settings()).import_dump(write_dump(text))
        assert result.status is IngestStatus.COMPLETED
        assert sorted(fake_store.committed[NF]) == [1, 3, 4, 5, 6, 7, 8]
        assert result.counters.rows_skipped == 1

    def test_truncated_dump_is_corrupted(self, fake_store, write_dump):
        path = write_dump(NON_FICTION_CREATE + "INSERT INTO `updated` VALUES (1,'never closed\n")
        result = CatalogIngestor(fake_store, _settings()).import_dump(path)
        assert result.status is IngestStatus.CORRUPTED

    def test_missing_file_is_error(self, fake_store, tmp_path):
        result = CatalogIngestor(fake_store, _settings()).import_dump(tmp_path / "missing.sql")
        assert result.status is IngestStatus.ERROR

    def test_low_disk_space_before_start(self, fake_store, write_dump):
        fake_store.free_space = 10
        path = write_dump(NON_FICTION_CREATE + insert_statement("updated", [book_tuple(1)]))
        progress = Recorder()
        result = CatalogIngestor(fake_store, _settings()).import_dump(path, progress)
        assert result.status is IngestStatus.LOW_DISK_SPACE
        assert progress.of(DiskSpaceProgress) == [DiskSpaceProgress(10)]
        assert fake_store.count(NF) == 0

    def test_disk_space_reported_at_every_checkpoint(self, fake_store, write_dump):
        fake_store.free_space = 10_000
        path = write_dump(NON_FICTION_CREATE + insert_statement("updated", [book_tuple(i) for i in range(1, 7)]))
        progress = Recorder()
        result = CatalogIngestor(fake_store, _settings()).import_dump(path, progress)
        assert result.status is IngestStatus.COMPLETED
        # pre-flight check plus one per checkpoint of two records
        assert progress.of(DiskSpaceProgress) == [DiskSpaceProgress(10_000)] * 4

    def test_low_disk_space_mid_import_keeps_committed_rows(self, fake_store, write_dump):
        fake_store.free_space_readings = [10_000, 10_000, 10]
        tuples = [book_tuple(i) for i in range(1, 11)]
        path = write_dump(NON_FICTION_CREATE + insert_statement("updated", tuples))
        result = CatalogIngestor(fake_store, _settings()).import_dump(path)
        assert result.status is IngestStatus.LOW_DISK_SPACE
        # readings: pre-flight, after r2, after r4 (low)
        assert sorted(fake_store.committed[NF]) == [1, 2, 3, 4]

    def test_cancellation_during_first_of_three_segments(self, fake_store, write_dump):
        token = CancellationToken()
        text = (
            NON_FICTION_CREATE + insert_statement("updated", [book_tuple(i) for i in range(1, 6)])
            + FICTION_CREATE + insert_statement("fiction", [_fiction_tuple(10)])
            + SCI_MAG_CREATE + insert_statement("scimag", [article_tuple(20)])
        )

        def progress(event):
            # first checkpoint of the first segment's merge
            if isinstance(event, ObjectsProgress) and event.added == 2:
                token.cancel()

        result = CatalogIngestor(fake_store, _settings()).import_dump(write_dump(text), progress, token)
        assert result.status is IngestStatus.CANCELLED
        assert sorted(fake_store.committed[NF]) == [1, 2]
        assert fake_store.count(Family.FICTION) == 0
        assert fake_store.count(Family.SCI_MAG) == 0

    def test_cancelled_before_start(self, fake_store, write_dump):
        token = CancellationToken()
        token.cancel()
        path = write_dump(NON_FICTION_CREATE + insert_statement("updated", [book_tuple(1)]))
        result = CatalogIngestor(fake_store, _settings()).import_dump(path, None, token)
        assert result.status is IngestStatus.CANCELLED


# ---------------------------------------------------------------------------
# Synchronization
# ---------------------------------------------------------------------------

def _api_response(items) -> MagicMock:
    resp = MagicMock(spec=requests.Response)
    resp.iter_content.return_value = [json.dumps(items).encode()]
    return resp


def _api_session(*batches) -> MagicMock:
    session = MagicMock(spec=requests.Session)
    session.get.side_effect = [_api_response(b) for b in batches]
    return session


def _api_item(remote_id: int, modified: str, title: str = "t") -> dict:
    return {"ID": str(remote_id), "Title": title, "TimeLastModified": modified}


class TestSynchronize:
    def _seeded(self, fake_store):
        fake_store.seed(
            NF,
            NonFictionBook(remote_id=1, title="old", last_modified_at=datetime(2020, 1, 1)),
            NonFictionBook(remote_id=2, title="t", last_modified_at=datetime(2020, 1, 2)),
        )
        return fake_store

    def test_empty_family_is_error(self, fake_store):
        session = _api_session([])
        result = CatalogIngestor(fake_store, _settings(), session).synchronize(NF)
        assert result.status is IngestStatus.ERROR
        session.get.assert_not_called()

    def test_no_url_is_error(self, fake_store):
        fake_store.seed(Family.FICTION, FictionBook(remote_id=1, last_modified_at=datetime(2020, 1, 1)))
        result = CatalogIngestor(fake_store, _settings(), _api_session()).synchronize(Family.FICTION)
        assert result.status is IngestStatus.ERROR

    def test_batches_merged_until_exhausted(self, fake_store):
        self._seeded(fake_store)
        session = _api_session(
            [_api_item(3, "2020-01-03 00:00:00"), _api_item(1, "2020-01-04 00:00:00", "new")],
            [_api_item(4, "2020-01-05 00:00:00")],
            [],
        )
        progress = Recorder()
        result = CatalogIngestor(fake_store, _settings(), session).synchronize(NF, progress)
        assert result.status is IngestStatus.COMPLETED
        assert (result.added, result.updated) == (2, 1)
        assert result.counters.downloaded == 3
        assert result.counters.batches_fetched == 2
        assert fake_store.committed[NF][1].title == "new"
        assert progress.of(SyncObjectsProgress)[-1] == SyncObjectsProgress(3, 2, 1)
        # pre-flight check plus the checkpoint after the first batch's two records
        assert len(progress.of(DiskSpaceProgress)) == 2

    def test_cursor_starts_at_most_recent_local_record(self, fake_store):
        self._seeded(fake_store)
        session = _api_session([])
        CatalogIngestor(fake_store, _settings(), session).synchronize(NF)
        _, kwargs = session.get.call_args
        assert kwargs["params"]["timenewer"] == "2020-01-02 00:00:00"
        assert kwargs["params"]["idnewer"] == "2"

    def test_ensures_indexes(self, fake_store):
        self._seeded(fake_store)
        CatalogIngestor(fake_store, _settings(), _api_session([])).synchronize(NF)
        assert (NF, "remote_id") in fake_store.created_indexes

    def test_fetch_failure_is_error(self, fake_store):
        self._seeded(fake_store)
        session = MagicMock(spec=requests.Session)
        session.get.side_effect = requests.ConnectionError("down")
        result = CatalogIngestor(fake_store, _settings(), session).synchronize(NF)
        assert result.status is IngestStatus.ERROR

    def test_cancel_between_batches(self, fake_store):
        self._seeded(fake_store)
        token = CancellationToken()
        session = _api_session(
            [_api_item(3, "2020-01-03 00:00:00")],
            [_api_item(4, "2020-01-04 00:00:00")],
        )

        def progress(event):
            if isinstance(event, SyncObjectsProgress):
                token.cancel()

        result = CatalogIngestor(fake_store, _settings(), session).synchronize(NF, progress, token)
        assert result.status is IngestStatus.CANCELLED
        assert 3 in fake_store.committed[NF]
        assert 4 not in fake_store.rows[NF]
        assert session.get.call_count == 1

    def test_low_disk_space_before_sync(self, fake_store):
        self._seeded(fake_store)
        fake_store.free_space = 1
        session = _api_session([])
        result = CatalogIngestor(fake_store, _settings(), session).synchronize(NF)
        assert result.status is IngestStatus.LOW_DISK_SPACE
        session.get.assert_not_called()


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

class TestStats:
    def test_stats_per_family(self, fake_store):
        fake_store.seed(
            NF,
            NonFictionBook(remote_id=1, last_modified_at=datetime(2020, 1, 1)),
            NonFictionBook(remote_id=2, last_modified_at=datetime(2021, 6, 1)),
        )
        ingestor = CatalogIngestor(fake_store, _settings())
        assert ingestor.check_stats_indexes_created() is False
        stats = {s.family: s for s in ingestor.get_database_stats()}
        assert stats[NF].count == 2
        assert stats[NF].last_updated == datetime(2021, 6, 1)
        assert stats[Family.SCI_MAG].count == 0
        assert stats[Family.SCI_MAG].last_updated is None
        assert ingestor.check_stats_indexes_created() is True

    def test_stats_cancelled(self, fake_store):
        token = CancellationToken()
        token.cancel()
        assert CatalogIngestor(fake_store, _settings()).get_database_stats(None, token) is None
