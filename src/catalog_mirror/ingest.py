"""catalog_mirror.ingest

Top-level driver for bulk dump import and incremental synchronization.

Bulk import:
  check disk space -> scan for CREATE TABLE -> match schema (unknown: keep
  scanning) -> ensure indexes -> scan for the table's INSERT section ->
  merge -> refresh counts and metadata -> next table definition, until the
  end of the stream.

Synchronization:
  require a non-empty local family -> check disk space -> ensure indexes ->
  load the watermark cursor from the most recently modified local record ->
  fetch/merge batches until the remote side returns an empty batch.

Every operation returns an IngestResult with a terminal IngestStatus; no
exception escapes.  Cancellation is polled at every loop head through
``_cancelled`` and ends the run as CANCELLED.
"""

from __future__ import annotations

import gzip
import logging
import zipfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

import requests

from catalog_mirror.cancellation import CancellationToken, is_cancelled
from catalog_mirror.delta_client import (
    DeltaCancelledError,
    DeltaClient,
    DeltaFetchError,
    WatermarkCursor,
)
from catalog_mirror.families import STRATEGIES, FamilyStrategy
from catalog_mirror.merge import MergeResult, MergeStatus, is_low_disk_space, merge_records
from catalog_mirror.progress import (
    CompletedProgress,
    DiskSpaceProgress,
    IndexCreationProgress,
    LoadRemoteIdsProgress,
    ObjectsProgress,
    ProgressSink,
    SearchTableDefinitionProgress,
    SyncObjectsProgress,
    TableDefinitionFoundProgress,
    ThrottledProgress,
    WrongTableDefinitionProgress,
    null_sink,
)
from catalog_mirror.settings import IngestSettings
from catalog_mirror.shared import IngestResult, IngestStatus, RunCounters
from catalog_mirror.sql_dump import DumpCorruptedError, LineCommand, SqlDumpReader
from catalog_mirror.store import CatalogStore, DatabaseMetadata
from catalog_mirror.table_schemas import Family, ParsedTableDefinition, detect_table_family

log = logging.getLogger(__name__)

# starting point for a family whose records carry no change marker at all
EPOCH_CURSOR = WatermarkCursor(datetime(1970, 1, 1), 0)

_MERGE_TO_INGEST = {
    MergeStatus.COMPLETED: IngestStatus.COMPLETED,
    MergeStatus.CANCELLED: IngestStatus.CANCELLED,
    MergeStatus.LOW_DISK_SPACE: IngestStatus.LOW_DISK_SPACE,
}

_CORRUPTED_ERRORS = (DumpCorruptedError, zipfile.BadZipFile, gzip.BadGzipFile, EOFError)


@dataclass
class FamilyStats:
    family: Family
    count: int
    last_updated: datetime | None


# ---------------------------------------------------------------------------
# CatalogIngestor
# ---------------------------------------------------------------------------

class CatalogIngestor:
    """Runs imports and synchronizations against one CatalogStore.

    ``counts`` mirrors the number of stored records per family and is
    refreshed from storage after every mutating operation.
    """

    def __init__(
        self,
        store: CatalogStore,
        settings: IngestSettings | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or IngestSettings()
        self._session = session
        self.counts: dict[Family, int] = {}
        self.refresh_counts()

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({"User-Agent": self.settings.user_agent})
        return self._session

    def refresh_counts(self) -> dict[Family, int]:
        self.counts = {family: self.store.count(family) for family in Family}
        return self.counts

    # -- helpers -----------------------------------------------------------

    @staticmethod
    def _cancelled(cancellation: CancellationToken | None, stage: str) -> bool:
        if is_cancelled(cancellation):
            log.info("Operation cancelled at %s", stage)
            return True
        return False

    def _wrap_progress(self, progress: ProgressSink | None) -> ProgressSink:
        return ThrottledProgress(progress or null_sink, self.settings.progress_min_interval_seconds)

    def _check_disk_space(self, progress: ProgressSink) -> bool:
        """Emit a DiskSpaceProgress; True when free space is below threshold."""
        free_bytes = self.store.free_disk_space()
        progress(DiskSpaceProgress(free_bytes))
        if is_low_disk_space(free_bytes, self.settings.low_disk_space_threshold_bytes):
            log.warning(
                "Low disk space: %s bytes free, threshold %d",
                free_bytes, self.settings.low_disk_space_threshold_bytes,
            )
            return True
        return False

    def _finish(
        self,
        operation: str,
        run: Callable[[RunCounters], IngestStatus],
        progress: ProgressSink,
    ) -> IngestResult:
        counters = RunCounters()
        try:
            status = run(counters)
        except _CORRUPTED_ERRORS as exc:
            log.error("%s failed, dump is corrupted: %s", operation, exc)
            counters.warnings.append(str(exc))
            status = IngestStatus.CORRUPTED
        except DeltaCancelledError:
            log.info("%s cancelled during a remote request", operation)
            status = IngestStatus.CANCELLED
        except DeltaFetchError as exc:
            log.error("%s failed: %s", operation, exc)
            counters.warnings.append(str(exc))
            status = IngestStatus.ERROR
        except Exception as exc:  # noqa: BLE001
            log.exception("%s failed", operation)
            counters.warnings.append(f"{type(exc).__name__}: {exc}")
            status = IngestStatus.ERROR
        if status is not IngestStatus.COMPLETED:
            self._commit_pending()
        try:
            self.refresh_counts()
        except Exception:  # noqa: BLE001
            log.exception("Could not refresh record counts after %s", operation)
        progress(CompletedProgress(status.value, counters.added, counters.updated))
        log.info(
            "%s finished: status=%s added=%d updated=%d",
            operation, status.value, counters.added, counters.updated,
        )
        return IngestResult(status, counters)

    def _commit_pending(self) -> None:
        # keep committed work; a failed transaction is rolled back instead
        try:
            self.store.commit()
        except Exception:  # noqa: BLE001
            log.warning("Commit after interrupted run failed, rolling back", exc_info=True)
            try:
                self.store.rollback()
            except Exception:  # noqa: BLE001
                log.exception("Rollback failed")

    # -- indexes -----------------------------------------------------------

    def _ensure_index_columns(
        self,
        family: Family,
        columns: tuple[str, ...] | list[str],
        progress: ProgressSink,
        cancellation: CancellationToken | None,
    ) -> bool:
        existing = set(self.store.list_indexes(family))
        for column in columns:
            if self._cancelled(cancellation, f"index creation on {family.value}.{column}"):
                return False
            if self.store.index_name(family, column) in existing:
                continue
            log.info("Index on %s.%s doesn't exist, creating it", family.value, column)
            progress(IndexCreationProgress(family, column))
            self.store.create_index(family, column)
        return True

    def ensure_indexes(
        self,
        family: Family,
        progress: ProgressSink | None = None,
        cancellation: CancellationToken | None = None,
    ) -> bool:
        """Create any missing supporting index for family.  False if cancelled."""
        return self._ensure_index_columns(
            family, list(STRATEGIES[family].index_columns), progress or null_sink, cancellation
        )

    # -- bulk import -------------------------------------------------------

    def import_dump(
        self,
        path: str | Path,
        progress: ProgressSink | None = None,
        cancellation: CancellationToken | None = None,
        expected_family: Family | None = None,
    ) -> IngestResult:
        progress = self._wrap_progress(progress)
        return self._finish(
            "Import",
            lambda counters: self._import_dump(
                Path(path), progress, cancellation, expected_family, counters
            ),
            progress,
        )

    def _import_dump(
        self,
        path: Path,
        progress: ProgressSink,
        cancellation: CancellationToken | None,
        expected_family: Family | None,
        counters: RunCounters,
    ) -> IngestStatus:
        if self._cancelled(cancellation, "disk space check"):
            return IngestStatus.CANCELLED
        if self._check_disk_space(progress):
            return IngestStatus.LOW_DISK_SPACE

        log.info("Importing %s", path)
        with SqlDumpReader(path) as reader:
            try:
                while True:
                    if self._cancelled(cancellation, "table definition search"):
                        return IngestStatus.CANCELLED
                    if not reader.read_line():
                        break
                    progress(SearchTableDefinitionProgress(reader.current_position, reader.file_size))
                    if reader.current_line_command is not LineCommand.CREATE_TABLE:
                        continue

                    log.debug("CREATE TABLE statement found at line %d", reader.line_number)
                    parsed = reader.parse_table_definition()
                    family = detect_table_family(parsed)
                    if family is None:
                        counters.tables_skipped += 1
                        log.info("Skipping unrecognized table %r", parsed.table_name)
                        continue

                    progress(TableDefinitionFoundProgress(family))
                    if expected_family is not None and family is not expected_family:
                        log.error(
                            "Dump contains %s table, expected %s",
                            family.value, expected_family.value,
                        )
                        progress(WrongTableDefinitionProgress(expected_family, family))
                        return IngestStatus.ERROR

                    counters.tables_found += 1
                    status = self._import_table(reader, parsed, family, progress, cancellation, counters)
                    if status is not IngestStatus.COMPLETED:
                        return status
            finally:
                counters.rows_skipped += reader.skipped_lines

        if counters.tables_found == 0:
            log.warning("No recognized table definition found in %s", path)
            return IngestStatus.DATA_NOT_FOUND
        return IngestStatus.COMPLETED

    def _import_table(
        self,
        reader: SqlDumpReader,
        parsed: ParsedTableDefinition,
        family: Family,
        progress: ProgressSink,
        cancellation: CancellationToken | None,
        counters: RunCounters,
    ) -> IngestStatus:
        strategy = STRATEGIES[family]
        # an empty table is bulk loaded without indexes; they are added once it has rows
        if self.store.count(family) != 0:
            if not self.ensure_indexes(family, progress, cancellation):
                return IngestStatus.CANCELLED

        while True:
            if self._cancelled(cancellation, "data section search"):
                return IngestStatus.CANCELLED
            if not reader.read_line():
                log.warning("No INSERT section for table %r", parsed.table_name)
                return IngestStatus.DATA_NOT_FOUND
            progress(SearchTableDefinitionProgress(reader.current_position, reader.file_size))
            command = reader.current_line_command
            if command is LineCommand.CREATE_TABLE:
                log.warning("No INSERT section for table %r", parsed.table_name)
                return IngestStatus.DATA_NOT_FOUND
            if command is LineCommand.INSERT and reader.current_table_name == parsed.table_name:
                break

        if self._cancelled(cancellation, "remote id loading"):
            return IngestStatus.CANCELLED
        progress(LoadRemoteIdsProgress(family))
        presence = self.store.load_remote_ids(family)

        base_added, base_updated = counters.added, counters.updated
        column_index = parsed.column_index()
        result = merge_records(
            reader.iter_rows(parsed),
            presence,
            strategy,
            self.store,
            lambda added, updated: progress(ObjectsProgress(base_added + added, base_updated + updated)),
            self.settings.import_checkpoint_interval,
            cancellation,
            self.settings.low_disk_space_threshold_bytes,
            convert=lambda values: strategy.from_dump_row(parsed, values, column_index),
            disk_space_reporter=lambda free_bytes: progress(DiskSpaceProgress(free_bytes)),
        )
        self._absorb(result, counters)
        counters.families.append(family.value)
        self.refresh_counts()

        if result.status is MergeStatus.COMPLETED:
            self._mark_first_import_complete(family)
        return _MERGE_TO_INGEST[result.status]

    @staticmethod
    def _absorb(result: MergeResult, counters: RunCounters) -> None:
        counters.added += result.added
        counters.updated += result.updated
        counters.rows_skipped += result.skipped

    def _mark_first_import_complete(self, family: Family) -> None:
        metadata = self.store.get_metadata() or DatabaseMetadata()
        if metadata.first_import_complete(family):
            return
        metadata.set_first_import_complete(family)
        self.store.update_metadata(metadata)

    # -- synchronization ---------------------------------------------------

    def synchronize(
        self,
        family: Family,
        progress: ProgressSink | None = None,
        cancellation: CancellationToken | None = None,
    ) -> IngestResult:
        progress = self._wrap_progress(progress)
        return self._finish(
            "Synchronization",
            lambda counters: self._synchronize(family, progress, cancellation, counters),
            progress,
        )

    def _synchronize(
        self,
        family: Family,
        progress: ProgressSink,
        cancellation: CancellationToken | None,
        counters: RunCounters,
    ) -> IngestStatus:
        strategy = STRATEGIES[family]
        if self._cancelled(cancellation, "synchronization start"):
            return IngestStatus.CANCELLED
        if self.store.count(family) == 0:
            log.error("Cannot synchronize %s: local table is empty, import a dump first", family.value)
            return IngestStatus.ERROR
        url = self.settings.sync_urls.get(family)
        if not url:
            log.error("Cannot synchronize %s: no sync URL configured", family.value)
            return IngestStatus.ERROR
        if self._check_disk_space(progress):
            return IngestStatus.LOW_DISK_SPACE
        if not self.ensure_indexes(family, progress, cancellation):
            return IngestStatus.CANCELLED

        cursor = self._load_cursor(strategy)
        log.info("Synchronizing %s from %s", family.value, cursor)
        progress(LoadRemoteIdsProgress(family))
        presence = self.store.load_remote_ids(family)
        client = DeltaClient(
            self.session,
            url,
            strategy,
            cursor,
            batch_size=self.settings.sync_batch_size,
            timeout=self.settings.request_timeout_seconds,
        )
        counters.families.append(family.value)

        while True:
            if self._cancelled(cancellation, "batch fetch"):
                return IngestStatus.CANCELLED
            batch = client.fetch_next_batch(cancellation)
            if not batch:
                break
            counters.batches_fetched += 1
            counters.downloaded += len(batch)
            base_added, base_updated = counters.added, counters.updated
            result = merge_records(
                batch,
                presence,
                strategy,
                self.store,
                lambda added, updated: progress(
                    SyncObjectsProgress(counters.downloaded, base_added + added, base_updated + updated)
                ),
                self.settings.sync_checkpoint_interval,
                cancellation,
                self.settings.low_disk_space_threshold_bytes,
                disk_space_reporter=lambda free_bytes: progress(DiskSpaceProgress(free_bytes)),
            )
            self._absorb(result, counters)
            if result.status is not MergeStatus.COMPLETED:
                return _MERGE_TO_INGEST[result.status]

        counters.rows_skipped += client.skipped
        return IngestStatus.COMPLETED

    def _load_cursor(self, strategy: FamilyStrategy) -> WatermarkCursor:
        last = self.store.get_last_modified(strategy.family)
        if last is None:
            log.warning(
                "No %s record has a %s value, synchronizing from %s",
                strategy.family.value, strategy.watermark_column, EPOCH_CURSOR,
            )
            return EPOCH_CURSOR
        return WatermarkCursor.from_record(strategy, last)

    # -- statistics --------------------------------------------------------

    def get_database_stats(
        self,
        progress: ProgressSink | None = None,
        cancellation: CancellationToken | None = None,
    ) -> list[FamilyStats] | None:
        """Per family record count and most recent change marker.

        Creates the change-marker index first where it is missing.  Returns
        None when cancelled.
        """
        progress = progress or null_sink
        stats: list[FamilyStats] = []
        for family in Family:
            if self._cancelled(cancellation, "database statistics"):
                return None
            strategy = STRATEGIES[family]
            count = self.store.count(family)
            last_updated = None
            if count:
                if not self._ensure_index_columns(family, [strategy.change_field], progress, cancellation):
                    return None
                last = self.store.get_last_modified(family)
                last_updated = strategy.change_marker(last) if last is not None else None
            stats.append(FamilyStats(family, count, last_updated))
        self.counts = {s.family: s.count for s in stats}
        return stats

    def check_stats_indexes_created(self) -> bool:
        """True when every non-empty family already has its change-marker index."""
        for family in Family:
            if not self.store.count(family):
                continue
            strategy = STRATEGIES[family]
            name = self.store.index_name(family, strategy.change_field)
            if name not in self.store.list_indexes(family):
                return False
        return True
