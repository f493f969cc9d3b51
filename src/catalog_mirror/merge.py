"""catalog_mirror.merge

Family-agnostic merge engine shared by bulk import and synchronization.

Each incoming record is checked against the session's PresenceIndex:

  - absent  -> insert, mark present, added += 1
  - present -> compare the family's change marker against the stored one and
               update only when the incoming marker is strictly newer,
               updated += 1

Writes are committed every ``checkpoint_interval`` records.  At each
checkpoint the progress reporter is called and free disk space is
re-sampled and handed to the disk space reporter; a reading below the
threshold stops the run with everything committed so far left in place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable

from catalog_mirror.cancellation import CancellationToken, is_cancelled
from catalog_mirror.families import CatalogRecord, FamilyStrategy, RecordConversionError
from catalog_mirror.presence import PresenceIndex
from catalog_mirror.store import CatalogStore

log = logging.getLogger(__name__)

ProgressReporter = Callable[[int, int], None]
DiskSpaceReporter = Callable[[int | None], None]


class MergeStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    LOW_DISK_SPACE = "low_disk_space"


@dataclass
class MergeResult:
    added: int = 0
    updated: int = 0
    status: MergeStatus = MergeStatus.COMPLETED
    skipped: int = 0


def is_newer(incoming: datetime | None, stored: datetime | None) -> bool:
    """True when incoming strictly beats stored; a missing marker never wins."""
    if incoming is None:
        return False
    if stored is None:
        return True
    return incoming > stored


def is_low_disk_space(free_bytes: int | None, threshold: int | None) -> bool:
    if free_bytes is None or threshold is None:
        return False
    return free_bytes < threshold


def merge_records(
    records: Iterable[Any],
    presence: PresenceIndex,
    strategy: FamilyStrategy,
    store: CatalogStore,
    progress_reporter: ProgressReporter | None,
    checkpoint_interval: int,
    cancellation: CancellationToken | None = None,
    disk_space_threshold: int | None = None,
    convert: Callable[[Any], CatalogRecord] | None = None,
    disk_space_reporter: DiskSpaceReporter | None = None,
) -> MergeResult:
    """Merge records into storage for one family.

    ``records`` are CatalogRecord instances, or raw items when ``convert`` is
    given.  Items that fail conversion are logged and skipped.
    """
    if checkpoint_interval <= 0:
        raise ValueError("checkpoint_interval must be positive")

    family = strategy.family
    result = MergeResult()
    pending = 0

    def report() -> None:
        if progress_reporter is not None:
            progress_reporter(result.added, result.updated)

    for item in records:
        if is_cancelled(cancellation):
            log.info(
                "Merge into %s cancelled after %d added, %d updated",
                family.value, result.added, result.updated,
            )
            store.commit()
            report()
            result.status = MergeStatus.CANCELLED
            return result

        if convert is not None:
            try:
                record = convert(item)
            except (RecordConversionError, ValueError) as exc:
                result.skipped += 1
                log.warning("Skipping malformed %s record: %s", family.value, exc)
                continue
        else:
            record = item

        if record.remote_id not in presence:
            store.insert_record(family, record)
            presence.add(record.remote_id)
            result.added += 1
        else:
            stored = store.get_change_marker(family, record.remote_id)
            if is_newer(strategy.change_marker(record), stored):
                store.update_record(family, record)
                result.updated += 1

        pending += 1
        if pending >= checkpoint_interval:
            pending = 0
            store.commit()
            report()
            free_bytes = store.free_disk_space()
            if disk_space_reporter is not None:
                disk_space_reporter(free_bytes)
            if is_low_disk_space(free_bytes, disk_space_threshold):
                log.warning(
                    "Low disk space during merge into %s: %s bytes free, threshold %s",
                    family.value, free_bytes, disk_space_threshold,
                )
                result.status = MergeStatus.LOW_DISK_SPACE
                return result

    store.commit()
    report()
    log.debug(
        "Merge into %s completed: added=%d updated=%d skipped=%d",
        family.value, result.added, result.updated, result.skipped,
    )
    return result
