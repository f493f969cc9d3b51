"""catalog_mirror.shared

Shared utilities used by the ingestor and the CLI: run counters, the
IngestResult returned by every operation, and report-writing support.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Terminal statuses
# ---------------------------------------------------------------------------

class IngestStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DATA_NOT_FOUND = "data_not_found"
    LOW_DISK_SPACE = "low_disk_space"
    CORRUPTED = "corrupted"
    ERROR = "error"


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    added: int = 0
    updated: int = 0
    # sync only
    downloaded: int = 0
    batches_fetched: int = 0
    # import only
    tables_found: int = 0
    tables_skipped: int = 0
    rows_skipped: int = 0
    families: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": self.added,
            "updated": self.updated,
            "downloaded": self.downloaded,
            "batches_fetched": self.batches_fetched,
            "tables_found": self.tables_found,
            "tables_skipped": self.tables_skipped,
            "rows_skipped": self.rows_skipped,
            "families": self.families,
            "warnings": self.warnings,
        }


@dataclass
class IngestResult:
    status: IngestStatus
    counters: RunCounters = field(default_factory=RunCounters)

    @property
    def added(self) -> int:
        return self.counters.added

    @property
    def updated(self) -> int:
        return self.counters.updated


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    status: str,
    source_paths: dict[str, str],
    counters: RunCounters,
    extra: dict[str, Any] | None = None,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": utc_now_iso(),
        "status": status,
        **source_paths,
        "counters": counters.to_dict(),
        **(extra or {}),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
