"""catalog_mirror.cli

Command line entrypoint for the catalog replica.

Modes (--mode):
  import_dump  import a .sql / .sql.gz / .zip dump file (default)
  synchronize  fetch and merge records newer than the local watermark
  stats        print per-family record counts and last update times
  create_db    apply migrations and write catalog metadata

Usage (import_dump):
    python -m catalog_mirror.cli \\
        --mode import_dump \\
        --db-dsn "$CATALOG_DB_DSN" \\
        --dump-path "dumps/libgen.sql.gz" \\
        --expected-family non_fiction

Usage (synchronize):
    python -m catalog_mirror.cli \\
        --mode synchronize \\
        --family non_fiction \\
        --settings-path config/catalog.yaml

The DSN may be passed with --db-dsn or read from the environment variable
named by --db-dsn-env.  A Ctrl-C during import or synchronize cancels the run
cleanly; records committed so far are kept.
"""

from __future__ import annotations

import concurrent.futures
import logging
import os
import sys
import uuid
from pathlib import Path
from typing import Any

import click
import psycopg

from catalog_mirror.ingest import CatalogIngestor
from catalog_mirror.progress import (
    CompletedProgress,
    IndexCreationProgress,
    TableDefinitionFoundProgress,
    WrongTableDefinitionProgress,
)
from catalog_mirror.settings import SettingsValidationError, load_settings
from catalog_mirror.shared import IngestStatus, RunCounters, utc_now_iso, write_run_report
from catalog_mirror.store import DatabaseStatus, create_catalog, open_catalog
from catalog_mirror.table_schemas import Family
from catalog_mirror.worker import IngestionWorker

log = logging.getLogger(__name__)

_FAMILY_CHOICES = [f.value for f in Family]


class _EchoProgress:
    """Progress sink echoing structural events to the operator."""

    def __init__(self, run_id: str) -> None:
        self._run_id = run_id

    def __call__(self, event: Any) -> None:
        if isinstance(event, TableDefinitionFoundProgress):
            click.echo(f"[{self._run_id}] Found {event.family.value} table definition")
        elif isinstance(event, WrongTableDefinitionProgress):
            click.echo(
                f"[{self._run_id}] Expected {event.expected.value} data, found {event.found.value}",
                err=True,
            )
        elif isinstance(event, IndexCreationProgress):
            click.echo(f"[{self._run_id}] Creating index on {event.family.value}.{event.column}")
        elif isinstance(event, CompletedProgress):
            click.echo(
                f"[{self._run_id}] Finished: status={event.status} "
                f"added={event.added} updated={event.updated}"
            )
        else:
            log.debug("progress: %r", event)


def _wait(worker: IngestionWorker, future: concurrent.futures.Future, run_id: str):
    while True:
        try:
            return future.result(timeout=0.5)
        except concurrent.futures.TimeoutError:
            continue
        except KeyboardInterrupt:
            click.echo(f"[{run_id}] Interrupted, cancelling...", err=True)
            worker.cancel()


@click.command()
@click.option(
    "--mode",
    default="import_dump",
    type=click.Choice(["import_dump", "synchronize", "stats", "create_db"]),
    show_default=True,
    help="Operation to run",
)
@click.option("--db-dsn", default=None, help="PostgreSQL DSN (falls back to --db-dsn-env)")
@click.option(
    "--db-dsn-env",
    default="CATALOG_DB_DSN",
    show_default=True,
    help="Env var name holding the PostgreSQL DSN",
)
@click.option("--settings-path", default=None, type=click.Path(), help="YAML settings file")
@click.option("--dump-path", default=None, type=click.Path(), help="[import_dump] Dump file to import")
@click.option(
    "--expected-family",
    default=None,
    type=click.Choice(_FAMILY_CHOICES),
    help="[import_dump] Fail if the dump holds a different family",
)
@click.option(
    "--family",
    default=None,
    type=click.Choice(_FAMILY_CHOICES),
    help="[synchronize] Family to synchronize",
)
@click.option(
    "--data-dir",
    default=None,
    type=click.Path(),
    help="Directory on the database volume used for free-space checks",
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str | None,
    db_dsn_env: str,
    settings_path: str | None,
    dump_path: str | None,
    expected_family: str | None,
    family: str | None,
    data_dir: str | None,
    run_id: str | None,
    log_level: str,
) -> None:
    """Catalog replica ingestion CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = utc_now_iso()
    click.echo(f"[{run_id}] Starting {mode} run")

    # DSN from env when not given; credentials stay off the command line
    dsn = db_dsn or os.environ.get(db_dsn_env, "")
    if not dsn:
        click.echo(f"[{run_id}] FATAL: pass --db-dsn or set {db_dsn_env}", err=True)
        sys.exit(1)

    try:
        settings = load_settings(Path(settings_path) if settings_path else None)
    except (SettingsValidationError, FileNotFoundError) as exc:
        click.echo(f"[{run_id}] FATAL: invalid settings: {exc}", err=True)
        sys.exit(1)

    if mode == "import_dump" and not dump_path:
        click.echo(f"[{run_id}] FATAL: --dump-path is required for import_dump", err=True)
        sys.exit(1)
    if mode == "synchronize" and not family:
        click.echo(f"[{run_id}] FATAL: --family is required for synchronize", err=True)
        sys.exit(1)

    if mode == "create_db":
        try:
            with psycopg.connect(dsn, autocommit=False) as conn:
                metadata = create_catalog(conn)
        except (psycopg.Error, FileNotFoundError) as exc:
            click.echo(f"[{run_id}] FATAL: cannot create catalog: {exc}", err=True)
            sys.exit(1)
        click.echo(f"[{run_id}] Catalog created (version {metadata.version})")
        write_run_report(run_id, started_at, mode, IngestStatus.COMPLETED.value, {}, RunCounters())
        return

    db_status, store = open_catalog(dsn, data_dir or settings.disk_space_path)
    if db_status is not DatabaseStatus.OPENED:
        hint = " (run --mode create_db first)" if db_status is DatabaseStatus.CORRUPTED else ""
        click.echo(f"[{run_id}] FATAL: catalog database {db_status.value}{hint}", err=True)
        sys.exit(1)

    try:
        ingestor = CatalogIngestor(store, settings)

        if mode == "stats":
            stats = ingestor.get_database_stats()
            counters = RunCounters()
            if stats is None:
                status = IngestStatus.CANCELLED
            else:
                status = IngestStatus.COMPLETED
                for s in stats:
                    last = s.last_updated.isoformat(sep=" ") if s.last_updated else "-"
                    click.echo(f"[{run_id}] {s.family.value}: {s.count} records, last update {last}")
            report_path = write_run_report(
                run_id, started_at, mode, status.value, {}, counters,
                extra={"stats": [
                    {"family": s.family.value, "count": s.count, "last_updated": s.last_updated}
                    for s in stats or []
                ]},
            )
        else:
            worker = IngestionWorker(ingestor)
            sink = _EchoProgress(run_id)
            try:
                if mode == "import_dump":
                    future = worker.start_import(
                        dump_path, sink, Family(expected_family) if expected_family else None
                    )
                    source_paths = {"dump_path": dump_path}
                else:
                    future = worker.start_sync(Family(family), sink)
                    source_paths = {"family": family}
                result = _wait(worker, future, run_id)
            finally:
                worker.shutdown()
            status = result.status
            counters = result.counters
            report_path = write_run_report(
                run_id, started_at, mode, status.value, source_paths, counters,
                extra={"counts": {f.value: n for f, n in ingestor.counts.items()}},
            )
    finally:
        store.conn.close()

    click.echo(f"[{run_id}] Report written to {report_path}")
    click.echo(
        f"[{run_id}] Done: status={status.value} added={counters.added} "
        f"updated={counters.updated} warnings={len(counters.warnings)}"
    )
    if status is not IngestStatus.COMPLETED:
        sys.exit(1)


if __name__ == "__main__":
    main()
