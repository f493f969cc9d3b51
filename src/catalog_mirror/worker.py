"""catalog_mirror.worker

Runs one ingestion operation at a time on a dedicated background thread so
the calling application never blocks.  Progress reaches the application
through whatever sink it passes in (usually a QueueProgressSink).
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable

from catalog_mirror.cancellation import CancellationToken
from catalog_mirror.ingest import CatalogIngestor
from catalog_mirror.progress import ProgressSink
from catalog_mirror.shared import IngestResult
from catalog_mirror.table_schemas import Family

log = logging.getLogger(__name__)


class WorkerBusyError(RuntimeError):
    """Raised when an operation is started while another is still running."""


class IngestionWorker:
    def __init__(self, ingestor: CatalogIngestor) -> None:
        self._ingestor = ingestor
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="catalog-ingest")
        self._lock = threading.Lock()
        self._future: Future[IngestResult] | None = None
        self._token: CancellationToken | None = None

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._future is not None and not self._future.done()

    def _submit(self, fn: Callable[[CancellationToken], IngestResult]) -> Future[IngestResult]:
        with self._lock:
            if self._future is not None and not self._future.done():
                raise WorkerBusyError("an ingestion operation is already running")
            token = CancellationToken()
            self._token = token
            self._future = self._executor.submit(fn, token)
            return self._future

    def start_import(
        self,
        path: str | Path,
        progress: ProgressSink | None = None,
        expected_family: Family | None = None,
    ) -> Future[IngestResult]:
        log.info("Queueing import of %s", path)
        return self._submit(
            lambda token: self._ingestor.import_dump(path, progress, token, expected_family)
        )

    def start_sync(
        self,
        family: Family,
        progress: ProgressSink | None = None,
    ) -> Future[IngestResult]:
        log.info("Queueing synchronization of %s", family.value)
        return self._submit(lambda token: self._ingestor.synchronize(family, progress, token))

    def cancel(self) -> bool:
        """Request cancellation of the running operation.  False if idle."""
        with self._lock:
            if self._future is None or self._future.done() or self._token is None:
                return False
            token = self._token
        token.cancel()
        return True

    def shutdown(self, cancel_running: bool = True) -> None:
        if cancel_running:
            self.cancel()
        self._executor.shutdown(wait=True)
