"""catalog_mirror.delta_client

Paginated client for the remote JSON delta API.

Each request asks for records modified after the current watermark cursor:

    GET <url>?fields=*&mode=newer&timenewer=<ts>&idnewer=<id>&limit1=<n>

The response body is a JSON array of objects keyed by upstream column names.
Items are re-sorted by (change marker, remote id) and anything not strictly
after the cursor is dropped, so batches are always ordered and the cursor
only moves forward.  An empty batch means the remote side is exhausted.

While waiting for response headers, cancel() releases the caller at once.
The body is then streamed in chunks.  Cancellation is checked between
chunks, and a callback registered on the token closes the response so that
a read blocked on the socket returns promptly.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import requests

from catalog_mirror.cancellation import CancellationToken, is_cancelled
from catalog_mirror.families import CatalogRecord, FamilyStrategy, RecordConversionError
from catalog_mirror.normalize import format_ts

log = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class DeltaFetchError(Exception):
    """Raised on a transport, HTTP status, or JSON decoding failure."""


class DeltaCancelledError(Exception):
    """Raised when cancellation interrupts a request or a body read."""


# ---------------------------------------------------------------------------
# Cursor
# ---------------------------------------------------------------------------

@dataclass(frozen=True, order=True)
class WatermarkCursor:
    last_modified_at: datetime
    remote_id: int

    @classmethod
    def from_record(cls, strategy: FamilyStrategy, record: CatalogRecord) -> "WatermarkCursor":
        marker = strategy.change_marker(record)
        if marker is None:
            raise ValueError(f"record {record.remote_id} has no {strategy.watermark_column}")
        return cls(marker, record.remote_id)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class DeltaClient:
    """Fetch ordered batches of records newer than an advancing cursor."""

    def __init__(
        self,
        session: requests.Session,
        url: str,
        strategy: FamilyStrategy,
        cursor: WatermarkCursor,
        batch_size: int = 1000,
        timeout: float = 30.0,
    ) -> None:
        self._session = session
        self._url = url
        self._strategy = strategy
        self._cursor = cursor
        self._batch_size = batch_size
        self._timeout = timeout
        self.downloaded = 0
        self.skipped = 0

    @property
    def cursor(self) -> WatermarkCursor:
        return self._cursor

    def _params(self) -> dict[str, str]:
        return {
            "fields": "*",
            "mode": "newer",
            "timenewer": format_ts(self._cursor.last_modified_at),
            "idnewer": str(self._cursor.remote_id),
            "limit1": str(self._batch_size),
        }

    def fetch_next_batch(self, cancellation: CancellationToken | None = None) -> list[CatalogRecord]:
        """Return the next ordered batch; an empty list means exhaustion.

        Raises:
            DeltaCancelledError: If cancellation was requested before or
                during the request.
            DeltaFetchError: On any transport, HTTP, or decoding failure.
        """
        if is_cancelled(cancellation):
            raise DeltaCancelledError("cancelled before request")

        items = self._request(cancellation)
        records = self._to_records(items)
        self.downloaded += len(records)
        if records:
            self._cursor = WatermarkCursor.from_record(self._strategy, records[-1])
            log.debug(
                "Fetched %d %s records, cursor now %s",
                len(records), self._strategy.family.value, self._cursor,
            )
        return records

    def _get(self) -> requests.Response:
        return self._session.get(
            self._url, params=self._params(), timeout=self._timeout, stream=True
        )

    def _get_cancellable(self, cancellation: CancellationToken) -> requests.Response:
        """Run the GET on a helper thread and stop waiting as soon as cancel() fires.

        A request abandoned this way finishes (or times out) in the
        background and its response is closed unread.
        """
        done = threading.Event()
        lock = threading.Lock()
        outcome: dict[str, Any] = {}

        def run() -> None:
            try:
                resp = self._get()
            except Exception as exc:  # noqa: BLE001
                outcome["error"] = exc
            else:
                with lock:
                    if outcome.get("abandoned"):
                        resp.close()
                    else:
                        outcome["response"] = resp
            finally:
                done.set()

        cancellation.add_callback(done.set)
        try:
            threading.Thread(target=run, name="delta-request", daemon=True).start()
            done.wait()
        finally:
            cancellation.remove_callback(done.set)

        with lock:
            if "response" not in outcome and "error" not in outcome:
                outcome["abandoned"] = True
                raise DeltaCancelledError("cancelled while waiting for response")
        if "error" in outcome:
            raise outcome["error"]
        return outcome["response"]

    def _request(self, cancellation: CancellationToken | None) -> list[Any]:
        try:
            if cancellation is None:
                resp = self._get()
            else:
                resp = self._get_cancellable(cancellation)
        except requests.RequestException as exc:
            if is_cancelled(cancellation):
                raise DeltaCancelledError("cancelled during request") from exc
            raise DeltaFetchError(f"request to {self._url} failed: {exc}") from exc

        if cancellation is not None:
            cancellation.add_callback(resp.close)
        try:
            resp.raise_for_status()
            body = self._read_body(resp, cancellation)
        except DeltaCancelledError:
            raise
        except Exception as exc:
            if is_cancelled(cancellation):
                raise DeltaCancelledError("cancelled while reading response") from exc
            if isinstance(exc, (requests.RequestException, OSError, ValueError)):
                raise DeltaFetchError(f"reading {self._url} failed: {exc}") from exc
            raise
        finally:
            if cancellation is not None:
                cancellation.remove_callback(resp.close)
            resp.close()

        try:
            items = json.loads(body)
        except ValueError as exc:
            raise DeltaFetchError(f"invalid JSON from {self._url}: {exc}") from exc
        if not isinstance(items, list):
            raise DeltaFetchError(f"expected a JSON array from {self._url}, got {type(items).__name__}")
        return items

    @staticmethod
    def _read_body(resp: requests.Response, cancellation: CancellationToken | None) -> bytes:
        chunks: list[bytes] = []
        for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
            if is_cancelled(cancellation):
                raise DeltaCancelledError("cancelled while reading response")
            chunks.append(chunk)
        # a response closed by cancel() can end the iteration early
        if is_cancelled(cancellation):
            raise DeltaCancelledError("cancelled while reading response")
        return b"".join(chunks)

    def _to_records(self, items: list[Any]) -> list[CatalogRecord]:
        keyed: list[tuple[datetime, int, CatalogRecord]] = []
        for item in items:
            if not isinstance(item, dict):
                self.skipped += 1
                log.warning("Skipping non-object delta item: %r", item)
                continue
            try:
                record = self._strategy.from_api_item(item)
            except (RecordConversionError, ValueError) as exc:
                self.skipped += 1
                log.warning("Skipping malformed delta item: %s", exc)
                continue
            marker = self._strategy.change_marker(record)
            if marker is None:
                self.skipped += 1
                log.warning("Skipping delta item %d without %s", record.remote_id, self._strategy.watermark_column)
                continue
            if WatermarkCursor(marker, record.remote_id) <= self._cursor:
                continue
            keyed.append((marker, record.remote_id, record))
        keyed.sort(key=lambda k: (k[0], k[1]))
        return [record for _, _, record in keyed]
