"""Sink adapters: where merged points go after a successful merge.

Every sink exposes `flush(points) -> dict` and reports one of
`success`, `partial_failure`, `failure` or `skipped`. Chunked sinks submit
each chunk independently; one failing chunk never stops the rest. Delivery is
at-least-once, so downstream stores dedup on the point timestamp.
"""

from __future__ import annotations

from pathlib import Path
import sqlite3
import sys
import time
from typing import Any

import requests

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from fear_greed_sync import (  # noqa: E402
    DEFAULT_TIMEOUT,
    SeriesStore,
    SyncError,
    log,
    to_row,
    upsert_rows,
    warn,
)

SINK_KINDS = ("file", "table", "http")
DEFAULT_TABLE_CHUNK_SIZE = 500
DEFAULT_RELAY_CHUNK_SIZE = 1000


def chunk_rows(rows: list[dict[str, Any]], chunk_size: int) -> list[list[dict[str, Any]]]:
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [rows[i : i + chunk_size] for i in range(0, len(rows), chunk_size)]


def flush_result(*, rows: int, chunks: int, failed_chunks: list[int]) -> dict[str, Any]:
    if chunks == 0:
        status = "skipped"
    elif not failed_chunks:
        status = "success"
    elif len(failed_chunks) == chunks:
        status = "failure"
    else:
        status = "partial_failure"
    return {
        "status": status,
        "rows": rows,
        "chunks": chunks,
        "failed_chunks": failed_chunks,
    }


class FileSink:
    """Rewrites the store's whole JSON document; incremental points are implied by the document."""

    kind = "file"

    def __init__(self, store: SeriesStore) -> None:
        self.store = store

    def flush(self, points: list[dict[str, Any]]) -> dict[str, Any]:
        try:
            self.store.save()
        except (OSError, TypeError, ValueError) as error:
            warn(f"[file] Failed to write {self.store.path}: {error}")
            return flush_result(rows=len(points), chunks=1, failed_chunks=[1])
        log(f"[file] Wrote {self.store.path} ({len(self.store.history())} points).")
        return flush_result(rows=len(points), chunks=1, failed_chunks=[])


class TableSink:
    """Upserts rows into the SQLite `fear_greed_points` table, one transaction per chunk."""

    kind = "table"

    def __init__(self, conn: sqlite3.Connection, *, chunk_size: int = DEFAULT_TABLE_CHUNK_SIZE) -> None:
        self.conn = conn
        self.chunk_size = chunk_size

    def write_chunk(self, rows: list[dict[str, Any]]) -> None:
        with self.conn:
            upsert_rows(self.conn, rows)

    def flush(self, points: list[dict[str, Any]]) -> dict[str, Any]:
        fetched_at = time.time()
        rows = [to_row(point, fetched_at) for point in points]
        chunks = chunk_rows(rows, self.chunk_size)
        failed: list[int] = []
        for idx, chunk in enumerate(chunks, start=1):
            try:
                self.write_chunk(chunk)
            except (sqlite3.Error, KeyError, TypeError, ValueError) as error:
                warn(f"[table] Chunk {idx}/{len(chunks)} failed: {error}")
                failed.append(idx)
                continue
            log(f"[table] Chunk {idx}/{len(chunks)} stored {len(chunk)} rows.")
        return flush_result(rows=len(rows), chunks=len(chunks), failed_chunks=failed)


class HttpRelaySink:
    """POSTs `{"rows": [...]}` chunks to the ingest endpoint of `web_app.py` (or a compatible relay)."""

    kind = "http"

    def __init__(
        self,
        session: requests.Session,
        url: str,
        *,
        chunk_size: int = DEFAULT_RELAY_CHUNK_SIZE,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.session = session
        self.url = url
        self.chunk_size = chunk_size
        self.timeout = timeout

    def post_chunk(self, rows: list[dict[str, Any]]) -> str | None:
        """Return an error description, or None when the relay accepted the chunk."""
        try:
            response = self.session.post(self.url, json={"rows": rows}, timeout=self.timeout)
        except requests.RequestException as error:
            return f"request failed: {error}"
        if not 200 <= response.status_code < 300:
            return f"HTTP {response.status_code}: {response.text[:200]}"
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict) and body.get("success") is False:
            return f"relay error: {body.get('error') or body}"
        return None

    def flush(self, points: list[dict[str, Any]]) -> dict[str, Any]:
        fetched_at = time.time()
        rows = [to_row(point, fetched_at) for point in points]
        chunks = chunk_rows(rows, self.chunk_size)
        failed: list[int] = []
        for idx, chunk in enumerate(chunks, start=1):
            error = self.post_chunk(chunk)
            if error:
                warn(f"[http] Chunk {idx}/{len(chunks)} failed: {error}")
                failed.append(idx)
                continue
            log(f"[http] Chunk {idx}/{len(chunks)} accepted ({len(chunk)} rows).")
        return flush_result(rows=len(rows), chunks=len(chunks), failed_chunks=failed)


def build_sink(
    kind: str,
    *,
    store: SeriesStore,
    conn: sqlite3.Connection | None = None,
    session: requests.Session | None = None,
    relay_url: str | None = None,
    chunk_size: int | None = None,
    timeout: float = DEFAULT_TIMEOUT,
):
    normalized = (kind or "").strip().lower()
    if normalized == "file":
        if not store.path:
            raise SyncError("File sink needs a state file path.")
        return FileSink(store)
    if normalized == "table":
        if conn is None:
            raise SyncError("Table sink needs an open data DB connection.")
        return TableSink(conn, chunk_size=chunk_size or DEFAULT_TABLE_CHUNK_SIZE)
    if normalized == "http":
        if not relay_url:
            raise SyncError("HTTP sink needs --relay-url (or FEAR_GREED_RELAY_URL).")
        return HttpRelaySink(
            session or requests.Session(),
            relay_url,
            chunk_size=chunk_size or DEFAULT_RELAY_CHUNK_SIZE,
            timeout=timeout,
        )
    allowed = ", ".join(SINK_KINDS)
    raise SyncError(f"Unknown sink '{kind}'. Use one of: {allowed}")
