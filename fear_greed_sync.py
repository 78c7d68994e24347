#!/usr/bin/env python3
"""Shared core for the Fear & Greed history sync.

Holds the pieces every entry point needs:
- the upstream fetcher (CNN dataviz graphdata endpoint),
- payload -> point extraction,
- the timestamp-keyed merge store that owns the JSON document,
- the SQLite state DB (points table, backfill cursor, run records).
"""

from __future__ import annotations

import datetime as dt
import json
import math
import os
from pathlib import Path
import sqlite3
import tempfile
from typing import Any, Iterable

import requests

CNN_GRAPHDATA_URL = "https://production.dataviz.cnn.io/index/fearandgreed/graphdata"
START_YEAR = 2010
MIN_REQUEST_DELAY = 2.0
DEFAULT_TIMEOUT = 30.0

MAIN_SERIES_KEY = "fear_and_greed_historical"
CURRENT_KEY = "fear_and_greed"
SUB_INDICATOR_KEYS = (
    "market_momentum_sp500",
    "stock_price_strength",
    "stock_price_breadth",
    "put_call_options",
    "market_volatility_vix",
    "junk_bond_demand",
    "safe_haven_demand",
)
CURRENT_FIELDS = ("score", "rating", "timestamp", "previous_close", "previous_1_year")

# The endpoint answers 418/403 to anything that does not look like a browser.
BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Referer": "https://edition.cnn.com/",
    "Origin": "https://www.cnn.com",
    "Accept": "application/json,text/plain,*/*",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

DATA_SCHEMA = """
CREATE TABLE IF NOT EXISTS fear_greed_points (
    timestamp REAL PRIMARY KEY,
    score REAL NOT NULL,
    rating TEXT,
    fetched_at REAL,
    insert_id TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pipeline_kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_started_at TEXT NOT NULL,
    run_completed_at TEXT,
    step TEXT NOT NULL,
    status TEXT NOT NULL,
    details_json TEXT
);
"""

BACKFILL_YEAR_KEY = "backfill_year"
BACKFILL_DONE_KEY = "backfill_done"


class SyncError(Exception):
    """Raised for non-transient configuration failures."""


def now_utc() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def log(message: str) -> None:
    print(f"[{dt.datetime.now(dt.timezone.utc).isoformat()}] {message}", flush=True)


def warn(message: str) -> None:
    log(f"WARNING: {message}")


# --- SQLite state -----------------------------------------------------------


def ensure_parent_dir(path: str) -> None:
    Path(path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)


def connect_data_db(path: str) -> sqlite3.Connection:
    if path != ":memory:":
        ensure_parent_dir(path)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    return conn


def init_data_db(conn: sqlite3.Connection) -> None:
    conn.executescript(DATA_SCHEMA)
    conn.commit()


def kv_get(conn: sqlite3.Connection, key: str) -> str | None:
    row = conn.execute("SELECT value FROM pipeline_kv WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


def kv_set(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        """
        INSERT INTO pipeline_kv (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key)
        DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, value, now_utc()),
    )
    conn.commit()


def record_sync_run(
    conn: sqlite3.Connection,
    *,
    run_started_at: str,
    step: str,
    status: str,
    details: dict[str, Any],
) -> None:
    conn.execute(
        """
        INSERT INTO sync_runs (run_started_at, run_completed_at, step, status, details_json)
        VALUES (?, ?, ?, ?, ?)
        """,
        (run_started_at, now_utc(), step, status, json.dumps(details, sort_keys=True, default=str)),
    )
    conn.commit()


def load_backfill_cursor(conn: sqlite3.Connection, *, current_year: int) -> dict[str, Any]:
    """Return `{"year": int, "done": bool}`, defaulting to the current year on first run."""
    done = kv_get(conn, BACKFILL_DONE_KEY) == "true"
    raw_year = kv_get(conn, BACKFILL_YEAR_KEY)
    try:
        year = int(raw_year) if raw_year is not None else current_year
    except ValueError:
        warn(f"Ignoring unparseable backfill cursor {raw_year!r}; restarting at {current_year}.")
        year = current_year
    return {"year": year, "done": done}


def save_backfill_year(conn: sqlite3.Connection, year: int) -> None:
    kv_set(conn, BACKFILL_YEAR_KEY, str(year))


def mark_backfill_done(conn: sqlite3.Connection) -> None:
    kv_set(conn, BACKFILL_DONE_KEY, "true")


def upsert_rows(conn: sqlite3.Connection, rows: Iterable[dict[str, Any]]) -> int:
    """Write row-shape points into `fear_greed_points`; the caller owns the transaction."""
    written = 0
    for row in rows:
        timestamp = float(row["timestamp"])
        conn.execute(
            """
            INSERT INTO fear_greed_points (timestamp, score, rating, fetched_at, insert_id)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(timestamp)
            DO UPDATE SET
                score = excluded.score,
                rating = excluded.rating,
                fetched_at = excluded.fetched_at
            """,
            (timestamp, float(row["score"]), row.get("rating"), row.get("fetched_at"), insert_id_for(timestamp)),
        )
        written += 1
    return written


def load_table_points(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT timestamp, score, rating FROM fear_greed_points ORDER BY timestamp"
    ).fetchall()
    return [from_row(dict(row)) for row in rows]


def insert_id_for(timestamp: float) -> str:
    # Daily granularity makes the timestamp a good-enough dedup key downstream.
    return str(int(timestamp)) if float(timestamp).is_integer() else repr(float(timestamp))


# --- Fetcher ----------------------------------------------------------------


def build_session(headers: dict[str, str] | None = None) -> requests.Session:
    session = requests.Session()
    session.headers.update(headers or BROWSER_HEADERS)
    return session


def fetch_snapshot(
    session: requests.Session,
    date_str: str,
    *,
    base_url: str = CNN_GRAPHDATA_URL,
    timeout: float = DEFAULT_TIMEOUT,
) -> dict[str, Any] | None:
    url = f"{base_url.rstrip('/')}/{date_str}"
    log(f"GET {url}")
    try:
        response = session.get(url, timeout=timeout)
    except requests.RequestException as error:
        warn(f"Request failed for {date_str}: {error}")
        return None
    if response.status_code != 200:
        # 404/500 are normal for dates before the provider's history starts.
        warn(f"HTTP {response.status_code} for {url}")
        return None
    try:
        payload = response.json()
    except ValueError:
        warn(f"Non-JSON body for {url}")
        return None
    if not isinstance(payload, dict):
        warn(f"Unexpected payload type {type(payload).__name__} for {url}")
        return None
    return payload


# --- Point extraction -------------------------------------------------------


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    number = float(value)
    if not math.isfinite(number):
        return None
    return number


def extract_points(snapshot: Any, key: str = MAIN_SERIES_KEY) -> list[dict[str, Any]]:
    if not isinstance(snapshot, dict):
        return []
    block = snapshot.get(key)
    if not isinstance(block, dict):
        return []
    raw_points = block.get("data")
    if not isinstance(raw_points, list):
        return []

    points: list[dict[str, Any]] = []
    for raw in raw_points:
        if not isinstance(raw, dict):
            continue
        x = _as_number(raw.get("x"))
        y = _as_number(raw.get("y"))
        if x is None or y is None:
            continue
        points.append(
            {
                "x": int(x),
                "y": round_half_up(y),
                "rating": raw.get("rating"),
                "score": y,
            }
        )
    return points


def extract_sub_indicator_points(snapshot: Any) -> dict[str, list[dict[str, Any]]]:
    return {key: extract_points(snapshot, key) for key in SUB_INDICATOR_KEYS}


def extract_current(snapshot: Any) -> dict[str, Any] | None:
    if not isinstance(snapshot, dict):
        return None
    block = snapshot.get(CURRENT_KEY)
    if not isinstance(block, dict):
        return None
    return {field: block.get(field) for field in CURRENT_FIELDS}


def extract_sub_indicator_summary(snapshot: Any, key: str) -> dict[str, Any] | None:
    if not isinstance(snapshot, dict):
        return None
    block = snapshot.get(key)
    if not isinstance(block, dict):
        return None
    return {
        "score": block.get("score"),
        "rating": block.get("rating"),
        "timestamp": block.get("timestamp"),
    }


def to_row(point: dict[str, Any], fetched_at: float | None = None) -> dict[str, Any]:
    """Document shape (`x` in ms) -> table/relay row shape (`timestamp` in seconds)."""
    return {
        "timestamp": point["x"] / 1000,
        "score": float(point.get("score", point["y"])),
        "rating": point.get("rating"),
        "fetched_at": fetched_at,
    }


def from_row(row: dict[str, Any]) -> dict[str, Any]:
    score = float(row["score"])
    return {
        "x": int(round(float(row["timestamp"]) * 1000)),
        "y": round_half_up(score),
        "rating": row.get("rating"),
        "score": score,
    }


# --- Merge store ------------------------------------------------------------


def upsert_points(series: list[dict[str, Any]], new_points: Iterable[dict[str, Any]]) -> int:
    """Merge `new_points` into `series` keyed by `x`; return how many keys were new.

    Existing keys are overwritten in place (last write wins). The series is
    re-sorted only when at least one new key was added; pure updates keep the
    existing order.
    """
    index = {point["x"]: position for position, point in enumerate(series)}
    added = 0
    for point in new_points:
        key = point["x"]
        position = index.get(key)
        if position is None:
            index[key] = len(series)
            series.append(point)
            added += 1
        else:
            series[position] = point
    if added > 0:
        series.sort(key=lambda p: p["x"])
    return added


def empty_document() -> dict[str, Any]:
    return {MAIN_SERIES_KEY: {"data": []}}


class SeriesStore:
    """Single owner of the historical document (main series, sub-indicators, current snapshot)."""

    def __init__(self, document: dict[str, Any] | None = None, *, path: str | None = None) -> None:
        self.document = document if document is not None else empty_document()
        self.path = path
        self.last_fetch_at: dt.datetime | None = None
        self._normalize()

    @classmethod
    def load(cls, path: str) -> "SeriesStore":
        file_path = Path(path)
        try:
            document = json.loads(file_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            log(f"State file {path} not found; starting with an empty series.")
            document = None
        except (OSError, ValueError) as error:
            warn(f"State file {path} unreadable ({error}); starting with an empty series.")
            document = None
        if document is not None and not isinstance(document, dict):
            warn(f"State file {path} is not a JSON object; starting with an empty series.")
            document = None
        return cls(document, path=path)

    def _normalize(self) -> None:
        for key in (MAIN_SERIES_KEY, *SUB_INDICATOR_KEYS):
            block = self.document.get(key)
            if block is None and key != MAIN_SERIES_KEY:
                continue
            if not isinstance(block, dict):
                block = {}
                self.document[key] = block
            data = block.get("data")
            if not isinstance(data, list):
                block["data"] = []
                continue
            valid = [p for p in data if isinstance(p, dict) and _as_number(p.get("x")) is not None]
            if len(valid) != len(data):
                warn(f"Dropped {len(data) - len(valid)} malformed points from {key}.")
                block["data"] = valid

    def history(self, key: str = MAIN_SERIES_KEY) -> list[dict[str, Any]]:
        block = self.document.setdefault(key, {"data": []})
        return block.setdefault("data", [])

    def merge(self, key: str, points: list[dict[str, Any]]) -> int:
        if not points:
            return 0
        return upsert_points(self.history(key), points)

    def merge_snapshot(self, snapshot: dict[str, Any]) -> dict[str, int]:
        """Merge the main series and every sub-indicator series from one snapshot."""
        added = {MAIN_SERIES_KEY: self.merge(MAIN_SERIES_KEY, extract_points(snapshot))}
        for key, points in extract_sub_indicator_points(snapshot).items():
            if points:
                added[key] = self.merge(key, points)
        return added

    def set_current(self, snapshot: dict[str, Any]) -> bool:
        updated = False
        current = extract_current(snapshot)
        if current is not None:
            self.document[CURRENT_KEY] = current
            updated = True
        for key in SUB_INDICATOR_KEYS:
            summary = extract_sub_indicator_summary(snapshot, key)
            if summary is None:
                continue
            block = self.document.setdefault(key, {"data": []})
            block.update(summary)
            updated = True
        return updated

    @property
    def current(self) -> dict[str, Any] | None:
        return self.document.get(CURRENT_KEY)

    def save(self, path: str | None = None) -> None:
        target = path or self.path
        if not target:
            raise SyncError("SeriesStore has no path to save to.")
        ensure_parent_dir(target)
        directory = str(Path(target).expanduser().resolve().parent)
        fd, tmp_path = tempfile.mkstemp(prefix=".fear_greed.", suffix=".json.tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(self.document, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
