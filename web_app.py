#!/usr/bin/env python3
"""Query/ingest API over the Fear & Greed points table.

The read endpoint mirrors the upstream graphdata response shape so existing
consumers of the third-party format can point at this service unchanged.
"""

from __future__ import annotations

import csv
import datetime as dt
import io
import json
import math
import os
from pathlib import Path
import sqlite3
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response

from fear_greed_sync import (
    BACKFILL_DONE_KEY,
    BACKFILL_YEAR_KEY,
    connect_data_db,
    init_data_db,
    insert_id_for,
    log,
    now_utc,
    round_half_up,
    upsert_rows,
)

DATA_DB_PATH = os.environ.get("FEAR_GREED_DB", "data/fear_greed.db")
DEFAULT_LIMIT = 365
MAX_LIMIT = 5000

app = FastAPI(
    title="Fear & Greed History API",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)


def _open_read_conn() -> sqlite3.Connection | None:
    path = Path(DATA_DB_PATH)
    if not path.exists():
        return None
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 2000;")
    return conn


def _open_write_conn() -> sqlite3.Connection:
    conn = connect_data_db(DATA_DB_PATH)
    init_data_db(conn)
    return conn


def _table_exists(conn: sqlite3.Connection, table_name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table_name,),
    ).fetchone()
    return row is not None


def _iso_from_seconds(timestamp: float) -> str:
    return dt.datetime.fromtimestamp(float(timestamp), dt.timezone.utc).isoformat()


def _serialize_point(row: sqlite3.Row) -> dict:
    score = float(row["score"])
    return {
        "x": int(round(float(row["timestamp"]) * 1000)),
        "y": score,
        "rating": row["rating"],
        "score": score,
    }


def _csv_response(filename: str, fieldnames: list[str], rows: list[dict]) -> Response:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=fieldnames, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return Response(
        content=buf.getvalue(),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _recent_rows(conn: sqlite3.Connection, limit: int) -> list[sqlite3.Row]:
    if not _table_exists(conn, "fear_greed_points"):
        return []
    return conn.execute(
        """
        SELECT timestamp, score, rating, fetched_at
        FROM fear_greed_points
        ORDER BY timestamp DESC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()


def build_history_payload(rows_desc: list[sqlite3.Row]) -> dict:
    """Shape newest-first rows like the upstream graphdata response (history ascending)."""
    if not rows_desc:
        return {"fear_and_greed": {}, "fear_and_greed_historical": {"data": []}}
    latest = rows_desc[0]
    score = float(latest["score"])
    return {
        "fear_and_greed": {
            "score": score,
            "rating": latest["rating"],
            "timestamp": _iso_from_seconds(latest["timestamp"]),
            # Not stored in the table.
            "previous_close": 0,
            "previous_1_year": 0,
        },
        "fear_and_greed_historical": {
            "timestamp": int(round(float(latest["timestamp"]) * 1000)),
            "score": score,
            "rating": latest["rating"],
            "data": [_serialize_point(row) for row in reversed(rows_desc)],
        },
    }


def normalize_ingest_row(raw: Any) -> dict | None:
    """Accept row shape (`timestamp` seconds) or document shape (`x` ms); None if unusable."""
    if not isinstance(raw, dict):
        return None
    if "timestamp" in raw:
        timestamp = raw.get("timestamp")
        score = raw.get("score")
    else:
        x = raw.get("x")
        timestamp = x / 1000 if isinstance(x, (int, float)) and not isinstance(x, bool) else None
        score = raw.get("score", raw.get("y"))
    for value in (timestamp, score):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            return None
    fetched_at = raw.get("fetched_at")
    if isinstance(fetched_at, bool) or not isinstance(fetched_at, (int, float)):
        fetched_at = None
    rating = raw.get("rating")
    return {
        "timestamp": float(timestamp),
        "score": float(score),
        "rating": str(rating) if rating is not None else None,
        "fetched_at": float(fetched_at) if fetched_at is not None else None,
    }


@app.get("/api/fear-greed")
def api_fear_greed(limit: int = DEFAULT_LIMIT):
    if limit < 1 or limit > MAX_LIMIT:
        raise HTTPException(status_code=400, detail=f"limit must be between 1 and {MAX_LIMIT}")

    conn = _open_read_conn()
    if conn is None:
        return build_history_payload([])
    with conn:
        rows = _recent_rows(conn, limit)
    return build_history_payload(rows)


@app.get("/api/fear-greed/latest")
def api_fear_greed_latest():
    conn = _open_read_conn()
    if conn is None:
        raise HTTPException(status_code=404, detail="Data DB not found.")
    with conn:
        rows = _recent_rows(conn, 1)
    if not rows:
        raise HTTPException(status_code=404, detail="No Fear & Greed points stored yet.")
    row = rows[0]
    return {
        "timestamp": float(row["timestamp"]),
        "timestamp_iso": _iso_from_seconds(row["timestamp"]),
        "score": float(row["score"]),
        "value": round_half_up(float(row["score"])),
        "rating": row["rating"],
        "fetched_at": row["fetched_at"],
        "generated_at": now_utc(),
    }


@app.post("/api/fear-greed/rows")
async def api_ingest_rows(request: Request):
    try:
        payload = await request.json()
    except (ValueError, UnicodeDecodeError) as error:
        raise HTTPException(status_code=400, detail="Request body must be JSON.") from error
    if not isinstance(payload, dict) or "rows" not in payload:
        raise HTTPException(status_code=400, detail="Invalid data format. Expected { rows: [] }")
    raw_rows = payload["rows"]
    if not isinstance(raw_rows, list):
        raise HTTPException(status_code=400, detail="Invalid data format. 'rows' must be a list.")

    rows = []
    skipped = 0
    for raw in raw_rows:
        row = normalize_ingest_row(raw)
        if row is None:
            skipped += 1
            continue
        rows.append(row)

    conn = _open_write_conn()
    try:
        with conn:
            written = upsert_rows(conn, rows)
    finally:
        conn.close()
    log(f"[ingest] Received {len(raw_rows)} rows, stored {written}, skipped {skipped}.")
    return {
        "success": True,
        "rows": written,
        "skipped": skipped,
        "message": f"Successfully inserted {written} rows.",
        "error": None,
    }


@app.get("/api/fear-greed/export/history.csv")
def export_history_csv():
    conn = _open_read_conn()
    if conn is None:
        raise HTTPException(status_code=404, detail="Data DB not found.")
    with conn:
        if not _table_exists(conn, "fear_greed_points"):
            raise HTTPException(status_code=404, detail="No Fear & Greed points stored yet.")
        rows = conn.execute(
            "SELECT timestamp, score, rating, fetched_at FROM fear_greed_points ORDER BY timestamp"
        ).fetchall()

    out_rows = [
        {
            "date": _iso_from_seconds(row["timestamp"])[:10],
            "timestamp": row["timestamp"],
            "score": row["score"],
            "rating": row["rating"],
            "insert_id": insert_id_for(row["timestamp"]),
            "fetched_at": row["fetched_at"],
        }
        for row in rows
    ]
    return _csv_response(
        "fear_greed_history.csv",
        ["date", "timestamp", "score", "rating", "insert_id", "fetched_at"],
        out_rows,
    )


@app.get("/api/sync/status")
def api_sync_status(limit: int = 20):
    if limit < 1 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    conn = _open_read_conn()
    if conn is None:
        raise HTTPException(status_code=404, detail="Data DB not found.")

    cursor: dict[str, Any] = {"year": None, "done": False}
    runs: list[dict] = []
    points = 0
    with conn:
        if _table_exists(conn, "pipeline_kv"):
            for row in conn.execute(
                "SELECT key, value FROM pipeline_kv WHERE key IN (?, ?)",
                (BACKFILL_YEAR_KEY, BACKFILL_DONE_KEY),
            ).fetchall():
                if row["key"] == BACKFILL_YEAR_KEY:
                    cursor["year"] = int(row["value"]) if row["value"].lstrip("-").isdigit() else None
                else:
                    cursor["done"] = row["value"] == "true"
        if _table_exists(conn, "sync_runs"):
            for row in conn.execute(
                """
                SELECT id, run_started_at, run_completed_at, step, status, details_json
                FROM sync_runs
                ORDER BY id DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall():
                try:
                    details = json.loads(row["details_json"]) if row["details_json"] else None
                except ValueError:
                    details = None
                runs.append(
                    {
                        "id": row["id"],
                        "run_started_at": row["run_started_at"],
                        "run_completed_at": row["run_completed_at"],
                        "step": row["step"],
                        "status": row["status"],
                        "details": details,
                    }
                )
        if _table_exists(conn, "fear_greed_points"):
            points = conn.execute("SELECT COUNT(*) AS n FROM fear_greed_points").fetchone()["n"]

    return {
        "backfill_cursor": cursor,
        "points": points,
        "runs": runs,
        "generated_at": now_utc(),
    }
