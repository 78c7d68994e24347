#!/usr/bin/env python3
"""Year-by-year backfill of the Fear & Greed history.

The graphdata endpoint only returns a bounded window of history (roughly a
year or two before the requested date), so the full history since 2010 is
collected by walking backwards one year at a time:

- request `{year}-01-01`, falling back to `{year}-06-01` when that yields no
  points (the endpoint sometimes returns empty windows at year boundaries),
- merge whatever came back, flush through the configured sink,
- persist `year - 1` as the cursor, whether or not data was found and even
  when the merge or flush failed.

The cursor lives in `pipeline_kv` so a crash resumes at the last persisted
year. Once the year drops below the start year the cursor is marked done and
further steps are no-ops.
"""

from __future__ import annotations

import argparse
import datetime as dt
import json
import os
from pathlib import Path
import sqlite3
import sys
import time
from typing import Any, Callable
from zoneinfo import ZoneInfo

import requests

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from fear_greed_sync import (  # noqa: E402
    CNN_GRAPHDATA_URL,
    DEFAULT_TIMEOUT,
    MIN_REQUEST_DELAY,
    MAIN_SERIES_KEY,
    START_YEAR,
    SeriesStore,
    SyncError,
    build_session,
    connect_data_db,
    extract_points,
    fetch_snapshot,
    init_data_db,
    load_backfill_cursor,
    load_table_points,
    log,
    mark_backfill_done,
    now_utc,
    record_sync_run,
    save_backfill_year,
    warn,
)
from scripts._sinks import SINK_KINDS, build_sink  # noqa: E402

FALLBACK_MONTH_DAYS = ("01-01", "06-01")


def fetch_year_snapshot(
    session: requests.Session,
    year: int,
    *,
    base_url: str,
    timeout: float,
    request_delay: float,
    sleep: Callable[[float], None] = time.sleep,
) -> tuple[str | None, dict[str, Any] | None]:
    """Try each fallback date for `year`; return (date_used, snapshot) for the first with points."""
    for attempt, month_day in enumerate(FALLBACK_MONTH_DAYS):
        if attempt > 0 and request_delay > 0:
            sleep(request_delay)
        date_str = f"{year}-{month_day}"
        snapshot = fetch_snapshot(session, date_str, base_url=base_url, timeout=timeout)
        if snapshot is not None and extract_points(snapshot):
            return date_str, snapshot
    return None, None


def backfill_step(
    conn: sqlite3.Connection,
    session: requests.Session,
    store: SeriesStore,
    sink,
    *,
    start_year: int = START_YEAR,
    current_year: int | None = None,
    base_url: str = CNN_GRAPHDATA_URL,
    timeout: float = DEFAULT_TIMEOUT,
    request_delay: float = MIN_REQUEST_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    if current_year is None:
        current_year = dt.datetime.now(dt.timezone.utc).year
    cursor = load_backfill_cursor(conn, current_year=current_year)
    if cursor["done"]:
        return {"status": "done", "year": cursor["year"]}

    year = cursor["year"]
    if year < start_year:
        mark_backfill_done(conn)
        log(f"[backfill] Cursor reached {year} (< {start_year}); backfill complete.")
        return {"status": "done", "year": year}

    log(f"[backfill] Processing {year}.")
    date_used, snapshot = fetch_year_snapshot(
        session,
        year,
        base_url=base_url,
        timeout=timeout,
        request_delay=request_delay,
        sleep=sleep,
    )

    summary: dict[str, Any] = {
        "status": "no_data",
        "year": year,
        "date_used": date_used,
        "points": 0,
        "added": {},
        "flush": None,
    }
    try:
        if snapshot is not None:
            points = extract_points(snapshot)
            summary["points"] = len(points)
            added = store.merge_snapshot(snapshot)
            summary["added"] = added
            summary["status"] = "success"
            total_added = sum(added.values())
            log(f"[backfill] {year}: {len(points)} points from {date_used}, {total_added} new.")
            if total_added > 0:
                summary["flush"] = sink.flush(points)
        else:
            log(f"[backfill] {year}: no data available.")
    except Exception as error:  # noqa: BLE001
        warn(f"[backfill] {year}: merge/flush failed ({error!r}); moving on.")
        summary["status"] = "error"
        summary["error"] = str(error)

    save_backfill_year(conn, year - 1)
    summary["next_year"] = year - 1
    return summary


def run_backfill(
    conn: sqlite3.Connection,
    session: requests.Session,
    store: SeriesStore,
    sink,
    *,
    start_year: int = START_YEAR,
    current_year: int | None = None,
    base_url: str = CNN_GRAPHDATA_URL,
    timeout: float = DEFAULT_TIMEOUT,
    request_delay: float = MIN_REQUEST_DELAY,
    max_years: int = 0,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    """Step until the cursor is done (or `max_years` years were processed)."""
    summary: dict[str, Any] = {
        "started_at": now_utc(),
        "completed_at": None,
        "status": "success",
        "years": [],
    }
    processed = 0
    while True:
        if max_years > 0 and processed >= max_years:
            summary["status"] = "paused"
            break
        run_started_at = now_utc()
        try:
            step = backfill_step(
                conn,
                session,
                store,
                sink,
                start_year=start_year,
                current_year=current_year,
                base_url=base_url,
                timeout=timeout,
                request_delay=request_delay,
                sleep=sleep,
            )
        except Exception as error:  # noqa: BLE001
            # Cursor state is unavailable; stop instead of repeating the same year.
            warn(f"[backfill] Step failed: {error!r}")
            record_sync_run(
                conn,
                run_started_at=run_started_at,
                step="backfill_step",
                status="error",
                details={"error": str(error)},
            )
            summary["status"] = "error"
            summary["error"] = str(error)
            break
        if step["status"] == "done":
            break
        record_sync_run(conn, run_started_at=run_started_at, step="backfill_step", status=step["status"], details=step)
        summary["years"].append(step)
        processed += 1
        if request_delay > 0:
            sleep(request_delay)
    summary["completed_at"] = now_utc()
    summary["years_processed"] = processed
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Backfill Fear & Greed history year by year (resumable).")
    parser.add_argument("--data-db", default=os.getenv("FEAR_GREED_DB", "data/fear_greed.db"), help="SQLite state DB.")
    parser.add_argument(
        "--state-file",
        default=os.getenv("FEAR_GREED_STATE_FILE", "data/fear_and_greed_historical.json"),
        help="JSON document holding the merged series.",
    )
    parser.add_argument("--sink", choices=SINK_KINDS, default=os.getenv("FEAR_GREED_SINK", "file"))
    parser.add_argument("--relay-url", default=os.getenv("FEAR_GREED_RELAY_URL"), help="Ingest URL for --sink http.")
    parser.add_argument("--chunk-size", type=int, default=int(os.getenv("FEAR_GREED_CHUNK_SIZE", "500")))
    parser.add_argument("--base-url", default=os.getenv("FEAR_GREED_BASE_URL", CNN_GRAPHDATA_URL))
    parser.add_argument("--timeout", type=float, default=float(os.getenv("FEAR_GREED_TIMEOUT", str(DEFAULT_TIMEOUT))))
    parser.add_argument(
        "--request-delay",
        type=float,
        default=float(os.getenv("FEAR_GREED_REQUEST_DELAY", str(MIN_REQUEST_DELAY))),
        help="Delay between upstream requests in seconds.",
    )
    parser.add_argument(
        "--allow-fast-requests",
        action="store_true",
        default=False,
        help=f"Allow --request-delay below {MIN_REQUEST_DELAY}s (not recommended).",
    )
    parser.add_argument("--start-year", type=int, default=int(os.getenv("FEAR_GREED_START_YEAR", str(START_YEAR))))
    parser.add_argument(
        "--timezone",
        default=os.getenv("FEAR_GREED_TIMEZONE", "UTC"),
        help="Timezone defining the current year for a fresh cursor.",
    )
    parser.add_argument("--max-years", type=int, default=0, help="Stop after N years (0 = run to completion).")
    parser.add_argument(
        "--reset-cursor",
        action="store_true",
        default=False,
        help="Forget the persisted cursor and start again from the current year.",
    )
    return parser


def effective_request_delay(args: argparse.Namespace) -> float:
    if args.allow_fast_requests:
        return max(0.0, args.request_delay)
    return max(MIN_REQUEST_DELAY, args.request_delay)


def open_sync_state(args: argparse.Namespace):
    """Open the data DB, load the merge store and build the configured sink."""
    conn = connect_data_db(args.data_db)
    init_data_db(conn)
    store = SeriesStore.load(args.state_file)
    if args.sink == "table":
        store.merge(MAIN_SERIES_KEY, load_table_points(conn))
    sink = build_sink(
        args.sink,
        store=store,
        conn=conn,
        session=requests.Session(),
        relay_url=args.relay_url,
        chunk_size=args.chunk_size,
        timeout=args.timeout,
    )
    return conn, store, sink


def main() -> int:
    args = build_parser().parse_args()
    try:
        conn, store, sink = open_sync_state(args)
    except SyncError as error:
        raise SystemExit(str(error)) from error

    with conn:
        if args.reset_cursor:
            conn.execute("DELETE FROM pipeline_kv WHERE key IN ('backfill_year', 'backfill_done')")
            conn.commit()
            log("[backfill] Cursor reset.")
        summary = run_backfill(
            conn,
            build_session(),
            store,
            sink,
            start_year=args.start_year,
            current_year=dt.datetime.now(ZoneInfo(args.timezone)).year,
            base_url=args.base_url,
            timeout=args.timeout,
            request_delay=effective_request_delay(args),
            max_years=args.max_years,
        )
        record_sync_run(
            conn,
            run_started_at=summary["started_at"],
            step="backfill",
            status=summary["status"],
            details={"years_processed": summary["years_processed"]},
        )
    print(json.dumps(summary, indent=2, sort_keys=True, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
