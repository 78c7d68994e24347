#!/usr/bin/env python3
"""Long-running Fear & Greed sync: realtime ticks plus historical backfill.

One process, one thread. Every tick fetches today's snapshot, merges it into
the store (main series and sub-indicators), overwrites the current snapshot
and flushes through the configured sink. Backfill either runs to completion
before the first tick (`startup`), advances one year after each tick
(`interleaved`), or is disabled (`off`). Each unit of work is isolated: a
failing tick or backfill step is logged and recorded, and the loop carries on.
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
    START_YEAR,
    SeriesStore,
    SyncError,
    build_session,
    extract_points,
    fetch_snapshot,
    log,
    now_utc,
    record_sync_run,
    warn,
)
from scripts._sinks import SINK_KINDS  # noqa: E402
from scripts.backfill_history import (  # noqa: E402
    backfill_step,
    effective_request_delay,
    open_sync_state,
    run_backfill,
)

BACKFILL_MODES = ("startup", "interleaved", "off")
DEFAULT_INTERVAL_SECONDS = 300


def run_unit(conn: sqlite3.Connection, step_name: str, fn: Callable[[], dict[str, Any]]) -> dict[str, Any]:
    """Run one scheduled unit of work; never raises."""
    run_started_at = now_utc()
    try:
        result = fn()
    except Exception as error:  # noqa: BLE001
        warn(f"[{step_name}] Unit failed: {error!r}")
        result = {"status": "error", "error": str(error)}
    try:
        record_sync_run(
            conn,
            run_started_at=run_started_at,
            step=step_name,
            status=result.get("status", "success"),
            details=result,
        )
    except sqlite3.Error as error:
        warn(f"[{step_name}] Could not record run: {error}")
    return result


def realtime_tick(
    session: requests.Session,
    store: SeriesStore,
    sink,
    *,
    today: dt.date,
    base_url: str = CNN_GRAPHDATA_URL,
    timeout: float = DEFAULT_TIMEOUT,
    min_refresh_seconds: float = 0,
    now: dt.datetime | None = None,
) -> dict[str, Any]:
    now = now or dt.datetime.now(dt.timezone.utc)
    if min_refresh_seconds > 0 and store.last_fetch_at is not None:
        age = (now - store.last_fetch_at).total_seconds()
        if age < min_refresh_seconds:
            return {"status": "skipped", "reason": f"last fetch {int(age)}s ago"}

    date_str = today.isoformat()
    log(f"[realtime] Updating for {date_str}.")
    snapshot = fetch_snapshot(session, date_str, base_url=base_url, timeout=timeout)
    if snapshot is None:
        return {"status": "fetch_failed", "date": date_str}

    points = extract_points(snapshot)
    added = store.merge_snapshot(snapshot)
    store.set_current(snapshot)
    store.last_fetch_at = now

    current = store.current or {}
    if current:
        log(f"[realtime] Current score {current.get('score')} ({current.get('rating')}).")
    total_added = sum(added.values())
    if total_added:
        log(f"[realtime] Added {total_added} new points.")

    # Flush on every successful fetch: intra-day revisions overwrite points without adding keys.
    flush = sink.flush(points)
    return {
        "status": "success",
        "date": date_str,
        "points": len(points),
        "added": added,
        "flush": flush,
    }


def today_in(timezone: dt.tzinfo) -> dt.date:
    return dt.datetime.now(timezone).date()


def run_daemon(
    conn: sqlite3.Connection,
    store: SeriesStore,
    sink,
    *,
    fetch_session: requests.Session,
    timezone: dt.tzinfo,
    interval: float = DEFAULT_INTERVAL_SECONDS,
    backfill_mode: str = "startup",
    start_year: int = START_YEAR,
    base_url: str = CNN_GRAPHDATA_URL,
    timeout: float = DEFAULT_TIMEOUT,
    request_delay: float = MIN_REQUEST_DELAY,
    min_refresh_seconds: float = 0,
    max_ticks: int = 0,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    if backfill_mode not in BACKFILL_MODES:
        raise SyncError(f"Invalid backfill mode '{backfill_mode}'. Use one of: {', '.join(BACKFILL_MODES)}")

    if backfill_mode == "startup":
        log("[backfill] Startup backfill triggered.")
        run_unit(
            conn,
            "backfill",
            lambda: run_backfill(
                conn,
                fetch_session,
                store,
                sink,
                start_year=start_year,
                current_year=today_in(timezone).year,
                base_url=base_url,
                timeout=timeout,
                request_delay=request_delay,
                sleep=sleep,
            ),
        )

    ticks = 0
    while True:
        run_unit(
            conn,
            "realtime",
            lambda: realtime_tick(
                fetch_session,
                store,
                sink,
                today=today_in(timezone),
                base_url=base_url,
                timeout=timeout,
                min_refresh_seconds=min_refresh_seconds,
            ),
        )
        if backfill_mode == "interleaved":
            run_unit(
                conn,
                "backfill_step",
                lambda: backfill_step(
                    conn,
                    fetch_session,
                    store,
                    sink,
                    start_year=start_year,
                    current_year=today_in(timezone).year,
                    base_url=base_url,
                    timeout=timeout,
                    request_delay=request_delay,
                    sleep=sleep,
                ),
            )
        ticks += 1
        if max_ticks > 0 and ticks >= max_ticks:
            log(f"Reached max-ticks={max_ticks}. Exiting.")
            return 0
        log(f"Next tick in {int(interval)}s.")
        sleep(interval)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Poll the Fear & Greed index and keep the merged history in sync.")
    parser.add_argument("--data-db", default=os.getenv("FEAR_GREED_DB", "data/fear_greed.db"))
    parser.add_argument("--state-file", default=os.getenv("FEAR_GREED_STATE_FILE", "data/fear_and_greed_historical.json"))
    parser.add_argument("--sink", choices=SINK_KINDS, default=os.getenv("FEAR_GREED_SINK", "file"))
    parser.add_argument("--relay-url", default=os.getenv("FEAR_GREED_RELAY_URL"))
    parser.add_argument("--chunk-size", type=int, default=int(os.getenv("FEAR_GREED_CHUNK_SIZE", "500")))
    parser.add_argument("--base-url", default=os.getenv("FEAR_GREED_BASE_URL", CNN_GRAPHDATA_URL))
    parser.add_argument("--timeout", type=float, default=float(os.getenv("FEAR_GREED_TIMEOUT", str(DEFAULT_TIMEOUT))))
    parser.add_argument(
        "--request-delay",
        type=float,
        default=float(os.getenv("FEAR_GREED_REQUEST_DELAY", str(MIN_REQUEST_DELAY))),
    )
    parser.add_argument("--allow-fast-requests", action="store_true", default=False)
    parser.add_argument("--start-year", type=int, default=int(os.getenv("FEAR_GREED_START_YEAR", str(START_YEAR))))
    parser.add_argument(
        "--interval",
        type=float,
        default=float(os.getenv("FEAR_GREED_INTERVAL", str(DEFAULT_INTERVAL_SECONDS))),
        help="Seconds between realtime ticks.",
    )
    parser.add_argument("--timezone", default=os.getenv("FEAR_GREED_TIMEZONE", "UTC"), help="Timezone defining 'today'.")
    parser.add_argument(
        "--backfill-mode",
        choices=BACKFILL_MODES,
        default=os.getenv("FEAR_GREED_BACKFILL_MODE", "startup"),
    )
    parser.add_argument(
        "--min-refresh-seconds",
        type=float,
        default=float(os.getenv("FEAR_GREED_MIN_REFRESH_SECONDS", "0")),
        help="Skip a tick when the last successful fetch is newer than this (0 = poll every tick).",
    )
    parser.add_argument("--max-ticks", type=int, default=int(os.getenv("FEAR_GREED_MAX_TICKS", "0")))
    return parser


def main() -> int:
    args = build_parser().parse_args()
    if args.interval <= 0:
        raise SystemExit("interval must be positive")

    try:
        conn, store, sink = open_sync_state(args)
    except SyncError as error:
        raise SystemExit(str(error)) from error

    log(f"Sync daemon started (sink={args.sink}, backfill={args.backfill_mode}, interval={int(args.interval)}s).")
    with conn:
        code = run_daemon(
            conn,
            store,
            sink,
            fetch_session=build_session(),
            timezone=ZoneInfo(args.timezone),
            interval=args.interval,
            backfill_mode=args.backfill_mode,
            start_year=args.start_year,
            base_url=args.base_url,
            timeout=args.timeout,
            request_delay=effective_request_delay(args),
            min_refresh_seconds=args.min_refresh_seconds,
            max_ticks=args.max_ticks,
        )
    print(json.dumps({"status": "stopped", "points": len(store.history())}, indent=2, sort_keys=True))
    return code


if __name__ == "__main__":
    raise SystemExit(main())
