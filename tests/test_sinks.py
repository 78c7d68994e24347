import io
import json
import os
import sqlite3
import tempfile
import unittest
from contextlib import redirect_stdout

import requests


def _points(n: int, start: int = 1_600_000_000_000) -> list[dict]:
    return [{"x": start + i * 86_400_000, "y": 50, "rating": "neutral", "score": 50.0} for i in range(n)]


class FakeResponse:
    def __init__(self, status_code: int, payload=None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload)

    def json(self):
        return self._payload


class RelaySession:
    def __init__(self, fail_calls: set[int] | None = None, raise_calls: set[int] | None = None) -> None:
        self.fail_calls = fail_calls or set()
        self.raise_calls = raise_calls or set()
        self.posts: list[dict] = []

    def post(self, url, json=None, timeout=None):
        self.posts.append(json)
        call = len(self.posts)
        if call in self.raise_calls:
            raise requests.ConnectionError("relay unreachable")
        if call in self.fail_calls:
            return FakeResponse(500, {"success": False, "error": "quota"})
        return FakeResponse(200, {"success": True, "message": "ok"})


class TestChunkRows(unittest.TestCase):
    def test_fixed_size_chunks(self) -> None:
        from scripts._sinks import chunk_rows

        rows = list(range(1200))
        chunks = chunk_rows(rows, 500)

        self.assertEqual([len(c) for c in chunks], [500, 500, 200])
        self.assertEqual([r for c in chunks for r in c], rows)

    def test_empty_and_invalid(self) -> None:
        from scripts._sinks import chunk_rows

        self.assertEqual(chunk_rows([], 500), [])
        with self.assertRaises(ValueError):
            chunk_rows([1], 0)


class TestHttpRelaySink(unittest.TestCase):
    def test_failed_chunk_does_not_abort_remaining(self) -> None:
        from scripts._sinks import HttpRelaySink

        session = RelaySession(fail_calls={2})
        sink = HttpRelaySink(session, "https://relay.test/ingest", chunk_size=500)

        with redirect_stdout(io.StringIO()):
            result = sink.flush(_points(1200))

        self.assertEqual(len(session.posts), 3)
        self.assertEqual([len(body["rows"]) for body in session.posts], [500, 500, 200])
        self.assertEqual(result["status"], "partial_failure")
        self.assertEqual(result["failed_chunks"], [2])

    def test_transport_error_scoped_to_chunk(self) -> None:
        from scripts._sinks import HttpRelaySink

        session = RelaySession(raise_calls={1})
        sink = HttpRelaySink(session, "https://relay.test/ingest", chunk_size=2)

        with redirect_stdout(io.StringIO()):
            result = sink.flush(_points(3))

        self.assertEqual(len(session.posts), 2)
        self.assertEqual(result["failed_chunks"], [1])

    def test_rows_use_epoch_seconds(self) -> None:
        from scripts._sinks import HttpRelaySink

        session = RelaySession()
        with redirect_stdout(io.StringIO()):
            result = HttpRelaySink(session, "https://relay.test/ingest").flush(_points(1, start=1_700_000_000_000))

        row = session.posts[0]["rows"][0]
        self.assertEqual(row["timestamp"], 1_700_000_000)
        self.assertEqual(row["score"], 50.0)
        self.assertIsNotNone(row["fetched_at"])
        self.assertEqual(result["status"], "success")

    def test_empty_flush_is_skipped(self) -> None:
        from scripts._sinks import HttpRelaySink

        session = RelaySession()
        result = HttpRelaySink(session, "https://relay.test/ingest").flush([])

        self.assertEqual(result["status"], "skipped")
        self.assertEqual(session.posts, [])


class TestTableSink(unittest.TestCase):
    def setUp(self) -> None:
        from fear_greed_sync import connect_data_db, init_data_db

        self.conn = connect_data_db(":memory:")
        init_data_db(self.conn)

    def tearDown(self) -> None:
        self.conn.close()

    def count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) AS n FROM fear_greed_points").fetchone()["n"]

    def test_resubmission_dedups_on_timestamp(self) -> None:
        from scripts._sinks import TableSink

        sink = TableSink(self.conn, chunk_size=2)
        points = _points(5)
        with redirect_stdout(io.StringIO()):
            sink.flush(points)
            points[0] = dict(points[0], score=77.0)
            result = sink.flush(points)

        self.assertEqual(result["status"], "success")
        self.assertEqual(result["chunks"], 3)
        self.assertEqual(self.count(), 5)
        row = self.conn.execute("SELECT score, insert_id FROM fear_greed_points ORDER BY timestamp LIMIT 1").fetchone()
        self.assertEqual(row["score"], 77.0)
        self.assertEqual(row["insert_id"], "1600000000")

    def test_failing_chunk_rolls_back_only_itself(self) -> None:
        from scripts._sinks import TableSink

        class Flaky(TableSink):
            calls = 0

            def write_chunk(self, rows):
                Flaky.calls += 1
                if Flaky.calls == 2:
                    raise sqlite3.OperationalError("database is locked")
                super().write_chunk(rows)

        with redirect_stdout(io.StringIO()):
            result = Flaky(self.conn, chunk_size=2).flush(_points(5))

        self.assertEqual(result["status"], "partial_failure")
        self.assertEqual(result["failed_chunks"], [2])
        self.assertEqual(self.count(), 3)


class TestFileSink(unittest.TestCase):
    def test_writes_whole_document(self) -> None:
        from fear_greed_sync import SeriesStore
        from scripts._sinks import FileSink

        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "nested", "history.json")
            store = SeriesStore(path=path)
            store.merge("fear_and_greed_historical", _points(3))

            with redirect_stdout(io.StringIO()):
                result = FileSink(store).flush(_points(3))

            self.assertEqual(result["status"], "success")
            with open(path, encoding="utf-8") as handle:
                document = json.load(handle)
            self.assertEqual(len(document["fear_and_greed_historical"]["data"]), 3)
            self.assertEqual(os.listdir(os.path.dirname(path)), ["history.json"])

    def test_write_failure_is_reported(self) -> None:
        from fear_greed_sync import SeriesStore
        from scripts._sinks import FileSink

        with tempfile.TemporaryDirectory() as tmp:
            blocker = os.path.join(tmp, "not_a_dir")
            with open(blocker, "w", encoding="utf-8") as handle:
                handle.write("x")
            store = SeriesStore(path=os.path.join(blocker, "history.json"))

            with redirect_stdout(io.StringIO()):
                result = FileSink(store).flush(_points(1))

        self.assertEqual(result["status"], "failure")


class TestBuildSink(unittest.TestCase):
    def test_configuration_errors(self) -> None:
        from fear_greed_sync import SeriesStore, SyncError
        from scripts._sinks import FileSink, build_sink

        with self.assertRaises(SyncError):
            build_sink("http", store=SeriesStore(), relay_url=None)
        with self.assertRaises(SyncError):
            build_sink("file", store=SeriesStore())
        with self.assertRaises(SyncError):
            build_sink("table", store=SeriesStore())
        with self.assertRaises(SyncError):
            build_sink("bigquery", store=SeriesStore(path="x.json"))

        self.assertIsInstance(build_sink("FILE", store=SeriesStore(path="x.json")), FileSink)


if __name__ == "__main__":
    unittest.main()
