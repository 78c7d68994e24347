import os
import tempfile
import unittest
from unittest import mock

from fastapi.testclient import TestClient


class WebAppTestCase(unittest.TestCase):
    def setUp(self) -> None:
        import web_app

        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self._tmp.name, "fear_greed.db")
        patcher = mock.patch.object(web_app, "DATA_DB_PATH", self.db_path)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(self._tmp.cleanup)
        self.client = TestClient(web_app.app)


class TestIngestEndpoint(WebAppTestCase):
    def test_rejects_malformed_bodies(self) -> None:
        bad_requests = [
            {"content": b"not json", "headers": {"content-type": "application/json"}},
            {"json": {"data": []}},
            {"json": {"rows": {"timestamp": 1}}},
            {"json": {"rows": "1,2,3"}},
            {"json": [1, 2, 3]},
        ]
        for kwargs in bad_requests:
            with self.subTest(kwargs=kwargs):
                response = self.client.post("/api/fear-greed/rows", **kwargs)
                self.assertEqual(response.status_code, 400)

    def test_ingest_then_query_upstream_shape(self) -> None:
        rows = [
            {"timestamp": 1700000000, "score": 72.3, "rating": "Greed", "fetched_at": 1700000100},
            {"timestamp": 1699913600, "score": 60, "rating": "Greed"},
            {"x": 1699827200000, "y": 55.5, "rating": "Neutral"},
            {"oops": True},
        ]
        response = self.client.post("/api/fear-greed/rows", json={"rows": rows})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["rows"], 3)
        self.assertEqual(body["skipped"], 1)

        payload = self.client.get("/api/fear-greed", params={"limit": 2}).json()
        history = payload["fear_and_greed_historical"]["data"]
        self.assertEqual([p["x"] for p in history], [1699913600000, 1700000000000])
        self.assertEqual(history[-1]["score"], 72.3)
        self.assertEqual(payload["fear_and_greed"]["score"], 72.3)
        self.assertEqual(payload["fear_and_greed"]["rating"], "Greed")
        self.assertTrue(payload["fear_and_greed"]["timestamp"].startswith("2023-11-14T22:13:20"))

    def test_resubmitted_rows_are_deduplicated(self) -> None:
        rows = [{"timestamp": 1700000000, "score": 40, "rating": "Fear"}]
        self.client.post("/api/fear-greed/rows", json={"rows": rows})
        rows[0]["score"] = 60
        self.client.post("/api/fear-greed/rows", json={"rows": rows})

        payload = self.client.get("/api/fear-greed").json()
        history = payload["fear_and_greed_historical"]["data"]
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["y"], 60)

        status = self.client.get("/api/sync/status").json()
        self.assertEqual(status["points"], 1)


class TestQueryEndpoints(WebAppTestCase):
    def test_empty_store_returns_empty_structure(self) -> None:
        payload = self.client.get("/api/fear-greed").json()

        self.assertEqual(payload, {"fear_and_greed": {}, "fear_and_greed_historical": {"data": []}})

    def test_limit_validation(self) -> None:
        self.assertEqual(self.client.get("/api/fear-greed", params={"limit": 0}).status_code, 400)
        self.assertEqual(self.client.get("/api/fear-greed", params={"limit": 5001}).status_code, 400)

    def test_latest_and_csv_export(self) -> None:
        self.assertEqual(self.client.get("/api/fear-greed/latest").status_code, 404)

        self.client.post(
            "/api/fear-greed/rows",
            json={"rows": [{"timestamp": 1700000000, "score": 72.5, "rating": "Greed"}]},
        )
        latest = self.client.get("/api/fear-greed/latest").json()
        self.assertEqual(latest["value"], 73)
        self.assertEqual(latest["rating"], "Greed")

        export = self.client.get("/api/fear-greed/export/history.csv")
        self.assertEqual(export.status_code, 200)
        lines = export.text.strip().splitlines()
        self.assertEqual(lines[0], "date,timestamp,score,rating,insert_id,fetched_at")
        self.assertTrue(lines[1].startswith("2023-11-14,"))

    def test_status_reports_backfill_cursor(self) -> None:
        from fear_greed_sync import connect_data_db, init_data_db, record_sync_run, save_backfill_year

        conn = connect_data_db(self.db_path)
        init_data_db(conn)
        save_backfill_year(conn, 2015)
        record_sync_run(conn, run_started_at="2026-01-20T00:00:00Z", step="backfill_step", status="success", details={"year": 2016})
        conn.close()

        status = self.client.get("/api/sync/status").json()

        self.assertEqual(status["backfill_cursor"], {"year": 2015, "done": False})
        self.assertEqual(status["runs"][0]["step"], "backfill_step")
        self.assertEqual(status["runs"][0]["details"], {"year": 2016})


if __name__ == "__main__":
    unittest.main()
