import io
import unittest
from contextlib import redirect_stdout

import requests

_INVALID_JSON = object()


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = ""

    def json(self):
        if self._payload is _INVALID_JSON:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.calls: list[tuple[str, float | None]] = []

    def get(self, url, timeout=None):
        self.calls.append((url, timeout))
        if self.error is not None:
            raise self.error
        return self.response


class TestFetchSnapshot(unittest.TestCase):
    def _fetch(self, session, date_str="2024-01-01", **kwargs):
        from fear_greed_sync import fetch_snapshot

        with redirect_stdout(io.StringIO()):
            return fetch_snapshot(session, date_str, base_url="https://example.test/graphdata/", **kwargs)

    def test_success_returns_payload_and_uses_timeout(self) -> None:
        payload = {"fear_and_greed": {"score": 50}}
        session = FakeSession(FakeResponse(200, payload))

        result = self._fetch(session, timeout=12.5)

        self.assertEqual(result, payload)
        self.assertEqual(session.calls, [("https://example.test/graphdata/2024-01-01", 12.5)])

    def test_non_success_status_is_absorbed(self) -> None:
        for status in (403, 404, 418, 500):
            with self.subTest(status=status):
                self.assertIsNone(self._fetch(FakeSession(FakeResponse(status, {}))))

    def test_transport_error_is_absorbed(self) -> None:
        session = FakeSession(error=requests.ConnectionError("boom"))
        self.assertIsNone(self._fetch(session))

        session = FakeSession(error=requests.Timeout("slow"))
        self.assertIsNone(self._fetch(session))

    def test_bad_body_is_absorbed(self) -> None:
        self.assertIsNone(self._fetch(FakeSession(FakeResponse(200, _INVALID_JSON))))
        self.assertIsNone(self._fetch(FakeSession(FakeResponse(200, [1, 2, 3]))))

    def test_session_carries_browser_headers(self) -> None:
        from fear_greed_sync import build_session

        session = build_session()
        for header in ("User-Agent", "Referer", "Accept"):
            self.assertIn(header, session.headers)
        self.assertIn("Mozilla", session.headers["User-Agent"])


if __name__ == "__main__":
    unittest.main()
