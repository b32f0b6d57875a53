from __future__ import annotations

import pytest

from tasksync.sync import http_client


class _ConnRequestFails:
    def __init__(self, *args, **kwargs) -> None:
        self.closed = False

    def request(self, method, path, body=None, headers=None) -> None:
        raise RuntimeError("boom")

    def close(self) -> None:
        self.closed = True


class _ConnReadFails:
    def __init__(self, *args, **kwargs) -> None:
        self.closed = False

    def request(self, method, path, body=None, headers=None) -> None:
        return

    def getresponse(self):
        return _RespReadFails()

    def close(self) -> None:
        self.closed = True


class _RespReadFails:
    status = 200

    def read(self) -> bytes:
        raise RuntimeError("read failed")


class _ConnRecords:
    def __init__(self, body: bytes, status: int = 200) -> None:
        self.body = body
        self.status = status
        self.calls: list[tuple[str, str, bytes | None, dict[str, str]]] = []
        self.closed = False

    def request(self, method, path, body=None, headers=None) -> None:
        self.calls.append((method, path, body, dict(headers or {})))

    def getresponse(self):
        conn = self

        class _Resp:
            status = conn.status

            def read(self) -> bytes:
                return conn.body

        return _Resp()

    def close(self) -> None:
        self.closed = True


def test_build_base_url() -> None:
    assert http_client.build_base_url("localhost:8080/") == "http://localhost:8080"
    assert http_client.build_base_url("https://tasks.example") == "https://tasks.example"
    assert http_client.build_base_url("   ") == ""


def test_request_bytes_closes_connection_when_request_raises(monkeypatch) -> None:
    conn = _ConnRequestFails()
    monkeypatch.setattr(http_client, "HTTPConnection", lambda *a, **k: conn)

    with pytest.raises(RuntimeError, match="boom"):
        http_client.request_bytes("GET", "http://127.0.0.1:8080/api/status")

    assert conn.closed is True


def test_request_bytes_closes_connection_when_response_read_raises(monkeypatch) -> None:
    conn = _ConnReadFails()
    monkeypatch.setattr(http_client, "HTTPConnection", lambda *a, **k: conn)

    with pytest.raises(RuntimeError, match="read failed"):
        http_client.request_bytes("GET", "http://127.0.0.1:8080/api/status")

    assert conn.closed is True


def test_request_bytes_sends_json_headers(monkeypatch) -> None:
    conn = _ConnRecords(b"ok")
    monkeypatch.setattr(http_client, "HTTPConnection", lambda *a, **k: conn)

    status, raw = http_client.request_bytes(
        "POST", "http://127.0.0.1:8080/api/tasks/sync/alice?x=1", body_bytes=b"{}"
    )

    assert (status, raw) == (200, b"ok")
    method, path, body, headers = conn.calls[0]
    assert (method, path, body) == ("POST", "/api/tasks/sync/alice?x=1", b"{}")
    assert headers["Content-Type"] == "application/json"
    assert headers["Content-Length"] == "2"
    assert conn.closed is True


def test_request_json_reports_non_json_body(monkeypatch) -> None:
    conn = _ConnRecords(b"<html>oops</html>", status=502)
    monkeypatch.setattr(http_client, "HTTPConnection", lambda *a, **k: conn)

    status, payload = http_client.request_json("GET", "http://127.0.0.1:8080/api/status")

    assert status == 502
    assert payload == {"error": "non_json_response: <html>oops</html>"}


def test_request_bytes_requires_hostname() -> None:
    with pytest.raises(ValueError, match="missing hostname"):
        http_client.request_bytes("GET", "/relative")
