from __future__ import annotations

import json
from http.client import HTTPConnection, HTTPSConnection
from typing import Any
from urllib.parse import urlparse


def build_base_url(address: str) -> str:
    trimmed = address.strip().rstrip("/")
    if not trimmed:
        return ""
    parsed = urlparse(trimmed)
    if parsed.scheme in {"http", "https"}:
        return trimmed
    return f"http://{trimmed}"


def _open_connection(url: str, timeout_s: float) -> tuple[HTTPConnection, str]:
    parsed = urlparse(url)
    if not parsed.hostname:
        raise ValueError("missing hostname")
    path = parsed.path or "/"
    if parsed.query:
        path = f"{path}?{parsed.query}"
    if parsed.scheme == "https":
        return HTTPSConnection(parsed.hostname, parsed.port or 443, timeout=timeout_s), path
    return HTTPConnection(parsed.hostname, parsed.port or 80, timeout=timeout_s), path


def request_bytes(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    body_bytes: bytes | None = None,
    timeout_s: float = 10.0,
) -> tuple[int, bytes]:
    """Send one request and return the status with the raw body. Never reuses connections."""
    conn, path = _open_connection(url, timeout_s)
    request_headers = {"Accept": "application/json"}
    if body_bytes is not None:
        request_headers.update(
            {"Content-Type": "application/json", "Content-Length": str(len(body_bytes))}
        )
    request_headers.update(headers or {})
    try:
        conn.request(method, path, body=body_bytes, headers=request_headers)
        resp = conn.getresponse()
        status = int(resp.status)
        raw = resp.read()
    finally:
        conn.close()
    return status, raw


def request_json(
    method: str,
    url: str,
    *,
    body: dict[str, Any] | None = None,
    timeout_s: float = 10.0,
) -> tuple[int, dict[str, Any] | None]:
    body_bytes = None
    if body is not None:
        body_bytes = json.dumps(body, ensure_ascii=False).encode("utf-8")
    status, raw = request_bytes(method, url, body_bytes=body_bytes, timeout_s=timeout_s)
    if not raw:
        return status, None
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        snippet = raw[:240].decode("utf-8", errors="replace").strip()
        error = f"non_json_response: {snippet}" if snippet else "non_json_response"
        return status, {"error": error}
    if isinstance(payload, dict):
        return status, payload
    return status, {"error": f"unexpected_json_type: {type(payload).__name__}"}
