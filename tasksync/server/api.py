from __future__ import annotations

import contextlib
import json
import logging
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import unquote, urlparse

from .. import __version__, codec
from ..errors import CodecError
from .partition_store import PartitionStore

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "/api/tasks/user/"
SYNC_PREFIX = "/api/tasks/sync/"
DEFAULT_MAX_BODY_BYTES = 4 * 1024 * 1024


class PayloadTooLarge(ValueError):
    pass


def _read_body(handler: BaseHTTPRequestHandler, max_body_bytes: int) -> bytes:
    try:
        length = int(handler.headers.get("Content-Length", "0") or 0)
    except ValueError:
        length = 0
    if length <= 0:
        return b""
    if length > max_body_bytes:
        raise PayloadTooLarge("payload_too_large")
    return handler.rfile.read(length)


def _send_json(handler: BaseHTTPRequestHandler, payload: dict[str, Any], status: int = 200) -> None:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    _send_bytes(handler, body, status)


def _send_bytes(handler: BaseHTTPRequestHandler, body: bytes, status: int = 200) -> None:
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def _participant_from(path: str, prefix: str) -> str | None:
    if not path.startswith(prefix):
        return None
    segment = path[len(prefix) :]
    if not segment or "/" in segment:
        return None
    return unquote(segment)


def build_sync_handler(store: PartitionStore, *, max_body_bytes: int = DEFAULT_MAX_BODY_BYTES):
    class SyncHandler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args: object) -> None:  # noqa: A003
            logger.debug("%s - %s", self.address_string(), format % args)

        def do_GET(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            if parsed.path == "/api/status":
                _send_json(
                    self,
                    {"ok": True, "version": __version__, "participants": store.stats()},
                )
                return
            participant_id = _participant_from(parsed.path, SNAPSHOT_PREFIX)
            if participant_id is None:
                _send_json(self, {"error": "not_found"}, status=404)
                return
            try:
                body = store.snapshot_bytes(participant_id)
            except Exception as exc:
                logger.exception("snapshot for %s failed", participant_id, exc_info=exc)
                _send_json(self, {"error": "internal_error"}, status=500)
                return
            _send_bytes(self, body)

        def do_POST(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            participant_id = _participant_from(parsed.path, SYNC_PREFIX)
            if participant_id is None:
                _send_json(self, {"error": "not_found"}, status=404)
                return
            try:
                raw = _read_body(self, max_body_bytes)
            except PayloadTooLarge:
                _send_json(self, {"error": "payload_too_large"}, status=413)
                return
            try:
                delta = codec.decode_delta(raw)
            except CodecError as exc:
                logger.warning("rejected delta for %s: %s", participant_id, exc)
                _send_json(self, {"error": "invalid_delta"}, status=400)
                return
            try:
                result = store.apply_delta(participant_id, delta)
            except Exception as exc:
                logger.exception("merge for %s failed", participant_id, exc_info=exc)
                _send_json(self, {"error": "internal_error"}, status=500)
                return
            _send_json(self, {"ok": True, **result.summary()})

    return SyncHandler


def make_sync_server(
    host: str,
    port: int,
    store: PartitionStore | None = None,
    *,
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
) -> ThreadingHTTPServer:
    handler = build_sync_handler(store or PartitionStore(), max_body_bytes=max_body_bytes)

    class Server(ThreadingHTTPServer):
        address_family = socket.AF_INET6 if ":" in host else socket.AF_INET
        daemon_threads = True

        def server_bind(self) -> None:
            if self.address_family == socket.AF_INET6:
                with contextlib.suppress(OSError):
                    self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            super().server_bind()

    return Server((host, port), handler)


def run_sync_server(
    host: str,
    port: int,
    *,
    store: PartitionStore | None = None,
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
    stop_event: threading.Event | None = None,
) -> None:
    server = make_sync_server(host, port, store, max_body_bytes=max_body_bytes)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info("sync server listening on %s:%s", host, server.server_address[1])
    stop = stop_event or threading.Event()
    try:
        while not stop.wait(1.0):
            pass
    finally:
        server.shutdown()
        server.server_close()
