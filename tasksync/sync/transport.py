from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.client import HTTPException
from typing import TypeVar
from urllib.parse import quote

from .. import codec
from ..errors import CodecError, RetriesExhausted, TransportError
from ..models import SyncDelta
from . import http_client

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_S = 2.0


class SyncTransport:
    """Fetches snapshots from and pushes deltas to the sync server.

    Every operation is attempted up to ``attempts`` times with a fixed delay in
    between. Waiting goes through ``stop_event`` so a shutdown cuts the delay short.
    """

    def __init__(
        self,
        base_url: str,
        participant_id: str,
        *,
        attempts: int = DEFAULT_ATTEMPTS,
        retry_delay_s: float = DEFAULT_RETRY_DELAY_S,
        timeout_s: float = 10.0,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.base_url = http_client.build_base_url(base_url)
        if not self.base_url:
            raise ValueError("missing server url")
        if not participant_id:
            raise ValueError("missing participant id")
        self.participant_id = participant_id
        self.attempts = max(1, int(attempts))
        self.retry_delay_s = max(0.0, float(retry_delay_s))
        self.timeout_s = timeout_s
        self.stop_event = stop_event or threading.Event()

    def _url(self, kind: str) -> str:
        return f"{self.base_url}/api/tasks/{kind}/{quote(self.participant_id, safe='')}"

    def fetch_snapshot(self) -> SyncDelta:
        return self._with_retry("fetch", self._fetch_once)

    def push_delta(self, delta: SyncDelta) -> None:
        body = codec.encode_delta(delta)
        self._with_retry("push", lambda: self._push_once(body))

    def _fetch_once(self) -> SyncDelta:
        status, raw = self._request("GET", self._url("user"))
        if status != 200:
            raise TransportError(f"fetch returned http {status}", status=status)
        try:
            return codec.decode_delta(raw)
        except CodecError as exc:
            raise TransportError(f"undecodable snapshot: {exc}") from exc

    def _push_once(self, body: bytes) -> None:
        status, _raw = self._request("POST", self._url("sync"), body)
        if status != 200:
            raise TransportError(f"push returned http {status}", status=status)

    def _request(self, method: str, url: str, body: bytes | None = None) -> tuple[int, bytes]:
        try:
            return http_client.request_bytes(
                method, url, body_bytes=body, timeout_s=self.timeout_s
            )
        except (OSError, ValueError, HTTPException) as exc:
            # HTTPException covers garbled status lines and truncated bodies.
            raise TransportError(f"{method} {url} failed: {type(exc).__name__}: {exc}") from exc

    def _with_retry(self, operation: str, func: Callable[[], T]) -> T:
        attempt = 1
        while True:
            try:
                return func()
            except TransportError as exc:
                if attempt >= self.attempts or self._wait_before_retry(operation, attempt, exc):
                    logger.error("sync %s giving up: %s", operation, exc)
                    raise RetriesExhausted(operation, attempt, exc) from exc
            attempt += 1

    def _wait_before_retry(self, operation: str, attempt: int, exc: TransportError) -> bool:
        """Log the failed attempt and wait. Returns True when shutdown cut the wait short."""
        logger.warning("sync %s attempt %s/%s failed: %s", operation, attempt, self.attempts, exc)
        if self.stop_event.wait(self.retry_delay_s):
            logger.debug("sync %s retry interrupted by shutdown", operation)
            return True
        return False
