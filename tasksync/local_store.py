from __future__ import annotations

import contextlib
import logging
import os
import tempfile
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from . import codec
from .errors import CodecError, StoreError
from .replica import ReplicaState

logger = logging.getLogger(__name__)

DATA_FILE_TEMPLATE = "todo_data_{participant_id}.json"


def data_file_path(data_dir: Path | str, participant_id: str) -> Path:
    safe_id = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in participant_id)
    return Path(data_dir).expanduser() / DATA_FILE_TEMPLATE.format(participant_id=safe_id)


def _pid_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _read_pid(pid_path: Path) -> int | None:
    try:
        raw = pid_path.read_text().strip()
    except FileNotFoundError:
        return None
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _clear_pid(pid_path: Path) -> None:
    try:
        pid_path.unlink()
    except FileNotFoundError:
        return


class DataFileLock:
    """Claims a data file for one process through a ``.lock`` pid file beside it.

    A process that keeps a replica in memory (``tasksync run``) holds the lock for
    its whole life, so one-shot edits from another process cannot be overwritten
    by its next save. Locks left behind by dead processes are taken over.
    """

    # A lock file with no pid yet may belong to a process that is still writing it.
    FRESH_LOCK_S = 5.0

    def __init__(self, data_path: Path) -> None:
        self.data_path = Path(data_path)
        self.path = self.data_path.with_name(f"{self.data_path.name}.lock")
        self._held = False

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _attempt in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                self._check_stale()
                continue
            with os.fdopen(fd, "w") as handle:
                handle.write(f"{os.getpid()}\n")
            self._held = True
            return
        raise StoreError(f"could not lock {self.data_path}")

    def _check_stale(self) -> None:
        pid = _read_pid(self.path)
        if pid is not None and _pid_running(pid):
            raise StoreError(f"{self.data_path} is in use by process {pid}")
        if pid is None:
            try:
                age = time.time() - self.path.stat().st_mtime
            except FileNotFoundError:
                return
            if age < self.FRESH_LOCK_S:
                raise StoreError(f"{self.data_path} is being locked by another process")
        logger.warning("removing stale lock %s", self.path)
        _clear_pid(self.path)

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        if _read_pid(self.path) == os.getpid():
            _clear_pid(self.path)

    def __enter__(self) -> DataFileLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class LocalStore:
    """Durable copy of one participant's replica.

    The dirty flag is a generation counter: a save only clears it when no
    mutation was marked while the save was running.
    """

    def __init__(
        self,
        path: Path,
        participant_id: str,
        *,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> None:
        self.path = Path(path)
        self.participant_id = participant_id
        self.on_error = on_error
        self._lock = threading.Lock()
        self._generation = 0
        self._saved_generation = 0

    @property
    def dirty(self) -> bool:
        with self._lock:
            return self._generation != self._saved_generation

    def mark_dirty(self) -> None:
        with self._lock:
            self._generation += 1

    def lock(self) -> DataFileLock:
        return DataFileLock(self.path)

    def load(self, state: ReplicaState) -> bool:
        """Fill ``state`` from disk. Returns False on first run (no file yet)."""
        if not self.path.exists():
            logger.info("no local data at %s, starting empty", self.path)
            return False
        try:
            raw = self.path.read_bytes()
        except OSError as exc:
            raise StoreError(f"failed to read {self.path}: {exc}") from exc
        loaded = ReplicaState()
        try:
            stored_id = codec.decode_replica(raw, loaded)
        except CodecError as exc:
            raise StoreError(f"corrupt data file {self.path}: {exc}") from exc
        if stored_id != self.participant_id:
            logger.warning(
                "data file %s belongs to %r, loading it for %r",
                self.path,
                stored_id,
                self.participant_id,
            )
        state.items = loaded.items
        state.collections = loaded.collections
        state.tombstones = loaded.tombstones
        state.collection_tombstones = loaded.collection_tombstones
        logger.info(
            "loaded %s items and %s collections from %s",
            len(state.items),
            len(state.collections),
            self.path,
        )
        return True

    def quarantine(self) -> Path | None:
        """Move an unreadable data file aside so the next save cannot overwrite it."""
        if not self.path.exists():
            return None
        target = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time())}")
        os.replace(self.path, target)
        logger.warning("moved unreadable data file to %s", target)
        return target

    def save(
        self,
        state: ReplicaState,
        *,
        silent: bool = False,
        snapshot_lock: contextlib.AbstractContextManager[Any] | None = None,
    ) -> bool:
        with self._lock:
            generation = self._generation
        with snapshot_lock or contextlib.nullcontext():
            data = codec.encode_replica(state, self.participant_id)
        try:
            self._write_atomic(data)
        except OSError as exc:
            if silent:
                logger.warning("autosave to %s failed", self.path, exc_info=exc)
            else:
                logger.error("save to %s failed: %s", self.path, exc)
                if self.on_error is not None:
                    self.on_error(StoreError(f"failed to save {self.path}: {exc}"))
            return False
        with self._lock:
            if self._saved_generation < generation:
                self._saved_generation = generation
        logger.debug("saved replica to %s", self.path)
        return True

    def _write_atomic(self, data: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except OSError:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise


class AutoSaver:
    """Saves silently every ``interval_s`` seconds, but only when the store is dirty."""

    def __init__(
        self,
        store: LocalStore,
        state: ReplicaState,
        interval_s: float,
        *,
        lock: contextlib.AbstractContextManager[Any] | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.store = store
        self.state = state
        self.interval_s = interval_s
        self.lock = lock
        self._busy = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop = stop_event or threading.Event()

    def tick(self) -> bool:
        if not self._busy.acquire(blocking=False):
            return False
        try:
            if not self.store.dirty:
                return False
            return self.store.save(self.state, silent=True, snapshot_lock=self.lock)
        finally:
            self._busy.release()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="tasksync-autosave", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self) -> None:
        interval_s = max(0.05, float(self.interval_s))
        while not self._stop.wait(interval_s):
            try:
                self.tick()
            except Exception as exc:
                logger.exception("autosave tick failed", exc_info=exc)
