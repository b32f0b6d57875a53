from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

from ..commands import default_collection_id, ensure_default_collection
from ..config import TaskSyncConfig
from ..errors import StoreError, TransportError
from ..local_store import AutoSaver, LocalStore
from ..merge import MergeResult
from ..models import ChangeEvent
from ..replica import ChangeTracker, ReplicaState
from .transport import SyncTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class SyncStatus:
    online: bool | None
    last_synced_at: float | None
    last_error: str | None
    dirty: bool
    pending_tombstones: int
    sync_enabled: bool = True


class PeriodicLoop:
    """Runs ``tick`` on a fixed interval until ``stop_event`` is set.

    A tick that raises is logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        tick: Callable[[], Any],
        interval_s: float,
        stop_event: threading.Event,
        *,
        initial_delay_s: float | None = None,
    ) -> None:
        self.name = name
        self.tick = tick
        self.interval_s = max(0.05, float(interval_s))
        self.initial_delay_s = self.interval_s if initial_delay_s is None else initial_delay_s
        self._stop = stop_event
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name=f"tasksync-{self.name}", daemon=True
        )
        self._thread.start()

    def join(self, timeout: float | None = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self) -> None:
        delay = self.initial_delay_s
        while not self._stop.wait(delay):
            try:
                self.tick()
            except Exception as exc:
                logger.exception("%s loop tick failed", self.name, exc_info=exc)
            delay = self.interval_s


class SyncClient:
    """Client side of the replication protocol.

    All reads and writes of ``state`` happen under one re-entrant apply lock.
    Push and pull each have their own single-flight lock: a tick that finds its
    direction busy is dropped, never queued.
    """

    def __init__(
        self,
        config: TaskSyncConfig,
        state: ReplicaState,
        store: LocalStore,
        transport: SyncTransport,
        *,
        tracker: ChangeTracker | None = None,
        on_sync_applied: Callable[[MergeResult], None] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> None:
        self.config = config
        self.state = state
        self.store = store
        self.transport = transport
        self.tracker = tracker or ChangeTracker()
        self.on_sync_applied = on_sync_applied
        self.on_error = on_error
        self.apply_lock = threading.RLock()
        self._push_lock = threading.Lock()
        self._pull_lock = threading.Lock()
        self._status_lock = threading.Lock()
        self._stop = transport.stop_event
        self._sync_enabled = config.sync_enabled
        self._online: bool | None = None
        self._last_synced_at: float | None = None
        self._last_error: str | None = None
        self.autosaver = AutoSaver(
            store,
            state,
            config.autosave_interval_s,
            lock=self.apply_lock,
            stop_event=self._stop,
        )
        self._loops: list[PeriodicLoop] = []
        self._started = False
        if store.on_error is None:
            store.on_error = self._notify_error

    # Mutations

    def mutate(self, command: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a command handler against the replica and record its change events.

        Handlers return either a list of events or a ``(record, events)`` pair.
        """
        with self.apply_lock:
            result = command(self.state, *args, **kwargs)
        if isinstance(result, tuple):
            events = result[1]
        else:
            events = result
        self.on_mutation(events)
        return result

    def on_mutation(self, events: Iterable[ChangeEvent] = ()) -> None:
        self.tracker.mark(events)
        self.store.mark_dirty()

    # Sync ticks

    @property
    def sync_enabled(self) -> bool:
        return self._sync_enabled

    def set_sync_enabled(self, enabled: bool) -> None:
        was_enabled = self._sync_enabled
        self._sync_enabled = enabled
        logger.info("sync %s", "enabled" if enabled else "disabled")
        if enabled and not was_enabled:
            self.push_once(force=True)

    def push_once(self, *, force: bool = False) -> bool:
        """Push the full replica when dirty. Returns True when the server accepted it."""
        if not self._sync_enabled and not force:
            return False
        if not self._push_lock.acquire(blocking=False):
            logger.debug("push already in flight, skipping tick")
            return False
        try:
            if not force and not self.tracker.dirty:
                return False
            with self.apply_lock:
                generation = self.tracker.generation
                delta = self.state.to_delta()
            sent_collections = [
                entry.collection for entry in delta.collections if entry.collection.deleted
            ]
            try:
                self.transport.push_delta(delta)
            except TransportError as exc:
                self._record_failure(exc)
                return False
            with self.apply_lock:
                forgotten = self.state.forget_tombstones(delta.deleted_items, sent_collections)
            if forgotten:
                self.store.mark_dirty()
            if not self.tracker.acknowledge(generation):
                logger.debug("local changes arrived during push, staying dirty")
            self._record_success()
            logger.info(
                "pushed %s items, %s tombstones, %s collections",
                len(delta.items),
                len(delta.deleted_items),
                len(delta.collections),
            )
            return True
        finally:
            self._push_lock.release()

    def pull_once(self, *, force: bool = False) -> bool:
        """Fetch the server snapshot and merge it. Returns True when the fetch succeeded."""
        if not self._sync_enabled and not force:
            return False
        if not self._pull_lock.acquire(blocking=False):
            logger.debug("pull already in flight, skipping tick")
            return False
        try:
            try:
                delta = self.transport.fetch_snapshot()
            except TransportError as exc:
                self._record_failure(exc)
                return False
            with self.apply_lock:
                result = self.state.merge(delta)
            if result.changed or result.tombstoned:
                self.store.mark_dirty()
                self.store.save(self.state, silent=True, snapshot_lock=self.apply_lock)
            self._record_success()
            if result.changed:
                logger.info("pulled remote changes: %s", result.summary())
                if self.on_sync_applied is not None:
                    self.on_sync_applied(result)
            else:
                logger.debug("pull found nothing new")
            return True
        finally:
            self._pull_lock.release()

    def autosave_once(self) -> bool:
        return self.autosaver.tick()

    def sync_now(self) -> bool:
        """One push (even when clean) followed by one pull."""
        pushed = self.push_once(force=True)
        pulled = self.pull_once(force=True)
        return pushed and pulled

    # Status

    def status(self) -> SyncStatus:
        with self.apply_lock:
            pending = len(self.state.tombstones) + len(self.state.collection_tombstones)
        with self._status_lock:
            return SyncStatus(
                online=self._online,
                last_synced_at=self._last_synced_at,
                last_error=self._last_error,
                dirty=self.tracker.dirty,
                pending_tombstones=pending,
                sync_enabled=self._sync_enabled,
            )

    def _record_success(self) -> None:
        with self._status_lock:
            self._online = True
            self._last_synced_at = time.time()
            self._last_error = None

    def _record_failure(self, exc: TransportError) -> None:
        with self._status_lock:
            self._online = False
            self._last_error = str(exc)
        self._notify_error(exc)

    def _notify_error(self, exc: BaseException) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(exc)
        except Exception as callback_exc:
            logger.exception("error callback failed", exc_info=callback_exc)

    # Lifecycle

    def load(self) -> bool:
        try:
            with self.apply_lock:
                loaded = self.store.load(self.state)
        except StoreError as exc:
            logger.error("failed to load local data: %s", exc)
            self._notify_error(exc)
            self.store.quarantine()
            loaded = False
        if loaded:
            # The file may hold edits made while no client was running.
            self.tracker.mark()
        with self.apply_lock:
            events = ensure_default_collection(
                self.state,
                self.config.default_collection,
                collection_id=default_collection_id(
                    self.transport.participant_id, self.config.default_collection
                ),
            )
        if events:
            self.on_mutation(events)
        return loaded

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.load()
        self._loops = [
            PeriodicLoop(
                "push", self.push_once, self.config.push_interval_s, self._stop, initial_delay_s=0
            ),
            PeriodicLoop(
                "pull", self.pull_once, self.config.pull_interval_s, self._stop, initial_delay_s=0
            ),
        ]
        for loop in self._loops:
            loop.start()
        self.autosaver.start()
        logger.info("sync client started for %s", self.transport.participant_id)

    def shutdown(self, grace_s: float | None = None) -> bool:
        """Stop the loops and flush pending changes to disk.

        Returns False when a loop was still busy after the grace period; those
        daemon threads are left behind.
        """
        grace = self.config.shutdown_grace_s if grace_s is None else grace_s
        self._stop.set()
        deadline = time.monotonic() + max(0.0, grace)
        finished = True
        for joinable in [*self._loops, self.autosaver]:
            remaining = max(0.0, deadline - time.monotonic())
            if not joinable.join(remaining):
                finished = False
        if not finished:
            logger.warning("sync loops still running after %.1fs, abandoning them", grace)
        if self.store.dirty:
            self.store.save(self.state, silent=False, snapshot_lock=self.apply_lock)
        return finished
