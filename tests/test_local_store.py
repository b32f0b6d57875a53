from __future__ import annotations

import os
import threading
from pathlib import Path

import pytest

from tasksync import commands
from tasksync.errors import StoreError
from tasksync.local_store import AutoSaver, LocalStore, data_file_path
from tasksync.replica import ReplicaState


def _store(tmp_path: Path, **kwargs) -> LocalStore:
    return LocalStore(data_file_path(tmp_path / "data", "alice"), "alice", **kwargs)


def test_data_file_path_is_keyed_by_participant(tmp_path: Path) -> None:
    assert data_file_path(tmp_path, "alice") == tmp_path / "todo_data_alice.json"
    assert data_file_path(tmp_path, "a/b").name == "todo_data_a_b.json"


def test_first_run_leaves_state_empty(tmp_path: Path) -> None:
    state = ReplicaState()
    assert _store(tmp_path).load(state) is False
    assert state.is_empty()


def test_save_then_load_roundtrip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    state = ReplicaState()
    item, events = commands.add_item(state, "milk")
    store.mark_dirty()
    assert store.dirty

    assert store.save(state) is True
    assert not store.dirty
    assert store.path.exists()
    assert not [p for p in store.path.parent.iterdir() if p.name.startswith(".")]

    restored = ReplicaState()
    assert _store(tmp_path).load(restored) is True
    assert restored.items[item.id].title == "milk"


def test_corrupt_file_raises_store_error(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.path.parent.mkdir(parents=True)
    store.path.write_text("{broken")
    with pytest.raises(StoreError, match="corrupt"):
        store.load(ReplicaState())

    moved = store.quarantine()
    assert moved is not None
    assert moved.exists()
    assert not store.path.exists()


def test_mark_during_save_keeps_store_dirty(tmp_path: Path) -> None:
    store = _store(tmp_path)
    state = ReplicaState()
    store.mark_dirty()

    class _MarkingLock:
        def __enter__(self) -> None:
            store.mark_dirty()

        def __exit__(self, *exc: object) -> None:
            return None

    assert store.save(state, snapshot_lock=_MarkingLock()) is True
    assert store.dirty


def _failing_replace(*args, **kwargs) -> None:
    raise OSError("disk full")


def test_silent_save_failure_only_logs(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    errors: list[BaseException] = []
    store = _store(tmp_path, on_error=errors.append)
    store.mark_dirty()
    monkeypatch.setattr(os, "replace", _failing_replace)

    assert store.save(ReplicaState(), silent=True) is False

    assert errors == []
    assert store.dirty
    assert "autosave" in caplog.text
    assert not [p for p in store.path.parent.iterdir()]


def test_loud_save_failure_reports_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    errors: list[BaseException] = []
    store = _store(tmp_path, on_error=errors.append)
    monkeypatch.setattr(os, "replace", _failing_replace)

    assert store.save(ReplicaState()) is False

    assert len(errors) == 1
    assert isinstance(errors[0], StoreError)


def test_autosaver_only_saves_when_dirty(tmp_path: Path) -> None:
    store = _store(tmp_path)
    state = ReplicaState()
    saver = AutoSaver(store, state, 0.05)

    assert saver.tick() is False
    assert not store.path.exists()

    commands.add_item(state, "milk")
    store.mark_dirty()
    assert saver.tick() is True
    assert store.path.exists()
    assert saver.tick() is False


def test_autosaver_thread_saves_and_stops(tmp_path: Path) -> None:
    store = _store(tmp_path)
    state = ReplicaState()
    stop = threading.Event()
    saver = AutoSaver(store, state, 0.05, stop_event=stop)
    store.mark_dirty()

    saver.start()
    for _ in range(100):
        if store.path.exists():
            break
        stop.wait(0.05)
    saver.stop()

    assert store.path.exists()
    assert saver.join(2.0) is True


def test_data_file_lock_is_exclusive(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with store.lock() as held:
        assert held.path.read_text().strip() == str(os.getpid())
        with pytest.raises(StoreError, match="in use by process"):
            store.lock().acquire()

    assert not held.path.exists()
    with store.lock():
        pass


def test_lock_left_by_dead_process_is_taken_over(tmp_path: Path) -> None:
    store = _store(tmp_path)
    lock = store.lock()
    lock.path.parent.mkdir(parents=True)
    lock.path.write_text("999999999\n")

    with lock:
        assert lock.path.read_text().strip() == str(os.getpid())


def test_fresh_lock_without_pid_counts_as_busy(tmp_path: Path) -> None:
    store = _store(tmp_path)
    lock = store.lock()
    lock.path.parent.mkdir(parents=True)
    lock.path.write_text("")

    with pytest.raises(StoreError):
        lock.acquire()

    old = lock.path.stat().st_mtime - 60
    os.utime(lock.path, (old, old))
    with lock:
        pass


def test_lock_holder_edits_are_not_overwritten_by_other_process(tmp_path: Path) -> None:
    daemon_store, daemon_state = _store(tmp_path), ReplicaState()
    commands.add_item(daemon_state, "from run")
    with daemon_store.lock():
        daemon_store.save(daemon_state)
        with pytest.raises(StoreError):
            _store(tmp_path).lock().acquire()
        commands.add_item(daemon_state, "another from run")
        daemon_store.save(daemon_state)

    with _store(tmp_path).lock():
        cli_store, cli_state = _store(tmp_path), ReplicaState()
        cli_store.load(cli_state)
        commands.add_item(cli_state, "from cli")
        cli_store.save(cli_state)

    reloaded = ReplicaState()
    _store(tmp_path).load(reloaded)
    assert sorted(item.title for item in reloaded.items.values()) == [
        "another from run",
        "from cli",
        "from run",
    ]
