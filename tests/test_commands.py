from __future__ import annotations

import pytest

from tasksync import commands
from tasksync.errors import UnknownRecordError, ValidationError
from tasksync.replica import ChangeTracker, ReplicaState


def test_add_item_returns_created_event() -> None:
    state = ReplicaState()
    item, events = commands.add_item(state, "  buy milk  ")
    assert item.title == "buy milk"
    assert state.items[item.id] is item
    assert [(e.entity, e.field) for e in events] == [("item", "created")]


def test_add_item_rejects_blank_and_duplicate_titles() -> None:
    state = ReplicaState()
    commands.add_item(state, "Buy Milk")
    with pytest.raises(ValidationError):
        commands.add_item(state, "   ")
    with pytest.raises(ValidationError, match="already exists"):
        commands.add_item(state, "buy milk")


def test_duplicate_titles_allowed_across_lists() -> None:
    state = ReplicaState()
    home, _ = commands.add_collection(state, "Home")
    commands.add_item(state, "milk")
    item, _ = commands.add_item(state, "milk", home.id)
    assert item.collection_id == home.id
    assert state.items_in(home.id) == [item]


def test_add_item_to_unknown_collection() -> None:
    with pytest.raises(UnknownRecordError):
        commands.add_item(ReplicaState(), "milk", "nope")


def test_completion_moves_item_between_views() -> None:
    state = ReplicaState()
    item, _ = commands.add_item(state, "milk")
    assert state.uncompleted() == [item]

    commands.set_item_completed(state, item.id, True)
    assert state.completed() == [item]
    assert state.uncompleted() == []

    commands.set_item_completed(state, item.id, False)
    assert state.uncompleted() == [item]


def test_rename_item_allows_same_title_for_itself() -> None:
    state = ReplicaState()
    item, _ = commands.add_item(state, "milk")
    commands.add_item(state, "bread")
    commands.rename_item(state, item.id, "MILK")
    assert item.title == "MILK"
    with pytest.raises(ValidationError):
        commands.rename_item(state, item.id, "bread")


def test_delete_item_moves_to_tombstones() -> None:
    state = ReplicaState()
    item, _ = commands.add_item(state, "milk")
    before = item.last_modified

    events = commands.delete_item(state, item.id)

    assert item.id not in state.items
    assert state.tombstones[item.id] is item
    assert item.deleted is True
    assert item.last_modified > before
    assert events[0].field == "deleted"
    with pytest.raises(UnknownRecordError):
        commands.delete_item(state, item.id)


def test_collection_names_unique_among_live() -> None:
    state = ReplicaState()
    home, _ = commands.add_collection(state, "Home")
    with pytest.raises(ValidationError):
        commands.add_collection(state, "Home")
    commands.add_collection(state, "home")

    commands.delete_collection(state, home.id)
    again, _ = commands.add_collection(state, "Home")
    assert again.id != home.id


def test_rename_collection() -> None:
    state = ReplicaState()
    home, _ = commands.add_collection(state, "Home")
    commands.add_collection(state, "Work")
    commands.rename_collection(state, home.id, "House")
    assert home.name == "House"
    with pytest.raises(ValidationError):
        commands.rename_collection(state, home.id, "Work")
    with pytest.raises(UnknownRecordError):
        commands.rename_collection(state, "missing", "X")


def test_delete_collection_cascades_to_items() -> None:
    state = ReplicaState()
    home, _ = commands.add_collection(state, "Home")
    owned, _ = commands.add_item(state, "milk", home.id)
    loose, _ = commands.add_item(state, "bread")

    events = commands.delete_collection(state, home.id)

    assert set(state.items) == {loose.id}
    assert owned.id in state.tombstones
    assert state.collection_tombstones[home.id].deleted is True
    assert [e.entity for e in events] == ["item", "collection"]


def test_ensure_default_collection_runs_once() -> None:
    state = ReplicaState()
    assert commands.ensure_default_collection(state, "Inbox")
    assert commands.ensure_default_collection(state, "Inbox") == []
    assert [c.name for c in state.collections.values()] == ["Inbox"]


def test_tracker_acknowledge_respects_newer_mutations() -> None:
    state = ReplicaState()
    tracker = ChangeTracker()
    _item, events = commands.add_item(state, "milk")
    tracker.mark(events)
    generation = tracker.generation
    assert tracker.dirty

    tracker.mark()
    assert tracker.acknowledge(generation) is False
    assert tracker.dirty

    assert tracker.acknowledge(tracker.generation) is True
    assert not tracker.dirty
    assert tracker.changed_items == set()


def test_default_collection_id_is_shared_across_replicas() -> None:
    laptop, phone = ReplicaState(), ReplicaState()
    default_id = commands.default_collection_id("alice", "Inbox")
    assert default_id == commands.default_collection_id("alice", "Inbox")
    assert default_id != commands.default_collection_id("bob", "Inbox")

    commands.ensure_default_collection(laptop, "Inbox", collection_id=default_id)
    commands.ensure_default_collection(phone, "Inbox", collection_id=default_id)

    assert set(laptop.collections) == set(phone.collections) == {default_id}


def test_default_collection_not_recreated_after_rename_or_delete() -> None:
    state = ReplicaState()
    default_id = commands.default_collection_id("alice", "Inbox")
    commands.ensure_default_collection(state, "Inbox", collection_id=default_id)
    commands.rename_collection(state, default_id, "Today")
    assert commands.ensure_default_collection(state, "Inbox", collection_id=default_id) == []

    commands.delete_collection(state, default_id)
    assert commands.ensure_default_collection(state, "Inbox", collection_id=default_id) == []
    assert state.collections == {}
