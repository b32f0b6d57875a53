from __future__ import annotations

from tasksync.models import (
    ChangeEvent,
    Collection,
    Item,
    collection_name_exists,
    item_name_exists,
    next_timestamp,
)


def test_new_item_defaults() -> None:
    item = Item(title="buy milk")
    assert item.id
    assert item.completed is False
    assert item.deleted is False
    assert item.collection_id is None
    assert item.last_modified > 0
    assert Item(title="buy milk").id != item.id


def test_setters_advance_timestamp_even_for_same_value() -> None:
    item = Item(title="buy milk", last_modified=100)
    event = item.set_title("buy milk")
    assert item.last_modified > 100
    assert event == ChangeEvent("item", item.id, "title")

    before = item.last_modified
    item.set_completed(False)
    assert item.last_modified > before

    before = item.last_modified
    item.set_deleted(True)
    assert item.deleted is True
    assert item.last_modified > before


def test_timestamp_is_strictly_monotonic_when_clock_lags() -> None:
    future = 10**15
    assert next_timestamp(future) == future + 1

    item = Item(title="x", last_modified=future)
    item.set_completed(True)
    item.set_completed(False)
    assert item.last_modified == future + 2


def test_apply_remote_keeps_identity_and_copies_timestamp() -> None:
    local = Item(title="old", id="x", last_modified=100, collection_id="c1")
    remote = Item(title="new", id="x", completed=True, last_modified=200)
    local.apply_remote(remote)
    assert local.title == "new"
    assert local.completed is True
    assert local.last_modified == 200
    assert local.collection_id == "c1"


def test_collection_setters_return_events() -> None:
    collection = Collection(name="Home", last_modified=5)
    event = collection.set_name("House")
    assert event == ChangeEvent("collection", collection.id, "name")
    assert collection.last_modified > 5
    assert collection.set_deleted(True).field == "deleted"


def test_copy_is_independent() -> None:
    item = Item(title="a", id="i1")
    clone = item.copy()
    clone.title = "b"
    assert item.title == "a"
    assert clone.id == "i1"


def test_name_checks() -> None:
    items = [Item(title="Buy Milk")]
    assert item_name_exists(items, "buy milk")
    assert not item_name_exists(items, "buy bread")

    collections = [Collection(name="Home"), Collection(name="Old", deleted=True)]
    assert collection_name_exists(collections, "Home")
    assert not collection_name_exists(collections, "home")
    assert not collection_name_exists(collections, "Old")
