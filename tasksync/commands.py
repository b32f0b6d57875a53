from __future__ import annotations

from uuid import NAMESPACE_URL, uuid5

from .errors import UnknownRecordError, ValidationError
from .models import (
    ChangeEvent,
    Collection,
    Item,
    collection_name_exists,
    item_name_exists,
)
from .replica import ReplicaState


def _clean_name(value: str, *, what: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{what} must not be empty")
    return cleaned


def _get_item(state: ReplicaState, item_id: str) -> Item:
    item = state.items.get(item_id)
    if item is None:
        raise UnknownRecordError(f"unknown item: {item_id}")
    return item


def _get_collection(state: ReplicaState, collection_id: str) -> Collection:
    collection = state.collections.get(collection_id)
    if collection is None:
        raise UnknownRecordError(f"unknown collection: {collection_id}")
    return collection


def _siblings(state: ReplicaState, collection_id: str | None) -> list[Item]:
    if collection_id is None:
        return state.unfiled()
    return state.items_in(collection_id)


def add_item(
    state: ReplicaState, title: str, collection_id: str | None = None
) -> tuple[Item, list[ChangeEvent]]:
    title = _clean_name(title, what="item title")
    if collection_id is not None:
        _get_collection(state, collection_id)
    if item_name_exists(_siblings(state, collection_id), title):
        raise ValidationError(f"item already exists: {title}")
    item = Item(title=title, collection_id=collection_id)
    state.items[item.id] = item
    return item, [ChangeEvent("item", item.id, "created")]


def rename_item(state: ReplicaState, item_id: str, title: str) -> list[ChangeEvent]:
    item = _get_item(state, item_id)
    title = _clean_name(title, what="item title")
    others = [other for other in _siblings(state, item.collection_id) if other.id != item.id]
    if item_name_exists(others, title):
        raise ValidationError(f"item already exists: {title}")
    return [item.set_title(title)]


def set_item_completed(state: ReplicaState, item_id: str, completed: bool) -> list[ChangeEvent]:
    # uncompleted()/completed() are views, so there is no set to move the item between.
    return [_get_item(state, item_id).set_completed(completed)]


def delete_item(state: ReplicaState, item_id: str) -> list[ChangeEvent]:
    item = _get_item(state, item_id)
    event = item.set_deleted(True)
    del state.items[item.id]
    state.tombstones[item.id] = item
    return [event]


def add_collection(
    state: ReplicaState, name: str, *, collection_id: str | None = None
) -> tuple[Collection, list[ChangeEvent]]:
    name = _clean_name(name, what="collection name")
    if collection_name_exists(state.collections.values(), name):
        raise ValidationError(f"collection already exists: {name}")
    if collection_id is not None and (
        collection_id in state.collections or collection_id in state.collection_tombstones
    ):
        raise ValidationError(f"collection id already used: {collection_id}")
    if collection_id is None:
        collection = Collection(name=name)
    else:
        collection = Collection(name=name, id=collection_id)
    state.collections[collection.id] = collection
    return collection, [ChangeEvent("collection", collection.id, "created")]


def rename_collection(state: ReplicaState, collection_id: str, name: str) -> list[ChangeEvent]:
    collection = _get_collection(state, collection_id)
    name = _clean_name(name, what="collection name")
    others = [c for c in state.collections.values() if c.id != collection.id]
    if collection_name_exists(others, name):
        raise ValidationError(f"collection already exists: {name}")
    return [collection.set_name(name)]


def delete_collection(state: ReplicaState, collection_id: str) -> list[ChangeEvent]:
    collection = _get_collection(state, collection_id)
    events: list[ChangeEvent] = []
    for item in state.items_in(collection.id):
        events.extend(delete_item(state, item.id))
    events.append(collection.set_deleted(True))
    del state.collections[collection.id]
    state.collection_tombstones[collection.id] = collection
    return events


def default_collection_id(participant_id: str, name: str) -> str:
    """Stable id so every replica of one participant creates the same default list."""
    return str(uuid5(NAMESPACE_URL, f"tasksync:{participant_id}:{name}"))


def ensure_default_collection(
    state: ReplicaState, name: str, *, collection_id: str | None = None
) -> list[ChangeEvent]:
    name = (name or "").strip()
    if not name or state.find_collection(name) is not None:
        return []
    if collection_id is not None and (
        collection_id in state.collections or collection_id in state.collection_tombstones
    ):
        # Renamed or deleted on purpose, possibly on another replica.
        return []
    _collection, events = add_collection(state, name, collection_id=collection_id)
    return events
