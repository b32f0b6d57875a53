from __future__ import annotations

import json
from typing import Any

from .errors import CodecError
from .models import Collection, CollectionEntry, Item, SyncDelta
from .replica import ReplicaState

DELTA_FORMAT = "tasksync.delta"
REPLICA_FORMAT = "tasksync.replica"
FORMAT_VERSION = 1


def item_to_dict(item: Item) -> dict[str, Any]:
    return {
        "id": item.id,
        "title": item.title,
        "completed": item.completed,
        "deleted": item.deleted,
        "last_modified": item.last_modified,
        "collection_id": item.collection_id,
    }


def collection_to_dict(collection: Collection, items: list[Item]) -> dict[str, Any]:
    return {
        "id": collection.id,
        "name": collection.name,
        "deleted": collection.deleted,
        "last_modified": collection.last_modified,
        "items": [item_to_dict(item) for item in items],
    }


def _require(payload: dict[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    if key not in payload:
        raise CodecError(f"missing field: {key}")
    value = payload[key]
    # bool is an int subclass; timestamps must be real integers.
    if kind is int and isinstance(value, bool):
        raise CodecError(f"invalid field: {key}")
    if not isinstance(value, kind):
        raise CodecError(f"invalid field: {key}")
    return value


def item_from_dict(payload: Any) -> Item:
    if not isinstance(payload, dict):
        raise CodecError("item must be an object")
    collection_id = payload.get("collection_id")
    if collection_id is not None and not isinstance(collection_id, str):
        raise CodecError("invalid field: collection_id")
    return Item(
        id=_require(payload, "id", str),
        title=_require(payload, "title", str),
        completed=_require(payload, "completed", bool),
        deleted=_require(payload, "deleted", bool),
        last_modified=_require(payload, "last_modified", int),
        collection_id=collection_id,
    )


def entry_from_dict(payload: Any) -> CollectionEntry:
    if not isinstance(payload, dict):
        raise CodecError("collection must be an object")
    collection = Collection(
        id=_require(payload, "id", str),
        name=_require(payload, "name", str),
        deleted=_require(payload, "deleted", bool),
        last_modified=_require(payload, "last_modified", int),
    )
    items = [item_from_dict(item) for item in _require(payload, "items", list)]
    for item in items:
        item.collection_id = collection.id
    return CollectionEntry(collection, items)


def _items_from(payload: dict[str, Any], key: str) -> list[Item]:
    return [item_from_dict(item) for item in _require(payload, key, list)]


def _load_envelope(data: bytes | str, expected_format: str) -> dict[str, Any]:
    try:
        payload = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CodecError(f"invalid json: {exc}") from exc
    if not isinstance(payload, dict):
        raise CodecError("payload must be an object")
    if payload.get("format") != expected_format:
        raise CodecError(f"unexpected format: {payload.get('format')!r}")
    if payload.get("version") != FORMAT_VERSION:
        raise CodecError(f"unsupported version: {payload.get('version')!r}")
    return payload


def delta_to_dict(delta: SyncDelta) -> dict[str, Any]:
    return {
        "format": DELTA_FORMAT,
        "version": FORMAT_VERSION,
        "items": [item_to_dict(item) for item in delta.items],
        "deleted_items": [item_to_dict(item) for item in delta.deleted_items],
        "collections": [
            collection_to_dict(entry.collection, entry.items) for entry in delta.collections
        ],
    }


def encode_delta(delta: SyncDelta) -> bytes:
    return json.dumps(delta_to_dict(delta), ensure_ascii=False).encode("utf-8")


def decode_delta(data: bytes | str) -> SyncDelta:
    payload = _load_envelope(data, DELTA_FORMAT)
    return SyncDelta(
        items=_items_from(payload, "items"),
        deleted_items=_items_from(payload, "deleted_items"),
        collections=[entry_from_dict(entry) for entry in _require(payload, "collections", list)],
    )


def encode_replica(state: ReplicaState, participant_id: str) -> bytes:
    payload = {
        "format": REPLICA_FORMAT,
        "version": FORMAT_VERSION,
        "participant_id": participant_id,
        "uncompleted": [item_to_dict(item) for item in state.uncompleted()],
        "completed": [item_to_dict(item) for item in state.completed()],
        "collections": [
            collection_to_dict(collection, state.items_in(collection.id))
            for collection in state.collections.values()
        ],
        "deleted_items": [item_to_dict(item) for item in state.tombstones.values()],
        "deleted_collections": [
            collection_to_dict(collection, [])
            for collection in state.collection_tombstones.values()
        ],
    }
    return json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8")


def decode_replica(data: bytes | str, state: ReplicaState) -> str:
    """Populate ``state`` from a persisted replica and return its participant id.

    Items owned by a collection appear both in the flat lists and nested under the
    collection; both decode to the same id, so the table keeps one record.
    """
    payload = _load_envelope(data, REPLICA_FORMAT)
    participant_id = _require(payload, "participant_id", str)
    items: dict[str, Item] = {}
    for item in _items_from(payload, "uncompleted") + _items_from(payload, "completed"):
        items[item.id] = item
    collections: dict[str, Collection] = {}
    for raw in _require(payload, "collections", list):
        entry = entry_from_dict(raw)
        collections[entry.collection.id] = entry.collection
        for item in entry.items:
            items.setdefault(item.id, item)
    tombstones = {item.id: item for item in _items_from(payload, "deleted_items")}
    collection_tombstones: dict[str, Collection] = {}
    for raw in _require(payload, "deleted_collections", list):
        entry = entry_from_dict(raw)
        collection_tombstones[entry.collection.id] = entry.collection
    state.items = items
    state.collections = collections
    state.tombstones = tombstones
    state.collection_tombstones = collection_tombstones
    return participant_id
