"""Tombstone-then-last-write-wins reconciliation.

The same algorithm runs on the client (pulls) and on the server (pushes):

1. every remote tombstone removes the matching local item, whatever its timestamp,
   and is retained locally;
2. remote live items are adopted when unseen, or copied onto the local object when
   strictly newer (equal timestamps keep the local version);
3. items now marked deleted leave the live table;
4. collections follow the same rule, and the items nested in a remote collection are
   merged and re-attached to the local collection id;
5. live collections sharing a name are folded into the one with the lowest id, so
   every replica picks the same survivor;
6. deleted collections leave the live table, together with the items they own.

The input tables are never mutated; local record objects are, so anyone holding a
reference sees the winning values.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .models import Collection, Item, SyncDelta


@dataclass
class MergeResult:
    items: dict[str, Item]
    collections: dict[str, Collection]
    tombstones: dict[str, Item]
    collection_tombstones: dict[str, Collection]
    adopted: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    tombstoned: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.adopted or self.updated or self.removed)

    def summary(self) -> dict[str, int]:
        return {
            "adopted": len(self.adopted),
            "updated": len(self.updated),
            "removed": len(self.removed),
            "tombstoned": len(self.tombstoned),
        }


def reconcile(
    items: dict[str, Item],
    collections: dict[str, Collection],
    tombstones: dict[str, Item],
    delta: SyncDelta | None,
    *,
    collection_tombstones: dict[str, Collection] | None = None,
) -> MergeResult:
    result = MergeResult(
        items=dict(items),
        collections=dict(collections),
        tombstones=dict(tombstones),
        collection_tombstones=dict(collection_tombstones or {}),
    )
    if delta is None:
        return result

    _apply_tombstones(result, delta.deleted_items)

    for remote in delta.items:
        _merge_item(result, remote, collection_id=None)
    _purge_deleted_items(result)

    for entry in delta.collections:
        target = _merge_collection(result, entry.collection)
        if target is None:
            continue
        for remote in entry.items:
            _merge_item(result, remote, collection_id=target.id)
    _purge_deleted_items(result)
    _fold_duplicate_names(result)
    _purge_deleted_collections(result)
    return result


def _apply_tombstones(result: MergeResult, deleted_items: list[Item]) -> None:
    for remote in deleted_items:
        local = result.items.pop(remote.id, None)
        if local is not None:
            result.removed.append(remote.id)
        if remote.id in result.tombstones:
            continue
        tombstone = remote.copy()
        tombstone.deleted = True
        if local is not None and tombstone.collection_id is None:
            tombstone.collection_id = local.collection_id
        result.tombstones[remote.id] = tombstone
        result.tombstoned.append(remote.id)


def _merge_item(result: MergeResult, remote: Item, *, collection_id: str | None) -> None:
    # A locally retained tombstone is never resurrected by a live copy.
    if remote.id in result.tombstones:
        return
    local = result.items.get(remote.id)
    if local is None:
        if remote.deleted:
            return
        adopted = remote.copy()
        if collection_id is not None:
            adopted.collection_id = collection_id
        result.items[adopted.id] = adopted
        result.adopted.append(adopted.id)
        return
    changed = False
    if remote.last_modified > local.last_modified:
        local.apply_remote(remote)
        changed = True
    if collection_id is not None and local.collection_id != collection_id:
        local.collection_id = collection_id
        changed = True
    if changed:
        result.updated.append(local.id)


def _merge_collection(result: MergeResult, remote: Collection) -> Collection | None:
    """Return the local collection the remote's nested items attach to, if any."""
    local = result.collections.get(remote.id)
    if local is not None:
        if remote.last_modified > local.last_modified:
            local.apply_remote(remote)
            result.updated.append(local.id)
        return local

    tombstone = result.collection_tombstones.get(remote.id)
    if tombstone is not None:
        if remote.deleted or remote.last_modified <= tombstone.last_modified:
            return None
        tombstone.apply_remote(remote)
        del result.collection_tombstones[remote.id]
        result.collections[tombstone.id] = tombstone
        result.adopted.append(tombstone.id)
        return tombstone

    if remote.deleted:
        return None
    adopted = remote.copy()
    result.collections[adopted.id] = adopted
    result.adopted.append(adopted.id)
    return adopted


def _purge_deleted_items(result: MergeResult) -> None:
    for item_id in [key for key, item in result.items.items() if item.deleted]:
        del result.items[item_id]
        result.removed.append(item_id)


def _purge_deleted_collections(result: MergeResult) -> None:
    for collection_id in [key for key, c in result.collections.items() if c.deleted]:
        result.collection_tombstones[collection_id] = result.collections.pop(collection_id)
        result.removed.append(collection_id)
    if not result.collection_tombstones:
        return
    orphaned = [
        key
        for key, item in result.items.items()
        if item.collection_id is not None
        and item.collection_id in result.collection_tombstones
    ]
    for item_id in orphaned:
        del result.items[item_id]
        result.removed.append(item_id)


def _fold_duplicate_names(result: MergeResult) -> None:
    by_name: dict[str, list[Collection]] = {}
    for collection in result.collections.values():
        if not collection.deleted:
            by_name.setdefault(collection.name, []).append(collection)
    for same_name in by_name.values():
        if len(same_name) < 2:
            continue
        survivor, *losers = sorted(same_name, key=lambda c: c.id)
        loser_ids = {loser.id for loser in losers}
        for item in result.items.values():
            if item.collection_id in loser_ids:
                item.collection_id = survivor.id
                result.updated.append(item.id)
        # The bumped timestamp lets the deletion win on replicas still holding the loser.
        for loser in losers:
            loser.set_deleted(True)
