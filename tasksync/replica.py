from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field

from .merge import MergeResult, reconcile
from .models import ChangeEvent, Collection, CollectionEntry, Item, SyncDelta


@dataclass
class ReplicaState:
    """One participant's replica, stored as flat id-keyed tables.

    Ownership is the ``collection_id`` foreign key on each item; collections never
    hold item references, so nothing needs repairing after a load.
    """

    items: dict[str, Item] = field(default_factory=dict)
    collections: dict[str, Collection] = field(default_factory=dict)
    tombstones: dict[str, Item] = field(default_factory=dict)
    collection_tombstones: dict[str, Collection] = field(default_factory=dict)

    def all_items(self) -> list[Item]:
        return list(self.items.values())

    def uncompleted(self) -> list[Item]:
        return [item for item in self.items.values() if not item.completed]

    def completed(self) -> list[Item]:
        return [item for item in self.items.values() if item.completed]

    def unfiled(self) -> list[Item]:
        return [item for item in self.items.values() if item.collection_id is None]

    def items_in(self, collection_id: str) -> list[Item]:
        return [item for item in self.items.values() if item.collection_id == collection_id]

    def find_collection(self, name: str) -> Collection | None:
        for collection in self.collections.values():
            if collection.name == name:
                return collection
        return None

    def is_empty(self) -> bool:
        return not (
            self.items or self.collections or self.tombstones or self.collection_tombstones
        )

    def to_delta(self) -> SyncDelta:
        """Full visible state plus retained tombstones, as pushed to the peer.

        Records are copied so the delta can be encoded after the caller lets go of
        whatever lock guards this replica.
        """
        entries = [
            CollectionEntry(
                collection.copy(), [item.copy() for item in self.items_in(collection.id)]
            )
            for collection in self.collections.values()
        ]
        entries.extend(
            CollectionEntry(collection.copy(), [])
            for collection in self.collection_tombstones.values()
        )
        return SyncDelta(
            items=[item.copy() for item in self.items.values()],
            deleted_items=[item.copy() for item in self.tombstones.values()],
            collections=entries,
        )

    def merge(self, delta: SyncDelta | None) -> MergeResult:
        result = reconcile(
            self.items,
            self.collections,
            self.tombstones,
            delta,
            collection_tombstones=self.collection_tombstones,
        )
        self.items = result.items
        self.collections = result.collections
        self.tombstones = result.tombstones
        self.collection_tombstones = result.collection_tombstones
        return result

    def forget_tombstones(
        self,
        items: Iterable[Item],
        collections: Iterable[Collection] = (),
    ) -> int:
        """Drop tombstones that the peer has acknowledged.

        A tombstone is only dropped when it is still the exact version that was sent.
        """
        removed = 0
        for sent in items:
            current = self.tombstones.get(sent.id)
            if current is not None and current.last_modified == sent.last_modified:
                del self.tombstones[sent.id]
                removed += 1
        for sent_collection in collections:
            current_collection = self.collection_tombstones.get(sent_collection.id)
            if (
                current_collection is not None
                and current_collection.last_modified == sent_collection.last_modified
            ):
                del self.collection_tombstones[sent_collection.id]
                removed += 1
        return removed


class ChangeTracker:
    """Dirty flag plus the informational changed-id sets.

    Pushes always carry the full state, so ``changed_items`` and
    ``changed_collections`` are only kept for status output and debugging.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._generation = 0
        self._acked_generation = 0
        self.changed_items: set[str] = set()
        self.changed_collections: set[str] = set()

    @property
    def dirty(self) -> bool:
        with self._lock:
            return self._generation != self._acked_generation

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def mark(self, events: Iterable[ChangeEvent] = ()) -> None:
        with self._lock:
            self._generation += 1
            for event in events:
                if event.entity == "item":
                    self.changed_items.add(event.entity_id)
                elif event.entity == "collection":
                    self.changed_collections.add(event.entity_id)

    def acknowledge(self, generation: int) -> bool:
        with self._lock:
            if generation != self._generation:
                # Newer mutations landed while the push was in flight.
                return False
            self._acked_generation = generation
            self.changed_items.clear()
            self.changed_collections.clear()
            return True
