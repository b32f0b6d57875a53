from __future__ import annotations

import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from uuid import uuid4


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid4())


def next_timestamp(previous: int) -> int:
    return max(now_ms(), previous + 1)


@dataclass(frozen=True)
class ChangeEvent:
    """A record of one local mutation, routed by the caller to the change tracker."""

    entity: str
    entity_id: str
    field: str


@dataclass(eq=False)
class Item:
    title: str
    id: str = field(default_factory=new_id)
    completed: bool = False
    deleted: bool = False
    last_modified: int = field(default_factory=now_ms)
    collection_id: str | None = None

    # Setters always advance last_modified, even when the value is unchanged.
    def set_title(self, title: str) -> ChangeEvent:
        self.title = title
        self.last_modified = next_timestamp(self.last_modified)
        return ChangeEvent("item", self.id, "title")

    def set_completed(self, completed: bool) -> ChangeEvent:
        self.completed = completed
        self.last_modified = next_timestamp(self.last_modified)
        return ChangeEvent("item", self.id, "completed")

    def set_deleted(self, deleted: bool) -> ChangeEvent:
        self.deleted = deleted
        self.last_modified = next_timestamp(self.last_modified)
        return ChangeEvent("item", self.id, "deleted")

    def apply_remote(self, remote: Item) -> None:
        self.title = remote.title
        self.completed = remote.completed
        self.deleted = remote.deleted
        self.last_modified = remote.last_modified

    def copy(self) -> Item:
        return Item(
            title=self.title,
            id=self.id,
            completed=self.completed,
            deleted=self.deleted,
            last_modified=self.last_modified,
            collection_id=self.collection_id,
        )

    def __repr__(self) -> str:
        flags = "x" if self.completed else " "
        if self.deleted:
            flags += ",deleted"
        return f"Item({self.id[:8]} [{flags}] {self.title!r} @{self.last_modified})"


@dataclass(eq=False)
class Collection:
    name: str
    id: str = field(default_factory=new_id)
    deleted: bool = False
    last_modified: int = field(default_factory=now_ms)

    def set_name(self, name: str) -> ChangeEvent:
        self.name = name
        self.last_modified = next_timestamp(self.last_modified)
        return ChangeEvent("collection", self.id, "name")

    def set_deleted(self, deleted: bool) -> ChangeEvent:
        self.deleted = deleted
        self.last_modified = next_timestamp(self.last_modified)
        return ChangeEvent("collection", self.id, "deleted")

    def apply_remote(self, remote: Collection) -> None:
        self.name = remote.name
        self.deleted = remote.deleted
        self.last_modified = remote.last_modified

    def copy(self) -> Collection:
        return Collection(
            name=self.name,
            id=self.id,
            deleted=self.deleted,
            last_modified=self.last_modified,
        )


@dataclass
class CollectionEntry:
    """A collection as it travels on the wire, carrying its own items."""

    collection: Collection
    items: list[Item] = field(default_factory=list)


@dataclass
class SyncDelta:
    items: list[Item] = field(default_factory=list)
    deleted_items: list[Item] = field(default_factory=list)
    collections: list[CollectionEntry] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.items or self.deleted_items or self.collections)


def item_name_exists(items: Iterable[Item], name: str) -> bool:
    wanted = name.casefold()
    return any(item.title.casefold() == wanted for item in items)


def collection_name_exists(collections: Iterable[Collection], name: str) -> bool:
    return any(not c.deleted and c.name == name for c in collections)
