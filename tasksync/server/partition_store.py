from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from .. import codec
from ..merge import MergeResult
from ..models import SyncDelta
from ..replica import ReplicaState

logger = logging.getLogger(__name__)


@dataclass
class Partition:
    state: ReplicaState = field(default_factory=ReplicaState)
    lock: threading.Lock = field(default_factory=threading.Lock)


class PartitionStore:
    """In-memory authoritative replicas, one per participant id.

    The registry lock only guards the partition lookup; reads and merges take the
    partition's own lock, so different participants never wait on each other.
    Tombstones are kept for the life of the process.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._partitions: dict[str, Partition] = {}

    def _partition(self, participant_id: str) -> Partition:
        with self._lock:
            partition = self._partitions.get(participant_id)
            if partition is None:
                partition = Partition()
                self._partitions[participant_id] = partition
            return partition

    def participants(self) -> list[str]:
        with self._lock:
            return sorted(self._partitions)

    def snapshot(self, participant_id: str) -> SyncDelta:
        partition = self._partition(participant_id)
        with partition.lock:
            return partition.state.to_delta()

    def snapshot_bytes(self, participant_id: str) -> bytes:
        partition = self._partition(participant_id)
        with partition.lock:
            return codec.encode_delta(partition.state.to_delta())

    def apply_delta(self, participant_id: str, delta: SyncDelta) -> MergeResult:
        partition = self._partition(participant_id)
        with partition.lock:
            result = partition.state.merge(delta)
        logger.debug("merged delta for %s: %s", participant_id, result.summary())
        return result

    def stats(self) -> dict[str, dict[str, int]]:
        with self._lock:
            partitions = dict(self._partitions)
        stats: dict[str, dict[str, int]] = {}
        for participant_id, partition in sorted(partitions.items()):
            with partition.lock:
                stats[participant_id] = {
                    "items": len(partition.state.items),
                    "collections": len(partition.state.collections),
                    "tombstones": len(partition.state.tombstones),
                }
        return stats
