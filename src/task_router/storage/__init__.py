"""Snapshot persistence for router components."""

from task_router.storage.snapshots import (
    JsonSnapshotStore,
    MemorySnapshotStore,
    SnapshotStore,
    SnapshotStores,
    SqlSnapshotStore,
    build_snapshot_stores,
)

__all__ = [
    "JsonSnapshotStore",
    "MemorySnapshotStore",
    "SnapshotStore",
    "SnapshotStores",
    "SqlSnapshotStore",
    "build_snapshot_stores",
]
