"""Persistence port for queue, breaker and governor snapshots.

Each stateful component owns exactly one snapshot document and writes it through
on every mutation. The components only see ``load()``/``save()``; the storage
medium behind them is chosen by ``build_snapshot_stores``.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, select

from task_router.config import Settings
from task_router.storage.common import build_sqlite_engine, utc_now
from task_router.storage.sqlmodel_models import RouterSnapshot

logger = logging.getLogger(__name__)

SNAPSHOT_NAMES = ("queue", "dead_letters", "circuit_breaker", "rate_governor")


class SnapshotStore(Protocol):
    """Narrow persistence port consumed by stateful router components."""

    def load(self) -> dict[str, Any] | None:
        """Return the last saved snapshot or None when nothing was saved yet."""

    def save(self, snapshot: dict[str, Any]) -> None:
        """Replace the stored snapshot."""


class MemorySnapshotStore:
    """In-process store; keeps a deep copy so callers cannot mutate saved state."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._snapshot = copy.deepcopy(initial) if initial is not None else None
        self.save_count = 0

    def load(self) -> dict[str, Any] | None:
        if self._snapshot is None:
            return None
        return copy.deepcopy(self._snapshot)

    def save(self, snapshot: dict[str, Any]) -> None:
        self._snapshot = copy.deepcopy(snapshot)
        self.save_count += 1


class JsonSnapshotStore:
    """One JSON document per component, replaced atomically on save."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text("utf-8"))
        except json.JSONDecodeError as error:
            raise ValueError(f"Corrupt snapshot file: {self.path}") from error
        if not isinstance(payload, dict):
            raise ValueError(f"Expected JSON object in {self.path}")
        return payload

    def save(self, snapshot: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            dir=self.path.parent,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(snapshot, handle, ensure_ascii=False, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class SqlSnapshotStore:
    """Embedded SQLite store keeping one row per snapshot name."""

    def __init__(self, engine: Engine, name: str) -> None:
        self.engine = engine
        self.name = name
        SQLModel.metadata.create_all(engine, tables=[RouterSnapshot.__table__])

    def load(self) -> dict[str, Any] | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(RouterSnapshot).where(RouterSnapshot.name == self.name),
            ).one_or_none()
            if row is None:
                return None
            payload = json.loads(row.payload)
        if not isinstance(payload, dict):
            raise ValueError(f"Expected JSON object in snapshot {self.name!r}")
        return payload

    def save(self, snapshot: dict[str, Any]) -> None:
        encoded = json.dumps(snapshot, ensure_ascii=False, sort_keys=True)
        with Session(self.engine) as session:
            row = session.get(RouterSnapshot, self.name)
            if row is None:
                row = RouterSnapshot(name=self.name, payload=encoded, updated_at=utc_now())
            else:
                row.payload = encoded
                row.updated_at = utc_now()
            session.add(row)
            session.commit()


@dataclass(slots=True)
class SnapshotStores:
    """Named stores handed to the stateful components."""

    queue: SnapshotStore
    dead_letters: SnapshotStore
    circuit_breaker: SnapshotStore
    rate_governor: SnapshotStore

    @classmethod
    def in_memory(cls) -> SnapshotStores:
        return cls(
            queue=MemorySnapshotStore(),
            dead_letters=MemorySnapshotStore(),
            circuit_breaker=MemorySnapshotStore(),
            rate_governor=MemorySnapshotStore(),
        )


def build_snapshot_stores(settings: Settings) -> SnapshotStores:
    """Build stores for the configured state backend."""

    backend = settings.state_backend
    if backend == "memory":
        return SnapshotStores.in_memory()
    if backend == "json":
        stores = {
            name: JsonSnapshotStore(settings.state_dir / f"{name.replace('_', '-')}.json")
            for name in SNAPSHOT_NAMES
        }
    elif backend == "sqlite":
        engine = build_sqlite_engine(db_path=settings.state_dir / "task-router.db")
        stores = {name: SqlSnapshotStore(engine, name) for name in SNAPSHOT_NAMES}
    else:
        raise ValueError(f"Unsupported state backend: {backend!r}. Use json, sqlite or memory.")
    logger.debug("Snapshot stores ready: backend=%s dir=%s", backend, settings.state_dir)
    return SnapshotStores(**stores)
