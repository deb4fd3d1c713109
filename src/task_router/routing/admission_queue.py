"""Persistent priority admission queue with retry backoff and dead-lettering."""

from __future__ import annotations

import logging
import math
import random
import string
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from task_router.config import QueueSettings
from task_router.routing.models import (
    PRIORITY_VALUES,
    Backend,
    DeadLetter,
    Priority,
    QueueItem,
    Task,
)
from task_router.storage.common import utc_now
from task_router.storage.snapshots import SnapshotStore

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase
_ID_SUFFIX_LENGTH = 9


@dataclass(slots=True)
class NextScheduledItem:
    """Earliest item still waiting for its backoff to elapse."""

    id: str
    priority_name: Priority
    scheduled_for: datetime
    minutes_until_ready: int


@dataclass(slots=True)
class QueueStatus:
    """Queue counters for CLI and router status output."""

    total_items: int
    ready_items: int
    scheduled_items: int
    dead_letters: int
    priority_counts: dict[Priority, int] = field(default_factory=dict)
    next_scheduled: NextScheduledItem | None = None
    scheduler_active: bool = False
    is_processing: bool = False


class AdmissionQueue:
    """Priority backlog ordered by (priority desc, enqueued_at asc).

    The queue exclusively owns its items and writes both snapshots through on
    every mutation.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: QueueSettings,
        queue_store: SnapshotStore,
        dead_letter_store: SnapshotStore,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.queue_store = queue_store
        self.dead_letter_store = dead_letter_store
        self._clock = clock
        self._random = rng or random.Random()  # noqa: S311
        self._items: list[QueueItem] = []
        self._dead_letters: list[DeadLetter] = []
        self._load()

    def __len__(self) -> int:
        return len(self._items)

    @property
    def items(self) -> tuple[QueueItem, ...]:
        return tuple(self._items)

    def enqueue(self, task: Task, priority: Priority | str = Priority.NORMAL) -> QueueItem:
        """Append a task; on overflow, push lower-priority items onto the local backend."""

        priority_name = _parse_priority(priority)
        priority_value = PRIORITY_VALUES[priority_name]
        now = self._clock()
        item = QueueItem(
            id=self._new_item_id(now),
            task=task,
            priority=priority_value,
            priority_name=priority_name,
            enqueued_at=now,
            scheduled_for=now if priority_name == Priority.CRITICAL else None,
        )

        if len(self._items) >= self.settings.max_size and priority_name != Priority.CRITICAL:
            self._downgrade_for_overflow(priority_value)

        self._items.append(item)
        self._sort()
        logger.info(
            "Enqueued %s with %s priority (queue size: %d)",
            item.id,
            priority_name.value,
            len(self._items),
        )
        self._save_queue()
        return item

    def process_next(self) -> QueueItem | None:
        """Remove and return the next ready item, critical items first."""

        now = self._clock()
        candidate = next(
            (
                item
                for item in self._items
                if item.priority_name == Priority.CRITICAL and item.is_ready(now)
            ),
            None,
        )
        if candidate is None:
            candidate = next((item for item in self._items if item.is_ready(now)), None)
        if candidate is None:
            return None
        self._items.remove(candidate)
        logger.info("Processing %s (%s priority)", candidate.id, candidate.priority_name.value)
        self._save_queue()
        return candidate

    def peek_critical(self) -> list[QueueItem]:
        now = self._clock()
        return [
            item
            for item in self._items
            if item.priority_name == Priority.CRITICAL and item.is_ready(now)
        ]

    def take(self, item_id: str) -> QueueItem | None:
        """Remove a specific item for immediate execution."""

        for item in self._items:
            if item.id == item_id:
                self._items.remove(item)
                self._save_queue()
                return item
        return None

    def mark_failed(self, item_id: str, error: str, item: QueueItem) -> bool:
        """Record a failed execution; return True when the item was re-queued."""

        now = self._clock()
        item.retries += 1
        item.last_error = error
        item.last_failed_at = now
        self._items = [existing for existing in self._items if existing.id != item_id]

        if item.retries >= self.settings.max_retries:
            self._dead_letters.append(
                DeadLetter(
                    id=item.id,
                    task=item.task,
                    priority_name=item.priority_name,
                    enqueued_at=item.enqueued_at,
                    retries=item.retries,
                    final_error=error,
                    moved_at=now,
                ),
            )
            if len(self._dead_letters) > self.settings.dead_letter_cap:
                self._dead_letters = self._dead_letters[-self.settings.dead_letter_cap :]
            logger.error(
                "Moved %s to dead letters after %d retries: %s",
                item_id,
                item.retries,
                error,
            )
            self._save_queue()
            self._save_dead_letters()
            return False

        backoff_minutes = (2**item.retries) * self.settings.backoff_base_minutes
        item.scheduled_for = now + timedelta(minutes=backoff_minutes)
        self._items.append(item)
        self._sort()
        logger.warning(
            "Re-queued %s for retry %d/%d in %s minutes",
            item_id,
            item.retries,
            self.settings.max_retries,
            backoff_minutes,
        )
        self._save_queue()
        return True

    def remove(self, item_id: str) -> bool:
        """Cancel a not-yet-dispatched item."""

        before = len(self._items)
        self._items = [item for item in self._items if item.id != item_id]
        if len(self._items) == before:
            return False
        logger.info("Removed %s from queue", item_id)
        self._save_queue()
        return True

    def get_queue_status(
        self,
        *,
        scheduler_active: bool = False,
        is_processing: bool = False,
    ) -> QueueStatus:
        now = self._clock()
        priority_counts: dict[Priority, int] = {}
        ready: list[QueueItem] = []
        scheduled: list[QueueItem] = []
        for item in self._items:
            priority_counts[item.priority_name] = priority_counts.get(item.priority_name, 0) + 1
            if item.is_ready(now):
                ready.append(item)
            else:
                scheduled.append(item)

        next_scheduled: NextScheduledItem | None = None
        if scheduled:
            earliest = min(scheduled, key=lambda item: item.scheduled_for or now)
            scheduled_for = earliest.scheduled_for or now
            next_scheduled = NextScheduledItem(
                id=earliest.id,
                priority_name=earliest.priority_name,
                scheduled_for=scheduled_for,
                minutes_until_ready=max(
                    0,
                    math.ceil((scheduled_for - now).total_seconds() / 60),
                ),
            )
        return QueueStatus(
            total_items=len(self._items),
            ready_items=len(ready),
            scheduled_items=len(scheduled),
            dead_letters=len(self._dead_letters),
            priority_counts=priority_counts,
            next_scheduled=next_scheduled,
            scheduler_active=scheduler_active,
            is_processing=is_processing,
        )

    def get_dead_letters(self, limit: int = 50) -> list[DeadLetter]:
        if limit <= 0:
            return []
        return self._dead_letters[-limit:]

    def clear_dead_letters(self) -> int:
        cleared = len(self._dead_letters)
        self._dead_letters = []
        self._save_dead_letters()
        logger.info("Cleared %d dead letters", cleared)
        return cleared

    def retry_dead_letter(
        self,
        dead_letter_id: str,
        priority: Priority | str = Priority.NORMAL,
    ) -> QueueItem | None:
        """Resurrect a dead letter as a brand-new item with a zero retry count."""

        for index, dead_letter in enumerate(self._dead_letters):
            if dead_letter.id == dead_letter_id:
                del self._dead_letters[index]
                self._save_dead_letters()
                item = self.enqueue(dead_letter.task, priority)
                logger.info("Dead letter %s retried as %s", dead_letter_id, item.id)
                return item
        return None

    def cleanup(self) -> int:
        """Drop dead letters older than the retention period."""

        cutoff = self._clock() - timedelta(days=self.settings.dead_letter_retention_days)
        before = len(self._dead_letters)
        self._dead_letters = [
            dead_letter for dead_letter in self._dead_letters if dead_letter.moved_at > cutoff
        ]
        removed = before - len(self._dead_letters)
        if removed:
            logger.info("Cleaned up %d old dead letters", removed)
            self._save_dead_letters()
        return removed

    def _downgrade_for_overflow(self, incoming_priority: int) -> None:
        lowest_first = sorted(
            (item for item in self._items if item.priority < incoming_priority),
            key=lambda item: (item.priority, -item.enqueued_at.timestamp()),
        )
        affected = lowest_first[: self.settings.overflow_downgrade_count]
        logger.warning(
            "Queue overflow (%d items), forcing %d lower-priority items onto local",
            len(self._items),
            len(affected),
        )
        for item in affected:
            item.task.force_backend = Backend.LOCAL
            logger.warning("Marked %s for local execution due to overflow", item.id)

    def _sort(self) -> None:
        self._items.sort(key=lambda item: (-item.priority, item.enqueued_at))

    def _new_item_id(self, now: datetime) -> str:
        suffix = "".join(self._random.choice(_ID_ALPHABET) for _ in range(_ID_SUFFIX_LENGTH))
        return f"task_{int(now.timestamp() * 1000)}_{suffix}"

    def _load(self) -> None:
        queue_snapshot = self.queue_store.load() or {}
        self._items = [QueueItem.from_dict(raw) for raw in queue_snapshot.get("items") or []]
        self._sort()
        dead_snapshot = self.dead_letter_store.load() or {}
        self._dead_letters = [
            DeadLetter.from_dict(raw) for raw in dead_snapshot.get("dead_letters") or []
        ]
        logger.debug(
            "Loaded %d queued items, %d dead letters",
            len(self._items),
            len(self._dead_letters),
        )

    def _save_queue(self) -> None:
        self.queue_store.save({"items": [item.to_dict() for item in self._items]})

    def _save_dead_letters(self) -> None:
        self.dead_letter_store.save(
            {"dead_letters": [dead_letter.to_dict() for dead_letter in self._dead_letters]},
        )


def _parse_priority(value: Priority | str) -> Priority:
    if isinstance(value, Priority):
        return value
    try:
        return Priority(str(value).strip().lower())
    except ValueError:
        logger.warning("Unknown priority %r, using normal", value)
        return Priority.NORMAL
