from __future__ import annotations

import asyncio
import random

import allure
import pytest

from task_router.config import QueueSettings
from task_router.routing.drip_scheduler import DripScheduler
from task_router.routing.models import Priority, QueueItem, Task

pytestmark = [
    allure.epic("Task Routing"),
    allure.feature("Drip Scheduler"),
]


class _Executor:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.items: list[str] = []

    async def __call__(self, item: QueueItem) -> None:
        self.items.append(item.id)
        if self.fail:
            raise RuntimeError("backend unavailable")


def _scheduler(queue, executor, sleep_recorder=None, settings=None) -> DripScheduler:
    kwargs = {"sleep": sleep_recorder} if sleep_recorder is not None else {}
    return DripScheduler(
        queue=queue,
        execute=executor,
        settings=settings or QueueSettings(),
        rng=random.Random(11),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_drip_once_executes_one_ready_item(queue_factory) -> None:
    queue = queue_factory()
    first = queue.enqueue(Task(description="first"), Priority.HIGH)
    queue.enqueue(Task(description="second"), Priority.LOW)
    executor = _Executor()
    scheduler = _scheduler(queue, executor)

    released = await scheduler.drip_once()

    assert released is not None
    assert released.id == first.id
    assert executor.items == [first.id]
    assert len(queue) == 1
    assert scheduler.is_processing is False


@pytest.mark.asyncio
async def test_drip_once_requeues_failed_item(queue_factory) -> None:
    queue = queue_factory()
    item = queue.enqueue(Task(description="flaky"))
    scheduler = _scheduler(queue, _Executor(fail=True))

    await scheduler.drip_once()

    [requeued] = queue.items
    assert requeued.id == item.id
    assert requeued.retries == 1
    assert requeued.last_error == "backend unavailable"
    assert scheduler.is_processing is False


@pytest.mark.asyncio
async def test_drip_once_on_empty_queue_returns_none(queue_factory) -> None:
    executor = _Executor()

    assert await _scheduler(queue_factory(), executor).drip_once() is None
    assert executor.items == []


@pytest.mark.asyncio
async def test_drip_skips_while_processing(queue_factory) -> None:
    queue = queue_factory()
    queue.enqueue(Task(description="waiting"))
    queue.enqueue(Task(description="critical"), Priority.CRITICAL)
    executor = _Executor()
    scheduler = _scheduler(queue, executor)
    scheduler.is_processing = True

    assert await scheduler.drip_once() is None
    assert await scheduler.process_critical() == 0
    assert executor.items == []
    assert len(queue) == 2


@pytest.mark.asyncio
async def test_process_critical_drains_only_critical_items(queue_factory, clock) -> None:
    queue = queue_factory()
    normal = queue.enqueue(Task(description="normal"))
    clock.advance(seconds=1)
    first = queue.enqueue(Task(description="outage 1"), Priority.CRITICAL)
    clock.advance(seconds=1)
    second = queue.enqueue(Task(description="outage 2"), Priority.CRITICAL)
    executor = _Executor()
    scheduler = _scheduler(queue, executor)

    processed = await scheduler.process_critical()

    assert processed == 2
    assert executor.items == [first.id, second.id]
    assert [item.id for item in queue.items] == [normal.id]


def test_next_interval_stays_within_bounds(queue_factory) -> None:
    settings = QueueSettings(drip_min_minutes=5, drip_max_minutes=7)
    scheduler = _scheduler(queue_factory(), _Executor(), settings=settings)

    intervals = {scheduler.next_interval_minutes() for _ in range(200)}

    assert intervals <= {5, 6, 7}
    assert len(intervals) > 1


@pytest.mark.asyncio
async def test_start_is_idempotent_and_stop_cancels_loops(queue_factory) -> None:
    scheduler = _scheduler(queue_factory(), _Executor())

    scheduler.start()
    first_task = scheduler._drip_task
    scheduler.start()
    await asyncio.sleep(0)

    assert scheduler.is_running is True
    assert scheduler._drip_task is first_task

    await scheduler.stop()

    assert scheduler.is_running is False
