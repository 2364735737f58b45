import asyncio
from dataclasses import dataclass

import pytest

from dispatch_core.core.errors import ErrorCodes, NotFound
from dispatch_core.services.task_scheduler import BackgroundTaskScheduler, TaskOutcome


@dataclass
class _Skipped:
    task_outcome: TaskOutcome = TaskOutcome.SKIPPED
    reason_code: str = ErrorCodes.RESOURCE_UNAVAILABLE


@pytest.mark.asyncio
async def test_task_outcomes_are_recorded() -> None:
    scheduler = BackgroundTaskScheduler()

    async def ok(value):
        return value * 2

    async def missing():
        raise NotFound(entity_kind="dispatch", key="id", value="x")

    async def crash():
        raise RuntimeError("boom")

    async def skip():
        return _Skipped()

    succeeded = scheduler.schedule("ok", ok, 21)
    failed = scheduler.schedule("missing", missing)
    crashed = scheduler.schedule("crash", crash)
    skipped = scheduler.schedule("skip", skip)
    assert succeeded.outcome is TaskOutcome.PENDING

    await scheduler.drain()

    assert (succeeded.outcome, succeeded.result) == (TaskOutcome.SUCCEEDED, 42)
    assert (failed.outcome, failed.error_code) == (TaskOutcome.FAILED, ErrorCodes.NOT_FOUND)
    assert (crashed.outcome, crashed.error_code) == (TaskOutcome.FAILED, ErrorCodes.INTERNAL_ERROR)
    assert crashed.error_message == "boom"
    assert (skipped.outcome, skipped.error_code) == (TaskOutcome.SKIPPED, ErrorCodes.RESOURCE_UNAVAILABLE)
    assert all(task.finished_at is not None for task in scheduler.tasks())


@pytest.mark.asyncio
async def test_drain_waits_for_tasks_scheduled_by_tasks() -> None:
    scheduler = BackgroundTaskScheduler()
    order = []

    async def child():
        order.append("child")

    async def parent():
        order.append("parent")
        scheduler.schedule("child", child)

    scheduler.schedule("parent", parent)
    await scheduler.drain()

    assert order == ["parent", "child"]
    assert [task.name for task in scheduler.tasks()] == ["parent", "child"]
    assert all(task.done for task in scheduler.tasks())


@pytest.mark.asyncio
async def test_finished_tasks_are_kept_in_a_bounded_history() -> None:
    scheduler = BackgroundTaskScheduler(history_size=5)

    async def job(n):
        return n

    records = [scheduler.schedule(f"job:{n}", job, n) for n in range(12)]
    await scheduler.drain()

    assert scheduler.pending_count == 0
    assert [task.name for task in scheduler.tasks()] == [f"job:{n}" for n in range(7, 12)]
    assert all(record.task is None for record in records)
    assert all(record.outcome is TaskOutcome.SUCCEEDED for record in records)


@pytest.mark.asyncio
async def test_shutdown_cancels_pending_tasks() -> None:
    scheduler = BackgroundTaskScheduler()
    started = asyncio.Event()

    async def forever():
        started.set()
        await asyncio.Event().wait()

    running = scheduler.schedule("forever", forever)
    queued = scheduler.schedule("queued", forever)
    await started.wait()
    await scheduler.shutdown()

    assert scheduler.pending_count == 0
    assert (running.outcome, running.error_message) == (TaskOutcome.FAILED, "cancelled")
    assert queued.outcome is TaskOutcome.FAILED
