import asyncio
from datetime import timedelta

import pytest

from conftest import FailingSink, InMemoryUnitOfWork, RecordingSink
from dispatch_core.models import DispatchStatus, EntityKind, TransitionRecord
from dispatch_core.services.statistics_aggregator import StatisticsAggregator
from dispatch_core.services.status_state_machine import StatusStateMachine
from dispatch_core.services.transition_fanout import TransitionFanout
from dispatch_core.workers.transition_redelivery_worker import RedeliveryResult, _redelivery_loop, redeliver_pending


async def _commit_transition(store, fanout, clock, dispatch, target):
    async with InMemoryUnitOfWork(store, fanout) as uow:
        machine = StatusStateMachine(uow, clock=clock, retry_attempts=3)
        await machine.apply_with_retry(EntityKind.DISPATCH, dispatch.id, target)


@pytest.mark.asyncio
async def test_undelivered_transition_is_redelivered_once_sinks_recover(store, seed, clock, settings) -> None:
    dispatch = seed.dispatch()
    recorder, stats = RecordingSink(), StatisticsAggregator()
    fanout = TransitionFanout([FailingSink(failures=1), recorder, stats])
    await _commit_transition(store, fanout, clock, dispatch, DispatchStatus.EN_ROUTE)
    [record] = store.all(TransitionRecord)
    assert record.delivered_at is None

    clock.advance(seconds=settings.redelivery_interval_seconds + 1)
    async with InMemoryUnitOfWork(store, fanout) as uow:
        result = await redeliver_pending(uow, fanout, settings=settings, now=clock())

    assert (result.delivered, result.failed) == (1, 0)
    assert record.delivered_at == clock()
    assert record.delivery_attempts == 2
    assert [event.transition_id for event in recorder.events] == [record.id, record.id]
    assert stats.get_counts(EntityKind.DISPATCH).active_by_status == {"en_route": 1}
    assert stats.duplicates_ignored == 1


@pytest.mark.asyncio
async def test_recent_transitions_are_left_to_their_committer(store, seed, clock, settings) -> None:
    dispatch = seed.dispatch()
    fanout = TransitionFanout([FailingSink(failures=1)])
    await _commit_transition(store, fanout, clock, dispatch, DispatchStatus.EN_ROUTE)

    async with InMemoryUnitOfWork(store, fanout) as uow:
        result = await redeliver_pending(uow, fanout, settings=settings, now=clock() + timedelta(seconds=1))

    assert result.scanned == 0


@pytest.mark.asyncio
async def test_transitions_past_max_attempts_are_not_retried(store, seed, clock, settings) -> None:
    settings.redelivery_max_attempts = 2
    dispatch = seed.dispatch()
    fanout = TransitionFanout([FailingSink(failures=10)])
    await _commit_transition(store, fanout, clock, dispatch, DispatchStatus.EN_ROUTE)
    clock.advance(minutes=5)

    async with InMemoryUnitOfWork(store, fanout) as uow:
        first = await redeliver_pending(uow, fanout, settings=settings, now=clock())
    async with InMemoryUnitOfWork(store, fanout) as uow:
        second = await redeliver_pending(uow, fanout, settings=settings, now=clock())

    assert (first.delivered, first.failed) == (0, 1)
    assert second.scanned == 0
    [record] = store.all(TransitionRecord)
    assert record.delivery_attempts == 2
    assert record.delivered_at is None


@pytest.mark.asyncio
async def test_workflow_redelivery_uses_its_own_fanout(workflow, store, seed, clock) -> None:
    dispatch = seed.dispatch()
    failing = FailingSink(failures=1)
    workflow.fanout.subscribe(failing)
    await workflow.set_status(EntityKind.DISPATCH, dispatch.id, DispatchStatus.EN_ROUTE)

    clock.advance(minutes=1)
    result = await workflow.redeliver_pending()

    assert result.delivered >= 1
    assert all(r.delivered_at is not None for r in store.all(TransitionRecord))


@pytest.mark.asyncio
async def test_redelivery_loop_survives_a_failed_batch_and_stops_on_signal() -> None:
    stop = asyncio.Event()
    calls = 0

    async def run_batch() -> RedeliveryResult:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("database unavailable")
        stop.set()
        return RedeliveryResult()

    await asyncio.wait_for(_redelivery_loop(stop, run_batch, interval_seconds=0.01), timeout=1)

    assert calls == 2
