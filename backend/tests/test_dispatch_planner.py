import asyncio
import re

import pytest

from dispatch_core.core.errors import ConcurrentModification, ErrorCodes, InvalidTransition, UnsupportedEmergencyType
from dispatch_core.models import (
    Dispatch,
    DispatchStatus,
    DispatchType,
    EmergencyType,
    EntityKind,
    PriorityLevel,
    ReportStatus,
)
from dispatch_core.services import dispatch_planner
from dispatch_core.services.dispatch_planner import DispatchPlanner, determine_dispatch_type
from dispatch_core.services.status_state_machine import StatusStateMachine
from dispatch_core.services.task_scheduler import BackgroundTaskScheduler


def _planner(uow, clock, settings, **kwargs) -> DispatchPlanner:
    machine = StatusStateMachine(uow, clock=clock, retry_attempts=3)
    return DispatchPlanner(uow, machine, settings=settings, clock=clock, **kwargs)


@pytest.mark.parametrize(
    ("emergency_type", "expected"),
    [
        (EmergencyType.FIRE, DispatchType.FIRE_ENGINE),
        (EmergencyType.MEDICAL, DispatchType.AMBULANCE),
        (EmergencyType.TRAFFIC_ACCIDENT, DispatchType.RESCUE_UNIT),
        (EmergencyType.HAZMAT, DispatchType.HAZMAT_UNIT),
        (EmergencyType.RESCUE, DispatchType.RESCUE_UNIT),
        (EmergencyType.OTHER, DispatchType.COMMAND_UNIT),
    ],
)
def test_emergency_type_maps_to_dispatch_type(emergency_type, expected) -> None:
    assert determine_dispatch_type(emergency_type) is expected


def test_unmapped_emergency_type_is_unsupported() -> None:
    with pytest.raises(UnsupportedEmergencyType) as exc:
        determine_dispatch_type("earthquake")

    assert exc.value.code == ErrorCodes.UNSUPPORTED_EMERGENCY_TYPE
    assert exc.value.details == {"emergency_type": "earthquake"}


@pytest.mark.asyncio
async def test_plan_opens_dispatch_and_moves_report_together(
    uow_factory, store, seed, clock, settings, recorder
) -> None:
    report = seed.report(emergency_type=EmergencyType.HAZMAT, priority=PriorityLevel.CRITICAL)

    async with uow_factory() as uow:
        dispatch = await _planner(uow, clock, settings).plan_dispatch(report)

    assert re.fullmatch(r"DISP-20240501120000-[0-9A-F]{6}", dispatch.dispatch_number)
    assert dispatch.dispatch_type is DispatchType.HAZMAT_UNIT
    assert dispatch.priority is PriorityLevel.CRITICAL
    assert dispatch.status is DispatchStatus.DISPATCHED
    assert dispatch.dispatched_at == clock()
    assert (dispatch.incident_latitude, dispatch.incident_longitude) == (
        report.location_latitude,
        report.location_longitude,
    )
    assert report.status is ReportStatus.DISPATCHED
    assert report.dispatched_at == clock()
    assert report.version == 2
    assert [(e.entity_kind, e.from_status, e.to_status) for e in recorder.events] == [
        (EntityKind.REPORT, "received", "dispatched"),
        (EntityKind.DISPATCH, None, "dispatched"),
    ]
    assert store.all(Dispatch) == [dispatch]


@pytest.mark.asyncio
async def test_unsupported_type_leaves_report_received(uow_factory, store, seed, clock, settings, recorder) -> None:
    report = seed.report()
    report.emergency_type = "earthquake"

    async with uow_factory() as uow:
        with pytest.raises(UnsupportedEmergencyType):
            await _planner(uow, clock, settings).plan_dispatch(report)

    assert report.status is ReportStatus.RECEIVED
    assert report.version == 1
    assert store.all(Dispatch) == []
    assert recorder.events == []


@pytest.mark.asyncio
async def test_existing_active_dispatch_is_returned(uow_factory, store, seed, clock, settings, recorder) -> None:
    report = seed.report(status=ReportStatus.DISPATCHED)
    existing = seed.dispatch(report, status=DispatchStatus.EN_ROUTE)

    async with uow_factory() as uow:
        dispatch = await _planner(uow, clock, settings).plan_dispatch(report)

    assert dispatch is existing
    assert len(store.all(Dispatch)) == 1
    assert recorder.events == []


@pytest.mark.asyncio
async def test_report_past_received_cannot_be_planned(uow_factory, seed, clock, settings) -> None:
    report = seed.report(status=ReportStatus.CANCELLED)

    async with uow_factory() as uow:
        with pytest.raises(InvalidTransition):
            await _planner(uow, clock, settings).plan_dispatch(report)


@pytest.mark.asyncio
async def test_dispatch_number_collision_is_retried(uow_factory, seed, clock, settings, monkeypatch) -> None:
    seed.dispatch(dispatch_number="DISP-TAKEN")
    report = seed.report()
    numbers = iter(["DISP-TAKEN", "DISP-TAKEN", "DISP-FREE"])
    monkeypatch.setattr(dispatch_planner, "generate_dispatch_number", lambda now: next(numbers))

    async with uow_factory() as uow:
        dispatch = await _planner(uow, clock, settings).plan_dispatch(report)

    assert dispatch.dispatch_number == "DISP-FREE"


@pytest.mark.asyncio
async def test_concurrent_planners_open_one_dispatch(uow_factory, store, seed, clock, settings) -> None:
    report = seed.report()

    async def plan():
        async with uow_factory() as uow:
            return await _planner(uow, clock, settings).plan_dispatch(report)

    results = await asyncio.gather(plan(), plan(), return_exceptions=True)

    dispatches = [r for r in results if isinstance(r, Dispatch)]
    conflicts = [r for r in results if isinstance(r, ConcurrentModification)]
    assert len(dispatches) == 1
    assert len(conflicts) == 1
    assert store.all(Dispatch) == dispatches


@pytest.mark.asyncio
async def test_assignment_is_scheduled_after_commit(uow_factory, seed, clock, settings) -> None:
    report = seed.report()
    scheduler = BackgroundTaskScheduler()
    seen = []

    async def assignment_job(dispatch_id):
        seen.append(dispatch_id)

    async with uow_factory() as uow:
        dispatch = await _planner(
            uow, clock, settings, scheduler=scheduler, assignment_job=assignment_job
        ).plan_dispatch(report)
    await scheduler.drain()

    assert seen == [dispatch.id]
    [task] = scheduler.tasks("assign_units:")
    assert task.name == f"assign_units:{dispatch.dispatch_number}"
