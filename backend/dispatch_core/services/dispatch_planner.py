from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import IntegrityError

from dispatch_core.core.config import Settings, get_settings
from dispatch_core.core.errors import InvalidTransition, RetryExhausted, UnsupportedEmergencyType
from dispatch_core.db.unit_of_work import UnitOfWork
from dispatch_core.models.dispatch import Dispatch, DispatchStatus, DispatchType
from dispatch_core.models.lifecycle import EntityKind
from dispatch_core.models.report import REPORT_LIFECYCLE, EmergencyType, Report, ReportStatus
from dispatch_core.services.status_state_machine import StatusStateMachine
from dispatch_core.services.task_scheduler import BackgroundTaskScheduler

logger = logging.getLogger(__name__)

DISPATCH_TYPE_BY_EMERGENCY_TYPE: dict[EmergencyType, DispatchType] = {
    EmergencyType.FIRE: DispatchType.FIRE_ENGINE,
    EmergencyType.MEDICAL: DispatchType.AMBULANCE,
    EmergencyType.TRAFFIC_ACCIDENT: DispatchType.RESCUE_UNIT,
    EmergencyType.HAZMAT: DispatchType.HAZMAT_UNIT,
    EmergencyType.RESCUE: DispatchType.RESCUE_UNIT,
    EmergencyType.OTHER: DispatchType.COMMAND_UNIT,
}


def determine_dispatch_type(emergency_type: Any) -> DispatchType:
    try:
        key = EmergencyType(emergency_type)
    except ValueError:
        raise UnsupportedEmergencyType(emergency_type) from None
    dispatch_type = DISPATCH_TYPE_BY_EMERGENCY_TYPE.get(key)
    if dispatch_type is None:
        raise UnsupportedEmergencyType(emergency_type)
    return dispatch_type


def generate_number(prefix: str, now: datetime) -> str:
    return f"{prefix}-{now.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:6].upper()}"


def generate_dispatch_number(now: datetime) -> str:
    return generate_number("DISP", now)


class DispatchPlanner:
    def __init__(
        self,
        uow: UnitOfWork,
        state_machine: StatusStateMachine,
        *,
        scheduler: BackgroundTaskScheduler | None = None,
        assignment_job: Callable[[uuid.UUID], Awaitable[Any]] | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.uow = uow
        self.state_machine = state_machine
        self.scheduler = scheduler
        self.assignment_job = assignment_job
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(UTC))

    async def plan_dispatch(self, report: Report) -> Dispatch:
        """Open the dispatch for a RECEIVED report.

        The report's RECEIVED -> DISPATCHED transition and the dispatch insert
        commit together. If the report already has an active dispatch, that
        dispatch is returned and nothing is written.
        """
        expected_version, report_status = report.version, report.status
        existing = await self.uow.dispatches.get_active_for_report(report.id)
        if existing is not None:
            logger.info(
                "dispatch_planner.active_dispatch_exists",
                extra={"report_id": str(report.id), "dispatch_id": str(existing.id)},
            )
            return existing

        dispatch_type = determine_dispatch_type(report.emergency_type)
        if report_status is not ReportStatus.RECEIVED:
            raise InvalidTransition(
                entity_kind=EntityKind.REPORT.value,
                from_status=report_status.value,
                to_status=ReportStatus.DISPATCHED.value,
                allowed_targets=sorted(s.value for s in REPORT_LIFECYCLE.allowed_targets(report_status)),
            )

        now = self._clock()
        try:
            await self.state_machine.apply(
                EntityKind.REPORT,
                report.id,
                expected_version,
                ReportStatus.DISPATCHED,
                occurred_at=now,
                commit=False,
            )
            dispatch = await self._insert_dispatch(report, dispatch_type, now)
            await self.state_machine.record_creation(EntityKind.DISPATCH, dispatch, occurred_at=now)
        except Exception:
            await self.uow.rollback()
            raise
        await self.uow.commit()

        logger.info(
            "dispatch_planner.dispatch_created",
            extra={
                "report_id": str(report.id),
                "dispatch_id": str(dispatch.id),
                "dispatch_number": dispatch.dispatch_number,
                "dispatch_type": dispatch_type.value,
                "priority": dispatch.priority.value,
            },
        )
        self._schedule_assignment(dispatch)
        return dispatch

    async def _insert_dispatch(self, report: Report, dispatch_type: DispatchType, now: datetime) -> Dispatch:
        attempts = self.settings.number_generation_attempts
        for attempt in range(1, attempts + 1):
            dispatch = Dispatch(
                id=uuid.uuid4(),
                dispatch_number=generate_dispatch_number(now),
                report_id=report.id,
                dispatch_type=dispatch_type,
                priority=report.priority,
                status=DispatchStatus.DISPATCHED,
                incident_latitude=report.location_latitude,
                incident_longitude=report.location_longitude,
                dispatched_at=now,
                version=1,
            )
            try:
                return await self.uow.dispatches.create(dispatch)
            except IntegrityError:
                logger.warning(
                    "dispatch_planner.dispatch_number_collision",
                    extra={"report_id": str(report.id), "attempt": attempt},
                )
        raise RetryExhausted(operation="dispatch_number_generation", attempts=attempts)

    def _schedule_assignment(self, dispatch: Dispatch) -> None:
        if self.scheduler is None or self.assignment_job is None:
            return
        self.scheduler.schedule(f"assign_units:{dispatch.dispatch_number}", self.assignment_job, dispatch.id)
