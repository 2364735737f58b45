"""Public operations of the dispatch workflow.

``DispatchWorkflow`` owns no state of its own beyond the shared sinks: each
operation opens a fresh ``UnitOfWork``, does its transactional work, and
hands follow-up work (planning after intake, assignment after planning) to
the background scheduler so the caller's commit never waits on it.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import IntegrityError

from dispatch_core.core.config import Settings, get_settings
from dispatch_core.core.errors import ConcurrentModification, NotFound, RetryExhausted
from dispatch_core.db.session import get_async_sessionmaker
from dispatch_core.db.unit_of_work import UnitOfWork
from dispatch_core.models.dispatch import Dispatch, DispatchStatus
from dispatch_core.models.lifecycle import EntityKind
from dispatch_core.models.report import PriorityLevel, Report, ReportStatus
from dispatch_core.models.scene_support import SupportStatus
from dispatch_core.schemas.dispatch import (
    DispatchDetailResponse,
    DispatchListResponse,
    DispatchResponse,
    SceneSupportCompleteRequest,
    SceneSupportListResponse,
    SceneSupportResponse,
    StatusChangeResponse,
    UnitAssignmentResponse,
)
from dispatch_core.schemas.report import ReportCreateRequest, ReportListResponse, ReportResponse
from dispatch_core.schemas.statistics import EntityCounts, StatisticsSnapshot
from dispatch_core.services.dispatch_planner import DispatchPlanner, generate_number
from dispatch_core.services.escalation_engine import EscalationEngine
from dispatch_core.services.event_publisher import EventPublisher, NotificationSink, get_event_publisher
from dispatch_core.services.lookup_cache import LookupCache
from dispatch_core.services.statistics_aggregator import StatisticsAggregator
from dispatch_core.services.status_propagation import StatusPropagator
from dispatch_core.services.status_state_machine import StatusStateMachine
from dispatch_core.services.task_scheduler import BackgroundTaskScheduler
from dispatch_core.services.transition_fanout import TransitionFanout
from dispatch_core.services.unit_assignment_engine import AssignmentOutcome, AssignmentResult, UnitAssignmentEngine
from dispatch_core.workers.transition_redelivery_worker import RedeliveryResult, redeliver_pending

logger = logging.getLogger(__name__)


class DispatchWorkflow:
    def __init__(
        self,
        *,
        uow_factory: Callable[[], UnitOfWork],
        fanout: TransitionFanout,
        scheduler: BackgroundTaskScheduler,
        statistics: StatisticsAggregator,
        cache: LookupCache,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.fanout = fanout
        self.scheduler = scheduler
        self.statistics = statistics
        self.cache = cache
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(UTC))

    def _state_machine(self, uow: UnitOfWork) -> StatusStateMachine:
        return StatusStateMachine(uow, clock=self._clock, retry_attempts=self.settings.transition_retry_attempts)

    # ------------------------------------------------------------------ #
    # Intake and planning                                                 #
    # ------------------------------------------------------------------ #

    async def create_report(self, payload: ReportCreateRequest) -> ReportResponse:
        received_at = payload.received_at or self._clock()
        async with self._uow_factory() as uow:
            report = await self._insert_report(uow, payload, received_at)
            await self._state_machine(uow).record_creation(EntityKind.REPORT, report, occurred_at=received_at)
            await uow.commit()
            response = ReportResponse.model_validate(report)

        logger.info(
            "dispatch_workflow.report_received",
            extra={
                "report_id": str(response.id),
                "report_number": response.report_number,
                "emergency_type": response.emergency_type.value,
                "priority": response.priority.value,
            },
        )
        self.scheduler.schedule(f"plan_dispatch:{response.report_number}", self.plan_dispatch, response.id)
        return response

    async def _insert_report(self, uow: UnitOfWork, payload: ReportCreateRequest, received_at: datetime) -> Report:
        attempts = self.settings.number_generation_attempts
        for attempt in range(1, attempts + 1):
            report = Report(
                id=uuid.uuid4(),
                report_number=generate_number("ER", received_at),
                caller_name=payload.caller_name,
                caller_phone=payload.caller_phone,
                location_address=payload.location_address,
                location_latitude=payload.location_latitude,
                location_longitude=payload.location_longitude,
                description=payload.description,
                emergency_type=payload.emergency_type,
                priority=payload.priority,
                status=ReportStatus.RECEIVED,
                received_at=received_at,
                version=1,
            )
            try:
                return await uow.reports.create(report)
            except IntegrityError:
                logger.warning("dispatch_workflow.report_number_collision", extra={"attempt": attempt})
        raise RetryExhausted(operation="report_number_generation", attempts=attempts)

    async def plan_dispatch(self, report_id: uuid.UUID) -> DispatchResponse:
        attempts = self.settings.transition_retry_attempts
        for attempt in range(1, attempts + 1):
            async with self._uow_factory() as uow:
                state_machine = self._state_machine(uow)
                report = await state_machine.get(EntityKind.REPORT, report_id)
                planner = DispatchPlanner(
                    uow,
                    state_machine,
                    scheduler=self.scheduler,
                    assignment_job=self.assign_units,
                    settings=self.settings,
                    clock=self._clock,
                )
                try:
                    dispatch = await planner.plan_dispatch(report)
                except ConcurrentModification:
                    logger.info(
                        "dispatch_workflow.plan_retry",
                        extra={"report_id": str(report_id), "attempt": attempt},
                    )
                    continue
                return DispatchResponse.model_validate(dispatch)
        raise RetryExhausted(operation="plan_dispatch", attempts=attempts, details={"report_id": str(report_id)})

    async def assign_units(self, dispatch_id: uuid.UUID) -> AssignmentResult:
        async with self._uow_factory() as uow:
            state_machine = self._state_machine(uow)
            escalation = EscalationEngine(uow, state_machine, clock=self._clock)
            engine = UnitAssignmentEngine(uow, state_machine, escalation, settings=self.settings, clock=self._clock)
            dispatch = await state_machine.get(EntityKind.DISPATCH, dispatch_id)
            result = await engine.assign_units(dispatch)

        if result.outcome is AssignmentOutcome.UNFULFILLED:
            self.statistics.record_unfulfilled(dispatch_id)
        return result

    # ------------------------------------------------------------------ #
    # Status changes                                                      #
    # ------------------------------------------------------------------ #

    async def set_status(
        self,
        kind: EntityKind | str,
        entity_id: uuid.UUID,
        target_status: Any,
        *,
        occurred_at: datetime | None = None,
    ) -> StatusChangeResponse:
        kind = EntityKind(kind)
        async with self._uow_factory() as uow:
            state_machine = self._state_machine(uow)
            entity, changed = await state_machine.transition_with_retry(
                kind, entity_id, target_status, occurred_at=occurred_at
            )

            if changed and kind is EntityKind.DISPATCH:
                await StatusPropagator(uow, state_machine).propagate_dispatch_status(entity, occurred_at=occurred_at)
            elif changed and kind is EntityKind.REPORT and entity.status is ReportStatus.CANCELLED:
                await StatusPropagator(uow, state_machine).cancel_active_dispatch(entity.id, occurred_at=occurred_at)

            return StatusChangeResponse(
                entity_kind=kind,
                entity_id=entity.id,
                status=entity.status.value,
                version=entity.version,
                changed=changed,
            )

    async def set_status_by_number(
        self,
        kind: EntityKind | str,
        number: str,
        target_status: Any,
        *,
        occurred_at: datetime | None = None,
    ) -> StatusChangeResponse:
        """``set_status`` for a report or dispatch addressed by its public number."""
        kind = EntityKind(kind)
        async with self._uow_factory() as uow:
            if kind is EntityKind.REPORT:
                entity = await uow.reports.get_by_number(number)
            elif kind is EntityKind.DISPATCH:
                entity = await uow.dispatches.get_by_number(number)
            else:
                raise ValueError(f"{kind.value} has no public number")
            if entity is None:
                raise NotFound(entity_kind=kind.value, key=f"{kind.value}_number", value=number)
            entity_id = entity.id
        return await self.set_status(kind, entity_id, target_status, occurred_at=occurred_at)

    async def complete_scene_support(
        self, support_id: uuid.UUID, payload: SceneSupportCompleteRequest
    ) -> SceneSupportResponse:
        async with self._uow_factory() as uow:
            state_machine = self._state_machine(uow)
            support = await EscalationEngine(uow, state_machine, clock=self._clock).complete_support(
                support_id, summary=payload.summary, actual_cost=payload.actual_cost
            )
            return SceneSupportResponse.model_validate(support)

    # ------------------------------------------------------------------ #
    # Reads                                                               #
    # ------------------------------------------------------------------ #

    async def get_report_by_number(self, report_number: str) -> ReportResponse:
        cached = self.cache.get(EntityKind.REPORT, report_number)
        if cached is not None:
            return cached
        async with self._uow_factory() as uow:
            report = await uow.reports.get_by_number(report_number)
            if report is None:
                raise NotFound(entity_kind=EntityKind.REPORT.value, key="report_number", value=report_number)
            response = ReportResponse.model_validate(report)
        self.cache.put(EntityKind.REPORT, report_number, response.id, response, version=response.version)
        return response

    async def get_dispatch_by_number(self, dispatch_number: str) -> DispatchResponse:
        cached = self.cache.get(EntityKind.DISPATCH, dispatch_number)
        if cached is not None:
            return cached
        async with self._uow_factory() as uow:
            dispatch = await uow.dispatches.get_by_number(dispatch_number)
            if dispatch is None:
                raise NotFound(entity_kind=EntityKind.DISPATCH.value, key="dispatch_number", value=dispatch_number)
            response = DispatchResponse.model_validate(dispatch)
        self.cache.put(EntityKind.DISPATCH, dispatch_number, response.id, response, version=response.version)
        return response

    async def get_dispatch_detail(self, dispatch_id: uuid.UUID) -> DispatchDetailResponse:
        async with self._uow_factory() as uow:
            dispatch: Dispatch = await self._state_machine(uow).get(EntityKind.DISPATCH, dispatch_id)
            assignments = await uow.dispatches.list_assignments(dispatch_id)
            support = await uow.scene_supports.get_for_dispatch(dispatch_id)
            return DispatchDetailResponse(
                dispatch=DispatchResponse.model_validate(dispatch),
                assignments=[UnitAssignmentResponse.model_validate(a) for a in assignments],
                scene_support=SceneSupportResponse.model_validate(support) if support else None,
            )

    async def list_reports(
        self,
        *,
        status: ReportStatus | None = None,
        priority: PriorityLevel | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> ReportListResponse:
        async with self._uow_factory() as uow:
            reports, total = await uow.reports.list_paginated(
                status=status, priority=priority, limit=limit, offset=offset
            )
            return ReportListResponse(
                items=[ReportResponse.model_validate(report) for report in reports],
                total=total,
                limit=limit,
                offset=offset,
            )

    async def list_dispatches(
        self,
        *,
        status: DispatchStatus | None = None,
        priority: PriorityLevel | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> DispatchListResponse:
        async with self._uow_factory() as uow:
            dispatches, total = await uow.dispatches.list_paginated(
                status=status, priority=priority, limit=limit, offset=offset
            )
            return DispatchListResponse(
                items=[DispatchResponse.model_validate(dispatch) for dispatch in dispatches],
                total=total,
                limit=limit,
                offset=offset,
            )

    async def list_scene_supports(
        self,
        *,
        status: SupportStatus | None = None,
        priority: PriorityLevel | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> SceneSupportListResponse:
        async with self._uow_factory() as uow:
            supports, total = await uow.scene_supports.list_paginated(
                status=status, priority=priority, limit=limit, offset=offset
            )
            return SceneSupportListResponse(
                items=[SceneSupportResponse.model_validate(support) for support in supports],
                total=total,
                limit=limit,
                offset=offset,
            )

    async def get_scene_support_for_dispatch(self, dispatch_id: uuid.UUID) -> SceneSupportResponse:
        async with self._uow_factory() as uow:
            support = await uow.scene_supports.get_for_dispatch(dispatch_id)
            if support is None:
                raise NotFound(entity_kind=EntityKind.SCENE_SUPPORT.value, key="dispatch_id", value=dispatch_id)
            return SceneSupportResponse.model_validate(support)

    def get_counts(self, kind: EntityKind | str) -> EntityCounts:
        return self.statistics.get_counts(EntityKind(kind))

    def statistics_snapshot(self) -> StatisticsSnapshot:
        return self.statistics.snapshot()

    # ------------------------------------------------------------------ #
    # Background                                                          #
    # ------------------------------------------------------------------ #

    async def redeliver_pending(self) -> RedeliveryResult:
        async with self._uow_factory() as uow:
            return await redeliver_pending(uow, self.fanout, settings=self.settings, now=self._clock())

    async def drain(self) -> None:
        await self.scheduler.drain()


def build_workflow(
    *,
    publisher: EventPublisher | None = None,
    session_factory: Callable[[], Any] | None = None,
    settings: Settings | None = None,
) -> DispatchWorkflow:
    settings = settings or get_settings()
    statistics = StatisticsAggregator(dedup_window=settings.statistics_dedup_window)
    cache = LookupCache()
    fanout = TransitionFanout([NotificationSink(publisher or get_event_publisher()), statistics, cache])
    session_factory = session_factory or get_async_sessionmaker()
    return DispatchWorkflow(
        uow_factory=lambda: UnitOfWork(session_factory, fanout),
        fanout=fanout,
        scheduler=BackgroundTaskScheduler(history_size=settings.task_history_size),
        statistics=statistics,
        cache=cache,
        settings=settings,
    )
