"""Mirrors a dispatch's status onto the entities that follow it.

Each follow-up is its own state-machine transition. Followers that already
moved past the target, or that were released elsewhere, are left alone; a
follow-up that still fails is logged and does not undo the dispatch change.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from dispatch_core.core.errors import AppError
from dispatch_core.db.unit_of_work import UnitOfWork
from dispatch_core.models import LIFECYCLES
from dispatch_core.models.dispatch import AssignmentStatus, Dispatch, DispatchStatus
from dispatch_core.models.lifecycle import EntityKind
from dispatch_core.models.report import ReportStatus
from dispatch_core.models.scene_support import SupportStatus
from dispatch_core.models.unit import UnitStatus
from dispatch_core.services.status_state_machine import StatusStateMachine

logger = logging.getLogger(__name__)

REPORT_STATUS_FOR_DISPATCH: dict[DispatchStatus, ReportStatus] = {
    DispatchStatus.EN_ROUTE: ReportStatus.EN_ROUTE,
    DispatchStatus.ON_SCENE: ReportStatus.ON_SCENE,
    DispatchStatus.COMPLETED: ReportStatus.COMPLETED,
    DispatchStatus.CANCELLED: ReportStatus.CANCELLED,
}

ASSIGNMENT_STATUS_FOR_DISPATCH: dict[DispatchStatus, AssignmentStatus] = {
    DispatchStatus.EN_ROUTE: AssignmentStatus.EN_ROUTE,
    DispatchStatus.ON_SCENE: AssignmentStatus.ON_SCENE,
    DispatchStatus.COMPLETED: AssignmentStatus.COMPLETED,
    DispatchStatus.CANCELLED: AssignmentStatus.CANCELLED,
}

UNIT_STATUS_FOR_DISPATCH: dict[DispatchStatus, UnitStatus] = {
    DispatchStatus.ON_SCENE: UnitStatus.ON_SCENE,
    DispatchStatus.COMPLETED: UnitStatus.RETURNING,
    DispatchStatus.CANCELLED: UnitStatus.AVAILABLE,
}

SUPPORT_STATUS_FOR_DISPATCH: dict[DispatchStatus, SupportStatus] = {
    DispatchStatus.CANCELLED: SupportStatus.CANCELLED,
}


class StatusPropagator:
    def __init__(self, uow: UnitOfWork, state_machine: StatusStateMachine) -> None:
        self.uow = uow
        self.state_machine = state_machine

    async def propagate_dispatch_status(self, dispatch: Dispatch, *, occurred_at: datetime | None = None) -> int:
        """Apply follow-ups for the dispatch's current status; returns how many changed."""
        status = dispatch.status
        applied = 0

        report_target = REPORT_STATUS_FOR_DISPATCH.get(status)
        if report_target is not None:
            applied += await self._follow(EntityKind.REPORT, dispatch.report_id, report_target, occurred_at)

        assignment_target = ASSIGNMENT_STATUS_FOR_DISPATCH.get(status)
        unit_target = UNIT_STATUS_FOR_DISPATCH.get(status)
        for assignment in await self.uow.dispatches.list_assignments(dispatch.id):
            if assignment_target is not None:
                applied += await self._follow(
                    EntityKind.UNIT_ASSIGNMENT, assignment.id, assignment_target, occurred_at
                )
            if unit_target is not None:
                applied += await self._follow(
                    EntityKind.UNIT,
                    assignment.unit_id,
                    unit_target,
                    occurred_at,
                    guard=lambda unit: unit.current_dispatch_id == dispatch.id,
                )

        support_target = SUPPORT_STATUS_FOR_DISPATCH.get(status)
        if support_target is not None:
            support = await self.uow.scene_supports.get_for_dispatch(dispatch.id)
            if support is not None:
                applied += await self._follow(EntityKind.SCENE_SUPPORT, support.id, support_target, occurred_at)

        logger.info(
            "status_propagation.dispatch_followed",
            extra={"dispatch_id": str(dispatch.id), "status": status.value, "applied": applied},
        )
        return applied

    async def cancel_active_dispatch(self, report_id: uuid.UUID, *, occurred_at: datetime | None = None) -> int:
        dispatch = await self.uow.dispatches.get_active_for_report(report_id)
        if dispatch is None:
            return 0
        if not await self._follow(EntityKind.DISPATCH, dispatch.id, DispatchStatus.CANCELLED, occurred_at):
            return 0
        cancelled = await self.state_machine.get(EntityKind.DISPATCH, dispatch.id)
        return 1 + await self.propagate_dispatch_status(cancelled, occurred_at=occurred_at)

    async def _follow(
        self,
        kind: EntityKind,
        entity_id: uuid.UUID,
        target: Any,
        occurred_at: datetime | None,
        *,
        guard: Callable[[Any], bool] | None = None,
    ) -> int:
        lifecycle = LIFECYCLES[kind]

        def reachable(entity: Any) -> bool:
            if guard is not None and not guard(entity):
                return False
            return entity.status != target and target in lifecycle.allowed_targets(entity.status)

        try:
            updated = await self.state_machine.apply_with_retry(
                kind, entity_id, target, occurred_at=occurred_at, guard=reachable
            )
        except AppError as exc:
            logger.warning(
                "status_propagation.follow_up_failed",
                extra={
                    "entity_kind": kind.value,
                    "entity_id": str(entity_id),
                    "to_status": target.value,
                    "error_code": exc.code,
                },
            )
            return 0
        return 0 if updated is None else 1
