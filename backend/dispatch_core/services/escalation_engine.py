from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy.exc import IntegrityError

from dispatch_core.db.unit_of_work import UnitOfWork
from dispatch_core.models.dispatch import DISPATCH_LIFECYCLE, Dispatch, DispatchType
from dispatch_core.models.lifecycle import EntityKind
from dispatch_core.models.report import PriorityLevel
from dispatch_core.models.scene_support import SceneSupport, SupportStatus, SupportType
from dispatch_core.services.status_state_machine import StatusStateMachine

logger = logging.getLogger(__name__)

ESCALATING_PRIORITIES = frozenset({PriorityLevel.HIGH, PriorityLevel.CRITICAL})

SUPPORT_TYPE_BY_DISPATCH_TYPE: dict[DispatchType, SupportType] = {
    DispatchType.FIRE_ENGINE: SupportType.ADDITIONAL_UNITS,
    DispatchType.AMBULANCE: SupportType.MEDICAL_SUPPORT,
    DispatchType.RESCUE_UNIT: SupportType.SPECIALIZED_EQUIPMENT,
    DispatchType.HAZMAT_UNIT: SupportType.TECHNICAL_SUPPORT,
}


def requires_scene_support(priority: PriorityLevel) -> bool:
    return priority in ESCALATING_PRIORITIES


def determine_support_type(dispatch_type: DispatchType) -> SupportType:
    return SUPPORT_TYPE_BY_DISPATCH_TYPE.get(dispatch_type, SupportType.LOGISTICS_SUPPORT)


class EscalationEngine:
    def __init__(
        self,
        uow: UnitOfWork,
        state_machine: StatusStateMachine,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.uow = uow
        self.state_machine = state_machine
        self._clock = clock or (lambda: datetime.now(UTC))

    async def maybe_escalate(self, dispatch: Dispatch) -> SceneSupport | None:
        """Open the automatic scene support for a HIGH or CRITICAL dispatch.

        Returns the support created by this call, or None when the dispatch
        does not qualify, is closed, or already has one. The unique
        ``dispatch_id`` constraint decides concurrent callers.
        """
        if not requires_scene_support(dispatch.priority):
            return None
        current = await self.state_machine.get(EntityKind.DISPATCH, dispatch.id)
        if DISPATCH_LIFECYCLE.is_terminal(current.status):
            return None
        if await self.uow.scene_supports.get_for_dispatch(dispatch.id) is not None:
            return None

        now = self._clock()
        support_type = determine_support_type(dispatch.dispatch_type)
        support = SceneSupport(
            id=uuid.uuid4(),
            dispatch_id=dispatch.id,
            support_type=support_type,
            priority=dispatch.priority,
            status=SupportStatus.REQUESTED,
            requested_at=now,
            description=f"Automatic support request for {dispatch.dispatch_type.value}",
            version=1,
        )
        try:
            created = await self.uow.scene_supports.create(support)
        except IntegrityError:
            logger.info(
                "escalation.support_already_requested",
                extra={"dispatch_id": str(dispatch.id)},
            )
            return None

        await self.state_machine.record_creation(EntityKind.SCENE_SUPPORT, created, occurred_at=now)
        await self.uow.commit()
        logger.info(
            "escalation.support_requested",
            extra={
                "dispatch_id": str(dispatch.id),
                "support_id": str(created.id),
                "support_type": support_type.value,
                "priority": dispatch.priority.value,
            },
        )
        return created

    async def complete_support(
        self,
        support_id: uuid.UUID,
        *,
        summary: str | None = None,
        actual_cost: float | None = None,
        occurred_at: datetime | None = None,
    ) -> SceneSupport:
        changes = {}
        if summary is not None:
            changes["summary"] = summary
        if actual_cost is not None:
            changes["actual_cost"] = actual_cost
        return await self.state_machine.apply_with_retry(
            EntityKind.SCENE_SUPPORT,
            support_id,
            SupportStatus.COMPLETED,
            occurred_at=occurred_at,
            changes=changes or None,
        )
