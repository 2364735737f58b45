"""Reserves available units for a dispatch.

Each unit is claimed with its own version-conditioned AVAILABLE -> DISPATCHED
transition, committed together with the assignment row. A unit that another
dispatch claimed first is skipped, so one unit never serves two open
dispatches. The dispatch is re-checked around every reservation; if it is
cancelled mid-run, the reservation just made is withdrawn and the run stops.
"""

from __future__ import annotations

import enum
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError

from dispatch_core.core.config import Settings, get_settings
from dispatch_core.core.errors import ConcurrentModification, ErrorCodes, InvalidTransition, RetryExhausted
from dispatch_core.db.unit_of_work import UnitOfWork
from dispatch_core.models.dispatch import (
    DISPATCH_LIFECYCLE,
    AssignmentStatus,
    Dispatch,
    DispatchType,
    UnitAssignment,
)
from dispatch_core.models.lifecycle import EntityKind
from dispatch_core.models.scene_support import SceneSupport
from dispatch_core.models.unit import Unit, UnitStatus, UnitType
from dispatch_core.services.escalation_engine import EscalationEngine
from dispatch_core.services.geo import distance_between
from dispatch_core.services.status_state_machine import StatusStateMachine
from dispatch_core.services.task_scheduler import TaskOutcome

logger = logging.getLogger(__name__)

UNIT_TYPE_BY_DISPATCH_TYPE: dict[DispatchType, UnitType] = {
    DispatchType.FIRE_ENGINE: UnitType.ENGINE,
    DispatchType.AMBULANCE: UnitType.AMBULANCE,
    DispatchType.LADDER_TRUCK: UnitType.LADDER,
    DispatchType.RESCUE_UNIT: UnitType.RESCUE,
    DispatchType.HAZMAT_UNIT: UnitType.HAZMAT,
    DispatchType.COMMAND_UNIT: UnitType.COMMAND,
}


class AssignmentOutcome(str, enum.Enum):
    ASSIGNED = "assigned"
    UNFULFILLED = "unfulfilled"
    ABORTED = "aborted"


@dataclass
class AssignmentResult:
    dispatch_id: uuid.UUID
    outcome: AssignmentOutcome
    assignments: list[UnitAssignment] = field(default_factory=list)
    skipped_unit_ids: list[uuid.UUID] = field(default_factory=list)
    escalation: SceneSupport | None = None

    @property
    def task_outcome(self) -> TaskOutcome:
        if self.outcome is AssignmentOutcome.ASSIGNED:
            return TaskOutcome.SUCCEEDED
        return TaskOutcome.SKIPPED

    @property
    def reason_code(self) -> str | None:
        if self.outcome is AssignmentOutcome.UNFULFILLED:
            return ErrorCodes.RESOURCE_UNAVAILABLE
        if self.outcome is AssignmentOutcome.ABORTED:
            return ErrorCodes.DISPATCH_CLOSED
        return None


def unit_type_for(dispatch_type: DispatchType) -> UnitType:
    return UNIT_TYPE_BY_DISPATCH_TYPE[dispatch_type]


class UnitAssignmentEngine:
    def __init__(
        self,
        uow: UnitOfWork,
        state_machine: StatusStateMachine,
        escalation: EscalationEngine,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.uow = uow
        self.state_machine = state_machine
        self.escalation = escalation
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(UTC))

    async def assign_units(self, dispatch: Dispatch) -> AssignmentResult:
        result = AssignmentResult(dispatch_id=dispatch.id, outcome=AssignmentOutcome.UNFULFILLED)
        if not await self._dispatch_open(dispatch.id):
            result.outcome = AssignmentOutcome.ABORTED
            return result

        existing = [
            assignment
            for assignment in await self.uow.dispatches.list_assignments(dispatch.id)
            if assignment.status is not AssignmentStatus.CANCELLED
        ]
        remaining = self.settings.max_units_per_dispatch - len(existing)
        candidates = self.rank_candidates(
            dispatch, await self.uow.units.find_available(unit_type_for(dispatch.dispatch_type))
        )

        aborted = False
        for unit in candidates:
            if len(result.assignments) >= remaining:
                break
            if not await self._dispatch_open(dispatch.id):
                aborted = True
                break
            assignment = await self._reserve_and_assign(dispatch, unit)
            if assignment is None:
                result.skipped_unit_ids.append(unit.id)
                continue
            if not await self._dispatch_open(dispatch.id):
                await self._withdraw(dispatch.id, assignment)
                aborted = True
                break
            result.assignments.append(assignment)

        if aborted:
            result.outcome = AssignmentOutcome.ABORTED
            logger.info(
                "unit_assignment.aborted_dispatch_closed",
                extra={"dispatch_id": str(dispatch.id), "assigned": len(result.assignments)},
            )
        elif result.assignments or existing:
            result.outcome = AssignmentOutcome.ASSIGNED
        else:
            logger.warning(
                "unit_assignment.no_units_available",
                extra={"dispatch_id": str(dispatch.id), "dispatch_type": dispatch.dispatch_type.value},
            )

        result.escalation = await self.escalation.maybe_escalate(dispatch)
        logger.info(
            "unit_assignment.completed",
            extra={
                "dispatch_id": str(dispatch.id),
                "outcome": result.outcome.value,
                "assigned": len(result.assignments),
                "skipped": len(result.skipped_unit_ids),
                "escalated": result.escalation is not None,
            },
        )
        return result

    def rank_candidates(self, dispatch: Dispatch, units: list[Unit]) -> list[Unit]:
        if self.settings.unit_selection_policy != "nearest":
            return list(units)
        located: list[tuple[float, int, Unit]] = []
        unlocated: list[Unit] = []
        for index, unit in enumerate(units):
            distance = self._distance_km(dispatch, unit)
            if distance is None:
                unlocated.append(unit)
            else:
                located.append((distance, index, unit))
        return [unit for _, _, unit in sorted(located, key=lambda item: item[:2])] + unlocated

    def estimate_arrival(self, dispatch: Dispatch, unit: Unit) -> tuple[datetime, float | None]:
        distance = self._distance_km(dispatch, unit) if self.settings.unit_selection_policy == "nearest" else None
        if distance is not None:
            minutes = distance / self.settings.average_speed_kmh * 60
        else:
            minutes = self.settings.default_eta_minutes
        return dispatch.dispatched_at + timedelta(minutes=max(0.0, minutes)), distance

    async def try_reserve(
        self, unit: Unit, expected_version: int, *, dispatch_id: uuid.UUID, commit: bool = True
    ) -> tuple[bool, int | None]:
        """Claim an AVAILABLE unit for ``dispatch_id`` at ``expected_version``."""
        try:
            reserved = await self.state_machine.apply(
                EntityKind.UNIT,
                unit.id,
                expected_version,
                UnitStatus.DISPATCHED,
                changes={"current_dispatch_id": dispatch_id},
                commit=commit,
            )
        except (ConcurrentModification, InvalidTransition) as exc:
            logger.info(
                "unit_assignment.reservation_skipped",
                extra={"unit_id": str(unit.id), "dispatch_id": str(dispatch_id), "reason": exc.code},
            )
            return False, None
        if reserved.version == expected_version:
            return False, None
        return True, reserved.version

    async def release_unit(self, unit_id: uuid.UUID, dispatch_id: uuid.UUID) -> Unit | None:
        """Return a unit to AVAILABLE if it is still held for ``dispatch_id``."""
        return await self.state_machine.apply_with_retry(
            EntityKind.UNIT,
            unit_id,
            UnitStatus.AVAILABLE,
            guard=_held_for(dispatch_id),
        )

    async def _reserve_and_assign(self, dispatch: Dispatch, unit: Unit) -> UnitAssignment | None:
        reserved, _ = await self.try_reserve(unit, unit.version, dispatch_id=dispatch.id, commit=False)
        if not reserved:
            return None

        now = self._clock()
        eta, distance = self.estimate_arrival(dispatch, unit)
        assignment = UnitAssignment(
            id=uuid.uuid4(),
            dispatch_id=dispatch.id,
            unit_id=unit.id,
            sequence=await self.uow.dispatches.next_assignment_sequence(dispatch.id),
            status=AssignmentStatus.DISPATCHED,
            dispatched_at=now,
            estimated_arrival_at=eta,
            travel_distance_km=distance,
            version=1,
        )
        try:
            created = await self.uow.dispatches.create_assignment(assignment)
        except IntegrityError:
            # a concurrent run took this sequence number; drop the reservation with it
            await self.uow.rollback()
            logger.info(
                "unit_assignment.sequence_conflict",
                extra={"unit_id": str(unit.id), "dispatch_id": str(dispatch.id)},
            )
            return None
        await self.state_machine.record_creation(EntityKind.UNIT_ASSIGNMENT, created, occurred_at=now)
        await self.uow.commit()
        logger.info(
            "unit_assignment.unit_assigned",
            extra={
                "dispatch_id": str(dispatch.id),
                "unit_id": str(unit.id),
                "assignment_id": str(created.id),
                "sequence": created.sequence,
            },
        )
        return created

    async def _dispatch_open(self, dispatch_id: uuid.UUID) -> bool:
        current = await self.state_machine.get(EntityKind.DISPATCH, dispatch_id)
        return not DISPATCH_LIFECYCLE.is_terminal(current.status)

    async def _withdraw(self, dispatch_id: uuid.UUID, assignment: UnitAssignment) -> None:
        for kind, entity_id, target, guard in (
            (EntityKind.UNIT_ASSIGNMENT, assignment.id, AssignmentStatus.CANCELLED, _not_closed),
            (EntityKind.UNIT, assignment.unit_id, UnitStatus.AVAILABLE, _held_for(dispatch_id)),
        ):
            try:
                await self.state_machine.apply_with_retry(kind, entity_id, target, guard=guard)
            except (InvalidTransition, RetryExhausted) as exc:
                logger.warning(
                    "unit_assignment.withdraw_failed",
                    extra={"entity_kind": kind.value, "entity_id": str(entity_id), "error_code": exc.code},
                )


def _not_closed(assignment: UnitAssignment) -> bool:
    return assignment.status not in (AssignmentStatus.COMPLETED, AssignmentStatus.CANCELLED)


def _held_for(dispatch_id: uuid.UUID) -> Callable[[Any], bool]:
    return lambda unit: unit.current_dispatch_id == dispatch_id
