"""The single writer of lifecycle status.

Every status change in the system goes through ``StatusStateMachine.apply``:
it validates the move against the entity's transition table, writes the new
status, its timestamps, and ``version + 1`` in one version-conditioned
update, then stages an outbox row and a post-commit event for it.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from dispatch_core.core.config import get_settings
from dispatch_core.core.errors import ConcurrentModification, InvalidTransition, NotFound, RetryExhausted
from dispatch_core.db.unit_of_work import UnitOfWork
from dispatch_core.models import LIFECYCLES
from dispatch_core.models.lifecycle import EntityKind, Lifecycle
from dispatch_core.models.transition import TransitionRecord
from dispatch_core.schemas.events import TransitionEvent

logger = logging.getLogger(__name__)

PROTECTED_FIELDS = frozenset({"id", "status", "version"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _status_value(status: Any) -> str | None:
    if status is None:
        return None
    return getattr(status, "value", str(status))


class StatusStateMachine:
    def __init__(
        self,
        uow: UnitOfWork,
        *,
        clock: Callable[[], datetime] | None = None,
        retry_attempts: int | None = None,
    ) -> None:
        self.uow = uow
        self._clock = clock or _utcnow
        self._retry_attempts = retry_attempts or get_settings().transition_retry_attempts

    async def get(self, kind: EntityKind, entity_id: uuid.UUID) -> Any:
        lifecycle = LIFECYCLES[kind]
        entity = await self.uow.statuses.get(lifecycle.model, entity_id)
        if entity is None:
            raise NotFound(entity_kind=kind.value, key="id", value=entity_id)
        return entity

    async def apply(
        self,
        kind: EntityKind,
        entity_id: uuid.UUID,
        current_version: int,
        target_status: Any,
        *,
        occurred_at: datetime | None = None,
        changes: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> Any:
        """Move one entity to ``target_status`` if it is still at ``current_version``.

        Re-applying the current status is a no-op: nothing is written and no
        event is emitted. With ``commit=False`` the write joins the caller's
        transaction and the event is only delivered by the caller's commit.
        """
        lifecycle = LIFECYCLES[kind]
        entity = await self.get(kind, entity_id)
        if entity.version != current_version:
            raise ConcurrentModification(
                entity_kind=kind.value,
                entity_id=str(entity_id),
                expected_version=current_version,
                server_version=entity.version,
            )

        from_status = entity.status
        target = lifecycle.coerce_status(target_status)
        if target is None:
            raise self._invalid(lifecycle, from_status, target_status)
        if target == from_status:
            logger.debug(
                "status_state_machine.noop",
                extra={"entity_kind": kind.value, "entity_id": str(entity_id), "status": target.value},
            )
            return entity
        if target not in lifecycle.allowed_targets(from_status):
            raise self._invalid(lifecycle, from_status, target)

        if changes and PROTECTED_FIELDS.intersection(changes):
            raise ValueError(f"changes may not set {sorted(PROTECTED_FIELDS.intersection(changes))}")

        at = occurred_at or self._clock()
        values: dict[str, Any] = {"status": target, **lifecycle.timestamp_values(entity, target, at)}
        if lifecycle.derive is not None:
            values.update(lifecycle.derive(entity, values))
        if changes:
            values.update(changes)
        parent_before = lifecycle.parent_id(entity)

        new_version = await self.uow.statuses.compare_and_set(
            lifecycle.model, entity_id, expected_version=current_version, values=values
        )
        if new_version is None:
            latest = await self.uow.statuses.get(lifecycle.model, entity_id)
            raise ConcurrentModification(
                entity_kind=kind.value,
                entity_id=str(entity_id),
                expected_version=current_version,
                server_version=latest.version if latest is not None else None,
            )

        updated = await self.get(kind, entity_id)
        await self._stage(
            lifecycle,
            updated,
            from_status=from_status,
            parent_id=lifecycle.parent_id(updated) or parent_before,
            occurred_at=at,
        )
        if commit:
            await self.uow.commit()

        logger.info(
            "status_state_machine.transition_applied",
            extra={
                "entity_kind": kind.value,
                "entity_id": str(entity_id),
                "from_status": _status_value(from_status),
                "to_status": target.value,
                "version": updated.version,
            },
        )
        return updated

    async def apply_with_retry(
        self,
        kind: EntityKind,
        entity_id: uuid.UUID,
        target_status: Any,
        *,
        occurred_at: datetime | None = None,
        changes: dict[str, Any] | None = None,
        guard: Callable[[Any], bool] | None = None,
        commit: bool = True,
        attempts: int | None = None,
    ) -> Any | None:
        """Re-read and re-apply on version conflicts.

        ``guard`` is evaluated against each fresh read; when it returns False
        the transition is abandoned and None is returned.
        """
        entity, _ = await self.transition_with_retry(
            kind,
            entity_id,
            target_status,
            occurred_at=occurred_at,
            changes=changes,
            guard=guard,
            commit=commit,
            attempts=attempts,
        )
        return entity

    async def transition_with_retry(
        self,
        kind: EntityKind,
        entity_id: uuid.UUID,
        target_status: Any,
        *,
        occurred_at: datetime | None = None,
        changes: dict[str, Any] | None = None,
        guard: Callable[[Any], bool] | None = None,
        commit: bool = True,
        attempts: int | None = None,
    ) -> tuple[Any | None, bool]:
        """Like ``apply_with_retry`` but also says whether this call wrote.

        A caller that loses a race to the same target re-reads, finds the
        status already applied, and gets ``changed=False``.
        """
        attempts = attempts or self._retry_attempts
        for attempt in range(1, attempts + 1):
            entity = await self.get(kind, entity_id)
            if guard is not None and not guard(entity):
                return None, False
            read_version = entity.version
            try:
                updated = await self.apply(
                    kind,
                    entity_id,
                    read_version,
                    target_status,
                    occurred_at=occurred_at,
                    changes=changes,
                    commit=commit,
                )
            except ConcurrentModification:
                logger.info(
                    "status_state_machine.retry",
                    extra={"entity_kind": kind.value, "entity_id": str(entity_id), "attempt": attempt},
                )
                continue
            return updated, updated.version != read_version
        raise RetryExhausted(
            operation=f"{kind.value}_status_change",
            attempts=attempts,
            details={"entity_id": str(entity_id), "to_status": _status_value(target_status)},
        )

    async def record_creation(self, kind: EntityKind, entity: Any, *, occurred_at: datetime | None = None) -> None:
        """Stage the creation event of a freshly inserted entity."""
        lifecycle = LIFECYCLES[kind]
        await self._stage(
            lifecycle,
            entity,
            from_status=None,
            parent_id=lifecycle.parent_id(entity),
            occurred_at=occurred_at or self._clock(),
        )

    async def _stage(
        self,
        lifecycle: Lifecycle,
        entity: Any,
        *,
        from_status: Any,
        parent_id: uuid.UUID | None,
        occurred_at: datetime,
    ) -> None:
        record = TransitionRecord(
            id=uuid.uuid4(),
            entity_kind=lifecycle.kind,
            entity_id=entity.id,
            parent_id=parent_id,
            from_status=_status_value(from_status),
            to_status=_status_value(entity.status),
            version=entity.version,
            occurred_at=occurred_at,
            delivery_attempts=0,
        )
        await self.uow.transitions.add(record)
        self.uow.events.enqueue(TransitionEvent.from_record(record))

    @staticmethod
    def _invalid(lifecycle: Lifecycle, from_status: Any, to_status: Any) -> InvalidTransition:
        return InvalidTransition(
            entity_kind=lifecycle.kind.value,
            from_status=_status_value(from_status),
            to_status=_status_value(to_status),
            allowed_targets=sorted(status.value for status in lifecycle.allowed_targets(from_status)),
        )
