"""Outbox redelivery for committed transitions.

Every status change writes a ``status_transitions`` row in the same
transaction as the change. The committing process delivers it right after
commit and stamps ``delivered_at``. Rows left undelivered (a sink failed,
or the process died between commit and delivery) are re-sent here, oldest
first, until ``redelivery_max_attempts`` is reached.

Run via the main worker.py loop:
  asyncio.create_task(_redelivery_loop(stop_event, workflow.redeliver_pending))
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from dispatch_core.core.config import Settings, get_settings
from dispatch_core.db.unit_of_work import UnitOfWork
from dispatch_core.schemas.events import TransitionEvent
from dispatch_core.services.transition_fanout import TransitionFanout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedeliveryResult:
    delivered: int = 0
    failed: int = 0

    @property
    def scanned(self) -> int:
        return self.delivered + self.failed


async def redeliver_pending(
    uow: UnitOfWork,
    fanout: TransitionFanout,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> RedeliveryResult:
    settings = settings or get_settings()
    now = now or datetime.now(UTC)
    # rows younger than one interval may still be in their committer's own delivery
    cutoff = now - timedelta(seconds=settings.redelivery_interval_seconds)
    records = await uow.transitions.list_undelivered(
        limit=settings.redelivery_batch_size,
        max_attempts=settings.redelivery_max_attempts,
        occurred_before=cutoff,
    )
    if not records:
        return RedeliveryResult()

    delivered = []
    failed = []
    for record in records:
        event = TransitionEvent.from_record(record)
        if await fanout.deliver(event):
            delivered.append(record.id)
        else:
            failed.append(record.id)
            if record.delivery_attempts + 1 >= settings.redelivery_max_attempts:
                logger.error(
                    "transition_redelivery.giving_up",
                    extra={
                        "transition_id": str(record.id),
                        "entity_kind": record.entity_kind.value,
                        "entity_id": str(record.entity_id),
                        "attempts": record.delivery_attempts + 1,
                    },
                )

    await uow.transitions.mark_delivered(delivered, at=now)
    await uow.transitions.record_failed_attempt(failed)
    await uow.commit()

    result = RedeliveryResult(delivered=len(delivered), failed=len(failed))
    logger.info(
        "transition_redelivery.batch_processed",
        extra={"delivered": result.delivered, "failed": result.failed},
    )
    return result


async def _redelivery_loop(
    stop: asyncio.Event,
    run_batch: Callable[[], Awaitable[RedeliveryResult]],
    *,
    interval_seconds: float | None = None,
) -> None:
    interval = interval_seconds or get_settings().redelivery_interval_seconds
    while not stop.is_set():
        try:
            await run_batch()
        except Exception as exc:
            logger.error("transition_redelivery.loop_error", extra={"error": str(exc)}, exc_info=exc)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)
