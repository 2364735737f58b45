from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_core.repositories.dispatch_repository import DispatchRepository
from dispatch_core.repositories.report_repository import ReportRepository
from dispatch_core.repositories.scene_support_repository import SceneSupportRepository
from dispatch_core.repositories.status_repository import StatusRepository
from dispatch_core.repositories.transition_repository import TransitionRepository
from dispatch_core.repositories.unit_repository import UnitRepository
from dispatch_core.services.post_commit_event_queue import PostCommitEventQueue
from dispatch_core.services.transition_fanout import TransitionFanout

logger = logging.getLogger(__name__)


class UnitOfWork:
    """One session, its repositories, and the events staged against it.

    Staged transition events reach the fanout only after ``commit`` succeeds;
    ``rollback`` drops them together with the session's writes.
    """

    def __init__(self, session_factory: Callable[[], Any], fanout: TransitionFanout) -> None:
        self._session_factory = session_factory
        self.fanout = fanout
        self.db: AsyncSession | None = None
        self.events = PostCommitEventQueue()

    async def __aenter__(self) -> UnitOfWork:
        self.db = self._session_factory()
        self.events = PostCommitEventQueue()
        self._bind(self.db)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            await self.rollback()
        else:
            self.events.clear()
        await self.db.close()

    def _bind(self, db: AsyncSession) -> None:
        self.reports = ReportRepository(db)
        self.dispatches = DispatchRepository(db)
        self.units = UnitRepository(db)
        self.scene_supports = SceneSupportRepository(db)
        self.statuses = StatusRepository(db)
        self.transitions = TransitionRepository(db)

    async def commit(self) -> None:
        await self.db.commit()
        if not len(self.events):
            return
        delivered, failed = await self.events.publish_all(self.fanout)
        try:
            await self.transitions.mark_delivered(delivered, at=datetime.now(UTC))
            await self.transitions.record_failed_attempt(failed)
            await self.db.commit()
        except Exception as exc:
            # delivery bookkeeping only; undelivered rows are picked up by redelivery
            logger.error(
                "unit_of_work.mark_delivered failed",
                extra={"delivered": len(delivered), "failed": len(failed), "error": str(exc)},
                exc_info=exc,
            )
            await self.db.rollback()

    async def rollback(self) -> None:
        self.events.clear()
        await self.db.rollback()
