import uuid
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_core.models.transition import TransitionRecord


class TransitionRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def add(self, record: TransitionRecord) -> TransitionRecord:
        self.db.add(record)
        await self.db.flush()
        return record

    async def list_undelivered(
        self, *, limit: int, max_attempts: int, occurred_before: datetime
    ) -> list[TransitionRecord]:
        stmt = (
            select(TransitionRecord)
            .where(
                TransitionRecord.delivered_at.is_(None),
                TransitionRecord.delivery_attempts < max_attempts,
                TransitionRecord.occurred_at < occurred_before,
            )
            .order_by(TransitionRecord.occurred_at, TransitionRecord.version)
            .limit(limit)
        )
        return list((await self.db.scalars(stmt)).all())

    async def mark_delivered(self, transition_ids: list[uuid.UUID], *, at: datetime) -> None:
        if not transition_ids:
            return
        stmt = (
            update(TransitionRecord)
            .where(TransitionRecord.id.in_(transition_ids))
            .values(delivered_at=at, delivery_attempts=TransitionRecord.delivery_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)

    async def record_failed_attempt(self, transition_ids: list[uuid.UUID]) -> None:
        if not transition_ids:
            return
        stmt = (
            update(TransitionRecord)
            .where(TransitionRecord.id.in_(transition_ids))
            .values(delivery_attempts=TransitionRecord.delivery_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)
