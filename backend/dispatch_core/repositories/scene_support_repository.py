import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_core.models.report import PriorityLevel
from dispatch_core.models.scene_support import SceneSupport, SupportStatus


class SceneSupportRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(self, support: SceneSupport) -> SceneSupport:
        # the unique dispatch_id constraint is the duplicate guard; IntegrityError propagates
        async with self.db.begin_nested():
            self.db.add(support)
            await self.db.flush()
        await self.db.refresh(support)
        return support

    async def get_by_id(self, support_id: uuid.UUID) -> SceneSupport | None:
        stmt = select(SceneSupport).where(SceneSupport.id == support_id).execution_options(populate_existing=True)
        return await self.db.scalar(stmt)

    async def get_for_dispatch(self, dispatch_id: uuid.UUID) -> SceneSupport | None:
        stmt = (
            select(SceneSupport)
            .where(SceneSupport.dispatch_id == dispatch_id)
            .execution_options(populate_existing=True)
        )
        return await self.db.scalar(stmt)

    async def list_paginated(
        self,
        *,
        status: SupportStatus | None = None,
        priority: PriorityLevel | None = None,
        limit: int,
        offset: int,
    ) -> tuple[list[SceneSupport], int]:
        conditions = []
        if status is not None:
            conditions.append(SceneSupport.status == status)
        if priority is not None:
            conditions.append(SceneSupport.priority == priority)
        list_stmt = (
            select(SceneSupport)
            .where(*conditions)
            .order_by(SceneSupport.requested_at.desc())
            .limit(limit)
            .offset(offset)
        )
        count_stmt = select(func.count()).select_from(SceneSupport).where(*conditions)
        supports = list((await self.db.scalars(list_stmt)).all())
        total = int((await self.db.scalar(count_stmt)) or 0)
        return supports, total
