import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_core.models.dispatch import ACTIVE_DISPATCH_STATUSES, Dispatch, DispatchStatus, UnitAssignment
from dispatch_core.models.report import PriorityLevel


class DispatchRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(self, dispatch: Dispatch) -> Dispatch:
        async with self.db.begin_nested():
            self.db.add(dispatch)
            await self.db.flush()
        await self.db.refresh(dispatch)
        return dispatch

    async def get_by_id(self, dispatch_id: uuid.UUID) -> Dispatch | None:
        stmt = select(Dispatch).where(Dispatch.id == dispatch_id).execution_options(populate_existing=True)
        return await self.db.scalar(stmt)

    async def get_by_number(self, dispatch_number: str) -> Dispatch | None:
        stmt = (
            select(Dispatch)
            .where(Dispatch.dispatch_number == dispatch_number)
            .execution_options(populate_existing=True)
        )
        return await self.db.scalar(stmt)

    async def get_active_for_report(self, report_id: uuid.UUID) -> Dispatch | None:
        stmt = (
            select(Dispatch)
            .where(Dispatch.report_id == report_id, Dispatch.status.in_(ACTIVE_DISPATCH_STATUSES))
            .execution_options(populate_existing=True)
        )
        return await self.db.scalar(stmt)

    async def list_paginated(
        self,
        *,
        status: DispatchStatus | None = None,
        priority: PriorityLevel | None = None,
        limit: int,
        offset: int,
    ) -> tuple[list[Dispatch], int]:
        conditions = []
        if status is not None:
            conditions.append(Dispatch.status == status)
        if priority is not None:
            conditions.append(Dispatch.priority == priority)
        list_stmt = (
            select(Dispatch).where(*conditions).order_by(Dispatch.dispatched_at.desc()).limit(limit).offset(offset)
        )
        count_stmt = select(func.count()).select_from(Dispatch).where(*conditions)
        dispatches = list((await self.db.scalars(list_stmt)).all())
        total = int((await self.db.scalar(count_stmt)) or 0)
        return dispatches, total

    async def create_assignment(self, assignment: UnitAssignment) -> UnitAssignment:
        async with self.db.begin_nested():
            self.db.add(assignment)
            await self.db.flush()
        await self.db.refresh(assignment)
        return assignment

    async def list_assignments(self, dispatch_id: uuid.UUID) -> list[UnitAssignment]:
        stmt = (
            select(UnitAssignment)
            .where(UnitAssignment.dispatch_id == dispatch_id)
            .order_by(UnitAssignment.sequence)
            .execution_options(populate_existing=True)
        )
        return list((await self.db.scalars(stmt)).all())

    async def next_assignment_sequence(self, dispatch_id: uuid.UUID) -> int:
        stmt = select(func.max(UnitAssignment.sequence)).where(UnitAssignment.dispatch_id == dispatch_id)
        current = await self.db.scalar(stmt)
        return int(current or 0) + 1
