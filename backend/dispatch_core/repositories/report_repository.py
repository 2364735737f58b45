import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_core.models.report import PriorityLevel, Report, ReportStatus


class ReportRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(self, report: Report) -> Report:
        # savepoint so a report_number collision leaves the outer transaction usable
        async with self.db.begin_nested():
            self.db.add(report)
            await self.db.flush()
        await self.db.refresh(report)
        return report

    async def get_by_id(self, report_id: uuid.UUID) -> Report | None:
        stmt = select(Report).where(Report.id == report_id).execution_options(populate_existing=True)
        return await self.db.scalar(stmt)

    async def get_by_number(self, report_number: str) -> Report | None:
        stmt = (
            select(Report)
            .where(Report.report_number == report_number)
            .execution_options(populate_existing=True)
        )
        return await self.db.scalar(stmt)

    async def list_paginated(
        self,
        *,
        status: ReportStatus | None = None,
        priority: PriorityLevel | None = None,
        limit: int,
        offset: int,
    ) -> tuple[list[Report], int]:
        conditions = []
        if status is not None:
            conditions.append(Report.status == status)
        if priority is not None:
            conditions.append(Report.priority == priority)
        list_stmt = select(Report).where(*conditions).order_by(Report.received_at.desc()).limit(limit).offset(offset)
        count_stmt = select(func.count()).select_from(Report).where(*conditions)
        reports = list((await self.db.scalars(list_stmt)).all())
        total = int((await self.db.scalar(count_stmt)) or 0)
        return reports, total
