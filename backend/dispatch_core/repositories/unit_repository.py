import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_core.models.unit import MaintenanceStatus, Unit, UnitStatus, UnitType


class UnitRepository:
    """Read side of the unit registry. Status writes go through the state machine."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find_available(self, unit_type: UnitType) -> list[Unit]:
        stmt = (
            select(Unit)
            .where(
                Unit.unit_type == unit_type,
                Unit.status == UnitStatus.AVAILABLE,
                Unit.maintenance_status == MaintenanceStatus.OPERATIONAL,
            )
            .order_by(Unit.unit_number)
            .execution_options(populate_existing=True)
        )
        return list((await self.db.scalars(stmt)).all())

    async def get_by_id(self, unit_id: uuid.UUID) -> Unit | None:
        stmt = select(Unit).where(Unit.id == unit_id).execution_options(populate_existing=True)
        return await self.db.scalar(stmt)
