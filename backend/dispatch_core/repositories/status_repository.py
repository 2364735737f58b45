import uuid
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession


class StatusRepository:
    """Version-conditioned reads and writes for any lifecycle-managed model."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, model: type, entity_id: uuid.UUID) -> Any | None:
        stmt = select(model).where(model.id == entity_id).execution_options(populate_existing=True)
        return await self.db.scalar(stmt)

    async def compare_and_set(
        self, model: type, entity_id: uuid.UUID, *, expected_version: int, values: dict[str, Any]
    ) -> int | None:
        # optimistic concurrency: update only if version matches.
        stmt = (
            update(model)
            .where(model.id == entity_id, model.version == expected_version)
            .values(version=model.version + 1, **values)
            .returning(model.version)
            .execution_options(synchronize_session=False)
        )
        return await self.db.scalar(stmt)
