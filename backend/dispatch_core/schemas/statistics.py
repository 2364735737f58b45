import uuid

from pydantic import BaseModel, Field

from dispatch_core.models.lifecycle import EntityKind


class EntityCounts(BaseModel):
    entity_kind: EntityKind
    total: int
    active_by_status: dict[str, int] = Field(default_factory=dict)

    @property
    def active(self) -> int:
        return sum(self.active_by_status.values())


class StatisticsSnapshot(BaseModel):
    counts: list[EntityCounts]
    unfulfilled_dispatch_ids: list[uuid.UUID]
    events_applied: int
    duplicates_ignored: int
