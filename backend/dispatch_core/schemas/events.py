import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from dispatch_core.models.lifecycle import EntityKind
from dispatch_core.models.transition import TransitionRecord


class TransitionEvent(BaseModel):
    """A committed status change. ``from_status`` is None for a creation."""

    model_config = ConfigDict(frozen=True)

    transition_id: uuid.UUID
    entity_kind: EntityKind
    entity_id: uuid.UUID
    parent_id: uuid.UUID | None = None
    from_status: str | None = None
    to_status: str
    version: int
    occurred_at: datetime

    @property
    def is_creation(self) -> bool:
        return self.from_status is None

    @property
    def event_name(self) -> str:
        suffix = "created" if self.is_creation else "status_changed"
        return f"{self.entity_kind.value}.{suffix}"

    @classmethod
    def from_record(cls, record: TransitionRecord) -> "TransitionEvent":
        return cls(
            transition_id=record.id,
            entity_kind=record.entity_kind,
            entity_id=record.entity_id,
            parent_id=record.parent_id,
            from_status=record.from_status,
            to_status=record.to_status,
            version=record.version,
            occurred_at=record.occurred_at,
        )

    def notification_payload(self) -> dict[str, Any]:
        return {
            "entity_kind": self.entity_kind.value,
            "entity_id": str(self.entity_id),
            "parent_id": str(self.parent_id) if self.parent_id else None,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "version": self.version,
            "occurred_at": self.occurred_at.isoformat(),
        }
