import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from dispatch_core.db.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from dispatch_core.models.lifecycle import EntityKind


class TransitionRecord(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Outbox row written in the same transaction as the status change it describes."""

    __tablename__ = "status_transitions"

    entity_kind: Mapped[EntityKind] = mapped_column(Enum(EntityKind, name="entity_kind"), nullable=False, index=True)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    parent_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    from_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    to_status: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    delivery_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
