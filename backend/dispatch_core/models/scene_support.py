import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from dispatch_core.db.base import Base, TimestampMixin, UUIDPrimaryKeyMixin, VersionMixin
from dispatch_core.models.lifecycle import EntityKind, Lifecycle, StampRule, forward_lattice, minutes_between
from dispatch_core.models.report import PriorityLevel


class SupportType(str, enum.Enum):
    ADDITIONAL_UNITS = "additional_units"
    SPECIALIZED_EQUIPMENT = "specialized_equipment"
    PERSONNEL_REINFORCEMENT = "personnel_reinforcement"
    MEDICAL_SUPPORT = "medical_support"
    TECHNICAL_SUPPORT = "technical_support"
    LOGISTICS_SUPPORT = "logistics_support"


class SupportStatus(str, enum.Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    DISPATCHED = "dispatched"
    ON_SCENE = "on_scene"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ALLOWED_SUPPORT_TRANSITIONS = forward_lattice(
    (
        SupportStatus.REQUESTED,
        SupportStatus.APPROVED,
        SupportStatus.DISPATCHED,
        SupportStatus.ON_SCENE,
        SupportStatus.COMPLETED,
    ),
    SupportStatus.CANCELLED,
)


class SceneSupport(Base, UUIDPrimaryKeyMixin, TimestampMixin, VersionMixin):
    __tablename__ = "scene_supports"

    # unique: one escalation per dispatch
    dispatch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("dispatches.id"), nullable=False, unique=True
    )
    support_type: Mapped[SupportType] = mapped_column(Enum(SupportType, name="support_type"), nullable=False)
    priority: Mapped[PriorityLevel] = mapped_column(Enum(PriorityLevel, name="priority_level"), nullable=False)
    status: Mapped[SupportStatus] = mapped_column(
        Enum(SupportStatus, name="support_status"), nullable=False, default=SupportStatus.REQUESTED
    )
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    arrived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    cost_estimate: Mapped[float | None] = mapped_column(Float, nullable=True)
    actual_cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    actual_duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)


def derive_support_duration(support: SceneSupport, values: dict[str, Any]) -> dict[str, Any]:
    completed_at = values.get("completed_at")
    if completed_at is None:
        return {}
    return {"actual_duration_minutes": minutes_between(support.requested_at, completed_at)}


SCENE_SUPPORT_LIFECYCLE = Lifecycle(
    kind=EntityKind.SCENE_SUPPORT,
    model=SceneSupport,
    status_enum=SupportStatus,
    transitions=ALLOWED_SUPPORT_TRANSITIONS,
    stamps={
        SupportStatus.REQUESTED: (StampRule("requested_at"),),
        SupportStatus.APPROVED: (StampRule("approved_at"),),
        SupportStatus.DISPATCHED: (StampRule("dispatched_at"),),
        SupportStatus.ON_SCENE: (StampRule("arrived_at"),),
        SupportStatus.COMPLETED: (StampRule("completed_at", overwrite=True),),
        SupportStatus.CANCELLED: (StampRule("cancelled_at", overwrite=True),),
    },
    derive=derive_support_duration,
    parent_attr="dispatch_id",
)
