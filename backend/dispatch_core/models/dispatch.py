import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from dispatch_core.db.base import Base, TimestampMixin, UUIDPrimaryKeyMixin, VersionMixin
from dispatch_core.models.lifecycle import EntityKind, Lifecycle, StampRule, forward_lattice, minutes_between
from dispatch_core.models.report import PriorityLevel


class DispatchType(str, enum.Enum):
    FIRE_ENGINE = "fire_engine"
    AMBULANCE = "ambulance"
    LADDER_TRUCK = "ladder_truck"
    RESCUE_UNIT = "rescue_unit"
    HAZMAT_UNIT = "hazmat_unit"
    COMMAND_UNIT = "command_unit"


class DispatchStatus(str, enum.Enum):
    DISPATCHED = "dispatched"
    EN_ROUTE = "en_route"
    ON_SCENE = "on_scene"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AssignmentStatus(str, enum.Enum):
    DISPATCHED = "dispatched"
    EN_ROUTE = "en_route"
    ON_SCENE = "on_scene"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ALLOWED_DISPATCH_TRANSITIONS = forward_lattice(
    (DispatchStatus.DISPATCHED, DispatchStatus.EN_ROUTE, DispatchStatus.ON_SCENE, DispatchStatus.COMPLETED),
    DispatchStatus.CANCELLED,
)

ALLOWED_ASSIGNMENT_TRANSITIONS = forward_lattice(
    (AssignmentStatus.DISPATCHED, AssignmentStatus.EN_ROUTE, AssignmentStatus.ON_SCENE, AssignmentStatus.COMPLETED),
    AssignmentStatus.CANCELLED,
)

ACTIVE_DISPATCH_STATUSES = frozenset({DispatchStatus.DISPATCHED, DispatchStatus.EN_ROUTE, DispatchStatus.ON_SCENE})


class Dispatch(Base, UUIDPrimaryKeyMixin, TimestampMixin, VersionMixin):
    __tablename__ = "dispatches"
    __table_args__ = (
        Index(
            "uq_dispatches_active_report",
            "report_id",
            unique=True,
            postgresql_where=text("status IN ('DISPATCHED', 'EN_ROUTE', 'ON_SCENE')"),
        ),
    )

    dispatch_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    report_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("reports.id"), nullable=False)
    dispatch_type: Mapped[DispatchType] = mapped_column(Enum(DispatchType, name="dispatch_type"), nullable=False)
    priority: Mapped[PriorityLevel] = mapped_column(Enum(PriorityLevel, name="priority_level"), nullable=False)
    status: Mapped[DispatchStatus] = mapped_column(
        Enum(DispatchStatus, name="dispatch_status"), nullable=False, default=DispatchStatus.DISPATCHED
    )
    incident_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    incident_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    dispatched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    en_route_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    arrived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            "Dispatch("
            f"id={self.id}, dispatch_number={self.dispatch_number}, "
            f"status={self.status.value}, version={self.version}"
            ")"
        )


class UnitAssignment(Base, UUIDPrimaryKeyMixin, TimestampMixin, VersionMixin):
    __tablename__ = "unit_assignments"
    __table_args__ = (UniqueConstraint("dispatch_id", "sequence", name="uq_unit_assignments_dispatch_sequence"),)

    dispatch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("dispatches.id"), nullable=False, index=True
    )
    unit_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("units.id"), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[AssignmentStatus] = mapped_column(
        Enum(AssignmentStatus, name="assignment_status"), nullable=False, default=AssignmentStatus.DISPATCHED
    )
    dispatched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    en_route_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    arrived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_arrival_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_arrival_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    travel_distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    response_time_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    travel_time_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def __repr__(self) -> str:
        return (
            "UnitAssignment("
            f"id={self.id}, dispatch_id={self.dispatch_id}, unit_id={self.unit_id}, "
            f"status={self.status.value}, version={self.version}"
            ")"
        )


def derive_assignment_timings(assignment: UnitAssignment, values: dict[str, Any]) -> dict[str, Any]:
    arrived_at = values.get("arrived_at") or assignment.arrived_at
    if arrived_at is None or assignment.actual_arrival_at is not None:
        return {}
    derived: dict[str, Any] = {
        "actual_arrival_at": arrived_at,
        "response_time_minutes": minutes_between(assignment.dispatched_at, arrived_at),
    }
    en_route_at = values.get("en_route_at") or assignment.en_route_at
    if en_route_at is not None:
        derived["travel_time_minutes"] = minutes_between(en_route_at, arrived_at)
    return derived


DISPATCH_LIFECYCLE = Lifecycle(
    kind=EntityKind.DISPATCH,
    model=Dispatch,
    status_enum=DispatchStatus,
    transitions=ALLOWED_DISPATCH_TRANSITIONS,
    stamps={
        DispatchStatus.DISPATCHED: (StampRule("dispatched_at"),),
        DispatchStatus.EN_ROUTE: (StampRule("en_route_at"),),
        DispatchStatus.ON_SCENE: (StampRule("arrived_at"),),
        DispatchStatus.COMPLETED: (StampRule("completed_at", overwrite=True),),
        DispatchStatus.CANCELLED: (StampRule("cancelled_at", overwrite=True),),
    },
    parent_attr="report_id",
)

UNIT_ASSIGNMENT_LIFECYCLE = Lifecycle(
    kind=EntityKind.UNIT_ASSIGNMENT,
    model=UnitAssignment,
    status_enum=AssignmentStatus,
    transitions=ALLOWED_ASSIGNMENT_TRANSITIONS,
    stamps={
        AssignmentStatus.DISPATCHED: (StampRule("dispatched_at"),),
        AssignmentStatus.EN_ROUTE: (StampRule("en_route_at"),),
        AssignmentStatus.ON_SCENE: (StampRule("arrived_at"),),
        AssignmentStatus.COMPLETED: (StampRule("completed_at", overwrite=True),),
        AssignmentStatus.CANCELLED: (StampRule("cancelled_at", overwrite=True),),
    },
    derive=derive_assignment_timings,
    parent_attr="dispatch_id",
)
