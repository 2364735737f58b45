import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, Float, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dispatch_core.db.base import Base, TimestampMixin, UUIDPrimaryKeyMixin, VersionMixin
from dispatch_core.models.lifecycle import EntityKind, Lifecycle, StampRule


class EmergencyType(str, enum.Enum):
    FIRE = "fire"
    MEDICAL = "medical"
    TRAFFIC_ACCIDENT = "traffic_accident"
    RESCUE = "rescue"
    HAZMAT = "hazmat"
    OTHER = "other"


class PriorityLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReportStatus(str, enum.Enum):
    RECEIVED = "received"
    DISPATCHED = "dispatched"
    EN_ROUTE = "en_route"
    ON_SCENE = "on_scene"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ALLOWED_REPORT_TRANSITIONS: dict[ReportStatus, frozenset[ReportStatus]] = {
    ReportStatus.RECEIVED: frozenset({ReportStatus.DISPATCHED, ReportStatus.CANCELLED}),
    ReportStatus.DISPATCHED: frozenset(
        {ReportStatus.EN_ROUTE, ReportStatus.ON_SCENE, ReportStatus.COMPLETED, ReportStatus.CANCELLED}
    ),
    ReportStatus.EN_ROUTE: frozenset({ReportStatus.ON_SCENE, ReportStatus.COMPLETED, ReportStatus.CANCELLED}),
    ReportStatus.ON_SCENE: frozenset({ReportStatus.COMPLETED, ReportStatus.CANCELLED}),
    ReportStatus.COMPLETED: frozenset(),
    ReportStatus.CANCELLED: frozenset(),
}


class Report(Base, UUIDPrimaryKeyMixin, TimestampMixin, VersionMixin):
    __tablename__ = "reports"

    report_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    caller_name: Mapped[str] = mapped_column(String(255), nullable=False)
    caller_phone: Mapped[str] = mapped_column(String(64), nullable=False)
    location_address: Mapped[str] = mapped_column(String(512), nullable=False)
    location_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    emergency_type: Mapped[EmergencyType] = mapped_column(Enum(EmergencyType, name="emergency_type"), nullable=False)
    priority: Mapped[PriorityLevel] = mapped_column(Enum(PriorityLevel, name="priority_level"), nullable=False)
    status: Mapped[ReportStatus] = mapped_column(
        Enum(ReportStatus, name="report_status"), nullable=False, default=ReportStatus.RECEIVED
    )
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    arrived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            "Report("
            f"id={self.id}, report_number={self.report_number}, "
            f"status={self.status.value}, version={self.version}"
            ")"
        )


REPORT_LIFECYCLE = Lifecycle(
    kind=EntityKind.REPORT,
    model=Report,
    status_enum=ReportStatus,
    transitions=ALLOWED_REPORT_TRANSITIONS,
    stamps={
        ReportStatus.DISPATCHED: (StampRule("dispatched_at"),),
        ReportStatus.ON_SCENE: (StampRule("arrived_at"),),
        ReportStatus.COMPLETED: (StampRule("completed_at", overwrite=True),),
        ReportStatus.CANCELLED: (StampRule("cancelled_at", overwrite=True),),
    },
)
