import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Enum, Float, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from dispatch_core.db.base import Base, TimestampMixin, UUIDPrimaryKeyMixin, VersionMixin
from dispatch_core.models.lifecycle import EntityKind, Lifecycle, StampRule


class UnitType(str, enum.Enum):
    ENGINE = "engine"
    AMBULANCE = "ambulance"
    LADDER = "ladder"
    RESCUE = "rescue"
    HAZMAT = "hazmat"
    COMMAND = "command"


class UnitStatus(str, enum.Enum):
    AVAILABLE = "available"
    DISPATCHED = "dispatched"
    ON_SCENE = "on_scene"
    RETURNING = "returning"
    MAINTENANCE = "maintenance"
    OUT_OF_SERVICE = "out_of_service"


class MaintenanceStatus(str, enum.Enum):
    OPERATIONAL = "operational"
    MINOR_ISSUE = "minor_issue"
    MAJOR_ISSUE = "major_issue"
    UNDER_REPAIR = "under_repair"


# Units cycle back to AVAILABLE; no status is terminal.
ALLOWED_UNIT_TRANSITIONS: dict[UnitStatus, frozenset[UnitStatus]] = {
    UnitStatus.AVAILABLE: frozenset({UnitStatus.DISPATCHED, UnitStatus.MAINTENANCE, UnitStatus.OUT_OF_SERVICE}),
    UnitStatus.DISPATCHED: frozenset({UnitStatus.ON_SCENE, UnitStatus.RETURNING, UnitStatus.AVAILABLE}),
    UnitStatus.ON_SCENE: frozenset({UnitStatus.RETURNING, UnitStatus.AVAILABLE}),
    UnitStatus.RETURNING: frozenset({UnitStatus.AVAILABLE, UnitStatus.MAINTENANCE}),
    UnitStatus.MAINTENANCE: frozenset({UnitStatus.AVAILABLE, UnitStatus.OUT_OF_SERVICE}),
    UnitStatus.OUT_OF_SERVICE: frozenset({UnitStatus.MAINTENANCE, UnitStatus.AVAILABLE}),
}


class Unit(Base, UUIDPrimaryKeyMixin, TimestampMixin, VersionMixin):
    __tablename__ = "units"

    unit_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    unit_name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit_type: Mapped[UnitType] = mapped_column(Enum(UnitType, name="unit_type"), nullable=False, index=True)
    station_code: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[UnitStatus] = mapped_column(
        Enum(UnitStatus, name="unit_status"), nullable=False, default=UnitStatus.AVAILABLE, index=True
    )
    maintenance_status: Mapped[MaintenanceStatus] = mapped_column(
        Enum(MaintenanceStatus, name="unit_maintenance_status"),
        nullable=False,
        default=MaintenanceStatus.OPERATIONAL,
    )
    current_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    current_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    crew_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_dispatch_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    status_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            "Unit("
            f"id={self.id}, unit_number={self.unit_number}, type={self.unit_type.value}, "
            f"status={self.status.value}, version={self.version}"
            ")"
        )


def release_dispatch_on_available(unit: Unit, values: dict[str, Any]) -> dict[str, Any]:
    if values.get("status") is UnitStatus.AVAILABLE:
        return {"current_dispatch_id": None}
    return {}


UNIT_LIFECYCLE = Lifecycle(
    kind=EntityKind.UNIT,
    model=Unit,
    status_enum=UnitStatus,
    transitions=ALLOWED_UNIT_TRANSITIONS,
    stamps={status: (StampRule("status_changed_at", overwrite=True),) for status in UnitStatus},
    derive=release_dispatch_on_available,
    parent_attr="current_dispatch_id",
)
