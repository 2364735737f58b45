from dispatch_core.models.dispatch import (
    DISPATCH_LIFECYCLE,
    UNIT_ASSIGNMENT_LIFECYCLE,
    AssignmentStatus,
    Dispatch,
    DispatchStatus,
    DispatchType,
    UnitAssignment,
)
from dispatch_core.models.lifecycle import EntityKind, Lifecycle
from dispatch_core.models.report import REPORT_LIFECYCLE, EmergencyType, PriorityLevel, Report, ReportStatus
from dispatch_core.models.scene_support import SCENE_SUPPORT_LIFECYCLE, SceneSupport, SupportStatus, SupportType
from dispatch_core.models.transition import TransitionRecord
from dispatch_core.models.unit import UNIT_LIFECYCLE, MaintenanceStatus, Unit, UnitStatus, UnitType

LIFECYCLES: dict[EntityKind, Lifecycle] = {
    lifecycle.kind: lifecycle
    for lifecycle in (
        REPORT_LIFECYCLE,
        DISPATCH_LIFECYCLE,
        UNIT_ASSIGNMENT_LIFECYCLE,
        UNIT_LIFECYCLE,
        SCENE_SUPPORT_LIFECYCLE,
    )
}

__all__ = [
    "LIFECYCLES",
    "AssignmentStatus",
    "Dispatch",
    "DispatchStatus",
    "DispatchType",
    "EmergencyType",
    "EntityKind",
    "Lifecycle",
    "MaintenanceStatus",
    "PriorityLevel",
    "Report",
    "ReportStatus",
    "SceneSupport",
    "SupportStatus",
    "SupportType",
    "TransitionRecord",
    "Unit",
    "UnitAssignment",
    "UnitStatus",
    "UnitType",
]
