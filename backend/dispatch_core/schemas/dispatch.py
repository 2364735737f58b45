import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from dispatch_core.models.dispatch import AssignmentStatus, DispatchStatus, DispatchType
from dispatch_core.models.lifecycle import EntityKind
from dispatch_core.models.report import PriorityLevel
from dispatch_core.models.scene_support import SupportStatus, SupportType


class DispatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    dispatch_number: str
    report_id: uuid.UUID
    dispatch_type: DispatchType
    priority: PriorityLevel
    status: DispatchStatus
    incident_latitude: float | None
    incident_longitude: float | None
    dispatched_at: datetime
    en_route_at: datetime | None
    arrived_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    version: int


class UnitAssignmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    dispatch_id: uuid.UUID
    unit_id: uuid.UUID
    sequence: int
    status: AssignmentStatus
    dispatched_at: datetime
    estimated_arrival_at: datetime | None
    actual_arrival_at: datetime | None
    travel_distance_km: float | None
    response_time_minutes: int | None
    travel_time_minutes: int | None
    version: int


class SceneSupportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    dispatch_id: uuid.UUID
    support_type: SupportType
    priority: PriorityLevel
    status: SupportStatus
    requested_at: datetime
    completed_at: datetime | None
    description: str | None
    summary: str | None
    actual_cost: float | None
    actual_duration_minutes: int | None
    version: int


class DispatchListResponse(BaseModel):
    items: list[DispatchResponse]
    total: int
    limit: int
    offset: int


class SceneSupportListResponse(BaseModel):
    items: list[SceneSupportResponse]
    total: int
    limit: int
    offset: int


class DispatchDetailResponse(BaseModel):
    dispatch: DispatchResponse
    assignments: list[UnitAssignmentResponse]
    scene_support: SceneSupportResponse | None = None


class StatusChangeResponse(BaseModel):
    entity_kind: EntityKind
    entity_id: uuid.UUID
    status: str
    version: int
    changed: bool


class SceneSupportCompleteRequest(BaseModel):
    summary: str | None = None
    actual_cost: float | None = Field(default=None, ge=0)
