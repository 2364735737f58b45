import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from dispatch_core.models.report import EmergencyType, PriorityLevel, ReportStatus


class ReportCreateRequest(BaseModel):
    caller_name: str = Field(min_length=1, max_length=255)
    caller_phone: str = Field(min_length=1, max_length=64)
    location_address: str = Field(min_length=1, max_length=512)
    location_latitude: float | None = Field(default=None, ge=-90, le=90)
    location_longitude: float | None = Field(default=None, ge=-180, le=180)
    description: str | None = None
    emergency_type: EmergencyType
    priority: PriorityLevel
    received_at: datetime | None = None


class ReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    report_number: str
    caller_name: str
    caller_phone: str
    location_address: str
    location_latitude: float | None
    location_longitude: float | None
    description: str | None
    emergency_type: EmergencyType
    priority: PriorityLevel
    status: ReportStatus
    received_at: datetime
    dispatched_at: datetime | None
    arrived_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    version: int


class ReportListResponse(BaseModel):
    items: list[ReportResponse]
    total: int
    limit: int
    offset: int
