"""
Request/response schemas for the orchestration endpoints.
"""
from datetime import date, datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field


class LeadActionRequest(BaseModel):
    action: Literal["skip_to_stage", "mark_status", "move_to_stage"]
    stage: Optional[int] = Field(default=None, ge=1)
    status: Optional[str] = None


class ActionResponse(BaseModel):
    success: bool
    message: str = ""
    error: Optional[str] = None
    data: dict = Field(default_factory=dict)


class AppointmentIn(BaseModel):
    id: str
    client: str = ""
    start: Optional[datetime] = None
    # Date-only bookings carry just the day
    service_date: Optional[date] = None
    duration_hours: Optional[float] = None
    status: str = "scheduled"
    crew: list[str] = Field(default_factory=list)


class CascadeRequest(BaseModel):
    appointment_id: str
    new_start: datetime
    new_duration_hours: float = Field(..., gt=0)
    appointments: list[AppointmentIn]


class CascadeChangeOut(BaseModel):
    appointment_id: str
    client: str
    original_start: datetime
    new_start: datetime
    original_duration_hours: float
    new_duration_hours: float
    delta_minutes: int
    reason: str


class CascadeConflictOut(BaseModel):
    appointment_id: str
    conflicting_appointment_id: str
    reason: str
    severity: str


class CascadeResponse(BaseModel):
    changes: list[CascadeChangeOut]
    conflicts: list[CascadeConflictOut]
    affected_clients: list[str]
    summary: str
