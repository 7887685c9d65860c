"""
Appointment endpoints - preview how a time change cascades through the day.
The plan is computed only; callers apply it and notify clients themselves.
"""
import logging
from datetime import datetime
from fastapi import APIRouter, HTTPException

from fieldops.schemas.api import (
    CascadeChangeOut,
    CascadeConflictOut,
    CascadeRequest,
    CascadeResponse,
)
from fieldops.schemas.orchestration import OrchestrationConfig
from fieldops.services.cascade import Appointment, calculate_cascade, date_only_start

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/appointments", tags=["appointments"])


def _naive(value):
    """Appointments are compared as local wall-clock times."""
    return value.replace(tzinfo=None) if value.tzinfo else value


def _start_of(appointment) -> datetime:
    if appointment.start is not None:
        return _naive(appointment.start)
    if appointment.service_date is not None:
        return date_only_start(appointment.service_date)
    raise HTTPException(status_code=422, detail=f"Appointment {appointment.id} has no start or service_date")


@router.post("/cascade", response_model=CascadeResponse)
async def preview_cascade(payload: CascadeRequest):
    appointments = [
        Appointment(
            id=a.id,
            start=_start_of(a),
            duration_hours=a.duration_hours,
            status=a.status,
            client=a.client,
            crew=a.crew,
        )
        for a in payload.appointments
    ]
    modified = next((a for a in appointments if a.id == payload.appointment_id), None)
    if modified is None:
        raise HTTPException(status_code=404, detail="Modified appointment not in list")

    result = calculate_cascade(
        modified,
        _naive(payload.new_start),
        payload.new_duration_hours,
        appointments,
        OrchestrationConfig.from_settings(),
    )
    logger.info(
        "Cascade preview for %s: %d changes, %d conflicts",
        payload.appointment_id[:8], len(result.changes), len(result.conflicts),
    )

    return CascadeResponse(
        changes=[
            CascadeChangeOut(
                appointment_id=c.appointment.id,
                client=c.appointment.client,
                original_start=c.original_start,
                new_start=c.new_start,
                original_duration_hours=c.original_duration,
                new_duration_hours=c.new_duration,
                delta_minutes=c.delta_minutes,
                reason=c.reason,
            )
            for c in result.changes
        ],
        conflicts=[
            CascadeConflictOut(
                appointment_id=c.appointment.id,
                conflicting_appointment_id=c.conflicting.id,
                reason=c.reason,
                severity=c.severity,
            )
            for c in result.conflicts
        ],
        affected_clients=result.affected_clients,
        summary=result.summary,
    )
