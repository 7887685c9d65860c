"""
Job dispatch endpoint - the first crew broadcast for a newly booked job.

Offers the job to every active worker with a chat id (round 1) and queues the
customer's day-before reminder. From here the timeout monitor takes over.
"""
import logging
import uuid
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops.database import get_db
from fieldops.models.job import Job
from fieldops.models.tenant import Tenant
from fieldops.schemas.api import ActionResponse
from fieldops.schemas.orchestration import OrchestrationConfig
from fieldops.services.adapters import DeliveryAdapters
from fieldops.services.assignments import broadcast_job, get_accepted_request
from fieldops.services.event_log import AlertReason
from fieldops.services.scheduler import schedule_day_before_reminder

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])

INITIAL_ROUND = 1


def get_adapters() -> DeliveryAdapters:
    return DeliveryAdapters()


@router.post("/{job_id}/broadcast", response_model=ActionResponse)
async def start_broadcast(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    adapters: DeliveryAdapters = Depends(get_adapters),
):
    try:
        job_uuid = uuid.UUID(job_id)
    except (ValueError, AttributeError):
        raise HTTPException(status_code=400, detail="Invalid job ID format")
    job = await db.get(Job, job_uuid)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    try:
        if await get_accepted_request(db, job.id) is not None:
            return ActionResponse(success=False, error="job already assigned")

        tenant = await db.get(Tenant, job.tenant_id)
        config = OrchestrationConfig.from_settings().for_tenant(tenant)
        result = await broadcast_job(
            db, job, adapters,
            reason=AlertReason.INITIAL,
            round_number=INITIAL_ROUND,
            source="dispatch",
        )
        reminder = await schedule_day_before_reminder(db, job, config.business_timezone)
        await db.flush()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Broadcast failed for job %s: %s", job_id[:8], str(e))
        return JSONResponse(
            status_code=500,
            content=ActionResponse(success=False, error=str(e)).model_dump(),
        )

    if not result["eligible"]:
        logger.warning("Job %s has no workers to offer it to", job_id[:8])
    return ActionResponse(
        success=True,
        message="Job offered to crew",
        data={
            "job_id": job_id,
            **result,
            "reminder_key": reminder.key if reminder else None,
        },
    )
