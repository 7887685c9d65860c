"""
Lead follow-up endpoints - start a sequence and the dashboard's lead actions
(skip a stage, mark a status, move to a stage).
"""
import logging
import uuid
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops.database import get_db
from fieldops.models.lead import Lead
from fieldops.models.tenant import Tenant
from fieldops.schemas.api import ActionResponse, LeadActionRequest
from fieldops.schemas.orchestration import OrchestrationConfig
from fieldops.services.event_log import EventType, log_event
from fieldops.services.followup_stages import STAGE_COUNT, build_stage_table, get_stage
from fieldops.services.scheduler import cancel_lead_followup, schedule_lead_followup
from fieldops.utils.timeutils import utcnow

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/leads", tags=["leads"])

VALID_LEAD_STATUSES = ("new", "contacted", "qualified", "booked", "lost", "review_sent", "unqualified")
# Marking any of these ends the sequence
SEQUENCE_ENDING_STATUSES = frozenset({"booked", "lost", "review_sent", "unqualified"})


async def _get_lead(db: AsyncSession, lead_id: str) -> Lead:
    try:
        lead_uuid = uuid.UUID(lead_id)
    except (ValueError, AttributeError):
        raise HTTPException(status_code=400, detail="Invalid lead ID format")
    lead = await db.get(Lead, lead_uuid)
    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead


async def _config_for(db: AsyncSession, lead: Lead) -> OrchestrationConfig:
    tenant = await db.get(Tenant, lead.tenant_id)
    return OrchestrationConfig.from_settings().for_tenant(tenant)


def _store_error(lead_id: str, error: Exception) -> JSONResponse:
    logger.error("Lead %s action failed: %s", lead_id[:8], str(error))
    return JSONResponse(
        status_code=500,
        content=ActionResponse(success=False, error=str(error)).model_dump(),
    )


@router.post("/{lead_id}/followup", response_model=ActionResponse)
async def start_followup(lead_id: str, db: AsyncSession = Depends(get_db)):
    """Start a lead's follow-up sequence at stage 1, immediately."""
    lead = await _get_lead(db, lead_id)
    if lead.is_resolved:
        raise HTTPException(status_code=409, detail=f"Lead is {lead.status}")

    try:
        config = await _config_for(db, lead)
        task = await schedule_lead_followup(db, lead, 1, max_attempts=config.task_max_attempts)
        lead.followup_started_at = lead.followup_started_at or utcnow()
        await db.flush()
    except SQLAlchemyError as e:
        await db.rollback()
        return _store_error(lead_id, e)

    return ActionResponse(
        success=True,
        message="Follow-up sequence started",
        data={"lead_id": lead_id, "task_key": task.key},
    )


@router.post("/{lead_id}/actions", response_model=ActionResponse)
async def lead_action(
    lead_id: str,
    payload: LeadActionRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    skip_to_stage - treat stages up to `stage` as done without contacting the
        lead; the sequence resumes at the stage after it.
    mark_status   - set the lead status; booked / lost / review_sent /
        unqualified cancel every outstanding stage.
    move_to_stage - restart the sequence at `stage`; that stage runs on the
        next task runner cycle.
    """
    lead = await _get_lead(db, lead_id)

    if payload.action in ("skip_to_stage", "move_to_stage"):
        if payload.stage is None or payload.stage > STAGE_COUNT:
            raise HTTPException(status_code=400, detail=f"stage must be between 1 and {STAGE_COUNT}")
    elif payload.status not in VALID_LEAD_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid status. Must be one of: {', '.join(VALID_LEAD_STATUSES)}",
        )

    try:
        if payload.action == "skip_to_stage":
            data = await _skip_to_stage(db, lead, payload.stage)
        elif payload.action == "mark_status":
            data = await _mark_status(db, lead, payload.status)
        else:
            data = await _move_to_stage(db, lead, payload.stage)
        await db.flush()
    except SQLAlchemyError as e:
        await db.rollback()
        return _store_error(lead_id, e)

    return ActionResponse(success=True, message=payload.action, data={"lead_id": lead_id, **data})


async def _skip_to_stage(db: AsyncSession, lead: Lead, stage: int) -> dict:
    config = await _config_for(db, lead)
    cancelled = await cancel_lead_followup(db, lead.id, (lead.followup_stage or 0) + 1, stage)
    lead.followup_stage = stage

    next_task_key = None
    table = build_stage_table(config.followup_stage_delays_minutes)
    current = get_stage(table, stage)
    if stage < STAGE_COUNT and not lead.is_resolved:
        task = await schedule_lead_followup(
            db, lead, stage + 1,
            delay_minutes=current.delay_minutes,
            max_attempts=config.task_max_attempts,
        )
        next_task_key = task.key

    log_event(
        db, "lead_actions", EventType.LEAD_STAGE_CHANGED,
        f"Lead skipped to stage {stage}",
        tenant_id=lead.tenant_id, lead_id=lead.id, phone=lead.phone,
        data={"stage": stage, "cancelled_tasks": cancelled},
    )
    return {"new_stage": stage, "cancelled_tasks": cancelled, "next_task_key": next_task_key}


async def _mark_status(db: AsyncSession, lead: Lead, status: str) -> dict:
    cancelled = 0
    if status in SEQUENCE_ENDING_STATUSES:
        cancelled = await cancel_lead_followup(db, lead.id)

    previous = lead.status
    lead.status = status
    log_event(
        db, "lead_actions", EventType.LEAD_STATUS_CHANGED,
        f"Lead status {previous} -> {status}",
        tenant_id=lead.tenant_id, lead_id=lead.id, phone=lead.phone,
        data={"from": previous, "to": status, "cancelled_tasks": cancelled},
    )
    logger.info("Lead %s marked %s (%d tasks cancelled)", str(lead.id)[:8], status, cancelled)
    return {"new_status": status, "cancelled_tasks": cancelled}


async def _move_to_stage(db: AsyncSession, lead: Lead, stage: int) -> dict:
    config = await _config_for(db, lead)
    cancelled = await cancel_lead_followup(db, lead.id)

    if lead.status == "lost":
        lead.status = "new"
    lead.followup_stage = stage - 1
    lead.followup_started_at = utcnow()

    task = await schedule_lead_followup(db, lead, stage, max_attempts=config.task_max_attempts)
    log_event(
        db, "lead_actions", EventType.LEAD_STAGE_CHANGED,
        f"Lead moved to stage {stage}",
        tenant_id=lead.tenant_id, lead_id=lead.id, phone=lead.phone,
        data={"stage": stage, "cancelled_tasks": cancelled, "status": lead.status},
    )
    return {
        "new_stage": stage,
        "new_status": lead.status,
        "cancelled_tasks": cancelled,
        "task_key": task.key,
    }
