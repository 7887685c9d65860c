"""
Escalation and audit log - append-only SystemEvent rows.

log_event is fire-and-forget: the row rides along with the caller's
transaction and nothing comes back that the caller must check. The has_event / count_events
lookups are the monitor's dedup guards.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops.models.system_event import SystemEvent
from fieldops.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


class EventType:
    """Event type constants."""
    URGENT_FOLLOWUP_SENT = "URGENT_FOLLOWUP_SENT"
    OWNER_ALERT = "OWNER_ALERT"
    CUSTOMER_DELAY_NOTICE = "CUSTOMER_DELAY_NOTICE"
    CLEANER_BROADCAST = "CLEANER_BROADCAST"
    CLEANER_CANCELLED = "CLEANER_CANCELLED"
    CLEANER_ACCEPTED = "CLEANER_ACCEPTED"
    CLEANER_DECLINED = "CLEANER_DECLINED"
    LEAD_FOLLOWUP_CALL = "LEAD_FOLLOWUP_CALL"
    LEAD_STATUS_CHANGED = "LEAD_STATUS_CHANGED"
    LEAD_STAGE_CHANGED = "LEAD_STAGE_CHANGED"
    DAY_BEFORE_REMINDER = "DAY_BEFORE_REMINDER"

    @staticmethod
    def lead_followup_stage(stage: int) -> str:
        return f"LEAD_FOLLOWUP_STAGE_{stage}"


class AlertReason:
    """Discriminators for OWNER_ALERT and CLEANER_BROADCAST rows."""
    MAX_FOLLOWUPS_EXHAUSTED = "max_followups_exhausted"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    INITIAL = "initial"


def log_event(
    db: AsyncSession,
    source: str,
    event_type: str,
    message: str = "",
    *,
    tenant_id: Optional[uuid.UUID] = None,
    job_id: Optional[uuid.UUID] = None,
    lead_id: Optional[uuid.UUID] = None,
    worker_id: Optional[uuid.UUID] = None,
    phone: Optional[str] = None,
    reason: Optional[str] = None,
    status: str = "success",
    data: Optional[dict] = None,
    created_at: Optional[datetime] = None,
) -> SystemEvent:
    """
    Append one event row to the caller's session. It is written with the
    caller's next flush or commit; autoflush makes it visible to has_event.
    """
    event = SystemEvent(
        tenant_id=tenant_id,
        source=source,
        event_type=event_type,
        message=message,
        job_id=job_id,
        lead_id=lead_id,
        worker_id=worker_id,
        phone=phone,
        reason=reason,
        status=status,
        data=data or {},
        created_at=created_at or utcnow(),
    )
    db.add(event)
    logger.debug("Event logged: %s job=%s reason=%s", event_type, str(job_id)[:8], reason)
    return event


def _event_filter(
    job_id: uuid.UUID,
    event_type: str,
    reason: Optional[str],
    since: Optional[datetime] = None,
):
    clauses = [SystemEvent.job_id == job_id, SystemEvent.event_type == event_type]
    if reason is not None:
        clauses.append(SystemEvent.reason == reason)
    if since is not None:
        clauses.append(SystemEvent.created_at >= since)
    return and_(*clauses)


async def has_event(
    db: AsyncSession,
    job_id: uuid.UUID,
    event_type: str,
    reason: Optional[str] = None,
    since: Optional[datetime] = None,
) -> bool:
    """
    Does an event with this (job_id, event_type[, reason]) already exist?
    since limits the lookup to events logged at or after that moment.
    """
    result = await db.execute(
        select(SystemEvent.id).where(_event_filter(job_id, event_type, reason, since)).limit(1)
    )
    return result.first() is not None


async def count_events(
    db: AsyncSession,
    job_id: uuid.UUID,
    event_type: str,
    reason: Optional[str] = None,
) -> int:
    result = await db.execute(
        select(func.count()).select_from(SystemEvent).where(
            _event_filter(job_id, event_type, reason)
        )
    )
    return result.scalar() or 0


async def latest_event(
    db: AsyncSession,
    job_id: uuid.UUID,
    event_type: str,
) -> Optional[SystemEvent]:
    result = await db.execute(
        select(SystemEvent)
        .where(_event_filter(job_id, event_type, None))
        .order_by(SystemEvent.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
