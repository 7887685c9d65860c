"""
Scheduler / task store - durable, keyed, delayed tasks.

Guarantees:
- schedule_task is an upsert on the unique key: re-scheduling overwrites the
  pending row (or revives a terminal one) instead of adding a second row.
  A row that is currently claimed is left alone, so an in-flight task is
  never made claimable twice. A claim older than the claim timeout counts
  as abandoned and is overwritten like any other row.
- claim_due_tasks first releases abandoned claims (runner died between claim
  and complete/fail), then flips pending -> claimed with a conditional UPDATE
  stamped with a fresh claim token, and reads back only the rows carrying
  that token. Concurrent callers can never receive the same task.
- complete_task / fail_task only touch rows still claimed under the caller's
  token, so a task cancelled mid-flight stays cancelled.

Store errors propagate to the caller.
"""
import logging
import uuid
from datetime import datetime, time, timedelta
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import select, update, and_, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops.models.scheduled_task import ScheduledTask
from fieldops.services.followup_stages import STAGE_COUNT
from fieldops.utils.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BATCH_SIZE = 50
DEFAULT_CLAIM_TIMEOUT_SECONDS = 600
DAY_BEFORE_REMINDER_HOUR = 16  # 4 PM tenant-local, the day before the job


class TaskType:
    """Task type constants."""
    LEAD_FOLLOWUP = "lead_followup"
    LEAD_FOLLOWUP_CALL = "lead_followup_call"
    DAY_BEFORE_REMINDER = "day_before_reminder"


# === KEYS ===

def lead_stage_key(lead_id, stage: int) -> str:
    return f"lead-{lead_id}-stage-{stage}"


def followup_call_key(lead_id, stage: int) -> str:
    """Key of the delayed second dial of a double-call stage."""
    return f"lead-{lead_id}-stage-{stage}-call-2"


def day_before_reminder_key(job_id) -> str:
    return f"reminder-{job_id}-day-before"


# === STORE OPERATIONS ===

def _dialect_name(db: AsyncSession) -> str:
    return db.get_bind().dialect.name


def backoff_seconds(attempts: int) -> int:
    """Exponential backoff: 30s, 120s, 480s, ..."""
    return 30 * (4 ** max(0, attempts - 1))


async def schedule_task(
    db: AsyncSession,
    *,
    task_type: str,
    key: str,
    scheduled_for: datetime,
    payload: Optional[dict] = None,
    tenant_id: Optional[uuid.UUID] = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    claim_timeout_seconds: int = DEFAULT_CLAIM_TIMEOUT_SECONDS,
    now: Optional[datetime] = None,
) -> ScheduledTask:
    """
    Create or replace the task for `key`.

    Returns the stored row. If the existing row is claimed by a live runner
    it is returned unchanged.
    """
    now = ensure_utc(now) or utcnow()
    stale_before = now - timedelta(seconds=claim_timeout_seconds)
    scheduled_for = ensure_utc(scheduled_for)
    insert_fn = pg_insert if _dialect_name(db) == "postgresql" else sqlite_insert

    stmt = insert_fn(ScheduledTask).values(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        task_type=task_type,
        key=key,
        scheduled_for=scheduled_for,
        payload=payload or {},
        status="pending",
        attempts=0,
        max_attempts=max_attempts,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[ScheduledTask.key],
        set_={
            "tenant_id": stmt.excluded.tenant_id,
            "task_type": stmt.excluded.task_type,
            "scheduled_for": stmt.excluded.scheduled_for,
            "payload": stmt.excluded.payload,
            "max_attempts": stmt.excluded.max_attempts,
            "status": "pending",
            "attempts": 0,
            "claim_token": None,
            "claimed_at": None,
            "executed_at": None,
            "last_error": None,
            "updated_at": now,
        },
        where=or_(
            ScheduledTask.status != "claimed",
            ScheduledTask.claimed_at < stale_before,
        ),
    )
    await db.execute(stmt)

    result = await db.execute(
        select(ScheduledTask)
        .where(ScheduledTask.key == key)
        .execution_options(populate_existing=True)
    )
    task = result.scalar_one()

    if task.status == "claimed":
        logger.info("Task %s is in flight; schedule request left it unchanged", key)
    else:
        logger.info(
            "Task scheduled: key=%s type=%s for=%s",
            key, task_type, scheduled_for.isoformat(),
        )
    return task


async def cancel_task(db: AsyncSession, key: str) -> bool:
    """
    Cancel the task for `key`. No-op (returns False) for unknown keys and
    tasks that already finished.
    """
    result = await db.execute(
        update(ScheduledTask)
        .where(
            and_(
                ScheduledTask.key == key,
                ScheduledTask.status.in_(("pending", "claimed")),
            )
        )
        .values(status="cancelled", updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    cancelled = (result.rowcount or 0) > 0
    if cancelled:
        logger.info("Task cancelled: key=%s", key)
    return cancelled


async def mark_claimed(
    db: AsyncSession,
    task_ids: Sequence[uuid.UUID],
    claim_token: str,
    now: datetime,
) -> list[ScheduledTask]:
    """
    Conditionally flip the given tasks from pending to claimed.
    Only rows still pending at UPDATE time are taken; the rows returned are
    exactly those stamped with `claim_token`.
    """
    if not task_ids:
        return []

    await db.execute(
        update(ScheduledTask)
        .where(
            and_(
                ScheduledTask.id.in_(list(task_ids)),
                ScheduledTask.status == "pending",
            )
        )
        .values(
            status="claimed",
            claim_token=claim_token,
            claimed_at=now,
            attempts=ScheduledTask.attempts + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    result = await db.execute(
        select(ScheduledTask)
        .where(ScheduledTask.claim_token == claim_token)
        .order_by(ScheduledTask.scheduled_for)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def release_stale_claims(
    db: AsyncSession,
    now: datetime,
    claim_timeout_seconds: int = DEFAULT_CLAIM_TIMEOUT_SECONDS,
) -> int:
    """
    Hand back tasks claimed longer ago than the claim timeout. The abandoned
    claim already counted as an attempt: rows with attempts left become
    pending and due now, exhausted rows become failed. Returns rows released.
    """
    now = ensure_utc(now)
    stale = and_(
        ScheduledTask.status == "claimed",
        ScheduledTask.claimed_at < now - timedelta(seconds=claim_timeout_seconds),
    )
    error = f"claim expired after {claim_timeout_seconds}s"

    exhausted = await db.execute(
        update(ScheduledTask)
        .where(and_(stale, ScheduledTask.attempts >= ScheduledTask.max_attempts))
        .values(status="failed", executed_at=now, last_error=error, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    retried = await db.execute(
        update(ScheduledTask)
        .where(stale)
        .values(
            status="pending",
            scheduled_for=now,
            claim_token=None,
            claimed_at=None,
            last_error=error,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    released = (exhausted.rowcount or 0) + (retried.rowcount or 0)
    if released:
        logger.warning(
            "Released %d abandoned claims (%d failed, %d requeued)",
            released, exhausted.rowcount or 0, retried.rowcount or 0,
        )
    return released


async def claim_due_tasks(
    db: AsyncSession,
    now: Optional[datetime] = None,
    task_types: Optional[Sequence[str]] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    claim_timeout_seconds: int = DEFAULT_CLAIM_TIMEOUT_SECONDS,
) -> list[ScheduledTask]:
    """
    Atomically claim up to batch_size pending tasks whose time has come.
    Commits the claim before returning.
    """
    now = ensure_utc(now) or utcnow()
    await release_stale_claims(db, now, claim_timeout_seconds)

    query = (
        select(ScheduledTask.id)
        .where(
            and_(
                ScheduledTask.status == "pending",
                ScheduledTask.scheduled_for <= now,
            )
        )
        .order_by(ScheduledTask.scheduled_for)
        .limit(batch_size)
    )
    if task_types:
        query = query.where(ScheduledTask.task_type.in_(list(task_types)))
    if _dialect_name(db) == "postgresql":
        # Concurrent claimers skip each other's candidate rows instead of blocking
        query = query.with_for_update(skip_locked=True)

    candidate_ids = list((await db.execute(query)).scalars().all())
    if not candidate_ids:
        await db.commit()
        return []

    claim_token = uuid.uuid4().hex
    tasks = await mark_claimed(db, candidate_ids, claim_token, now)
    await db.commit()

    if tasks:
        logger.info("Claimed %d due tasks (token=%s)", len(tasks), claim_token[:8])
    return tasks


async def complete_task(db: AsyncSession, task: ScheduledTask, result: Optional[dict] = None) -> bool:
    """Mark a claimed task done. Returns False if it was cancelled or re-claimed meanwhile."""
    now = utcnow()
    values = {"status": "done", "executed_at": now, "updated_at": now}
    if result:
        values["payload"] = {**(task.payload or {}), "result": result}
    outcome = await db.execute(
        update(ScheduledTask)
        .where(
            and_(
                ScheduledTask.id == task.id,
                ScheduledTask.status == "claimed",
                ScheduledTask.claim_token == task.claim_token,
            )
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (outcome.rowcount or 0) > 0


async def fail_task(db: AsyncSession, task: ScheduledTask, error: str) -> str:
    """
    Release a claimed task after a handler error.
    Back to pending with exponential backoff while attempts remain, else failed.
    Returns the resulting status ("pending", "failed", or "unchanged").
    """
    now = utcnow()
    attempts = task.attempts or 0
    max_attempts = task.max_attempts or DEFAULT_MAX_ATTEMPTS

    if attempts >= max_attempts:
        values = {"status": "failed", "executed_at": now}
        new_status = "failed"
    else:
        backoff = backoff_seconds(attempts)
        values = {
            "status": "pending",
            "scheduled_for": now + timedelta(seconds=backoff),
            "claim_token": None,
            "claimed_at": None,
        }
        new_status = "pending"

    outcome = await db.execute(
        update(ScheduledTask)
        .where(
            and_(
                ScheduledTask.id == task.id,
                ScheduledTask.status == "claimed",
                ScheduledTask.claim_token == task.claim_token,
            )
        )
        .values(**values, last_error=error[:2000], updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if not outcome.rowcount:
        return "unchanged"

    if new_status == "failed":
        logger.error(
            "Task failed (max attempts): key=%s type=%s error=%s",
            task.key, task.task_type, error,
        )
    else:
        logger.warning(
            "Task retry %d/%d: key=%s type=%s backoff=%ds",
            attempts, max_attempts, task.key, task.task_type, backoff_seconds(attempts),
        )
    return new_status


# === LEAD FOLLOW-UP SEQUENCE ===

async def schedule_lead_followup(
    db: AsyncSession,
    lead,
    stage: int = 1,
    delay_minutes: int = 0,
    now: Optional[datetime] = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> ScheduledTask:
    """Enqueue stage `stage` of a lead's follow-up sequence."""
    now = ensure_utc(now) or utcnow()
    return await schedule_task(
        db,
        task_type=TaskType.LEAD_FOLLOWUP,
        key=lead_stage_key(lead.id, stage),
        scheduled_for=now + timedelta(minutes=delay_minutes),
        payload={
            "lead_id": str(lead.id),
            "tenant_id": str(lead.tenant_id),
            "lead_phone": lead.phone,
            "lead_name": lead.first_name or "",
            "stage": stage,
        },
        tenant_id=lead.tenant_id,
        max_attempts=max_attempts,
        now=now,
    )


async def schedule_followup_call(
    db: AsyncSession,
    lead,
    stage: int,
    gap_seconds: int,
    now: Optional[datetime] = None,
) -> ScheduledTask:
    """Enqueue the second dial of a double-call stage."""
    now = ensure_utc(now) or utcnow()
    return await schedule_task(
        db,
        task_type=TaskType.LEAD_FOLLOWUP_CALL,
        key=followup_call_key(lead.id, stage),
        scheduled_for=now + timedelta(seconds=gap_seconds),
        payload={"lead_id": str(lead.id), "tenant_id": str(lead.tenant_id), "stage": stage},
        tenant_id=lead.tenant_id,
        now=now,
    )


async def cancel_lead_followup(
    db: AsyncSession,
    lead_id,
    from_stage: int = 1,
    to_stage: int = STAGE_COUNT,
) -> int:
    """Cancel the stage tasks (and follow-up dials) in [from_stage, to_stage]. Returns count cancelled."""
    cancelled = 0
    for stage in range(from_stage, to_stage + 1):
        if await cancel_task(db, lead_stage_key(lead_id, stage)):
            cancelled += 1
        if await cancel_task(db, followup_call_key(lead_id, stage)):
            cancelled += 1
    return cancelled


# === JOB REMINDERS ===

async def schedule_day_before_reminder(
    db: AsyncSession,
    job,
    tz_name: str,
    now: Optional[datetime] = None,
) -> Optional[ScheduledTask]:
    """
    Schedule the customer reminder for 4 PM local time the day before the job.
    Returns None when the job has no date or that moment has already passed.
    """
    if job.date is None:
        return None
    now = ensure_utc(now) or utcnow()
    remind_at = datetime.combine(
        job.date - timedelta(days=1),
        time(DAY_BEFORE_REMINDER_HOUR, 0),
        tzinfo=ZoneInfo(tz_name),
    )
    if remind_at <= now:
        logger.debug("Day-before reminder for job %s is in the past, skipping", str(job.id)[:8])
        return None

    return await schedule_task(
        db,
        task_type=TaskType.DAY_BEFORE_REMINDER,
        key=day_before_reminder_key(job.id),
        scheduled_for=remind_at,
        payload={"job_id": str(job.id), "tenant_id": str(job.tenant_id)},
        tenant_id=job.tenant_id,
        now=now,
    )
