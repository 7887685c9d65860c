"""
Crew assignment service - offering jobs to workers and recording responses.

First accept wins: accept_assignment sets a request to accepted with a single
conditional UPDATE that only matches while the request is pending and no other
request for the same job is accepted. The partial unique index on
(job_id) WHERE status = 'accepted' backs this up for concurrent transactions;
whichever request loses is downgraded to declined.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, and_, exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from fieldops.models.assignment_request import AssignmentRequest
from fieldops.models.crew_worker import CrewWorker
from fieldops.models.job import Job
from fieldops.schemas.delivery import DeliveryResult
from fieldops.services.event_log import EventType, log_event
from fieldops.services.notifications import build_job_offer
from fieldops.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

REOPENABLE_STATUSES = frozenset({"declined", "cancelled"})


async def get_accepted_request(db: AsyncSession, job_id: uuid.UUID) -> Optional[AssignmentRequest]:
    result = await db.execute(
        select(AssignmentRequest)
        .where(and_(AssignmentRequest.job_id == job_id, AssignmentRequest.status == "accepted"))
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_requests_for_job(db: AsyncSession, job_id: uuid.UUID) -> list[AssignmentRequest]:
    result = await db.execute(
        select(AssignmentRequest)
        .where(AssignmentRequest.job_id == job_id)
        .order_by(AssignmentRequest.created_at)
    )
    return list(result.scalars().all())


async def decline_pending_for_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    now: Optional[datetime] = None,
    except_request_id: Optional[uuid.UUID] = None,
) -> int:
    """Decline every still-pending request for a job. Returns rows changed."""
    conditions = [AssignmentRequest.job_id == job_id, AssignmentRequest.status == "pending"]
    if except_request_id is not None:
        conditions.append(AssignmentRequest.id != except_request_id)
    result = await db.execute(
        update(AssignmentRequest)
        .where(and_(*conditions))
        .values(status="declined", responded_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def create_request(
    db: AsyncSession,
    job: Job,
    worker: CrewWorker,
    now: Optional[datetime] = None,
) -> AssignmentRequest:
    request = AssignmentRequest(
        tenant_id=job.tenant_id,
        job_id=job.id,
        worker_id=worker.id,
        status="pending",
        created_at=now or utcnow(),
    )
    db.add(request)
    await db.flush()
    return request


async def offer_job(
    db: AsyncSession,
    job: Job,
    worker: CrewWorker,
    adapters,
    now: Optional[datetime] = None,
    request: Optional[AssignmentRequest] = None,
    text: Optional[str] = None,
) -> tuple[AssignmentRequest, DeliveryResult]:
    """
    Message the worker the offer, creating their pending request or re-opening
    `request`. A re-opened request restarts its timeout clock at `now`.
    """
    now = now or utcnow()
    if request is None:
        request = await create_request(db, job, worker, now)
    else:
        request.status = "pending"
        request.created_at = now
        request.responded_at = None
    result = await adapters.send_chat(worker.telegram_id, text or build_job_offer(job))
    return request, result


async def accept_assignment(
    db: AsyncSession,
    request_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> dict:
    """
    Worker accepts an offer. Commits.

    Returns {"accepted": True, ...} for the winner; a losing request is
    downgraded to declined and {"accepted": False, "reason": ...} returned.
    """
    now = now or utcnow()
    request = await db.get(AssignmentRequest, request_id)
    if request is None:
        return {"accepted": False, "reason": "request not found"}
    job_id = request.job_id

    other = aliased(AssignmentRequest)
    already_accepted = exists().where(
        and_(other.job_id == job_id, other.status == "accepted")
    )
    try:
        result = await db.execute(
            update(AssignmentRequest)
            .where(
                and_(
                    AssignmentRequest.id == request_id,
                    AssignmentRequest.status == "pending",
                    ~already_accepted,
                )
            )
            .values(status="accepted", responded_at=now)
            .execution_options(synchronize_session=False)
        )
        won = (result.rowcount or 0) > 0
    except IntegrityError:
        # A concurrent transaction committed its accept first
        await db.rollback()
        won = False

    if not won:
        await db.execute(
            update(AssignmentRequest)
            .where(and_(AssignmentRequest.id == request_id, AssignmentRequest.status == "pending"))
            .values(status="declined", responded_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        await db.refresh(request)
        logger.info(
            "Accept rejected: request=%s job=%s status=%s",
            str(request_id)[:8], str(job_id)[:8], request.status,
        )
        return {"accepted": False, "reason": "job already assigned", "status": request.status}

    declined = await decline_pending_for_job(db, job_id, now, except_request_id=request_id)
    log_event(
        db,
        "assignments",
        EventType.CLEANER_ACCEPTED,
        "Worker accepted job.",
        tenant_id=request.tenant_id,
        job_id=job_id,
        worker_id=request.worker_id,
        data={"request_id": str(request_id), "declined_others": declined},
    )
    await db.commit()
    await db.refresh(request)
    logger.info("Job %s accepted by worker %s", str(job_id)[:8], str(request.worker_id)[:8])
    return {"accepted": True, "job_id": str(job_id), "declined_others": declined}


async def decline_assignment(
    db: AsyncSession,
    request_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> bool:
    """Worker declines a pending offer. Returns False if it wasn't pending."""
    request = await db.get(AssignmentRequest, request_id)
    if request is None:
        return False
    result = await db.execute(
        update(AssignmentRequest)
        .where(and_(AssignmentRequest.id == request_id, AssignmentRequest.status == "pending"))
        .values(status="declined", responded_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        return False
    log_event(
        db,
        "assignments",
        EventType.CLEANER_DECLINED,
        "Worker declined job.",
        tenant_id=request.tenant_id,
        job_id=request.job_id,
        worker_id=request.worker_id,
    )
    return True


async def cancel_accepted_assignment(
    db: AsyncSession,
    request_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> bool:
    """
    Worker drops a job they had accepted. Logs CLEANER_CANCELLED, which the
    timeout monitor picks up to re-broadcast the job.
    """
    now = now or utcnow()
    request = await db.get(AssignmentRequest, request_id)
    if request is None:
        return False
    result = await db.execute(
        update(AssignmentRequest)
        .where(and_(AssignmentRequest.id == request_id, AssignmentRequest.status == "accepted"))
        .values(status="cancelled", responded_at=now)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        return False

    worker = await db.get(CrewWorker, request.worker_id)
    log_event(
        db,
        "assignments",
        EventType.CLEANER_CANCELLED,
        f"{worker.name if worker else 'Worker'} cancelled an accepted job.",
        tenant_id=request.tenant_id,
        job_id=request.job_id,
        worker_id=request.worker_id,
        phone=worker.phone if worker else None,
        created_at=now,
    )
    logger.info("Worker %s cancelled job %s", str(request.worker_id)[:8], str(request.job_id)[:8])
    return True


async def broadcast_job(
    db: AsyncSession,
    job: Job,
    adapters,
    reason: str,
    round_number: int,
    exclude_worker_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
    source: str = "monitor",
) -> dict:
    """
    Offer a job to every active worker of the tenant with a chat id.

    Existing pending requests are re-sent. Declined or cancelled requests are
    re-opened only when reason == "cancelled"; otherwise those workers are
    skipped. Logs one CLEANER_BROADCAST event with the reason.
    """
    now = now or utcnow()
    workers_result = await db.execute(
        select(CrewWorker).where(
            and_(CrewWorker.tenant_id == job.tenant_id, CrewWorker.active.is_(True))
        )
    )
    eligible = [
        w for w in workers_result.scalars().all()
        if w.telegram_id and (exclude_worker_id is None or w.id != exclude_worker_id)
    ]

    existing = {r.worker_id: r for r in await get_requests_for_job(db, job.id)}
    reopen_declined = reason == "cancelled"
    offer_text = build_job_offer(job)
    sent = 0
    failures = []

    for worker in eligible:
        request = existing.get(worker.id)
        if request is not None:
            if request.status == "accepted":
                continue
            if request.status in REOPENABLE_STATUSES and not reopen_declined:
                continue

        _, result = await offer_job(db, job, worker, adapters, now, request=request, text=offer_text)
        if result.success:
            sent += 1
        else:
            failures.append({"worker_id": str(worker.id), "error": result.error})

    await db.flush()

    log_event(
        db,
        source,
        EventType.CLEANER_BROADCAST,
        f"Job broadcast round {round_number}.",
        tenant_id=job.tenant_id,
        job_id=job.id,
        phone=job.phone,
        reason=reason,
        data={
            "round": round_number,
            "sent_count": sent,
            "failed_count": len(failures),
            "worker_count": len(eligible),
            "excluded_worker_id": str(exclude_worker_id) if exclude_worker_id else None,
            "failures": failures,
        },
        created_at=now,
    )
    logger.info(
        "Broadcast job=%s reason=%s round=%d sent=%d/%d",
        str(job.id)[:8], reason, round_number, sent, len(eligible),
    )
    return {"sent": sent, "failed": len(failures), "eligible": len(eligible)}
