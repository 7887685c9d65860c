"""
Timeout monitor - escalates jobs whose crew assignment offers go unanswered.

Level-triggered: every pass recomputes each job's state from request
timestamps and the event log, so a skipped pass only means the next one
sees a larger age. Every escalation is guarded by an existence check on
(job_id, event_type, reason) in the event log. Two overlapping passes can
still both send; an occasional duplicate is accepted, a missed alert is not,
so an alert is only logged once it was actually delivered.

Per job, each pass:
- cancelled by its accepted worker recently -> re-broadcast at +20 min
  (re-opening declined requests), owner alert at +40 min
- any request accepted -> decline the rest
- pending past the job's timeout -> urgent reminder round, until the
  reminder ceiling, then one owner alert to resolve manually
- pending past the owner-alert threshold -> one owner alert
- pending past twice that -> one customer delay notice
"""
import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops.database import async_session_factory
from fieldops.models.assignment_request import AssignmentRequest
from fieldops.models.crew_worker import CrewWorker
from fieldops.models.customer import Customer
from fieldops.models.job import Job
from fieldops.models.outbound_message import OutboundMessage
from fieldops.models.system_event import SystemEvent
from fieldops.models.tenant import Tenant
from fieldops.schemas.orchestration import OrchestrationConfig
from fieldops.services.adapters import DeliveryAdapters
from fieldops.services.assignments import (
    broadcast_job,
    decline_pending_for_job,
    get_accepted_request,
)
from fieldops.services.event_log import (
    AlertReason,
    EventType,
    count_events,
    has_event,
    latest_event,
    log_event,
)
from fieldops.services.notifications import (
    alert_owner,
    build_cancel_alert,
    build_customer_delay_notice,
    build_job_offer,
    build_max_attempts_alert,
    build_timeout_alert,
)
from fieldops.utils.alerting import AlertType, send_alert
from fieldops.utils.cache import write_heartbeat
from fieldops.utils.logging import worker_cycle
from fieldops.utils.timeutils import ensure_utc, local_date, minutes_since, utcnow

logger = logging.getLogger(__name__)

CANCELLATION_ROUND = 2


class TimeoutMonitor:
    """One instance per process; run_pass is safe to call from cron or the loop."""

    def __init__(self, config: OrchestrationConfig, adapters: Optional[DeliveryAdapters] = None):
        self.config = config
        self.adapters = adapters or DeliveryAdapters()

    def timeout_minutes(self, job: Job, config: OrchestrationConfig, now: datetime) -> int:
        """Urgent (same-day or flagged in notes) jobs escalate sooner."""
        if self.is_urgent(job, config, now):
            return config.urgent_timeout_minutes
        return config.standard_timeout_minutes

    @staticmethod
    def is_urgent(job: Job, config: OrchestrationConfig, now: datetime) -> bool:
        if job.date is not None and job.date == local_date(now, config.business_timezone):
            return True
        notes = (job.notes or "").lower()
        return any(keyword in notes for keyword in config.urgent_keywords)

    async def run_pass(self, db: AsyncSession, now: Optional[datetime] = None) -> dict:
        """
        Run one escalation pass. Does not commit.

        Each job runs in its own savepoint: a job that raises is rolled back,
        logged and counted under "errors", and the pass moves on.
        """
        now = ensure_utc(now) or utcnow()
        summary = {
            "jobs_processed": 0,
            "reminders_sent": 0,
            "owner_alerts": 0,
            "customer_notices": 0,
            "rebroadcasts": 0,
            "errors": 0,
        }
        processed: set = set()

        # Recent cancellations first, newest per job
        lookback = now - timedelta(minutes=self.config.cancel_reassign_lookback_minutes)
        cancels = await db.execute(
            select(SystemEvent)
            .where(
                and_(
                    SystemEvent.event_type == EventType.CLEANER_CANCELLED,
                    SystemEvent.created_at >= lookback,
                    SystemEvent.job_id.is_not(None),
                )
            )
            .order_by(SystemEvent.created_at.desc())
        )
        for cancel_event in cancels.scalars().all():
            if cancel_event.job_id in processed:
                continue
            processed.add(cancel_event.job_id)
            await self._process_job(db, cancel_event.job_id, now, summary, cancel_event)

        # Pending offers older than the shortest timeout, grouped by job
        shortest = min(self.config.urgent_timeout_minutes, self.config.standard_timeout_minutes)
        cutoff = now - timedelta(minutes=shortest)
        pending = await db.execute(
            select(AssignmentRequest.job_id)
            .where(
                and_(
                    AssignmentRequest.status == "pending",
                    AssignmentRequest.created_at < cutoff,
                )
            )
            .order_by(AssignmentRequest.created_at)
        )
        job_ids = OrderedDict((job_id, None) for job_id in pending.scalars().all())

        for job_id in job_ids:
            if job_id in processed:
                continue
            processed.add(job_id)
            await self._process_job(db, job_id, now, summary)

        summary["jobs_processed"] = len(processed)
        return summary

    async def _process_job(
        self,
        db: AsyncSession,
        job_id,
        now: datetime,
        summary: dict,
        cancel_event: Optional[SystemEvent] = None,
    ) -> None:
        try:
            async with db.begin_nested():
                job = await db.get(Job, job_id)
                if job is None:
                    return
                if cancel_event is None:
                    cancel_event = await latest_event(db, job_id, EventType.CLEANER_CANCELLED)
                if cancel_event is not None:
                    await self._handle_cancellation(db, job, cancel_event, now, summary)
                else:
                    await self._handle_pending(db, job, now, summary)
        except Exception as e:
            summary["errors"] += 1
            logger.error("Escalation failed for job %s: %s", str(job_id)[:8], str(e))

    async def _tenant_context(self, db: AsyncSession, job: Job) -> tuple[Optional[Tenant], OrchestrationConfig]:
        tenant = await db.get(Tenant, job.tenant_id)
        return tenant, self.config.for_tenant(tenant)

    async def _customer(self, db: AsyncSession, job: Job) -> Optional[Customer]:
        if job.customer_id is None:
            return None
        return await db.get(Customer, job.customer_id)

    async def _alert_owner(
        self,
        tenant: Optional[Tenant],
        config: OrchestrationConfig,
        message: str,
    ) -> bool:
        if not config.owner_phone:
            await send_alert(
                AlertType.OWNER_PHONE_MISSING,
                f"Escalation for tenant {tenant.slug if tenant else 'unknown'} has no owner phone",
                severity="warning",
            )
            return False
        return await alert_owner(
            self.adapters, config.owner_phone, message,
            tenant.sms_from_phone if tenant else None,
        )

    # === PENDING OFFERS ===

    async def _handle_pending(self, db: AsyncSession, job: Job, now: datetime, summary: dict) -> None:
        result = await db.execute(
            select(AssignmentRequest).where(
                and_(AssignmentRequest.job_id == job.id, AssignmentRequest.status == "pending")
            )
        )
        all_pending = list(result.scalars().all())
        if not all_pending:
            return

        if await get_accepted_request(db, job.id) is not None:
            declined = await decline_pending_for_job(db, job.id, now)
            logger.info("Job %s already accepted, declined %d pending offers", str(job.id)[:8], declined)
            return

        tenant, config = await self._tenant_context(db, job)
        timeout = self.timeout_minutes(job, config, now)
        oldest = min(ensure_utc(r.created_at) for r in all_pending)
        age = now - oldest
        if age < timedelta(minutes=timeout):
            return

        workers = {}
        for request in all_pending:
            worker = await db.get(CrewWorker, request.worker_id)
            if worker is not None:
                workers[request.worker_id] = worker
        pending_names = [w.name for w in workers.values()]

        followups = await count_events(db, job.id, EventType.URGENT_FOLLOWUP_SENT)

        if followups >= config.max_followup_attempts:
            await self._alert_max_attempts(db, job, tenant, config, followups, pending_names, now, summary)
            return

        await self._send_reminders(db, job, config, timeout, followups, workers, pending_names, now, summary)

        if age >= timedelta(minutes=config.owner_alert_minutes):
            if not await has_event(db, job.id, EventType.OWNER_ALERT, AlertReason.TIMEOUT):
                urgent = timeout == config.urgent_timeout_minutes
                message = build_timeout_alert(job, config.owner_alert_minutes, urgent, pending_names)
                if await self._alert_owner(tenant, config, message):
                    log_event(
                        db, "monitor", EventType.OWNER_ALERT,
                        "Owner alerted: no crew response within timeout.",
                        tenant_id=job.tenant_id, job_id=job.id, phone=config.owner_phone,
                        reason=AlertReason.TIMEOUT,
                        data={
                            "timeout_minutes": config.owner_alert_minutes,
                            "pending_workers": pending_names,
                            "scheduled_at": job.scheduled_at,
                        },
                        created_at=now,
                    )
                    summary["owner_alerts"] += 1

        if age >= timedelta(minutes=config.customer_notice_minutes):
            if not await has_event(db, job.id, EventType.CUSTOMER_DELAY_NOTICE):
                await self._notify_customer(db, job, tenant, now, summary)

    async def _send_reminders(
        self,
        db: AsyncSession,
        job: Job,
        config: OrchestrationConfig,
        timeout: int,
        followups: int,
        workers: dict,
        pending_names: list[str],
        now: datetime,
        summary: dict,
    ) -> None:
        """
        One urgent reminder round to every still-pending worker with a chat id.

        The round is logged even when no delivery succeeded (intentionally not
        limited to rounds with sent_count > 0), so a channel that keeps failing
        still reaches the reminder ceiling and the owner alert.
        """
        reachable = [w for w in workers.values() if w.telegram_id]
        if not reachable:
            logger.warning("Job %s has no reachable pending workers", str(job.id)[:8])
            return

        text = build_job_offer(job, urgent=True)
        delivered = 0
        for worker in reachable:
            result = await self.adapters.send_chat(worker.telegram_id, text)
            if result.success:
                delivered += 1

        attempt = followups + 1
        log_event(
            db, "monitor", EventType.URGENT_FOLLOWUP_SENT,
            f"Urgent follow-up sent to {delivered} workers. ({attempt}/{config.max_followup_attempts})",
            tenant_id=job.tenant_id, job_id=job.id, phone=job.phone,
            status="success" if delivered else "failure",
            data={
                "attempt_number": attempt,
                "timeout_minutes": timeout,
                "workers": pending_names,
                "sent_count": delivered,
            },
            created_at=now,
        )
        summary["reminders_sent"] += delivered

    async def _alert_max_attempts(
        self,
        db: AsyncSession,
        job: Job,
        tenant: Optional[Tenant],
        config: OrchestrationConfig,
        followups: int,
        pending_names: list[str],
        now: datetime,
        summary: dict,
    ) -> None:
        if await has_event(db, job.id, EventType.OWNER_ALERT, AlertReason.MAX_FOLLOWUPS_EXHAUSTED):
            return

        customer = await self._customer(db, job)
        message = build_max_attempts_alert(job, customer, config.max_followup_attempts, pending_names)
        if not await self._alert_owner(tenant, config, message):
            return

        log_event(
            db, "monitor", EventType.OWNER_ALERT,
            f"Max follow-ups ({config.max_followup_attempts}) reached. Owner texted about unclaimed job.",
            tenant_id=job.tenant_id, job_id=job.id, phone=config.owner_phone,
            reason=AlertReason.MAX_FOLLOWUPS_EXHAUSTED,
            data={
                "followup_count": followups,
                "pending_workers": pending_names,
                "scheduled_at": job.scheduled_at,
            },
            created_at=now,
        )
        summary["owner_alerts"] += 1

    async def _notify_customer(
        self,
        db: AsyncSession,
        job: Job,
        tenant: Optional[Tenant],
        now: datetime,
        summary: dict,
    ) -> None:
        customer = await self._customer(db, job)
        phone = (customer.phone if customer else None) or job.phone
        if not phone:
            return

        message = build_customer_delay_notice(job)
        result = await self.adapters.send_text(phone, message, tenant.sms_from_phone if tenant else None)
        if not result.success:
            logger.warning("Customer delay notice failed for job %s: %s", str(job.id)[:8], result.error)
            return

        db.add(OutboundMessage(
            tenant_id=job.tenant_id,
            customer_id=customer.id if customer else None,
            phone=phone,
            content=message,
            source="delay_notice",
            provider_id=result.provider_id,
        ))
        log_event(
            db, "monitor", EventType.CUSTOMER_DELAY_NOTICE,
            "Customer notified of crew confirmation delay.",
            tenant_id=job.tenant_id, job_id=job.id, phone=phone,
            data={"scheduled_at": job.scheduled_at},
            created_at=now,
        )
        summary["customer_notices"] += 1

    # === CANCELLATIONS ===

    async def _handle_cancellation(
        self,
        db: AsyncSession,
        job: Job,
        cancel_event: SystemEvent,
        now: datetime,
        summary: dict,
    ) -> None:
        if await get_accepted_request(db, job.id) is not None:
            return

        tenant, config = await self._tenant_context(db, job)
        cancelled_at = ensure_utc(cancel_event.created_at)
        minutes = minutes_since(cancelled_at, now)

        if minutes >= config.cancel_reassign_interval_minutes:
            already = await has_event(
                db, job.id, EventType.CLEANER_BROADCAST, AlertReason.CANCELLED, since=cancelled_at,
            )
            if not already:
                await broadcast_job(
                    db, job, self.adapters,
                    reason=AlertReason.CANCELLED,
                    round_number=CANCELLATION_ROUND,
                    exclude_worker_id=cancel_event.worker_id,
                    now=now,
                )
                summary["rebroadcasts"] += 1

        if minutes >= config.cancel_reassign_alert_minutes:
            already = await has_event(
                db, job.id, EventType.OWNER_ALERT, AlertReason.CANCELLED, since=cancelled_at,
            )
            if already:
                return
            worker = await db.get(CrewWorker, cancel_event.worker_id) if cancel_event.worker_id else None
            customer = await self._customer(db, job)
            message = build_cancel_alert(job, customer, worker.name if worker else None, minutes)
            if not await self._alert_owner(tenant, config, message):
                return
            log_event(
                db, "monitor", EventType.OWNER_ALERT,
                "Owner alerted: no crew response after cancellation.",
                tenant_id=job.tenant_id, job_id=job.id, phone=config.owner_phone,
                worker_id=cancel_event.worker_id,
                reason=AlertReason.CANCELLED,
                data={"minutes_since_cancel": minutes, "scheduled_at": job.scheduled_at},
                created_at=now,
            )
            summary["owner_alerts"] += 1


# === RUNNERS ===

MONITOR_INTERVAL_SECONDS = 300


async def check_timeouts_once(monitor: Optional[TimeoutMonitor] = None, now: Optional[datetime] = None) -> dict:
    """One committed monitor pass in its own session (cron entry point)."""
    monitor = monitor or TimeoutMonitor(OrchestrationConfig.from_settings())
    async with async_session_factory() as db:
        summary = await monitor.run_pass(db, now)
        await db.commit()

    if any(summary[k] for k in ("reminders_sent", "owner_alerts", "customer_notices", "rebroadcasts")):
        logger.info(
            "Timeout pass: jobs=%d reminders=%d owner_alerts=%d customer_notices=%d rebroadcasts=%d",
            summary["jobs_processed"], summary["reminders_sent"], summary["owner_alerts"],
            summary["customer_notices"], summary["rebroadcasts"],
        )
    if summary.get("errors"):
        await send_alert(
            AlertType.MONITOR_PASS_FAILED,
            f"Timeout pass skipped {summary['errors']} jobs after errors; see logs",
        )
    return summary


async def run_timeout_monitor():
    """Main loop - one escalation pass every few minutes."""
    from fieldops.config import get_settings
    interval = get_settings().monitor_interval_seconds or MONITOR_INTERVAL_SECONDS
    monitor = TimeoutMonitor(OrchestrationConfig.from_settings())
    logger.info("Timeout monitor started (interval=%ds)", interval)

    while True:
        with worker_cycle("timeout_monitor"):
            try:
                await check_timeouts_once(monitor)
            except Exception as e:
                logger.error("Timeout monitor pass error: %s", str(e))
                await send_alert(AlertType.MONITOR_PASS_FAILED, f"Timeout monitor pass failed: {e}")

        await write_heartbeat("timeout_monitor")
        await asyncio.sleep(interval)
