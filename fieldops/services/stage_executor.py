"""
Stage executor - runs one claimed task of the lead follow-up sequence.

For a lead_followup task:
1. Re-fetch the lead; stop silently if it vanished or is resolved
   (booked / lost / unqualified). The task still completes.
2. Perform the stage's action through the delivery adapters and bump the
   matching attempt counter. Delivery failures are logged, counted and do not
   stop the sequence.
3. Record progress on the lead, log a LEAD_FOLLOWUP_STAGE_<n> event, and
   schedule the next stage.

The second dial of a double-call stage is its own delayed task
(lead_followup_call), so a runner never sleeps between calls.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fieldops.models.customer import Customer
from fieldops.models.job import Job
from fieldops.models.lead import Lead
from fieldops.models.outbound_message import OutboundMessage
from fieldops.models.scheduled_task import ScheduledTask
from fieldops.models.tenant import Tenant
from fieldops.schemas.delivery import DeliveryResult
from fieldops.schemas.orchestration import OrchestrationConfig
from fieldops.services.adapters import DeliveryAdapters
from fieldops.services.event_log import EventType, log_event
from fieldops.services.followup_stages import (
    StageAction,
    StageDefinition,
    build_stage_table,
    get_stage,
    next_stage,
)
from fieldops.services.payments import format_amount
from fieldops.services.scheduler import (
    TaskType,
    schedule_followup_call,
    schedule_lead_followup,
)
from fieldops.utils.phone import mask_phone
from fieldops.utils.templates import render_template
from fieldops.utils.timeutils import format_job_date, utcnow

logger = logging.getLogger(__name__)

INACTIVE_JOB_STATUSES = frozenset({"cancelled", "completed"})


def _parse_uuid(value) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class LeadFollowupExecutor:
    """Executes lead follow-up stages and job reminders for the task runner."""

    def __init__(self, config: OrchestrationConfig, adapters: Optional[DeliveryAdapters] = None):
        self.config = config
        self.adapters = adapters or DeliveryAdapters()

    @property
    def handlers(self) -> dict:
        """task_type -> coroutine(db, task) returning a result dict."""
        return {
            TaskType.LEAD_FOLLOWUP: self.execute,
            TaskType.LEAD_FOLLOWUP_CALL: self.execute_followup_call,
            TaskType.DAY_BEFORE_REMINDER: self.execute_day_before_reminder,
        }

    async def _load_active_lead(self, db: AsyncSession, payload: dict) -> tuple[Optional[Lead], Optional[dict]]:
        lead_id = _parse_uuid(payload.get("lead_id"))
        if lead_id is None:
            return None, {"status": "skipped", "reason": "no lead_id"}

        lead = await db.get(Lead, lead_id)
        if lead is None:
            return None, {"status": "skipped", "reason": "lead not found"}
        if lead.is_resolved:
            logger.info("Lead %s is %s, follow-up stops", str(lead.id)[:8], lead.status)
            return None, {"status": "skipped", "reason": f"lead {lead.status}"}
        return lead, None

    # === LEAD FOLLOW-UP STAGES ===

    async def execute(self, db: AsyncSession, task: ScheduledTask, now: Optional[datetime] = None) -> dict:
        """Run one stage of a lead's follow-up sequence."""
        payload = task.payload or {}
        lead, skipped = await self._load_active_lead(db, payload)
        if skipped:
            return skipped

        tenant = await db.get(Tenant, lead.tenant_id)
        config = self.config.for_tenant(tenant)
        table = build_stage_table(config.followup_stage_delays_minutes)

        stage = get_stage(table, int(payload.get("stage", 1)))
        if stage is None:
            logger.warning("Unknown follow-up stage %s for lead %s", payload.get("stage"), str(lead.id)[:8])
            return {"status": "skipped", "reason": "unknown stage"}

        now = now or utcnow()
        deliveries = await self._run_stage(db, lead, tenant, stage, config, now)
        success = any(result.success for _, result in deliveries)

        lead.followup_stage = stage.stage
        lead.last_contact_at = now
        if lead.followup_started_at is None:
            lead.followup_started_at = now

        log_event(
            db,
            "scheduler",
            EventType.lead_followup_stage(stage.stage),
            f"Lead follow-up stage {stage.stage} ({stage.action}) "
            + ("delivered" if success else "failed"),
            tenant_id=lead.tenant_id,
            lead_id=lead.id,
            job_id=lead.job_id,
            phone=lead.phone,
            status="success" if success else "failure",
            data={
                "stage": stage.stage,
                "action": stage.action,
                "deliveries": [
                    {"channel": channel, **result.to_dict()} for channel, result in deliveries
                ],
            },
        )

        upcoming = next_stage(table, stage.stage)
        if upcoming is not None:
            await schedule_lead_followup(
                db, lead, upcoming.stage,
                delay_minutes=stage.delay_minutes,
                now=now,
                max_attempts=config.task_max_attempts,
            )

        if not success:
            logger.warning(
                "Follow-up stage %d delivery failed for lead %s",
                stage.stage, str(lead.id)[:8],
            )

        return {
            "status": "sent" if success else "delivery_failed",
            "stage": stage.stage,
            "action": stage.action,
            "next_stage": upcoming.stage if upcoming else None,
        }

    async def _run_stage(
        self,
        db: AsyncSession,
        lead: Lead,
        tenant: Optional[Tenant],
        stage: StageDefinition,
        config: OrchestrationConfig,
        now: datetime,
    ) -> list[tuple[str, DeliveryResult]]:
        actions = {
            StageAction.TEXT: self._send_stage_text,
            StageAction.CALL: self._place_stage_call,
            StageAction.DOUBLE_CALL: self._place_double_call,
        }
        deliveries = await actions[stage.action](db, lead, tenant, stage, config, now)

        if stage.creates_payment_link:
            link = await self._send_payment_link(db, lead, tenant)
            if link is not None:
                deliveries.append(("payment_link", link))
        return deliveries

    async def _send_stage_text(self, db, lead, tenant, stage, config, now):
        body = render_template(
            stage.template,
            "lead_followup",
            first_name=lead.display_name,
            business_name=tenant.business_name if tenant else "our team",
        )
        result = await self._text(db, lead.phone, body, tenant, source="lead_followup", lead=lead)
        lead.sms_attempt_count = (lead.sms_attempt_count or 0) + 1
        return [("text", result)]

    async def _place_stage_call(self, db, lead, tenant, stage, config, now):
        result = await self._call(lead, tenant, stage.stage)
        return [("call", result)]

    async def _place_double_call(self, db, lead, tenant, stage, config, now):
        result = await self._call(lead, tenant, stage.stage)
        await schedule_followup_call(db, lead, stage.stage, config.double_call_gap_seconds, now=now)
        return [("call", result)]

    async def _call(self, lead: Lead, tenant: Optional[Tenant], stage: int) -> DeliveryResult:
        result = await self.adapters.place_call(
            lead.phone,
            lead.first_name,
            {
                "business_name": tenant.business_name if tenant else "",
                "lead_id": str(lead.id),
                "stage": stage,
            },
        )
        lead.call_attempt_count = (lead.call_attempt_count or 0) + 1
        return result

    async def _text(
        self,
        db: AsyncSession,
        phone: str,
        body: str,
        tenant: Optional[Tenant],
        source: str,
        lead: Optional[Lead] = None,
        customer_id: Optional[uuid.UUID] = None,
    ) -> DeliveryResult:
        result = await self.adapters.send_text(
            phone, body, tenant.sms_from_phone if tenant else None,
        )
        if result.success:
            db.add(OutboundMessage(
                tenant_id=tenant.id if tenant else None,
                lead_id=lead.id if lead else None,
                customer_id=customer_id or (lead.customer_id if lead else None),
                phone=phone,
                content=body,
                source=source,
                provider_id=result.provider_id,
            ))
        return result

    async def _send_payment_link(
        self,
        db: AsyncSession,
        lead: Lead,
        tenant: Optional[Tenant],
    ) -> Optional[DeliveryResult]:
        """Create and text a payment link. None when the lead has no job or billable customer."""
        if lead.job_id is None:
            return None
        job = await db.get(Job, lead.job_id)
        if job is None:
            return None
        customer_id = lead.customer_id or job.customer_id
        customer = await db.get(Customer, customer_id) if customer_id else None
        if customer is None or not customer.email:
            logger.info("No billable customer for lead %s, payment link skipped", str(lead.id)[:8])
            return None

        link = await self.adapters.create_payment_link(customer, job, job.price_cents)
        if not link.success:
            return link

        lead.payment_link_url = link.url
        body = render_template(
            "payment_link",
            "payment",
            first_name=customer.first_name or lead.display_name,
            amount=format_amount(job.price_cents or 0),
            link=link.url,
        )
        await self._text(db, lead.phone, body, tenant, source="payment_link", lead=lead, customer_id=customer.id)
        lead.sms_attempt_count = (lead.sms_attempt_count or 0) + 1
        return link

    # === DOUBLE-CALL SECOND DIAL ===

    async def execute_followup_call(self, db: AsyncSession, task: ScheduledTask, now: Optional[datetime] = None) -> dict:
        """Second dial of a double-call stage."""
        payload = task.payload or {}
        lead, skipped = await self._load_active_lead(db, payload)
        if skipped:
            return skipped

        tenant = await db.get(Tenant, lead.tenant_id)
        stage = int(payload.get("stage", 0))
        result = await self._call(lead, tenant, stage)
        lead.last_contact_at = now or utcnow()

        log_event(
            db,
            "scheduler",
            EventType.LEAD_FOLLOWUP_CALL,
            f"Second call for stage {stage} " + ("placed" if result.success else "failed"),
            tenant_id=lead.tenant_id,
            lead_id=lead.id,
            phone=lead.phone,
            status="success" if result.success else "failure",
            data={"stage": stage, **result.to_dict()},
        )
        return {"status": "sent" if result.success else "delivery_failed", "stage": stage}

    # === DAY-BEFORE REMINDER ===

    async def execute_day_before_reminder(self, db: AsyncSession, task: ScheduledTask, now: Optional[datetime] = None) -> dict:
        """Text the customer a reminder the afternoon before their job."""
        job_id = _parse_uuid((task.payload or {}).get("job_id"))
        job = await db.get(Job, job_id) if job_id else None
        if job is None:
            return {"status": "skipped", "reason": "job not found"}
        if job.status in INACTIVE_JOB_STATUSES:
            return {"status": "skipped", "reason": f"job {job.status}"}

        customer = await db.get(Customer, job.customer_id) if job.customer_id else None
        phone = (customer.phone if customer else None) or job.phone
        if not phone:
            return {"status": "skipped", "reason": "no phone"}

        tenant = await db.get(Tenant, job.tenant_id)
        body = render_template(
            "day_before",
            "reminder",
            first_name=(customer.first_name if customer else None) or "there",
            business_name=tenant.business_name if tenant else "our team",
            service_type=(job.service_type or "appointment").lower(),
            date=format_job_date(job.date),
            time=job.scheduled_at or "the scheduled time",
        )
        result = await self._text(
            db, phone, body, tenant, source="reminder",
            customer_id=customer.id if customer else None,
        )

        log_event(
            db,
            "scheduler",
            EventType.DAY_BEFORE_REMINDER,
            "Day-before reminder " + ("sent" if result.success else "failed"),
            tenant_id=job.tenant_id,
            job_id=job.id,
            phone=phone,
            status="success" if result.success else "failure",
            data=result.to_dict(),
        )
        if not result.success:
            logger.warning("Reminder to %s failed: %s", mask_phone(phone), result.error)
        return {"status": "sent" if result.success else "delivery_failed"}
