"""
Tests for fieldops/workers/timeout_monitor.py - reminder rounds, the reminder
ceiling, owner and customer escalations, first-accept cleanup and the
cancellation re-broadcast.
"""
import pytest
import uuid
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy import select, func

from fieldops.models.assignment_request import AssignmentRequest
from fieldops.models.job import Job
from fieldops.models.outbound_message import OutboundMessage
from fieldops.models.system_event import SystemEvent
from fieldops.schemas.delivery import DeliveryResult
from fieldops.schemas.orchestration import OrchestrationConfig
from fieldops.services.assignments import (
    accept_assignment,
    cancel_accepted_assignment,
    create_request,
)
from fieldops.services.event_log import AlertReason, EventType
from fieldops.utils.alerting import AlertType
from fieldops.workers.timeout_monitor import TimeoutMonitor, check_timeouts_once

NOW = datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc)  # 10:00 in Los Angeles


async def _count(db, event_type, reason=None):
    query = select(func.count()).select_from(SystemEvent).where(SystemEvent.event_type == event_type)
    if reason is not None:
        query = query.where(SystemEvent.reason == reason)
    return (await db.execute(query)).scalar()


async def _offer_all(db, job, workers, minutes_ago):
    return [await create_request(db, job, w, NOW - timedelta(minutes=minutes_ago)) for w in workers]


@pytest.fixture
def monitor(config, adapters):
    return TimeoutMonitor(config, adapters)


def _owner_texts(adapters, owner_phone="+15125550100"):
    return [c for c in adapters.send_text.call_args_list if c[0][0] == owner_phone]


# ---------------------------------------------------------------------------
# Urgency
# ---------------------------------------------------------------------------


class TestUrgency:
    def test_same_day_in_business_timezone_is_urgent(self, config, job):
        job.date = date(2026, 3, 1)
        assert TimeoutMonitor.is_urgent(job, config, NOW) is True

    def test_keyword_in_notes_is_urgent(self, config, job):
        job.notes = "Customer says ASAP please"
        assert TimeoutMonitor.is_urgent(job, config, NOW) is True

    def test_future_job_without_keyword_is_standard(self, monitor, config, job):
        assert TimeoutMonitor.is_urgent(job, config, NOW) is False
        assert monitor.timeout_minutes(job, config, NOW) == 30

    def test_date_uses_business_timezone(self, config, job):
        # 2026-03-02 03:00 UTC is still March 1 in Los Angeles
        job.date = date(2026, 3, 1)
        late = datetime(2026, 3, 2, 3, 0, tzinfo=timezone.utc)
        assert TimeoutMonitor.is_urgent(job, config, late) is True


# ---------------------------------------------------------------------------
# Pending offers
# ---------------------------------------------------------------------------


class TestPendingOffers:
    async def test_not_yet_timed_out_does_nothing(self, db, monitor, job, workers, adapters):
        await _offer_all(db, job, workers, minutes_ago=20)

        summary = await monitor.run_pass(db, NOW)

        assert summary["reminders_sent"] == 0
        adapters.send_chat.assert_not_awaited()
        assert await _count(db, EventType.URGENT_FOLLOWUP_SENT) == 0

    async def test_urgent_job_times_out_sooner(self, db, monitor, job, workers, adapters):
        job.notes = "rush job"
        await _offer_all(db, job, workers, minutes_ago=20)

        summary = await monitor.run_pass(db, NOW)

        assert summary["reminders_sent"] == 3
        event = (await db.execute(
            select(SystemEvent).where(SystemEvent.event_type == EventType.URGENT_FOLLOWUP_SENT)
        )).scalar_one()
        assert event.data["timeout_minutes"] == 15
        assert event.data["attempt_number"] == 1

    async def test_timeout_sends_reminders_and_one_owner_alert(self, db, monitor, job, workers, adapters):
        await _offer_all(db, job, workers, minutes_ago=35)

        first = await monitor.run_pass(db, NOW)
        second = await monitor.run_pass(db, NOW)

        assert first == {
            "jobs_processed": 1,
            "reminders_sent": 3,
            "owner_alerts": 1,
            "customer_notices": 0,
            "rebroadcasts": 0,
            "errors": 0,
        }
        assert second["owner_alerts"] == 0
        assert await _count(db, EventType.URGENT_FOLLOWUP_SENT) == 2
        assert await _count(db, EventType.OWNER_ALERT, AlertReason.TIMEOUT) == 1
        assert len(_owner_texts(adapters)) == 1

    async def test_reminder_ceiling_then_single_owner_alert(self, db, monitor, config, job, workers, adapters):
        await _offer_all(db, job, workers, minutes_ago=35)

        for _ in range(config.max_followup_attempts + 3):
            await monitor.run_pass(db, NOW)

        assert await _count(db, EventType.URGENT_FOLLOWUP_SENT) == config.max_followup_attempts
        assert await _count(db, EventType.OWNER_ALERT, AlertReason.MAX_FOLLOWUPS_EXHAUSTED) == 1
        assert adapters.send_chat.await_count == 3 * config.max_followup_attempts

        [alert] = (await db.execute(
            select(SystemEvent).where(SystemEvent.reason == AlertReason.MAX_FOLLOWUPS_EXHAUSTED)
        )).scalars().all()
        assert sorted(alert.data["pending_workers"]) == ["Ana", "Ben", "Cam"]

    async def test_failed_reminder_round_still_counts(self, db, monitor, job, workers, adapters):
        adapters.send_chat.return_value = DeliveryResult.failed("bot blocked")
        await _offer_all(db, job, workers, minutes_ago=35)

        summary = await monitor.run_pass(db, NOW)

        assert summary["reminders_sent"] == 0
        event = (await db.execute(
            select(SystemEvent).where(SystemEvent.event_type == EventType.URGENT_FOLLOWUP_SENT)
        )).scalar_one()
        assert event.status == "failure"

    async def test_failed_owner_alert_is_retried(self, db, monitor, job, workers, adapters):
        adapters.send_text.return_value = DeliveryResult.failed("twilio down")
        await _offer_all(db, job, workers, minutes_ago=35)

        await monitor.run_pass(db, NOW)
        assert await _count(db, EventType.OWNER_ALERT) == 0

        adapters.send_text.return_value = DeliveryResult.ok("SM_2")
        summary = await monitor.run_pass(db, NOW)

        assert summary["owner_alerts"] == 1
        assert await _count(db, EventType.OWNER_ALERT, AlertReason.TIMEOUT) == 1

    async def test_customer_delay_notice_once(self, db, monitor, job, workers, customer, adapters):
        await _offer_all(db, job, workers, minutes_ago=65)

        first = await monitor.run_pass(db, NOW)
        second = await monitor.run_pass(db, NOW)

        assert first["customer_notices"] == 1
        assert second["customer_notices"] == 0
        customer_texts = [c for c in adapters.send_text.call_args_list if c[0][0] == customer.phone]
        assert len(customer_texts) == 1
        assert "Tue, Mar 10" in customer_texts[0][0][1]
        messages = (await db.execute(select(OutboundMessage))).scalars().all()
        assert [m.source for m in messages] == ["delay_notice"]

    async def test_accepted_job_declines_leftover_pending(self, db, monitor, job, workers, adapters):
        requests = await _offer_all(db, job, workers, minutes_ago=40)
        requests[0].status = "accepted"
        await db.flush()

        summary = await monitor.run_pass(db, NOW)

        assert summary["reminders_sent"] == 0
        adapters.send_chat.assert_not_awaited()
        statuses = (await db.execute(
            select(AssignmentRequest.status).where(AssignmentRequest.job_id == job.id)
        )).scalars().all()
        assert sorted(statuses) == ["accepted", "declined", "declined"]

    async def test_tenant_override_changes_ceiling(self, db, monitor, tenant, job, workers):
        tenant.workflow_config = {"max_followup_attempts": 2}
        await _offer_all(db, job, workers, minutes_ago=35)

        for _ in range(4):
            await monitor.run_pass(db, NOW)

        assert await _count(db, EventType.URGENT_FOLLOWUP_SENT) == 2
        assert await _count(db, EventType.OWNER_ALERT, AlertReason.MAX_FOLLOWUPS_EXHAUSTED) == 1

    async def test_missing_owner_phone_raises_operator_alert(self, db, adapters, tenant, job, workers):
        tenant.owner_phone = None
        monitor = TimeoutMonitor(OrchestrationConfig(owner_phone=""), adapters)
        await _offer_all(db, job, workers, minutes_ago=35)

        with patch("fieldops.workers.timeout_monitor.send_alert", new_callable=AsyncMock) as mock_alert:
            summary = await monitor.run_pass(db, NOW)

        assert summary["owner_alerts"] == 0
        assert mock_alert.await_args[0][0] == AlertType.OWNER_PHONE_MISSING
        assert await _count(db, EventType.OWNER_ALERT) == 0


# ---------------------------------------------------------------------------
# One job's failure does not hold up the rest
# ---------------------------------------------------------------------------


class TestJobIsolation:
    async def test_unknown_tenant_timezone_falls_back_to_default(self, db, monitor, tenant, job, workers):
        tenant.timezone = "Mars/Olympus"
        await _offer_all(db, job, workers, minutes_ago=45)

        summary = await monitor.run_pass(db, NOW)

        assert summary["errors"] == 0
        assert summary["reminders_sent"] == 3
        assert await _count(db, EventType.OWNER_ALERT, AlertReason.TIMEOUT) == 1

    async def test_failing_job_is_rolled_back_and_others_escalate(
        self, db, monitor, tenant, job, workers, customer, adapters,
    ):
        quiet_job = Job(
            id=uuid.uuid4(),
            tenant_id=tenant.id,
            date=date(2026, 3, 12),
            scheduled_at="13:00",
            service_type="Move-out Clean",
            address="40 Oak Ave",
            status="scheduled",
        )
        db.add(quiet_job)
        await db.flush()
        # Oldest first: the broken job is reached before the healthy one
        await create_request(db, job, workers[0], NOW - timedelta(minutes=65))
        await create_request(db, quiet_job, workers[1], NOW - timedelta(minutes=35))

        async def send_text(phone, message, from_phone=None):
            if phone == customer.phone:
                raise RuntimeError("carrier rejected")
            return DeliveryResult.ok("SM_ok")

        adapters.send_text.side_effect = send_text

        summary = await monitor.run_pass(db, NOW)

        assert summary["errors"] == 1
        assert summary["jobs_processed"] == 2
        reminder_jobs = (await db.execute(
            select(SystemEvent.job_id).where(SystemEvent.event_type == EventType.URGENT_FOLLOWUP_SENT)
        )).scalars().all()
        assert reminder_jobs == [quiet_job.id]
        owner_alert_jobs = (await db.execute(
            select(SystemEvent.job_id).where(SystemEvent.event_type == EventType.OWNER_ALERT)
        )).scalars().all()
        assert owner_alert_jobs == [quiet_job.id]

    async def test_failing_job_is_retried_next_pass(self, db, monitor, job, workers, customer, adapters):
        await _offer_all(db, job, workers, minutes_ago=65)
        adapters.send_text.side_effect = [
            DeliveryResult.ok("SM_owner"),
            RuntimeError("carrier rejected"),
        ]

        first = await monitor.run_pass(db, NOW)
        adapters.send_text.side_effect = None
        adapters.send_text.return_value = DeliveryResult.ok("SM_ok")
        second = await monitor.run_pass(db, NOW)

        assert first["errors"] == 1
        assert second["errors"] == 0
        assert second["customer_notices"] == 1
        assert await _count(db, EventType.CUSTOMER_DELAY_NOTICE) == 1


# ---------------------------------------------------------------------------
# Cancellation re-broadcast
# ---------------------------------------------------------------------------


class TestCancellation:
    async def _cancelled_job(self, db, job, workers, minutes_ago):
        request = await create_request(db, job, workers[0], NOW - timedelta(hours=2))
        await accept_assignment(db, request.id, NOW - timedelta(hours=2))
        await cancel_accepted_assignment(db, request.id, NOW - timedelta(minutes=minutes_ago))
        await db.flush()

    async def test_too_early_does_nothing(self, db, monitor, job, workers, adapters):
        await self._cancelled_job(db, job, workers, minutes_ago=10)

        summary = await monitor.run_pass(db, NOW)

        assert summary["rebroadcasts"] == 0
        adapters.send_chat.assert_not_awaited()

    async def test_rebroadcast_after_interval_excludes_canceller(self, db, monitor, job, workers, adapters):
        await self._cancelled_job(db, job, workers, minutes_ago=25)

        first = await monitor.run_pass(db, NOW)
        second = await monitor.run_pass(db, NOW)

        assert first["rebroadcasts"] == 1
        assert second["rebroadcasts"] == 0
        chat_ids = [c[0][0] for c in adapters.send_chat.call_args_list]
        assert sorted(chat_ids) == ["1002", "1003"]
        assert await _count(db, EventType.CLEANER_BROADCAST, AlertReason.CANCELLED) == 1
        assert await _count(db, EventType.OWNER_ALERT) == 0

    async def test_owner_alert_after_twice_the_interval(self, db, monitor, job, workers, adapters):
        await self._cancelled_job(db, job, workers, minutes_ago=45)

        summary = await monitor.run_pass(db, NOW)
        again = await monitor.run_pass(db, NOW + timedelta(minutes=5))

        assert summary["rebroadcasts"] == 1
        assert summary["owner_alerts"] == 1
        assert again["owner_alerts"] == 0
        [owner_text] = _owner_texts(adapters)
        assert "Previous cleaner: Ana" in owner_text[0][1]
        assert await _count(db, EventType.OWNER_ALERT, AlertReason.CANCELLED) == 1

    async def test_reaccepted_job_stops_escalation(self, db, monitor, job, workers, adapters):
        await self._cancelled_job(db, job, workers, minutes_ago=45)
        other = await create_request(db, job, workers[1], NOW - timedelta(minutes=30))
        await accept_assignment(db, other.id, NOW - timedelta(minutes=29))

        summary = await monitor.run_pass(db, NOW)

        assert summary["rebroadcasts"] == 0
        assert summary["owner_alerts"] == 0

    async def test_new_cancellation_rearms_dedup(self, db, monitor, job, workers, adapters):
        await self._cancelled_job(db, job, workers, minutes_ago=100)
        await monitor.run_pass(db, NOW - timedelta(minutes=50))
        assert await _count(db, EventType.CLEANER_BROADCAST, AlertReason.CANCELLED) == 1

        # A second worker accepts and then drops the job as well
        second = await create_request(db, job, workers[1], NOW - timedelta(minutes=40))
        await db.execute(
            AssignmentRequest.__table__.update()
            .where(AssignmentRequest.job_id == job.id)
            .values(status="declined")
        )
        second_id = second.id
        await db.execute(
            AssignmentRequest.__table__.update()
            .where(AssignmentRequest.id == second_id)
            .values(status="accepted")
        )
        await cancel_accepted_assignment(db, second_id, NOW - timedelta(minutes=25))

        summary = await monitor.run_pass(db, NOW)

        assert summary["rebroadcasts"] == 1
        assert await _count(db, EventType.CLEANER_BROADCAST, AlertReason.CANCELLED) == 2


# ---------------------------------------------------------------------------
# check_timeouts_once
# ---------------------------------------------------------------------------


class _FakeCtx:
    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        return self.session

    async def __aexit__(self, *args):
        pass


def _summary(**overrides):
    summary = {
        "jobs_processed": 1, "reminders_sent": 2, "owner_alerts": 0,
        "customer_notices": 0, "rebroadcasts": 0, "errors": 0,
    }
    summary.update(overrides)
    return summary


class TestCheckTimeoutsOnce:
    async def test_runs_pass_and_commits(self):
        mock_db = AsyncMock()
        monitor = MagicMock()
        monitor.run_pass = AsyncMock(return_value=_summary())

        with patch("fieldops.workers.timeout_monitor.async_session_factory", return_value=_FakeCtx(mock_db)), \
             patch("fieldops.workers.timeout_monitor.send_alert", new_callable=AsyncMock) as mock_alert:
            result = await check_timeouts_once(monitor, NOW)

        assert result == _summary()
        monitor.run_pass.assert_awaited_once_with(mock_db, NOW)
        mock_db.commit.assert_awaited_once()
        mock_alert.assert_not_awaited()

    async def test_job_errors_raise_operator_alert(self):
        mock_db = AsyncMock()
        monitor = MagicMock()
        monitor.run_pass = AsyncMock(return_value=_summary(errors=2))

        with patch("fieldops.workers.timeout_monitor.async_session_factory", return_value=_FakeCtx(mock_db)), \
             patch("fieldops.workers.timeout_monitor.send_alert", new_callable=AsyncMock) as mock_alert:
            await check_timeouts_once(monitor, NOW)

        mock_db.commit.assert_awaited_once()
        alert_type, message = mock_alert.await_args[0][:2]
        assert alert_type == AlertType.MONITOR_PASS_FAILED
        assert "2 jobs" in message
