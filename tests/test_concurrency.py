"""
Concurrent claimers and concurrent accepts against one file-backed SQLite
database, each caller in its own session.
"""
import asyncio
import pytest
import uuid
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fieldops.database import Base, use_sqlite_transactions
from fieldops.models.assignment_request import AssignmentRequest
from fieldops.models.crew_worker import CrewWorker
from fieldops.models.job import Job
from fieldops.models.system_event import SystemEvent
from fieldops.models.tenant import Tenant
from fieldops.services.assignments import accept_assignment, create_request
from fieldops.services.event_log import EventType
from fieldops.services.scheduler import TaskType, claim_due_tasks, schedule_task

NOW = datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc)


@pytest.fixture
async def sessions(tmp_path):
    """Session factory over a SQLite file shared by several connections."""
    engine = use_sqlite_transactions(
        create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fieldops.db'}")
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def offered_job(sessions):
    """A job with a pending request for each of three workers. Returns (job_id, request_ids)."""
    async with sessions() as db:
        tenant = Tenant(
            id=uuid.uuid4(),
            slug="sparkle",
            business_name="Sparkle Cleaning Co",
            owner_phone="+15125550100",
            timezone="America/Los_Angeles",
            workflow_config={},
        )
        job = Job(
            id=uuid.uuid4(),
            tenant_id=tenant.id,
            date=date(2026, 3, 10),
            scheduled_at="10:00",
            duration_hours=3.0,
            service_type="Deep Clean",
            crew=[],
            status="scheduled",
        )
        workers = [
            CrewWorker(id=uuid.uuid4(), tenant_id=tenant.id, name=name, telegram_id=chat, active=True)
            for name, chat in (("Ana", "1001"), ("Ben", "1002"), ("Cam", "1003"))
        ]
        db.add_all([tenant, job, *workers])
        await db.flush()
        requests = [await create_request(db, job, w, NOW - timedelta(minutes=5)) for w in workers]
        await db.commit()
        return job.id, [r.id for r in requests]


# ---------------------------------------------------------------------------
# claim_due_tasks - each task goes to exactly one claimer
# ---------------------------------------------------------------------------


class TestConcurrentClaims:
    async def test_every_task_claimed_exactly_once(self, sessions):
        async with sessions() as db:
            for i in range(20):
                await schedule_task(
                    db, task_type=TaskType.LEAD_FOLLOWUP, key=f"task-{i}",
                    scheduled_for=NOW - timedelta(minutes=1), now=NOW,
                )
            await db.commit()

        async def claim():
            async with sessions() as db:
                return [t.key for t in await claim_due_tasks(db, NOW, batch_size=8)]

        batches = await asyncio.gather(*(claim() for _ in range(5)))

        keys = [key for batch in batches for key in batch]
        assert len(keys) == 20
        assert len(set(keys)) == 20

    async def test_claim_tokens_do_not_overlap(self, sessions):
        async with sessions() as db:
            for i in range(6):
                await schedule_task(
                    db, task_type=TaskType.LEAD_FOLLOWUP, key=f"task-{i}",
                    scheduled_for=NOW - timedelta(minutes=1), now=NOW,
                )
            await db.commit()

        async def claim():
            async with sessions() as db:
                return {t.claim_token for t in await claim_due_tasks(db, NOW, batch_size=6)}

        token_sets = [tokens for tokens in await asyncio.gather(*(claim() for _ in range(3))) if tokens]

        # One winner takes the whole batch under one token
        assert len(token_sets) == 1
        assert len(token_sets[0]) == 1


# ---------------------------------------------------------------------------
# accept_assignment - first accept wins
# ---------------------------------------------------------------------------


class TestConcurrentAccepts:
    async def test_exactly_one_worker_wins(self, sessions, offered_job):
        job_id, request_ids = offered_job

        async def accept(request_id):
            async with sessions() as db:
                return await accept_assignment(db, request_id, NOW)

        results = await asyncio.gather(*(accept(rid) for rid in request_ids))

        assert sum(1 for r in results if r["accepted"]) == 1
        async with sessions() as db:
            statuses = (await db.execute(
                select(AssignmentRequest.status).where(AssignmentRequest.job_id == job_id)
            )).scalars().all()
            accepted_events = (await db.execute(
                select(SystemEvent).where(SystemEvent.event_type == EventType.CLEANER_ACCEPTED)
            )).scalars().all()
        assert sorted(statuses) == ["accepted", "declined", "declined"]
        assert len(accepted_events) == 1

    async def test_unique_index_rejects_second_accepted_row(self, sessions, offered_job):
        _, request_ids = offered_job

        async with sessions() as db:
            first = await db.get(AssignmentRequest, request_ids[0])
            second = await db.get(AssignmentRequest, request_ids[1])
            first.status = "accepted"
            await db.flush()

            second.status = "accepted"
            with pytest.raises(IntegrityError):
                await db.flush()
            await db.rollback()
