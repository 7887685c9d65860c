"""
ScheduledTask model - durable, keyed, delayed work items.
The unique key makes scheduling idempotent; claim_token marks the runner
that currently owns a claimed row.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from fieldops.database import Base

TERMINAL_TASK_STATUSES = frozenset({"done", "cancelled", "failed"})


class ScheduledTask(Base):
    __tablename__ = "scheduled_tasks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id")
    )

    task_type: Mapped[str] = mapped_column(
        String(50), nullable=False
    )  # lead_followup, lead_followup_call, day_before_reminder
    key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)

    status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False
    )  # pending, claimed, done, cancelled, failed

    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    claim_token: Mapped[Optional[str]] = mapped_column(String(64))
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_scheduled_tasks_due", "task_type", "status", "scheduled_for"),
        Index("ix_scheduled_tasks_claim_token", "claim_token"),
    )

    def __repr__(self) -> str:
        return f"<ScheduledTask {self.key} ({self.status})>"
