"""
System event model - append-only audit and escalation log.
The monitor's dedup guards are lookups on (job_id, event_type, reason).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from fieldops.database import Base


class SystemEvent(Base):
    __tablename__ = "system_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    source: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # scheduler, monitor, assignments, api
    event_type: Mapped[str] = mapped_column(
        String(60), nullable=False
    )  # LEAD_FOLLOWUP_STAGE_3, URGENT_FOLLOWUP_SENT, OWNER_ALERT, CLEANER_CANCELLED, ...
    status: Mapped[str] = mapped_column(
        String(20), default="success"
    )  # success, failure, skipped
    reason: Mapped[Optional[str]] = mapped_column(String(60))
    message: Mapped[Optional[str]] = mapped_column(Text)

    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    lead_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    worker_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    phone: Mapped[Optional[str]] = mapped_column(String(20))

    data: Mapped[Optional[dict]] = mapped_column(JSONB)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_system_events_job_type_reason", "job_id", "event_type", "reason"),
        Index("ix_system_events_type_created", "event_type", "created_at"),
        Index("ix_system_events_lead_id", "lead_id"),
    )

    def __repr__(self) -> str:
        return f"<SystemEvent {self.event_type} reason={self.reason} status={self.status}>"
