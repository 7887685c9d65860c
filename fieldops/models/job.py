"""
Job model - a scheduled unit of field work (a cleaning, a repair visit).
date is the local calendar day; scheduled_at is the local start time as HH:MM.
"""
import uuid
from datetime import date as date_type, datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Float, Text, Date, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from fieldops.database import Base


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False
    )
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id")
    )

    date: Mapped[Optional[date_type]] = mapped_column(Date)
    scheduled_at: Mapped[Optional[str]] = mapped_column(String(5))
    duration_hours: Mapped[Optional[float]] = mapped_column(Float)
    service_type: Mapped[Optional[str]] = mapped_column(String(100))
    address: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    phone: Mapped[Optional[str]] = mapped_column(String(20))
    price_cents: Mapped[Optional[int]] = mapped_column(Integer)

    # Worker names currently on the job, used by the cascade calculator
    crew: Mapped[Optional[list]] = mapped_column(JSONB, default=list)

    status: Mapped[str] = mapped_column(
        String(20), default="scheduled", nullable=False
    )  # scheduled, completed, cancelled

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_jobs_tenant_date", "tenant_id", "date"),
    )

    def __repr__(self) -> str:
        return f"<Job {str(self.id)[:8]} {self.date} {self.scheduled_at} ({self.status})>"
