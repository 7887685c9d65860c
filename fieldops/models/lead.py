"""
Lead model - a prospective customer moving through the follow-up sequence.
Resolved states (booked, lost, unqualified) end the sequence. Never deleted.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from fieldops.database import Base

# A lead in any of these states gets no further outreach.
RESOLVED_LEAD_STATUSES = frozenset({"booked", "lost", "unqualified"})


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False
    )
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id")
    )
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("jobs.id")
    )

    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    source: Mapped[Optional[str]] = mapped_column(String(50))

    status: Mapped[str] = mapped_column(
        String(30), default="new", nullable=False
    )  # new, contacted, qualified, booked, lost, unqualified, review_sent

    # Follow-up sequence progress
    followup_stage: Mapped[int] = mapped_column(Integer, default=0)
    followup_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_contact_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sms_attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    call_attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    payment_link_url: Mapped[Optional[str]] = mapped_column(Text)

    extra_data: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_leads_tenant_status", "tenant_id", "status"),
        Index("ix_leads_phone", "phone"),
    )

    @property
    def is_resolved(self) -> bool:
        return self.status in RESOLVED_LEAD_STATUSES

    @property
    def display_name(self) -> str:
        return self.first_name or "there"

    def __repr__(self) -> str:
        return f"<Lead {self.phone[:6]}*** status={self.status} stage={self.followup_stage}>"
