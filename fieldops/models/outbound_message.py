"""
OutboundMessage model - texts sent to leads and customers, kept for audit.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from fieldops.database import Base


class OutboundMessage(Base):
    __tablename__ = "outbound_messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    lead_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # lead_followup, payment_link, delay_notice, reminder
    provider_id: Mapped[Optional[str]] = mapped_column(String(100))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_outbound_messages_lead_id", "lead_id"),
        Index("ix_outbound_messages_phone", "phone"),
    )

    def __repr__(self) -> str:
        return f"<OutboundMessage {self.source} to={self.phone[:6]}***>"
