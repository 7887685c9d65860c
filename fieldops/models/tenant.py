"""
Tenant model - one field-service business using the platform.
workflow_config holds per-tenant overrides of the orchestration defaults.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, DateTime
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from fieldops.database import Base


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    business_name_short: Mapped[Optional[str]] = mapped_column(String(100))
    owner_name: Mapped[Optional[str]] = mapped_column(String(100))
    owner_phone: Mapped[Optional[str]] = mapped_column(String(20))
    sms_from_phone: Mapped[Optional[str]] = mapped_column(String(20))
    timezone: Mapped[str] = mapped_column(String(50), default="America/Los_Angeles")

    # Overrides: followup_stage_delays_minutes, urgent_timeout_minutes, owner_alert_minutes, ...
    workflow_config: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)

    active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def short_name(self) -> str:
        return self.business_name_short or self.business_name

    def __repr__(self) -> str:
        return f"<Tenant {self.slug}>"
