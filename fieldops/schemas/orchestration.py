"""
Orchestration configuration - the explicit tunables handed to the stage
executor, the timeout monitor and the cascade calculator.

Defaults come from Settings; a tenant's workflow_config may override any field.
"""
import logging
from typing import Optional
from pydantic import BaseModel, Field, ValidationError, field_validator

from fieldops.utils.timeutils import is_valid_timezone

logger = logging.getLogger(__name__)


class OrchestrationConfig(BaseModel):
    # Lead follow-up
    followup_stage_delays_minutes: list[int] = Field(default_factory=lambda: [10, 5, 5, 10])
    double_call_gap_seconds: int = 30

    # Task store
    task_batch_size: int = 50
    task_max_attempts: int = 3
    task_claim_timeout_seconds: int = 600

    # Assignment escalation
    standard_timeout_minutes: int = 30
    urgent_timeout_minutes: int = 15
    owner_alert_minutes: int = 30
    max_followup_attempts: int = 10
    cancel_reassign_interval_minutes: int = 20
    cancel_reassign_lookback_minutes: int = 180
    urgent_keywords: list[str] = Field(
        default_factory=lambda: ["urgent", "asap", "same day", "sameday", "today", "rush"]
    )

    # Business
    business_timezone: str = "America/Los_Angeles"
    business_close_hour: int = 19
    default_appointment_hours: float = 3.0
    owner_phone: str = ""

    @field_validator("business_timezone")
    @classmethod
    def validate_timezone(cls, v):
        if not is_valid_timezone(v):
            raise ValueError(f"unknown timezone: {v}")
        return v

    @property
    def cancel_reassign_alert_minutes(self) -> int:
        return self.cancel_reassign_interval_minutes * 2

    @property
    def customer_notice_minutes(self) -> int:
        return self.owner_alert_minutes * 2

    @classmethod
    def from_settings(cls, settings=None) -> "OrchestrationConfig":
        """Build the process-wide defaults from environment settings."""
        if settings is None:
            from fieldops.config import get_settings
            settings = get_settings()
        values = {name: getattr(settings, name) for name in cls.model_fields if hasattr(settings, name)}
        return cls(**values)

    def merged(self, overrides: Optional[dict]) -> "OrchestrationConfig":
        """
        Return a copy with tenant overrides applied.
        Unknown keys are ignored; an invalid override set falls back to self.
        """
        if not overrides:
            return self
        known = {k: v for k, v in overrides.items() if k in type(self).model_fields}
        if not known:
            return self
        try:
            return type(self).model_validate({**self.model_dump(), **known})
        except ValidationError as e:
            logger.warning("Ignoring invalid workflow_config overrides: %s", str(e))
            return self

    def for_tenant(self, tenant) -> "OrchestrationConfig":
        """Merge a tenant's workflow_config and owner phone over these defaults."""
        if tenant is None:
            return self
        overrides = dict(tenant.workflow_config or {})
        if tenant.owner_phone and "owner_phone" not in overrides:
            overrides["owner_phone"] = tenant.owner_phone
        if tenant.timezone and "business_timezone" not in overrides:
            if is_valid_timezone(tenant.timezone):
                overrides["business_timezone"] = tenant.timezone
            else:
                logger.warning(
                    "Tenant %s has unknown timezone %r, using %s",
                    tenant.slug, tenant.timezone, self.business_timezone,
                )
        return self.merged(overrides)
