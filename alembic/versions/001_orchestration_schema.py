"""Initial schema - tenants, leads, jobs, crew assignment, scheduled tasks, event log.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tenants
    op.create_table(
        "tenants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("business_name", sa.String(255), nullable=False),
        sa.Column("business_name_short", sa.String(100)),
        sa.Column("owner_name", sa.String(100)),
        sa.Column("owner_phone", sa.String(20)),
        sa.Column("sms_from_phone", sa.String(20)),
        sa.Column("timezone", sa.String(50), default="America/Los_Angeles"),
        sa.Column("workflow_config", postgresql.JSONB, default={}),
        sa.Column("active", sa.Boolean, default=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Customers
    op.create_table(
        "customers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("first_name", sa.String(100)),
        sa.Column("last_name", sa.String(100)),
        sa.Column("phone", sa.String(20)),
        sa.Column("email", sa.String(255)),
        sa.Column("address", sa.Text),
        sa.Column("stripe_customer_id", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_customers_tenant_phone", "customers", ["tenant_id", "phone"])

    # Jobs
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id")),
        sa.Column("date", sa.Date),
        sa.Column("scheduled_at", sa.String(5)),
        sa.Column("duration_hours", sa.Float),
        sa.Column("service_type", sa.String(100)),
        sa.Column("address", sa.Text),
        sa.Column("notes", sa.Text),
        sa.Column("phone", sa.String(20)),
        sa.Column("price_cents", sa.Integer),
        sa.Column("crew", postgresql.JSONB, default=[]),
        sa.Column("status", sa.String(20), nullable=False, server_default="scheduled"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_jobs_tenant_date", "jobs", ["tenant_id", "date"])

    # Leads
    op.create_table(
        "leads",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id")),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("jobs.id")),
        sa.Column("first_name", sa.String(100)),
        sa.Column("last_name", sa.String(100)),
        sa.Column("phone", sa.String(20), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("source", sa.String(50)),
        sa.Column("status", sa.String(30), nullable=False, server_default="new"),
        sa.Column("followup_stage", sa.Integer, server_default="0"),
        sa.Column("followup_started_at", sa.DateTime(timezone=True)),
        sa.Column("last_contact_at", sa.DateTime(timezone=True)),
        sa.Column("sms_attempt_count", sa.Integer, server_default="0"),
        sa.Column("call_attempt_count", sa.Integer, server_default="0"),
        sa.Column("payment_link_url", sa.Text),
        sa.Column("extra_data", postgresql.JSONB, default={}),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_leads_tenant_status", "leads", ["tenant_id", "status"])
    op.create_index("ix_leads_phone", "leads", ["phone"])

    # Crew workers
    op.create_table(
        "crew_workers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("phone", sa.String(20)),
        sa.Column("telegram_id", sa.String(50)),
        sa.Column("active", sa.Boolean, default=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_crew_workers_tenant_active", "crew_workers", ["tenant_id", "active"])

    # Assignment requests - at most one accepted per job
    op.create_table(
        "assignment_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("jobs.id"), nullable=False),
        sa.Column("worker_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("crew_workers.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("responded_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_assignment_requests_status_created", "assignment_requests", ["status", "created_at"])
    op.create_index("ix_assignment_requests_job", "assignment_requests", ["job_id"])
    op.create_index(
        "uq_assignment_requests_one_accepted",
        "assignment_requests",
        ["job_id"],
        unique=True,
        postgresql_where=sa.text("status = 'accepted'"),
    )

    # Scheduled tasks
    op.create_table(
        "scheduled_tasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id")),
        sa.Column("task_type", sa.String(50), nullable=False),
        sa.Column("key", sa.String(200), nullable=False, unique=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", postgresql.JSONB, default={}),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, server_default="0"),
        sa.Column("max_attempts", sa.Integer, server_default="3"),
        sa.Column("claim_token", sa.String(64)),
        sa.Column("claimed_at", sa.DateTime(timezone=True)),
        sa.Column("executed_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_scheduled_tasks_due", "scheduled_tasks", ["task_type", "status", "scheduled_for"])
    op.create_index("ix_scheduled_tasks_claim_token", "scheduled_tasks", ["claim_token"])

    # System events (escalation + audit log)
    op.create_table(
        "system_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True)),
        sa.Column("source", sa.String(30), nullable=False),
        sa.Column("event_type", sa.String(60), nullable=False),
        sa.Column("status", sa.String(20), server_default="success"),
        sa.Column("reason", sa.String(60)),
        sa.Column("message", sa.Text),
        sa.Column("job_id", postgresql.UUID(as_uuid=True)),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True)),
        sa.Column("worker_id", postgresql.UUID(as_uuid=True)),
        sa.Column("phone", sa.String(20)),
        sa.Column("data", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_system_events_job_type_reason", "system_events", ["job_id", "event_type", "reason"])
    op.create_index("ix_system_events_type_created", "system_events", ["event_type", "created_at"])
    op.create_index("ix_system_events_lead_id", "system_events", ["lead_id"])

    # Outbound messages
    op.create_table(
        "outbound_messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True)),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True)),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True)),
        sa.Column("phone", sa.String(20), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("source", sa.String(30), nullable=False),
        sa.Column("provider_id", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_outbound_messages_lead_id", "outbound_messages", ["lead_id"])
    op.create_index("ix_outbound_messages_phone", "outbound_messages", ["phone"])


def downgrade() -> None:
    op.drop_table("outbound_messages")
    op.drop_table("system_events")
    op.drop_table("scheduled_tasks")
    op.drop_table("assignment_requests")
    op.drop_table("crew_workers")
    op.drop_table("leads")
    op.drop_table("jobs")
    op.drop_table("customers")
    op.drop_table("tenants")
