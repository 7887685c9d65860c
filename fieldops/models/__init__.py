"""
Database models - import all models here so Alembic can discover them.
"""
from fieldops.models.tenant import Tenant
from fieldops.models.customer import Customer
from fieldops.models.job import Job
from fieldops.models.lead import Lead
from fieldops.models.crew_worker import CrewWorker
from fieldops.models.assignment_request import AssignmentRequest
from fieldops.models.scheduled_task import ScheduledTask
from fieldops.models.system_event import SystemEvent
from fieldops.models.outbound_message import OutboundMessage

__all__ = [
    "Tenant",
    "Customer",
    "Job",
    "Lead",
    "CrewWorker",
    "AssignmentRequest",
    "ScheduledTask",
    "SystemEvent",
    "OutboundMessage",
]
