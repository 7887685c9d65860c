"""
Notification service - owner alerts and the message bodies the monitor sends
to owners, customers and crew.
"""
import logging
from typing import Optional

from fieldops.utils.phone import mask_phone
from fieldops.utils.templates import render_template
from fieldops.utils.timeutils import format_job_date

logger = logging.getLogger(__name__)


async def alert_owner(
    adapters,
    owner_phone: Optional[str],
    message: str,
    from_phone: Optional[str] = None,
) -> bool:
    """
    Text the business owner. Returns True when the text went out.
    A missing owner phone is logged and treated as not sent.
    """
    if not owner_phone:
        logger.warning("Owner alert not sent: no owner phone configured")
        return False

    result = await adapters.send_text(owner_phone, message, from_phone)
    if not result.success:
        logger.error("Failed to send owner alert to %s: %s", mask_phone(owner_phone), result.error)
        return False
    logger.info("Owner alert sent to %s", mask_phone(owner_phone))
    return True


def _customer_name(customer) -> str:
    return customer.full_name if customer else "Unknown"


def build_max_attempts_alert(job, customer, max_attempts: int, contacted: list[str]) -> str:
    """Owner text once urgent reminders hit the ceiling with nobody accepting."""
    return " ".join([
        f"UNCLAIMED JOB: After {max_attempts} follow-up attempts, no employee has responded.",
        f"Customer: {_customer_name(customer)} | {job.phone or 'no phone'}",
        f"Service: {job.service_type or 'Cleaning'} | {format_job_date(job.date)} at {job.scheduled_at or 'TBD'}",
        f"Address: {job.address or 'not available'}",
        f"Contacted: {', '.join(contacted) if contacted else 'none'}",
        "This job still needs to be assigned manually.",
    ])


def build_timeout_alert(job, owner_alert_minutes: int, urgent: bool, pending: list[str]) -> str:
    """Owner text when nobody has answered within the owner-alert window."""
    tag = "URGENT" if urgent else "ALERT"
    pending_list = ", ".join(pending) if pending else "no names recorded"
    return (
        f"{tag}: No cleaner response within {owner_alert_minutes} minutes for "
        f"{format_job_date(job.date)} at {job.scheduled_at or 'TBD'}. "
        f"Pending: {pending_list}. Manual follow-up needed."
    )


def build_cancel_alert(job, customer, cancelled_worker_name: Optional[str], minutes: int) -> str:
    """Owner text when a cancelled job is still unclaimed after the re-broadcast."""
    notes = " ".join((job.notes or "").split())[:140] or "None"
    customer_phone = (customer.phone if customer else None) or job.phone or "Unknown"
    customer_email = (customer.email if customer else None) or "Unknown"
    address = job.address or (customer.address if customer else None) or "Address not available"
    return " ".join([
        f"URGENT: No cleaner confirmed after 2 attempts ({minutes} min) for job {job.id}.",
        f"Customer: {_customer_name(customer)} | {customer_phone} | {customer_email}",
        f"Service: {job.service_type or 'Cleaning'} | {format_job_date(job.date)} at {job.scheduled_at or 'TBD'}",
        f"Address: {address}",
        f"Notes: {notes}",
        f"Previous cleaner: {cancelled_worker_name or 'Unknown'}",
    ])


def build_customer_delay_notice(job) -> str:
    return render_template("delay_notice", "customer", date=format_job_date(job.date))


def build_job_offer(job, urgent: bool = False) -> str:
    """Crew chat message offering (or re-offering) a job."""
    return render_template(
        "urgent_followup" if urgent else "job_offer",
        "crew",
        service_type=job.service_type or "Cleaning",
        date=format_job_date(job.date),
        time=job.scheduled_at or "TBD",
        address=job.address or "TBD",
    )
