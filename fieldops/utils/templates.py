"""
Message templates for lead follow-up, payments, reminders and escalations.
Templates use {variable} substitution; missing variables are left as-is.
"""
import logging

logger = logging.getLogger(__name__)

LEAD_FOLLOWUP_TEMPLATES = {
    "initial": (
        "Hi {first_name}! Thanks for reaching out to {business_name}. "
        "We'd love to help with your cleaning needs. When works best for a quick call?"
    ),
    "second": (
        "Hey {first_name}, just checking in! Still interested in getting a cleaning quote? "
        "Reply YES and we'll get you scheduled right away."
    ),
}

PAYMENT_TEMPLATES = {
    "payment_link": "Hi {first_name}, your invoice of ${amount} is ready. Pay securely here: {link}",
}

REMINDER_TEMPLATES = {
    "day_before": (
        "Hi {first_name}, a reminder from {business_name}: your {service_type} is tomorrow "
        "({date}) at {time}. Reply if anything has changed!"
    ),
}

CUSTOMER_TEMPLATES = {
    "delay_notice": "We're still confirming your cleaner for {date}. We'll update you shortly!",
}

CREW_TEMPLATES = {
    "job_offer": (
        "New job available: {service_type} on {date} at {time}.\n"
        "Address: {address}\n"
        "Reply ACCEPT or DECLINE."
    ),
    "urgent_followup": (
        "URGENT: {service_type} on {date} at {time} still needs someone.\n"
        "Address: {address}\n"
        "Reply ACCEPT if you can take it."
    ),
}


def render_template(template_key: str, category: str = "lead_followup", **kwargs) -> str:
    """Render a message template with variable substitution."""
    templates = {
        "lead_followup": LEAD_FOLLOWUP_TEMPLATES,
        "payment": PAYMENT_TEMPLATES,
        "reminder": REMINDER_TEMPLATES,
        "customer": CUSTOMER_TEMPLATES,
        "crew": CREW_TEMPLATES,
    }

    text = templates.get(category, {}).get(template_key)
    if text is None:
        raise KeyError(f"Unknown template {category}/{template_key}")

    try:
        return text.format_map(SafeDict(kwargs))
    except (ValueError, IndexError) as e:
        logger.debug("Template rendering failed for %s/%s: %s", category, template_key, str(e))
        return text


class SafeDict(dict):
    """Dict that returns '{key}' for missing keys instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"
