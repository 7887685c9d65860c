"""
Phone number helpers - E.164 normalization via the phonenumbers library,
plus masking for log lines.
"""
import logging
from typing import Optional

import phonenumbers

logger = logging.getLogger(__name__)


def normalize_phone_e164(phone: Optional[str], default_region: str = "US") -> Optional[str]:
    """
    Normalize a phone number to E.164 format.

    (555) 123-4567 -> +15551234567, 1-555-123-4567 -> +15551234567.
    Returns None if the number cannot be parsed or is not a possible number.
    """
    if not phone or not phone.strip():
        return None
    try:
        parsed = phonenumbers.parse(phone.strip(), default_region)
    except phonenumbers.NumberParseException:
        logger.debug("Unparseable phone number: %s", mask_phone(phone))
        return None
    if not phonenumbers.is_possible_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def mask_phone(phone: Optional[str]) -> str:
    """Mask phone number for logging - show first 6 characters only."""
    if not phone:
        return ""
    if len(phone) > 6:
        return phone[:6] + "***"
    return phone
