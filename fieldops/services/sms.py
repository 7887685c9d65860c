"""
Text delivery via Twilio.
The Twilio SDK is synchronous, so every call runs in the default thread pool.
Provider failures come back as DeliveryResult(success=False); nothing raises.
"""
import asyncio
import logging
from typing import Optional

from fieldops.schemas.delivery import DeliveryResult
from fieldops.utils.phone import mask_phone, normalize_phone_e164

logger = logging.getLogger(__name__)

TWILIO_CLIENT_TIMEOUT = 10


def _get_twilio_client():
    """Get a Twilio REST client with configured timeout."""
    from twilio.rest import Client as TwilioClient
    from twilio.http.http_client import TwilioHttpClient
    from fieldops.config import get_settings
    settings = get_settings()
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise ValueError("Twilio credentials not configured")
    http_client = TwilioHttpClient(timeout=TWILIO_CLIENT_TIMEOUT)
    return TwilioClient(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        http_client=http_client,
    )


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous function in the thread pool to avoid blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


async def send_text(
    to: str,
    body: str,
    from_phone: Optional[str] = None,
) -> DeliveryResult:
    """
    Send one text message.

    from_phone is the tenant's sending number; when absent the platform
    messaging service (or default number) is used.
    """
    from fieldops.config import get_settings
    settings = get_settings()

    normalized = normalize_phone_e164(to)
    if not normalized:
        logger.warning("SMS skipped, invalid number: %s", mask_phone(to))
        return DeliveryResult.failed("invalid phone number")

    params = {"to": normalized, "body": body}
    if from_phone:
        params["from_"] = from_phone
    elif settings.twilio_messaging_service_sid:
        params["messaging_service_sid"] = settings.twilio_messaging_service_sid
    elif settings.twilio_from_phone:
        params["from_"] = settings.twilio_from_phone
    else:
        logger.error("SMS not sent to %s: no sending number configured", mask_phone(normalized))
        return DeliveryResult.failed("no sending number configured")

    try:
        client = _get_twilio_client()
        message = await _run_sync(client.messages.create, **params)
    except Exception as e:
        logger.error("SMS send failed to %s: %s", mask_phone(normalized), str(e))
        return DeliveryResult.failed(str(e))

    logger.info("SMS sent to %s sid=%s", mask_phone(normalized), message.sid)
    return DeliveryResult.ok(provider_id=message.sid)
