"""
Outbound voice calls via the Vapi REST API.
The call itself is run by a Vapi assistant; this module only places it.
"""
import logging
from typing import Optional

import httpx

from fieldops.schemas.delivery import DeliveryResult
from fieldops.utils.phone import mask_phone, normalize_phone_e164

logger = logging.getLogger(__name__)

VAPI_TIMEOUT_SECONDS = 15


async def place_call(
    phone: str,
    callee_name: Optional[str] = None,
    context: Optional[dict] = None,
) -> DeliveryResult:
    """
    Place one outbound call.

    context is passed to the assistant as variable values (business name,
    follow-up stage, lead id) so the script can reference them.
    """
    from fieldops.config import get_settings
    settings = get_settings()

    if not settings.vapi_api_key or not settings.vapi_assistant_id:
        logger.warning("Call to %s skipped: Vapi not configured", mask_phone(phone))
        return DeliveryResult.failed("voice provider not configured")

    normalized = normalize_phone_e164(phone)
    if not normalized:
        return DeliveryResult.failed("invalid phone number")

    payload = {
        "assistantId": settings.vapi_assistant_id,
        "phoneNumberId": settings.vapi_phone_number_id,
        "customer": {"number": normalized, "name": callee_name or ""},
        "assistantOverrides": {
            "variableValues": {k: str(v) for k, v in (context or {}).items()},
        },
    }

    try:
        async with httpx.AsyncClient(timeout=VAPI_TIMEOUT_SECONDS) as client:
            response = await client.post(
                f"{settings.vapi_base_url.rstrip('/')}/call",
                json=payload,
                headers={"Authorization": f"Bearer {settings.vapi_api_key}"},
            )
            response.raise_for_status()
            data = response.json()
    except httpx.HTTPStatusError as e:
        logger.error(
            "Call to %s rejected: HTTP %d %s",
            mask_phone(normalized), e.response.status_code, e.response.text[:200],
        )
        return DeliveryResult.failed(f"HTTP {e.response.status_code}")
    except Exception as e:
        logger.error("Call to %s failed: %s", mask_phone(normalized), str(e))
        return DeliveryResult.failed(str(e))

    call_id = data.get("id")
    logger.info("Call placed to %s call_id=%s", mask_phone(normalized), call_id)
    return DeliveryResult.ok(provider_id=call_id)
