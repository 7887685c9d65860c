"""
Crew chat delivery via the Telegram Bot API.
"""
import logging

import httpx

from fieldops.schemas.delivery import DeliveryResult

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_TIMEOUT_SECONDS = 10


async def send_chat_message(chat_id: str, text: str) -> DeliveryResult:
    """Send a plain-text message to a worker's Telegram chat."""
    from fieldops.config import get_settings
    token = get_settings().telegram_bot_token

    if not token:
        return DeliveryResult.failed("telegram not configured")
    if not chat_id:
        return DeliveryResult.failed("worker has no chat id")

    try:
        async with httpx.AsyncClient(timeout=TELEGRAM_TIMEOUT_SECONDS) as client:
            response = await client.post(
                f"{TELEGRAM_API_BASE}/bot{token}/sendMessage",
                json={"chat_id": chat_id, "text": text},
            )
            data = response.json()
    except Exception as e:
        logger.error("Telegram send failed chat=%s: %s", chat_id, str(e))
        return DeliveryResult.failed(str(e))

    if not data.get("ok"):
        error = data.get("description") or f"HTTP {response.status_code}"
        logger.warning("Telegram rejected message chat=%s: %s", chat_id, error)
        return DeliveryResult.failed(error)

    message_id = (data.get("result") or {}).get("message_id")
    return DeliveryResult.ok(provider_id=str(message_id) if message_id is not None else None)
