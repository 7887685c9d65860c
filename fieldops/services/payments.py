"""
Payment links via Stripe.
All Stripe calls are synchronous and run via run_in_executor to avoid blocking
the asyncio event loop.
"""
import asyncio
import logging
from typing import Optional

from fieldops.config import get_settings
from fieldops.schemas.delivery import DeliveryResult

logger = logging.getLogger(__name__)


def _get_stripe():
    """Get configured Stripe module with per-request API key. Raises if not configured."""
    import stripe
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise ValueError("Stripe secret key not configured")
    stripe.api_key = settings.stripe_secret_key
    stripe.max_network_retries = 1
    return stripe


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous Stripe SDK call in the default thread pool executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


async def create_payment_link(customer, job, amount_cents: Optional[int]) -> DeliveryResult:
    """
    Create a one-off Stripe payment link for a job.

    Returns DeliveryResult with url set on success.
    """
    if not amount_cents or amount_cents <= 0:
        return DeliveryResult.failed("job has no price")

    description = job.service_type or "Service"
    if job.date:
        description = f"{description} - {job.date.isoformat()}"

    try:
        stripe = _get_stripe()
        price = await _run_sync(
            stripe.Price.create,
            currency="usd",
            unit_amount=int(amount_cents),
            product_data={"name": description},
        )
        link = await _run_sync(
            stripe.PaymentLink.create,
            line_items=[{"price": price.id, "quantity": 1}],
            metadata={
                "job_id": str(job.id),
                "customer_id": str(customer.id),
                "tenant_id": str(job.tenant_id),
            },
        )
    except Exception as e:
        logger.error("Payment link creation failed job=%s: %s", str(job.id)[:8], str(e))
        return DeliveryResult.failed(str(e))

    logger.info("Payment link created job=%s link=%s", str(job.id)[:8], link.id)
    return DeliveryResult.ok(provider_id=link.id, url=link.url)


def format_amount(amount_cents: int) -> str:
    """1234 -> '12.34'"""
    return f"{amount_cents / 100:.2f}"
