import logging
from functools import lru_cache

from gigmarket.payments.gateway import PaymentGateway
from gigmarket.settings import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_gateway() -> PaymentGateway:
    """Process-wide gateway selected by PAYMENT_GATEWAY."""
    if settings.PAYMENT_GATEWAY == "stripe":
        from gigmarket.payments.stripe_gateway import StripeGateway

        logger.info("Using Stripe payment gateway")
        return StripeGateway(
            api_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            api_version=settings.STRIPE_API_VERSION,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )

    from gigmarket.payments.fake import FakeGateway

    logger.warning("Using in-memory fake payment gateway")
    return FakeGateway(webhook_secret=settings.STRIPE_WEBHOOK_SECRET)
