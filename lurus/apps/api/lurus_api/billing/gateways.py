"""Payment initiation across gateways."""

import logging

from lurus_api.billing.checkout import CheckoutSession, reference_id
from lurus_api.billing.creem import get_creem_gateway
from lurus_api.billing.epay import get_epay_gateway
from lurus_api.billing.stripe_gateway import get_stripe_gateway
from lurus_api.db.models import Subscription, User
from lurus_api.errors import ServiceUnavailableError, ValidationFailedError
from lurus_api.subscriptions.machine import PAYMENT_METHODS

logger = logging.getLogger(__name__)


async def create_checkout(method: str, sub: Subscription, user: User) -> CheckoutSession:
    """
    Raises:
        ValidationFailedError: Unsupported method
        ServiceUnavailableError: Gateway not configured
        UpstreamError: Gateway call failed
    """
    if method not in PAYMENT_METHODS:
        raise ValidationFailedError(f"Unsupported payment method: {method}")
    try:
        if method == "stripe":
            return await get_stripe_gateway().create_checkout(sub, user, reference_id(sub))
        if method == "creem":
            return await get_creem_gateway().create_checkout(sub, user, reference_id(sub))
        return get_epay_gateway().create_checkout(sub)
    except ValueError as e:
        logger.error(
            "Payment gateway not configured",
            extra={"event": "payment.gateway.unconfigured", "payment_method": method, "error": str(e)},
        )
        raise ServiceUnavailableError(f"Payment method {method} is not configured") from e
