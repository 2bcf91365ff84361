"""Stripe Checkout for subscription payments.

Stripe Reference:
- Checkout Sessions: https://stripe.com/docs/api/checkout/sessions
- Webhook signatures: https://stripe.com/docs/webhooks/signatures

Prices are stored in CNY cents; Stripe is charged in USD at
STRIPE_CNY_PER_USD (default 7.3).
"""

import logging
from typing import Optional

import stripe
from starlette.concurrency import run_in_threadpool

from lurus_api.billing.checkout import CheckoutSession, subscription_metadata
from lurus_api.config.env import (
    get_server_address,
    get_stripe_cny_per_usd,
    get_stripe_secret_key,
    get_stripe_webhook_secret,
)
from lurus_api.db.models import Subscription, User
from lurus_api.errors import UpstreamError

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


def usd_cents(sub: Subscription) -> int:
    if sub.currency.upper() == "CNY":
        return int(sub.amount_cents / get_stripe_cny_per_usd())
    return sub.amount_cents


class StripeGateway:
    """Environment Variables:
    - STRIPE_SECRET_KEY: API secret
    - STRIPE_WEBHOOK_SECRET: endpoint signing secret (whsec_...)
    - STRIPE_CNY_PER_USD: CNY → USD rate
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or get_stripe_secret_key()

    def _create_session(self, sub: Subscription, user: User, reference_id: str) -> dict:
        days = max((sub.expires_at - sub.started_at).days, 1)
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": "usd",
                        "product_data": {
                            "name": f"{sub.plan_name} Subscription",
                            "description": f"Subscription for {days} days",
                        },
                        "unit_amount": usd_cents(sub),
                    },
                    "quantity": 1,
                }
            ],
            "success_url": f"{get_server_address()}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{get_server_address()}/subscription/cancel",
            "client_reference_id": reference_id,
            "metadata": subscription_metadata(sub),
        }
        if user.email:
            params["customer_email"] = user.email
        session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        return {"id": session.id, "url": session.url}

    async def create_checkout(self, sub: Subscription, user: User, reference_id: str) -> CheckoutSession:
        """
        Raises:
            UpstreamError: Stripe API failure (details logged, not returned)
        """
        try:
            result = await run_in_threadpool(self._create_session, sub, user, reference_id)
        except stripe.StripeError as e:
            logger.error(
                "Stripe checkout session creation failed",
                extra={"event": "stripe.checkout.failed", "subscription_id": sub.id, "error": str(e)},
            )
            raise UpstreamError("Failed to create payment session") from e

        logger.info(
            "Stripe checkout session created",
            extra={"event": "stripe.checkout.created", "subscription_id": sub.id, "session_id": result["id"]},
        )
        return CheckoutSession(payment_url=result["url"], payment_id=result["id"])


def verify_stripe_signature(payload: bytes, sig_header: str, secret: Optional[str] = None) -> None:
    """
    Raises:
        ValueError: Webhook secret not configured
        stripe.SignatureVerificationError: Bad, missing or stale signature
    """
    secret = secret or get_stripe_webhook_secret()
    if not secret:
        raise ValueError("STRIPE_WEBHOOK_SECRET is required to verify Stripe webhooks.")
    stripe.WebhookSignature.verify_header(
        payload.decode("utf-8"), sig_header, secret, tolerance=SIGNATURE_TOLERANCE_SECONDS
    )


def get_stripe_gateway() -> StripeGateway:
    return StripeGateway()
