"""Creem checkout client and webhook signature check.

- Checkout: POST /v1/checkouts with x-api-key (test-api.creem.io in test mode)
- Webhook: creem-signature = hex(HMAC-SHA256(secret, raw body))
"""

import hashlib
import hmac
import logging
from typing import Optional

import httpx

from lurus_api.billing.checkout import CheckoutSession, subscription_metadata
from lurus_api.config.env import (
    get_creem_api_key,
    get_creem_product_id,
    get_creem_webhook_secret,
    get_server_address,
    is_creem_test_mode,
)
from lurus_api.db.models import Subscription, User
from lurus_api.errors import UpstreamError

logger = logging.getLogger(__name__)

CREEM_TIMEOUT_SECONDS = 30.0


class CreemClient:
    """Environment Variables:
    - CREEM_API_KEY: API key
    - CREEM_TEST_MODE: use the test API host
    - CREEM_PRODUCT_<PLAN> / CREEM_PRODUCT_ID: product per plan
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or get_creem_api_key()
        self.base_url = "https://test-api.creem.io" if is_creem_test_mode() else "https://api.creem.io"

    def build_payload(self, sub: Subscription, user: User, reference_id: str) -> dict:
        payload = {
            "product_id": get_creem_product_id(sub.plan_code),
            "request_id": reference_id,
            "success_url": f"{get_server_address()}/subscription/success?provider=creem&ref={reference_id}",
            "metadata": subscription_metadata(sub),
            "amount": sub.amount_cents,
            "currency": sub.currency.lower(),
        }
        if user.email:
            payload["customer"] = {"email": user.email}
        return payload

    async def create_checkout(self, sub: Subscription, user: User, reference_id: str) -> CheckoutSession:
        """
        Raises:
            UpstreamError: Creem API failure or malformed response
        """
        url = f"{self.base_url}/v1/checkouts"
        headers = {"Content-Type": "application/json", "x-api-key": self.api_key}
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    url,
                    headers=headers,
                    json=self.build_payload(sub, user, reference_id),
                    timeout=CREEM_TIMEOUT_SECONDS,
                )
                response.raise_for_status()
                result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "Creem checkout creation failed",
                extra={"event": "creem.checkout.failed", "subscription_id": sub.id, "error": str(e)},
            )
            raise UpstreamError("Failed to create payment session") from e

        checkout_url = result.get("checkout_url")
        checkout_id = result.get("id")
        if not checkout_url or not checkout_id:
            logger.error(
                "Creem checkout response incomplete",
                extra={"event": "creem.checkout.bad_response", "subscription_id": sub.id},
            )
            raise UpstreamError("Failed to create payment session")

        logger.info(
            "Creem checkout created",
            extra={"event": "creem.checkout.created", "subscription_id": sub.id, "checkout_id": checkout_id},
        )
        return CheckoutSession(payment_url=checkout_url, payment_id=checkout_id)


def sign_creem_payload(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_creem_signature(payload: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """Constant-time check of the creem-signature header.

    Raises:
        ValueError: CREEM_WEBHOOK_SECRET not configured
    """
    secret = secret or get_creem_webhook_secret()
    if not secret:
        raise ValueError("CREEM_WEBHOOK_SECRET is required to verify Creem webhooks.")
    if not signature:
        return False
    return hmac.compare_digest(sign_creem_payload(payload, secret), signature.strip().lower())


def get_creem_gateway() -> CreemClient:
    return CreemClient()
