"""Epay (query-string gateway) payment URLs and notify signatures.

Trade number format: SUB{user_id}NO{subscription_id}{unix_ts}. It is stored
as the subscription's payment_id at initiation; the notify callback looks the
subscription up by out_trade_no.

Signature: md5("k1=v1&k2=v2..." + key) over the non-empty params sorted by
name, excluding sign and sign_type.
"""

import hashlib
import hmac
import logging
import time
from typing import Mapping, Optional
from urllib.parse import urlencode

from lurus_api.billing.checkout import CheckoutSession
from lurus_api.config.env import get_epay_settings, get_server_address
from lurus_api.db.models import Subscription

logger = logging.getLogger(__name__)

EPAY_NOTIFY_PATH = "/webhooks/epay/notify"


def epay_sign(params: Mapping[str, str], key: str) -> str:
    pairs = sorted(
        (k, str(v)) for k, v in params.items() if k not in ("sign", "sign_type") and v not in (None, "")
    )
    message = "&".join(f"{k}={v}" for k, v in pairs)
    return hashlib.md5(f"{message}{key}".encode("utf-8")).hexdigest()


def trade_no_for(sub: Subscription, now: Optional[int] = None) -> str:
    return f"SUB{sub.user_id}NO{sub.id}{now if now is not None else int(time.time())}"


class EpayGateway:
    """Environment Variables:
    - EPAY_ADDRESS: gateway submit URL
    - EPAY_PID: merchant id
    - EPAY_KEY: merchant key
    """

    def __init__(self, settings: Optional[dict[str, str]] = None):
        self.settings = settings or get_epay_settings()

    def create_checkout(self, sub: Subscription, pay_type: str = "alipay") -> CheckoutSession:
        trade_no = trade_no_for(sub)
        server = get_server_address()
        params = {
            "pid": self.settings["pid"],
            "type": pay_type,
            "out_trade_no": trade_no,
            "notify_url": f"{server}{EPAY_NOTIFY_PATH}",
            "return_url": f"{server}/subscription/success?provider=epay&trade_no={trade_no}",
            "name": sub.plan_name or sub.plan_code,
            "money": f"{sub.amount_cents / 100:.2f}",
        }
        params["sign"] = epay_sign(params, self.settings["key"])
        params["sign_type"] = "MD5"
        logger.info(
            "Epay payment URL created",
            extra={"event": "epay.checkout.created", "subscription_id": sub.id, "trade_no": trade_no},
        )
        return CheckoutSession(payment_url=f"{self.settings['address']}?{urlencode(params)}", payment_id=trade_no)

    def verify_notify(self, params: Mapping[str, str]) -> bool:
        signature = params.get("sign") or ""
        if not signature:
            return False
        return hmac.compare_digest(epay_sign(params, self.settings["key"]), signature.lower())


def paid_cents(params: Mapping[str, str], default: int) -> int:
    """Notified amount in cents, or default when absent or unparsable."""
    try:
        return int(round(float(params["money"]) * 100))
    except (KeyError, TypeError, ValueError):
        return default


def get_epay_gateway() -> EpayGateway:
    return EpayGateway()
