"""Gateway-neutral checkout values."""

import time
from dataclasses import dataclass

from lurus_api.db.models import Subscription


@dataclass
class CheckoutSession:
    payment_url: str
    payment_id: str


def subscription_metadata(sub: Subscription) -> dict[str, str]:
    return {
        "subscription_id": str(sub.id),
        "user_id": str(sub.user_id),
        "tenant_id": sub.tenant_id,
        "plan_code": sub.plan_code,
        "type": "subscription",
    }


def reference_id(sub: Subscription) -> str:
    return f"sub_{sub.id}_{sub.user_id}_{time.time_ns()}"

