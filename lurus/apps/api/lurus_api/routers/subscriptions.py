"""User-facing subscription endpoints (session plane).

Endpoints:
- GET  /api/subscription/plans: enabled plans (public)
- GET  /api/subscription/self: current subscription with daily quota
- GET  /api/subscription/history
- POST /api/subscription: create a pending subscription
- POST /api/subscription/{id}/pay: start checkout for a pending row
- POST /api/subscription/{id}/retry-payment: new checkout for the same pending row
- POST /api/subscription/{id}/renew: pending row for the same plan after the current one
- GET  /api/subscription/{id}/status: payment status
- POST /api/subscription/self/cancel
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends

from lurus_api.auth.gate import BoundRequest, require_session
from lurus_api.billing.gateways import create_checkout
from lurus_api.db.models import Subscription, SubscriptionStatus
from lurus_api.entitlements.daily_quota import build_info
from lurus_api.entitlements.store import require_user
from lurus_api.errors import InvalidStateError, NotFoundError, ValidationFailedError
from lurus_api.schemas import (
    CreateSubscriptionRequest,
    PayRequest,
    ok,
    subscription_detail,
)
from lurus_api.subscriptions.machine import (
    PAYMENT_METHODS,
    cancel,
    create_pending,
    get_active_subscription,
    get_subscription,
    get_user_subscription,
    is_stale,
    list_user_subscriptions,
    renew,
    set_payment_reference,
)
from lurus_api.subscriptions.plans import plan_catalogue

router = APIRouter(prefix="/api/subscription", tags=["subscriptions"])
logger = logging.getLogger(__name__)

INVALID_METHOD = "Invalid payment method. Supported: stripe, creem, epay"


def _check_method(method: str) -> str:
    if method not in PAYMENT_METHODS:
        raise ValidationFailedError(INVALID_METHOD)
    return method


def _payment_block(sub: Subscription) -> dict:
    return {
        "subscription_id": sub.id,
        "amount": sub.amount_cents,
        "currency": sub.currency,
        "plan_name": sub.plan_name,
    }


@router.get("/plans")
def list_plans() -> dict:
    return ok([plan.model_dump() for plan in plan_catalogue.enabled()])


@router.get("/self")
def current_subscription(bound: BoundRequest = Depends(require_session())) -> dict:
    user = require_user(bound.scope, bound.ctx.user_id)
    sub = get_active_subscription(bound.scope, user.id)
    data = {
        "subscription": subscription_detail(sub) if sub is not None else None,
        "quota": build_info(user).to_dict(),
        "has_active": sub is not None,
    }
    if sub is not None:
        remaining = sub.expires_at - datetime.now(timezone.utc)
        data["days_remaining"] = max(remaining.days, 0)
    return ok(data)


@router.get("/history")
def subscription_history(limit: int = 10, bound: BoundRequest = Depends(require_session())) -> dict:
    if limit <= 0 or limit > 100:
        limit = 10
    rows = list_user_subscriptions(bound.scope, bound.ctx.user_id, limit=limit)
    return ok([subscription_detail(row) for row in rows])


@router.post("")
def create_subscription(
    body: CreateSubscriptionRequest, bound: BoundRequest = Depends(require_session())
) -> dict:
    try:
        plan_catalogue.get(body.plan_code)
    except NotFoundError as e:
        raise ValidationFailedError("Invalid plan code") from e
    _check_method(body.payment_method)

    sub = create_pending(
        bound.scope,
        bound.ctx.user_id,
        body.plan_code,
        body.payment_method,
        auto_renew=body.auto_renew,
    )
    return ok(
        {"subscription": subscription_detail(sub), "payment": _payment_block(sub)},
        "Subscription created, please proceed to payment",
    )


async def _start_checkout(bound: BoundRequest, subscription_id: int, method: Optional[str]) -> dict:
    sub = get_user_subscription(bound.scope, bound.ctx.user_id, subscription_id)
    if sub.status != SubscriptionStatus.PENDING or sub.paid_at is not None:
        raise InvalidStateError("Subscription is not awaiting payment")
    if is_stale(sub):
        sub = get_subscription(bound.scope, sub.id, for_update=True)
        sub.status = SubscriptionStatus.EXPIRED
        bound.scope.commit()
        raise InvalidStateError("Subscription order has expired, please create a new one")

    method = _check_method(method or sub.payment_method)
    user = require_user(bound.scope, bound.ctx.user_id)
    checkout = await create_checkout(method, sub, user)
    sub.payment_method = method
    set_payment_reference(bound.scope, sub, checkout.payment_id)

    logger.info(
        "Checkout started",
        extra={
            "event": "subscription.checkout",
            "subscription_id": sub.id,
            "payment_method": method,
            "payment_id": checkout.payment_id,
        },
    )
    return {
        "payment_url": checkout.payment_url,
        "payment_id": checkout.payment_id,
        "amount": sub.amount_cents,
        "currency": sub.currency,
    }


@router.post("/{subscription_id}/pay")
async def pay_subscription(
    subscription_id: int,
    body: Optional[PayRequest] = None,
    bound: BoundRequest = Depends(require_session()),
) -> dict:
    method = body.payment_method if body is not None else None
    return ok(await _start_checkout(bound, subscription_id, method))


@router.post("/{subscription_id}/retry-payment")
async def retry_payment(
    subscription_id: int,
    body: Optional[PayRequest] = None,
    bound: BoundRequest = Depends(require_session()),
) -> dict:
    method = body.payment_method if body is not None else None
    return ok(await _start_checkout(bound, subscription_id, method), "Payment link regenerated")


@router.post("/{subscription_id}/renew")
def renew_subscription(
    subscription_id: int,
    body: Optional[PayRequest] = None,
    bound: BoundRequest = Depends(require_session()),
) -> dict:
    current = get_user_subscription(bound.scope, bound.ctx.user_id, subscription_id)
    method = _check_method((body.payment_method if body is not None else None) or current.payment_method)
    sub = renew(bound.scope, bound.ctx.user_id, subscription_id, method)
    return ok(
        {"subscription": subscription_detail(sub), "payment": _payment_block(sub)},
        "Renewal created, please proceed to payment",
    )


@router.get("/{subscription_id}/status")
def payment_status(subscription_id: int, bound: BoundRequest = Depends(require_session())) -> dict:
    sub = get_user_subscription(bound.scope, bound.ctx.user_id, subscription_id)
    return ok(
        {
            "subscription_id": sub.id,
            "status": sub.status,
            "payment_method": sub.payment_method,
            "payment_id": sub.payment_id,
            "amount": sub.amount_cents,
            "currency": sub.currency,
            "created_at": sub.created_at.isoformat() if sub.created_at else None,
        }
    )


@router.post("/self/cancel")
def cancel_subscription(bound: BoundRequest = Depends(require_session())) -> dict:
    sub = cancel(bound.scope, bound.ctx.user_id)
    return ok(subscription_detail(sub), "Subscription cancelled")
