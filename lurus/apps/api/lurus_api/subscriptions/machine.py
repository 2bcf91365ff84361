"""Subscription state machine.

    [-] --create_pending--> pending --payment_confirmed--> active --expires--> expired
                                                             |
                                                             +--cancel--> cancelled --refund--> refunded

The user's current plan is never stored: it is the newest active row whose
expires_at is in the future. A paid row that would overlap an active one is
queued (status pending, paid_at set, started_at = end of the current
entitlement) and promoted by the expiry loop once its start arrives.

Lock order: users -> subscriptions -> logs. Payment confirmation and refund
lock the subscription row first (they are located by subscription or payment
id) and then the user.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from sqlalchemy import or_

from lurus_api.db.models import (
    DEFAULT_GROUP,
    Subscription,
    SubscriptionStatus,
    User,
    UserStatus,
)
from lurus_api.entitlements.store import require_user, write_quota_log
from lurus_api.errors import (
    AuthError,
    ConflictError,
    ErrorCode,
    InvalidStateError,
    NotFoundError,
    ValidationFailedError,
)
from lurus_api.subscriptions.plans import SubscriptionPlan, plan_catalogue
from lurus_api.tenancy.scoped import TenantScope

logger = logging.getLogger(__name__)

STALE_PENDING_AGE = timedelta(hours=24)
RENEWAL_WINDOW = timedelta(hours=24)
AMOUNT_TOLERANCE = 0.05

PAYMENT_METHODS = frozenset({"stripe", "creem", "epay"})


@dataclass
class PaymentOutcome:
    subscription: Subscription
    applied: bool
    queued: bool = False
    duplicate: bool = False


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_queued(sub: Subscription) -> bool:
    """Paid but waiting behind an active subscription."""
    return sub.status == SubscriptionStatus.PENDING and sub.paid_at is not None


def is_stale(sub: Subscription, now: Optional[datetime] = None) -> bool:
    now = now or _now()
    return (
        sub.status == SubscriptionStatus.PENDING
        and sub.paid_at is None
        and sub.created_at < now - STALE_PENDING_AGE
    )


# ── reads ─────────────────────────────────────────────────────────────────────


def get_subscription(scope: TenantScope, subscription_id: int, *, for_update: bool = False) -> Subscription:
    sub = scope.get(Subscription, subscription_id, for_update=for_update)
    if sub is None:
        raise NotFoundError("Subscription not found")
    return sub


def get_user_subscription(scope: TenantScope, user_id: int, subscription_id: int) -> Subscription:
    """Subscription owned by user_id; another user's row reads as absent."""
    sub = get_subscription(scope, subscription_id)
    if sub.user_id != user_id:
        raise NotFoundError("Subscription not found")
    return sub


def get_active_subscription(
    scope: TenantScope,
    user_id: int,
    *,
    now: Optional[datetime] = None,
    exclude_id: Optional[int] = None,
) -> Optional[Subscription]:
    now = now or _now()
    criteria = [
        Subscription.user_id == user_id,
        Subscription.status == SubscriptionStatus.ACTIVE,
        Subscription.expires_at > now,
    ]
    if exclude_id is not None:
        criteria.append(Subscription.id != exclude_id)
    return scope.first(Subscription, *criteria, order_by=Subscription.expires_at.desc())


def list_user_subscriptions(scope: TenantScope, user_id: int, *, limit: int = 20) -> Sequence[Subscription]:
    return scope.all(
        Subscription,
        Subscription.user_id == user_id,
        order_by=Subscription.id.desc(),
        limit=limit,
    )


def list_subscriptions(
    scope: TenantScope,
    *,
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[Sequence[Subscription], int]:
    criteria = []
    if status:
        criteria.append(Subscription.status == status)
    if user_id is not None:
        criteria.append(Subscription.user_id == user_id)
    total = scope.count(Subscription, *criteria)
    rows = scope.all(
        Subscription,
        *criteria,
        order_by=Subscription.id.desc(),
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return rows, total


def entitlement_end(
    scope: TenantScope,
    user_id: int,
    *,
    now: Optional[datetime] = None,
    exclude_id: Optional[int] = None,
) -> Optional[datetime]:
    """Latest expires_at over active and queued rows, or None if nothing runs past now."""
    now = now or _now()
    rows = scope.all(
        Subscription,
        Subscription.user_id == user_id,
        or_(
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.paid_at.is_not(None) & (Subscription.status == SubscriptionStatus.PENDING),
        ),
        Subscription.expires_at > now,
    )
    ends = [row.expires_at for row in rows if row.id != exclude_id]
    return max(ends) if ends else None


# ── user entitlement mutation ─────────────────────────────────────────────────


def _apply_to_user(user: User, sub: Subscription, now: datetime) -> None:
    user.daily_quota = sub.daily_quota
    user.base_group = sub.base_group
    user.fallback_group = sub.fallback_group
    user.group = sub.base_group or DEFAULT_GROUP
    user.daily_used = 0
    user.last_daily_reset = int(now.timestamp())


def _credit_plan_quota(scope: TenantScope, user: User, sub: Subscription) -> None:
    if sub.total_quota > 0:
        user.quota += sub.total_quota
        write_quota_log(
            scope, user, "system", f"subscription {sub.plan_code} #{sub.id} quota", sub.total_quota
        )


def _activate(scope: TenantScope, sub: Subscription, user: User, now: datetime) -> None:
    sub.status = SubscriptionStatus.ACTIVE
    _apply_to_user(user, sub, now)
    _credit_plan_quota(scope, user, sub)


def _release_user(scope: TenantScope, user: User, sub: Subscription, now: datetime) -> bool:
    """Drop the entitlement of a subscription that stopped being active.

    Returns:
        True if the user was reset, False if another active row still applies
    """
    if get_active_subscription(scope, user.id, now=now, exclude_id=sub.id) is not None:
        return False
    user.group = DEFAULT_GROUP
    user.base_group = ""
    user.fallback_group = ""
    user.daily_quota = 0
    user.daily_used = 0
    return True


def _lock_user_for(scope: TenantScope, user_id: int) -> User:
    return require_user(scope, user_id, for_update=True)


# ── creation ──────────────────────────────────────────────────────────────────


def _expire_unpaid(sub: Subscription) -> None:
    sub.status = SubscriptionStatus.EXPIRED


def create_pending(
    scope: TenantScope,
    user_id: int,
    plan_code: str,
    payment_method: str,
    *,
    auto_renew: bool = False,
    now: Optional[datetime] = None,
) -> Subscription:
    """Create a pending subscription awaiting payment.

    Raises:
        NotFoundError: Unknown plan, or user absent
        ConflictError: The user already has a fresh unpaid pending row
    """
    now = now or _now()
    plan = plan_catalogue.get(plan_code)
    if payment_method not in PAYMENT_METHODS:
        raise ValidationFailedError(f"Unsupported payment method: {payment_method}")

    user = _lock_user_for(scope, user_id)
    if user.status != UserStatus.ENABLED:
        raise AuthError("User is disabled", ErrorCode.USER_DISABLED)

    pending = scope.all(
        Subscription,
        Subscription.user_id == user_id,
        Subscription.status == SubscriptionStatus.PENDING,
        Subscription.paid_at.is_(None),
        order_by=Subscription.id.desc(),
        for_update=True,
    )
    for row in pending:
        if is_stale(row, now):
            _expire_unpaid(row)
            continue
        scope.rollback()
        raise ConflictError(
            "You already have a pending subscription",
            data={"subscription_id": row.id},
        )

    started_at = max(now, entitlement_end(scope, user_id, now=now) or now)
    sub = Subscription(
        user_id=user_id,
        plan_code=plan.code,
        plan_name=plan.name,
        status=SubscriptionStatus.PENDING,
        daily_quota=plan.daily_quota,
        total_quota=plan.total_quota,
        base_group=plan.base_group,
        fallback_group=plan.fallback_group,
        started_at=started_at,
        expires_at=started_at + timedelta(days=plan.days),
        payment_method=payment_method,
        amount_cents=plan.price_cents,
        currency=plan.currency,
        auto_renew=auto_renew,
        created_at=now,
    )
    scope.add(sub)
    scope.commit()

    logger.info(
        "Pending subscription created",
        extra={
            "event": "subscription.created",
            "subscription_id": sub.id,
            "user": user_id,
            "plan_code": plan.code,
            "payment_method": payment_method,
            "stacked": started_at > now,
        },
    )
    return sub


def renew(
    scope: TenantScope,
    user_id: int,
    subscription_id: int,
    payment_method: str,
    *,
    now: Optional[datetime] = None,
) -> Subscription:
    """New pending row for the same plan, starting where the current entitlement ends."""
    sub = get_user_subscription(scope, user_id, subscription_id)
    return create_pending(
        scope, user_id, sub.plan_code, payment_method, auto_renew=sub.auto_renew, now=now
    )


def set_payment_reference(scope: TenantScope, sub: Subscription, payment_id: str) -> None:
    """Record the gateway order id on a pending row before redirecting the payer. Commits."""
    if sub.status != SubscriptionStatus.PENDING or sub.paid_at is not None:
        raise InvalidStateError("Subscription is not awaiting payment")
    sub.payment_id = payment_id
    scope.commit()


# ── payment ───────────────────────────────────────────────────────────────────


def process_payment(
    scope: TenantScope,
    subscription_id: int,
    payment_id: str,
    payment_method: str,
    amount_paid_cents: int,
    *,
    now: Optional[datetime] = None,
) -> PaymentOutcome:
    """Confirm a gateway payment. Idempotent per subscription.

    Raises:
        NotFoundError: Unknown subscription
        InvalidStateError: Not pending, or the pending row went stale
        ConflictError: payment_id already bound to another subscription
    """
    now = now or _now()
    sub = get_subscription(scope, subscription_id, for_update=True)

    if sub.status == SubscriptionStatus.ACTIVE or is_queued(sub):
        logger.warning(
            "Payment already applied",
            extra={
                "event": "subscription.payment.duplicate",
                "subscription_id": sub.id,
                "payment_id": payment_id,
                "existing_payment_id": sub.payment_id,
            },
        )
        scope.commit()
        return PaymentOutcome(sub, applied=False, queued=is_queued(sub), duplicate=True)

    if sub.status != SubscriptionStatus.PENDING:
        scope.rollback()
        raise InvalidStateError(f"Subscription is {sub.status}, cannot apply payment")

    if is_stale(sub, now):
        _expire_unpaid(sub)
        scope.commit()
        logger.warning(
            "Payment for stale pending subscription",
            extra={"event": "subscription.payment.stale", "subscription_id": sub.id, "payment_id": payment_id},
        )
        raise InvalidStateError("Subscription payment window has expired")

    holder = scope.first(Subscription, Subscription.payment_id == payment_id, Subscription.id != sub.id)
    if holder is not None:
        scope.rollback()
        raise ConflictError("Payment already bound to another subscription")

    expected = sub.amount_cents
    if expected > 0 and abs(amount_paid_cents - expected) > expected * AMOUNT_TOLERANCE:
        logger.warning(
            "Paid amount differs from plan price",
            extra={
                "event": "subscription.payment.amount_mismatch",
                "subscription_id": sub.id,
                "expected_cents": expected,
                "paid_cents": amount_paid_cents,
            },
        )

    user = _lock_user_for(scope, sub.user_id)
    duration = sub.expires_at - sub.started_at

    sub.payment_id = payment_id
    sub.payment_method = payment_method
    sub.paid_at = now

    current_end = entitlement_end(scope, sub.user_id, now=now, exclude_id=sub.id)
    if current_end is not None:
        sub.started_at = current_end
        sub.expires_at = current_end + duration
        scope.commit()
        logger.info(
            "Payment applied, subscription queued behind active plan",
            extra={
                "event": "subscription.payment.queued",
                "subscription_id": sub.id,
                "user": sub.user_id,
                "starts_at": sub.started_at.isoformat(),
            },
        )
        return PaymentOutcome(sub, applied=True, queued=True)

    sub.started_at = now
    sub.expires_at = now + duration
    _activate(scope, sub, user, now)
    scope.commit()

    logger.info(
        "Payment applied, subscription active",
        extra={
            "event": "subscription.payment.applied",
            "subscription_id": sub.id,
            "user": sub.user_id,
            "plan_code": sub.plan_code,
            "payment_method": payment_method,
        },
    )
    return PaymentOutcome(sub, applied=True)


# ── grants (internal / admin) ─────────────────────────────────────────────────


def grant(
    scope: TenantScope,
    user_id: int,
    plan_code: str,
    days: int,
    reason: str,
    *,
    payment_method: str = "internal",
    now: Optional[datetime] = None,
) -> Subscription:
    """Grant a plan without payment. Active at once, or queued when stacking."""
    if days <= 0:
        raise ValidationFailedError("Days must be positive")
    now = now or _now()
    plan: SubscriptionPlan = plan_catalogue.get(plan_code, include_disabled=True)
    user = _lock_user_for(scope, user_id)

    current_end = entitlement_end(scope, user_id, now=now)
    started_at = current_end or now
    sub = Subscription(
        user_id=user_id,
        plan_code=plan.code,
        plan_name=plan.name,
        status=SubscriptionStatus.PENDING,
        daily_quota=plan.daily_quota,
        total_quota=plan.total_quota,
        base_group=plan.base_group,
        fallback_group=plan.fallback_group,
        started_at=started_at,
        expires_at=started_at + timedelta(days=days),
        payment_method=payment_method,
        paid_at=now,
        amount_cents=0,
        currency=plan.currency,
        created_at=now,
    )
    scope.add(sub)
    scope.flush()
    if current_end is None:
        _activate(scope, sub, user, now)
    scope.commit()

    logger.info(
        "Subscription granted",
        extra={
            "event": "subscription.granted",
            "subscription_id": sub.id,
            "user": user_id,
            "plan_code": plan.code,
            "days": days,
            "reason": reason,
            "queued": current_end is not None,
        },
    )
    return sub


def admin_activate(scope: TenantScope, subscription_id: int, *, now: Optional[datetime] = None) -> PaymentOutcome:
    """Mark a pending row paid by an administrator."""
    sub = get_subscription(scope, subscription_id)
    return process_payment(
        scope,
        subscription_id,
        sub.payment_id or f"admin-{subscription_id}",
        "admin",
        sub.amount_cents,
        now=now,
    )


# ── termination ───────────────────────────────────────────────────────────────


def _terminate(
    scope: TenantScope,
    sub: Subscription,
    user: User,
    new_status: str,
    now: datetime,
) -> bool:
    was_active = sub.status == SubscriptionStatus.ACTIVE
    sub.status = new_status
    if was_active:
        return _release_user(scope, user, sub, now)
    return False


def expire_subscription(scope: TenantScope, subscription_id: int, *, now: Optional[datetime] = None) -> bool:
    """Expire one row (loop or admin). Commits.

    Returns:
        True if the row was expired by this call
    """
    now = now or _now()
    sub = get_subscription(scope, subscription_id)
    user = _lock_user_for(scope, sub.user_id)
    sub = get_subscription(scope, subscription_id, for_update=True)
    if sub.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING):
        scope.commit()
        return False
    released = _terminate(scope, sub, user, SubscriptionStatus.EXPIRED, now)
    scope.commit()
    logger.info(
        "Subscription expired",
        extra={
            "event": "subscription.expired",
            "subscription_id": sub.id,
            "user": sub.user_id,
            "user_reset": released,
        },
    )
    return True


def cancel(
    scope: TenantScope,
    user_id: int,
    subscription_id: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> Subscription:
    """Cancel the caller's active subscription and stop auto-renewal.

    Raises:
        NotFoundError: No such subscription for this user
        InvalidStateError: Subscription is not active
    """
    now = now or _now()
    user = _lock_user_for(scope, user_id)
    if subscription_id is None:
        sub = get_active_subscription(scope, user_id, now=now)
        if sub is None:
            scope.rollback()
            raise NotFoundError("No active subscription")
    else:
        sub = get_user_subscription(scope, user_id, subscription_id)
    sub = get_subscription(scope, sub.id, for_update=True)

    if sub.status != SubscriptionStatus.ACTIVE:
        scope.rollback()
        raise InvalidStateError(f"Subscription is {sub.status}, cannot cancel")

    sub.auto_renew = False
    _terminate(scope, sub, user, SubscriptionStatus.CANCELLED, now)
    scope.commit()
    logger.info(
        "Subscription cancelled",
        extra={"event": "subscription.cancelled", "subscription_id": sub.id, "user": user_id},
    )
    return sub


def refund_by_payment_id(
    scope: TenantScope,
    payment_id: str,
    *,
    reason: str = "",
    now: Optional[datetime] = None,
) -> Subscription:
    """Refund the subscription paid with payment_id. Idempotent.

    Raises:
        NotFoundError: No subscription carries this payment id
        InvalidStateError: Subscription was never paid
    """
    now = now or _now()
    sub = scope.first(Subscription, Subscription.payment_id == payment_id, for_update=True)
    if sub is None:
        raise NotFoundError("Subscription not found for payment")
    if sub.status == SubscriptionStatus.REFUNDED:
        scope.commit()
        return sub
    refundable = {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED}
    if sub.status not in refundable and not is_queued(sub):
        scope.rollback()
        raise InvalidStateError(f"Subscription is {sub.status}, cannot refund")

    user = _lock_user_for(scope, sub.user_id)
    # A queued row never credited its plan quota
    credited = not is_queued(sub)
    _terminate(scope, sub, user, SubscriptionStatus.REFUNDED, now)

    deduction = min(sub.total_quota, max(user.quota, 0)) if credited else 0
    if deduction > 0:
        user.quota -= deduction
    write_quota_log(
        scope,
        user,
        "refund",
        f"refund subscription {sub.plan_code} #{sub.id} {reason}".strip(),
        -deduction,
    )
    scope.commit()

    logger.info(
        "Subscription refunded",
        extra={
            "event": "subscription.refunded",
            "subscription_id": sub.id,
            "user": sub.user_id,
            "quota_deducted": deduction,
        },
    )
    return sub


# ── batch operations (background loops) ───────────────────────────────────────


def expire_batch(scope: TenantScope, *, limit: int = 100, now: Optional[datetime] = None) -> tuple[int, int]:
    """Expire one batch of overdue active rows, each in its own transaction.

    Returns:
        Tuple of (expired_count, selected_count)
    """
    now = now or _now()
    rows = scope.all(
        Subscription,
        Subscription.status == SubscriptionStatus.ACTIVE,
        Subscription.expires_at < now,
        order_by=Subscription.id,
        limit=limit,
    )
    ids = [row.id for row in rows]
    expired = 0
    for subscription_id in ids:
        try:
            if expire_subscription(scope, subscription_id, now=now):
                expired += 1
        except Exception as e:
            scope.rollback()
            logger.error(
                "Subscription expiry failed",
                extra={"event": "subscription.expire.failed", "subscription_id": subscription_id, "error": str(e)},
                exc_info=True,
            )
    return expired, len(ids)


def promote_queued(scope: TenantScope, *, limit: int = 100, now: Optional[datetime] = None) -> int:
    """Activate paid queued rows whose start time has arrived."""
    now = now or _now()
    rows = scope.all(
        Subscription,
        Subscription.status == SubscriptionStatus.PENDING,
        Subscription.paid_at.is_not(None),
        Subscription.started_at <= now,
        order_by=Subscription.started_at,
        limit=limit,
    )
    promoted = 0
    for row in rows:
        subscription_id, user_id = row.id, row.user_id
        try:
            user = _lock_user_for(scope, user_id)
            sub = get_subscription(scope, subscription_id, for_update=True)
            if not is_queued(sub):
                scope.commit()
                continue
            if sub.expires_at <= now:
                sub.status = SubscriptionStatus.EXPIRED
            else:
                _activate(scope, sub, user, now)
                promoted += 1
            scope.commit()
            logger.info(
                "Queued subscription promoted",
                extra={"event": "subscription.promoted", "subscription_id": subscription_id, "user": user_id},
            )
        except Exception as e:
            scope.rollback()
            logger.error(
                "Queued subscription promotion failed",
                extra={"event": "subscription.promote.failed", "subscription_id": subscription_id, "error": str(e)},
                exc_info=True,
            )
    return promoted


def sweep_stale_pending(scope: TenantScope, *, limit: int = 500, now: Optional[datetime] = None) -> int:
    """Expire unpaid pending rows older than 24h, and all but the newest unpaid row per user."""
    now = now or _now()
    rows = scope.all(
        Subscription,
        Subscription.status == SubscriptionStatus.PENDING,
        Subscription.paid_at.is_(None),
        order_by=Subscription.id.desc(),
        limit=limit,
        for_update=True,
    )
    seen_users: set[tuple[str, int]] = set()
    swept = 0
    for row in rows:
        owner = (row.tenant_id, row.user_id)
        superseded = owner in seen_users
        seen_users.add(owner)
        if superseded or is_stale(row, now):
            _expire_unpaid(row)
            swept += 1
    scope.commit()
    if swept:
        logger.info("Stale pending subscriptions swept", extra={"event": "subscription.sweep", "count": swept})
    return swept


def find_renewal_candidates(
    scope: TenantScope, *, now: Optional[datetime] = None, limit: int = 500
) -> Sequence[Subscription]:
    """Active auto-renew rows expiring within the renewal window."""
    now = now or _now()
    return scope.all(
        Subscription,
        Subscription.status == SubscriptionStatus.ACTIVE,
        Subscription.auto_renew.is_(True),
        Subscription.expires_at > now,
        Subscription.expires_at <= now + RENEWAL_WINDOW,
        order_by=Subscription.expires_at,
        limit=limit,
    )
