"""Subscription state machine.

Covers creation, payment (activate / queue behind an active plan /
duplicate), grant, cancel, refund, expiry with queued promotion and the
stale pending sweep.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import Session

from lurus_api.db.models import DEFAULT_GROUP, DEFAULT_TENANT_ID, QuotaLog, SubscriptionStatus
from lurus_api.errors import ConflictError, InvalidStateError, NotFoundError, ValidationFailedError
from lurus_api.subscriptions.machine import (
    cancel,
    create_pending,
    entitlement_end,
    expire_batch,
    find_renewal_candidates,
    get_active_subscription,
    grant,
    is_queued,
    process_payment,
    promote_queued,
    refund_by_payment_id,
    sweep_stale_pending,
)
from lurus_api.tenancy.scoped import system_scope, tenant_scope

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def scope(db_session: Session):
    return tenant_scope(db_session, DEFAULT_TENANT_ID)


def _paid(scope, user, plan_code="weekly", payment_id="pay_1", now=NOW):
    sub = create_pending(scope, user.id, plan_code, "stripe", now=now)
    return process_payment(scope, sub.id, payment_id, "stripe", sub.amount_cents, now=now)


def test_create_pending_snapshots_plan(scope, user):
    sub = create_pending(scope, user.id, "weekly", "epay", now=NOW)

    assert sub.status == SubscriptionStatus.PENDING
    assert sub.paid_at is None
    assert sub.tenant_id == DEFAULT_TENANT_ID
    assert sub.amount_cents == 1990
    assert sub.daily_quota == 500_000
    assert sub.base_group == "weekly"
    assert sub.fallback_group == "free"
    assert sub.expires_at - sub.started_at == timedelta(days=7)


def test_create_pending_rejects_unknown_plan_and_method(scope, user):
    with pytest.raises(NotFoundError):
        create_pending(scope, user.id, "lifetime", "stripe", now=NOW)
    with pytest.raises(ValidationFailedError):
        create_pending(scope, user.id, "weekly", "paypal", now=NOW)


def test_second_fresh_pending_conflicts(scope, user):
    first = create_pending(scope, user.id, "weekly", "stripe", now=NOW)

    with pytest.raises(ConflictError) as exc_info:
        create_pending(scope, user.id, "monthly", "stripe", now=NOW + timedelta(hours=1))
    assert exc_info.value.data == {"subscription_id": first.id}


def test_stale_pending_is_replaced(scope, user):
    first = create_pending(scope, user.id, "weekly", "stripe", now=NOW)

    second = create_pending(scope, user.id, "monthly", "stripe", now=NOW + timedelta(hours=25))

    scope.refresh(first)
    assert first.status == SubscriptionStatus.EXPIRED
    assert second.status == SubscriptionStatus.PENDING


def test_payment_activates_and_applies_entitlement(scope, user):
    quota_before = user.quota

    outcome = _paid(scope, user)

    assert outcome.applied and not outcome.queued and not outcome.duplicate
    sub = outcome.subscription
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.paid_at == NOW
    assert sub.payment_id == "pay_1"
    scope.refresh(user)
    assert user.group == "weekly"
    assert user.base_group == "weekly"
    assert user.fallback_group == "free"
    assert user.daily_quota == 500_000
    assert user.daily_used == 0
    assert user.quota == quota_before + 5_000_000
    assert get_active_subscription(scope, user.id, now=NOW + timedelta(days=1)).id == sub.id


def test_duplicate_payment_is_idempotent(scope, user):
    first = _paid(scope, user)
    scope.refresh(user)
    quota_after_first = user.quota

    again = process_payment(scope, first.subscription.id, "pay_1", "stripe", 1990, now=NOW)

    assert again.duplicate
    assert not again.applied
    scope.refresh(user)
    assert user.quota == quota_after_first
    credits = scope.count(QuotaLog, QuotaLog.user_id == user.id, QuotaLog.type == "system")
    assert credits == 1


def test_amount_mismatch_still_applies(scope, user):
    sub = create_pending(scope, user.id, "weekly", "stripe", now=NOW)

    outcome = process_payment(scope, sub.id, "pay_low", "stripe", 100, now=NOW)

    assert outcome.applied
    assert outcome.subscription.status == SubscriptionStatus.ACTIVE


def test_payment_on_stale_row_is_refused(scope, user):
    sub = create_pending(scope, user.id, "weekly", "stripe", now=NOW)

    with pytest.raises(InvalidStateError):
        process_payment(scope, sub.id, "pay_late", "stripe", 1990, now=NOW + timedelta(hours=30))

    scope.refresh(sub)
    assert sub.status == SubscriptionStatus.EXPIRED


def test_payment_id_bound_elsewhere_conflicts(scope, user, factory):
    _paid(scope, user, payment_id="pay_shared")
    other = factory.user("bob")
    sub = create_pending(scope, other.id, "weekly", "stripe", now=NOW)

    with pytest.raises(ConflictError):
        process_payment(scope, sub.id, "pay_shared", "stripe", 1990, now=NOW)


def test_second_payment_is_queued_behind_active(scope, user):
    current = _paid(scope, user).subscription
    later = NOW + timedelta(days=2)

    renewal = create_pending(scope, user.id, "monthly", "stripe", now=later)
    assert renewal.started_at == current.expires_at

    outcome = process_payment(scope, renewal.id, "pay_2", "stripe", renewal.amount_cents, now=later)

    assert outcome.queued
    queued = outcome.subscription
    assert is_queued(queued)
    assert queued.started_at == current.expires_at
    assert queued.expires_at == current.expires_at + timedelta(days=30)
    scope.refresh(user)
    # Entitlement of the running plan is untouched until promotion
    assert user.group == "weekly"
    assert entitlement_end(scope, user.id, now=later) == queued.expires_at


def test_expiry_promotes_queued_subscription(db_session: Session, scope, user):
    current = _paid(scope, user).subscription
    renewal = create_pending(scope, user.id, "monthly", "stripe", now=NOW + timedelta(days=1))
    process_payment(scope, renewal.id, "pay_2", "stripe", renewal.amount_cents, now=NOW + timedelta(days=1))
    after = current.expires_at + timedelta(minutes=1)

    loops = system_scope(db_session)
    expired, selected = expire_batch(loops, now=after)
    promoted = promote_queued(loops, now=after)

    assert (expired, selected, promoted) == (1, 1, 1)
    scope.refresh(current)
    scope.refresh(renewal)
    scope.refresh(user)
    assert current.status == SubscriptionStatus.EXPIRED
    assert renewal.status == SubscriptionStatus.ACTIVE
    assert user.group == "monthly"
    assert user.daily_quota == 1_000_000


def test_expiry_without_successor_resets_user(db_session: Session, scope, user):
    current = _paid(scope, user).subscription

    expire_batch(system_scope(db_session), now=current.expires_at + timedelta(seconds=1))

    scope.refresh(user)
    assert user.group == DEFAULT_GROUP
    assert user.base_group == ""
    assert user.fallback_group == ""
    assert user.daily_quota == 0


def test_grant_activates_without_payment(scope, user):
    sub = grant(scope, user.id, "monthly", 10, "support", now=NOW)

    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.amount_cents == 0
    assert sub.expires_at - sub.started_at == timedelta(days=10)
    scope.refresh(user)
    assert user.group == "monthly"


def test_grant_stacks_on_active(scope, user):
    current = _paid(scope, user).subscription

    extra = grant(scope, user.id, "monthly", 5, "compensation", now=NOW + timedelta(hours=1))

    assert is_queued(extra)
    assert extra.started_at == current.expires_at


def test_grant_rejects_non_positive_days(scope, user):
    with pytest.raises(ValidationFailedError):
        grant(scope, user.id, "weekly", 0, "oops", now=NOW)


def test_cancel_releases_entitlement(scope, user):
    _paid(scope, user)

    sub = cancel(scope, user.id, now=NOW + timedelta(hours=1))

    assert sub.status == SubscriptionStatus.CANCELLED
    assert sub.auto_renew is False
    scope.refresh(user)
    assert user.group == DEFAULT_GROUP
    assert user.daily_quota == 0


def test_cancel_without_active_subscription(scope, user):
    with pytest.raises(NotFoundError):
        cancel(scope, user.id, now=NOW)


def test_refund_deducts_credited_quota(scope, user):
    quota_before = user.quota
    _paid(scope, user, payment_id="pay_refund")

    sub = refund_by_payment_id(scope, "pay_refund", reason="chargeback", now=NOW + timedelta(hours=2))

    assert sub.status == SubscriptionStatus.REFUNDED
    scope.refresh(user)
    assert user.quota == quota_before
    assert user.group == DEFAULT_GROUP

    # Idempotent
    again = refund_by_payment_id(scope, "pay_refund", now=NOW + timedelta(hours=3))
    assert again.status == SubscriptionStatus.REFUNDED
    scope.refresh(user)
    assert user.quota == quota_before


def test_refund_of_queued_row_keeps_running_plan(scope, user):
    _paid(scope, user, payment_id="pay_a")
    scope.refresh(user)
    quota_with_first = user.quota
    renewal = create_pending(scope, user.id, "monthly", "stripe", now=NOW + timedelta(days=1))
    process_payment(scope, renewal.id, "pay_b", "stripe", renewal.amount_cents, now=NOW + timedelta(days=1))

    refund_by_payment_id(scope, "pay_b", now=NOW + timedelta(days=1, hours=1))

    scope.refresh(user)
    assert user.quota == quota_with_first
    assert user.group == "weekly"


def test_refund_unknown_or_unpaid(scope, user):
    with pytest.raises(NotFoundError):
        refund_by_payment_id(scope, "nope", now=NOW)

    sub = create_pending(scope, user.id, "weekly", "epay", now=NOW)
    sub.payment_id = "trade_unpaid"
    scope.commit()
    with pytest.raises(InvalidStateError):
        refund_by_payment_id(scope, "trade_unpaid", now=NOW)


def test_sweep_expires_old_and_superseded_pending(db_session: Session, scope, user, factory):
    old = create_pending(scope, user.id, "weekly", "stripe", now=NOW - timedelta(hours=30))
    bob = factory.user("bob")
    fresh = create_pending(scope, bob.id, "weekly", "stripe", now=NOW)

    swept = sweep_stale_pending(system_scope(db_session), now=NOW)

    assert swept == 1
    scope.refresh(old)
    scope.refresh(fresh)
    assert old.status == SubscriptionStatus.EXPIRED
    assert fresh.status == SubscriptionStatus.PENDING


def test_renewal_candidates_window(db_session: Session, scope, user):
    sub = create_pending(scope, user.id, "weekly", "stripe", auto_renew=True, now=NOW)
    process_payment(scope, sub.id, "pay_auto", "stripe", 1990, now=NOW)

    loops = system_scope(db_session)
    assert find_renewal_candidates(loops, now=NOW) == []
    due = find_renewal_candidates(loops, now=sub.expires_at - timedelta(hours=2))
    assert [row.id for row in due] == [sub.id]
