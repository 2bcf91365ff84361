"""Subscription expiry, stale sweep and renewal scan loops."""

from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from lurus_api.db.models import DEFAULT_GROUP, DEFAULT_TENANT_ID, Subscription, SubscriptionStatus
from lurus_api.subscriptions.machine import create_pending, grant
from lurus_api.tenancy.scoped import tenant_scope
from lurus_reaper.loops.subscription_loops import (
    get_expiry_interval_seconds,
    renewal_scan_loop,
    run_expiry_pass,
    stale_pending_loop,
    subscription_expiry_loop,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _scope(db: Session):
    return tenant_scope(db, DEFAULT_TENANT_ID)


def test_overdue_subscription_is_expired(db_session: Session, make_user):
    user = make_user("alice")
    sub = grant(_scope(db_session), user.id, "weekly", 3, "test", now=_now() - timedelta(days=10))

    changed = subscription_expiry_loop(db_session, stop_after_one_iteration=True)

    assert changed == 1
    db_session.refresh(sub)
    db_session.refresh(user)
    assert sub.status == SubscriptionStatus.EXPIRED
    assert user.group == DEFAULT_GROUP
    assert user.daily_quota == 0


def test_expiry_promotes_queued_successor(db_session: Session, make_user):
    user = make_user("alice")
    started = _now() - timedelta(days=5)
    first = grant(_scope(db_session), user.id, "weekly", 4, "test", now=started)
    queued = grant(_scope(db_session), user.id, "monthly", 30, "test", now=started)
    assert queued.status == SubscriptionStatus.PENDING

    assert run_expiry_pass(db_session) == 2

    db_session.refresh(first)
    db_session.refresh(queued)
    assert first.status == SubscriptionStatus.EXPIRED
    assert queued.status == SubscriptionStatus.ACTIVE


def test_expiry_drains_every_batch(db_session: Session, make_user):
    past = _now() - timedelta(days=10)
    for name in ("a1", "a2", "a3"):
        grant(_scope(db_session), make_user(name).id, "weekly", 1, "test", now=past)

    assert run_expiry_pass(db_session, limit_per_scan=2) == 3
    assert db_session.query(Subscription).filter_by(status=SubscriptionStatus.ACTIVE).count() == 0


def test_current_subscription_is_left_alone(db_session: Session, make_user):
    user = make_user("alice")
    grant(_scope(db_session), user.id, "weekly", 7, "test")

    assert subscription_expiry_loop(db_session, stop_after_one_iteration=True) == 0


def test_stale_pending_is_swept(db_session: Session, make_user):
    user = make_user("alice")
    stale = create_pending(_scope(db_session), user.id, "weekly", "stripe", now=_now() - timedelta(hours=30))

    assert stale_pending_loop(db_session, stop_after_one_iteration=True) == 1

    db_session.refresh(stale)
    assert stale.status == SubscriptionStatus.EXPIRED


def test_fresh_pending_survives_sweep(db_session: Session, make_user):
    user = make_user("alice")
    fresh = create_pending(_scope(db_session), user.id, "weekly", "stripe")

    assert stale_pending_loop(db_session, stop_after_one_iteration=True) == 0

    db_session.refresh(fresh)
    assert fresh.status == SubscriptionStatus.PENDING


def test_renewal_scan_counts_auto_renew_rows(db_session: Session, make_user):
    soon = grant(_scope(db_session), make_user("alice").id, "weekly", 7, "test", now=_now() - timedelta(days=6, hours=20))
    soon.auto_renew = True
    later = grant(_scope(db_session), make_user("bob").id, "monthly", 30, "test")
    later.auto_renew = True
    manual = grant(_scope(db_session), make_user("carol").id, "weekly", 7, "test", now=_now() - timedelta(days=6, hours=20))
    db_session.commit()

    assert renewal_scan_loop(db_session, stop_after_one_iteration=True) == 1

    db_session.refresh(soon)
    assert soon.status == SubscriptionStatus.ACTIVE
    assert manual.auto_renew is False


def test_interval_from_env(monkeypatch):
    monkeypatch.setenv("SUBSCRIPTION_EXPIRY_INTERVAL_SEC", "42")

    assert get_expiry_interval_seconds() == 42
