"""Subscription lifecycle loops.

- Expiry (every 5 min): expire overdue active rows in batches, then promote
  paid queued rows whose start time has arrived
- Stale sweep (every 1 h): expire unpaid pending rows older than 24h
- Renewal scan (every 1 h): log active auto-renew rows expiring within 24h
"""

import logging
import os

from sqlalchemy.orm import Session

from lurus_api.subscriptions.machine import (
    expire_batch,
    find_renewal_candidates,
    promote_queued,
    sweep_stale_pending,
)
from lurus_api.tenancy.scoped import system_scope
from lurus_reaper.loops.periodic import run_periodic

logger = logging.getLogger(__name__)


def get_expiry_interval_seconds() -> int:
    return int(os.getenv("SUBSCRIPTION_EXPIRY_INTERVAL_SEC", "300"))


def get_sweep_interval_seconds() -> int:
    return int(os.getenv("SUBSCRIPTION_SWEEP_INTERVAL_SEC", "3600"))


def get_renewal_interval_seconds() -> int:
    return int(os.getenv("SUBSCRIPTION_RENEWAL_INTERVAL_SEC", "3600"))


def run_expiry_pass(db: Session, limit_per_scan: int = 100) -> int:
    """Expire every overdue active row, batch by batch, then promote queued rows.

    A batch that selected fewer rows than the limit was the last one. A batch
    where nothing could be expired also ends the pass so one poisoned row
    cannot spin the loop.
    """
    scope = system_scope(db)
    total_expired = 0
    while True:
        expired, selected = expire_batch(scope, limit=limit_per_scan)
        total_expired += expired
        if selected < limit_per_scan or expired == 0:
            break

    promoted = promote_queued(scope, limit=limit_per_scan)
    if total_expired or promoted:
        logger.info(
            "Subscription expiry pass complete",
            extra={"event": "subscription.expiry_pass", "expired": total_expired, "promoted": promoted},
        )
    return total_expired + promoted


def run_stale_sweep(db: Session, limit_per_scan: int = 500) -> int:
    return sweep_stale_pending(system_scope(db), limit=limit_per_scan)


def run_renewal_scan(db: Session, limit_per_scan: int = 500) -> int:
    """Log renewal candidates. No charge is attempted."""
    candidates = find_renewal_candidates(system_scope(db), limit=limit_per_scan)
    for sub in candidates:
        logger.info(
            f"Subscription {sub.id} for user {sub.user_id} needs renewal",
            extra={
                "event": "subscription.renewal_due",
                "subscription_id": sub.id,
                "user": sub.user_id,
                "tenant_id": sub.tenant_id,
                "plan_code": sub.plan_code,
                "expires_at": sub.expires_at.isoformat(),
            },
        )
    return len(candidates)


def subscription_expiry_loop(
    db: Session,
    interval_seconds: int = 300,
    limit_per_scan: int = 100,
    stop_after_one_iteration: bool = False,
) -> int:
    return run_periodic(
        "SubscriptionExpiry",
        db,
        lambda session: run_expiry_pass(session, limit_per_scan),
        interval_seconds,
        stop_after_one_iteration,
    )


def stale_pending_loop(
    db: Session,
    interval_seconds: int = 3600,
    limit_per_scan: int = 500,
    stop_after_one_iteration: bool = False,
) -> int:
    return run_periodic(
        "StalePendingSweep",
        db,
        lambda session: run_stale_sweep(session, limit_per_scan),
        interval_seconds,
        stop_after_one_iteration,
    )


def renewal_scan_loop(
    db: Session,
    interval_seconds: int = 3600,
    limit_per_scan: int = 500,
    stop_after_one_iteration: bool = False,
) -> int:
    return run_periodic(
        "RenewalScan",
        db,
        lambda session: run_renewal_scan(session, limit_per_scan),
        interval_seconds,
        stop_after_one_iteration,
    )
