"""Daily quota reset loop.

Resets users whose last reset predates the current UTC day, in batches of
100 every 60 seconds. The lazy reset in relay pre-consume keeps quotas correct
while this loop is down.
"""

import logging
import os

from sqlalchemy.orm import Session

from lurus_api.entitlements.daily_quota import reset_batch
from lurus_api.tenancy.scoped import system_scope
from lurus_reaper.loops.periodic import run_periodic

logger = logging.getLogger(__name__)


def get_daily_reset_interval_seconds() -> int:
    return int(os.getenv("DAILY_QUOTA_RESET_INTERVAL_SEC", "60"))


def run_daily_reset(db: Session, batch_size: int = 100) -> int:
    scope = system_scope(db)
    total = 0
    while True:
        reset_count, selected = reset_batch(scope, limit=batch_size)
        total += reset_count
        if selected < batch_size or reset_count == 0:
            break
    return total


def daily_quota_reset_loop(
    db: Session,
    interval_seconds: int = 60,
    limit_per_scan: int = 100,
    stop_after_one_iteration: bool = False,
) -> int:
    return run_periodic(
        "DailyQuotaReset",
        db,
        lambda session: run_daily_reset(session, limit_per_scan),
        interval_seconds,
        stop_after_one_iteration,
    )
