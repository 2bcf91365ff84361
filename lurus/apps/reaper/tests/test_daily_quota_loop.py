"""Daily quota reset loop."""

import time

from sqlalchemy.orm import Session

from lurus_reaper.loops.daily_quota_loop import daily_quota_reset_loop, run_daily_reset


def test_resets_counters_from_previous_day(db_session: Session, make_user):
    user = make_user(
        "alice",
        daily_quota=1000,
        daily_used=1000,
        last_daily_reset=0,
        base_group="weekly",
        fallback_group="free",
        group="free",
    )

    assert daily_quota_reset_loop(db_session, stop_after_one_iteration=True) == 1

    db_session.refresh(user)
    assert user.daily_used == 0
    assert user.group == "weekly"
    assert user.last_daily_reset > 0


def test_users_reset_today_are_skipped(db_session: Session, make_user):
    make_user("alice", daily_quota=1000, daily_used=500, last_daily_reset=int(time.time()))
    make_user("bob", daily_quota=0, daily_used=0, last_daily_reset=0)

    assert run_daily_reset(db_session) == 0


def test_batches_until_short_batch(db_session: Session, make_user):
    for name in ("a1", "a2", "a3"):
        make_user(name, daily_quota=100, daily_used=50, last_daily_reset=0)

    assert run_daily_reset(db_session, batch_size=2) == 3
