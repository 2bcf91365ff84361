"""Tick runner: failure isolation and shutdown."""

from sqlalchemy.orm import Session

from lurus_reaper.loops.periodic import run_periodic
from lurus_reaper.loops.shutdown import shutdown_event


def test_single_iteration_returns_changed_count(db_session: Session):
    calls = []

    def tick(session: Session) -> int:
        calls.append(session)
        return 3

    assert run_periodic("Test", db_session, tick, 1, stop_after_one_iteration=True) == 3
    assert calls == [db_session]


def test_failing_tick_is_logged_not_raised(db_session: Session, monkeypatch):
    rollbacks = []
    monkeypatch.setattr(db_session, "rollback", lambda: rollbacks.append(True))

    def tick(session: Session) -> int:
        raise RuntimeError("boom")

    assert run_periodic("Broken", db_session, tick, 1, stop_after_one_iteration=True) == 0
    assert rollbacks == [True]


def test_shutdown_before_start_skips_work(db_session: Session):
    shutdown_event.set()

    def tick(session: Session) -> int:
        raise AssertionError("tick must not run after shutdown")

    assert run_periodic("Stopped", db_session, tick, 1) == 0


def test_shutdown_between_ticks_stops_loop(db_session: Session):
    ticks = []

    def tick(session: Session) -> int:
        ticks.append(1)
        if len(ticks) == 2:
            shutdown_event.set()
        return 1

    assert run_periodic("TwoTicks", db_session, tick, 0) == 2
