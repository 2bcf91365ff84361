"""Periodic tick runner shared by the database loops.

Each loop owns one Session (sessions are not thread-safe). A tick that raises
is logged and retried on the next interval; it never kills the thread.
"""

import logging
import time
from typing import Callable

from sqlalchemy.orm import Session

from lurus_reaper.loops.shutdown import shutdown_event

logger = logging.getLogger(__name__)


def run_periodic(
    name: str,
    db: Session,
    tick: Callable[[Session], int],
    interval_seconds: int,
    stop_after_one_iteration: bool = False,
) -> int:
    """Run tick(db) every interval_seconds until shutdown.

    Args:
        name: Loop name used in log events
        db: Session owned by this loop
        tick: Work for one iteration; returns the number of rows it changed
        interval_seconds: Sleep between iterations
        stop_after_one_iteration: For testing only - exit after one tick

    Returns:
        Total rows changed across all iterations
    """
    logger.info(
        f"{name} loop started (interval={interval_seconds}s)",
        extra={"event": "reaper.loop.started", "loop": name, "interval_seconds": interval_seconds},
    )

    iteration = 0
    total_changed = 0
    failures = 0

    while not shutdown_event.is_set():
        iteration += 1
        iteration_start = time.time()

        try:
            # Long-running session: drop cached state from the previous tick
            db.expire_all()
            changed = tick(db)
            total_changed += changed
            if changed:
                logger.info(
                    f"{name} iteration {iteration}: {changed} rows changed",
                    extra={
                        "event": "reaper.loop.tick",
                        "loop": name,
                        "iteration": iteration,
                        "changed": changed,
                        "duration_ms": int((time.time() - iteration_start) * 1000),
                    },
                )
        except Exception as e:
            failures += 1
            db.rollback()
            logger.error(
                f"{name} loop error in iteration {iteration}: {e}",
                extra={"event": "reaper.loop.failed", "loop": name, "iteration": iteration},
                exc_info=True,
            )

        if stop_after_one_iteration:
            break

        shutdown_event.wait(interval_seconds)

    logger.info(
        f"{name} loop stopped after {iteration} iterations",
        extra={
            "event": "reaper.loop.stopped",
            "loop": name,
            "total_iterations": iteration,
            "total_changed": total_changed,
            "failures": failures,
        },
    )
    return total_changed
