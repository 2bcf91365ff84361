"""Lurus Reaper main entry point.

Background loops for the entitlement core, one thread per loop:

1. Subscription Expiry (every 5 min): expire overdue active rows in batches of
   100, then promote paid queued rows whose start time has arrived
2. Stale Pending Sweep (every 1 h): expire unpaid pending rows older than 24h
3. Renewal Scan (every 1 h): log active auto-renew rows expiring within 24h
4. Daily Quota Reset (every 60 s, skipped when DAILY_QUOTA_ENABLED=false)
5. CPU Watchdog (every 30 s, only with ENABLE_PPROF=true)

Loops run only on the master node (NODE_TYPE != slave). A slave exits at once.
"""

import logging
import os
import threading
from pathlib import Path

from lurus_api.config.env import is_cpu_watchdog_enabled, is_daily_quota_enabled, is_master_node
from lurus_api.db.engine import build_engine, build_sessionmaker, resolve_database_url
from lurus_api.utils import configure_json_logging
from lurus_reaper.loops.cpu_watchdog import cpu_watchdog_loop
from lurus_reaper.loops.daily_quota_loop import daily_quota_reset_loop, get_daily_reset_interval_seconds
from lurus_reaper.loops.shutdown import install_signal_handlers
from lurus_reaper.loops.subscription_loops import (
    get_expiry_interval_seconds,
    get_renewal_interval_seconds,
    get_sweep_interval_seconds,
    renewal_scan_loop,
    stale_pending_loop,
    subscription_expiry_loop,
)

configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

READY_FILE = Path(os.getenv("REAPER_READY_FILE", "/tmp/reaper-ready"))


def main() -> None:
    READY_FILE.unlink(missing_ok=True)

    if not is_master_node():
        logger.info(
            "Slave node, background loops disabled",
            extra={"event": "reaper.skipped", "node_type": os.getenv("NODE_TYPE", "")},
        )
        return

    install_signal_handlers()

    engine = build_engine(resolve_database_url())
    SessionLocal = build_sessionmaker(engine)

    scan_limit = int(os.getenv("REAPER_SCAN_LIMIT", "100"))

    # SQLAlchemy sessions are not thread-safe: one per loop
    db_loops = [
        ("SubscriptionExpiry", subscription_expiry_loop, get_expiry_interval_seconds(), scan_limit),
        ("StalePendingSweep", stale_pending_loop, get_sweep_interval_seconds(), 500),
        ("RenewalScan", renewal_scan_loop, get_renewal_interval_seconds(), 500),
    ]
    if is_daily_quota_enabled():
        db_loops.append(
            ("DailyQuotaReset", daily_quota_reset_loop, get_daily_reset_interval_seconds(), scan_limit)
        )
    else:
        logger.info("Daily Quota Reset: DISABLED (DAILY_QUOTA_ENABLED=false)")

    sessions = []
    threads = []
    for name, target, interval, limit in db_loops:
        session = SessionLocal()
        sessions.append(session)
        threads.append(
            threading.Thread(
                target=target,
                kwargs={"db": session, "interval_seconds": interval, "limit_per_scan": limit},
                name=name,
                daemon=False,
            )
        )
        logger.info(f"{name} Loop: interval={interval}s, limit={limit}")

    if is_cpu_watchdog_enabled():
        threads.append(threading.Thread(target=cpu_watchdog_loop, name="CpuWatchdog", daemon=False))
        logger.info("CPU Watchdog: enabled (ENABLE_PPROF=true)")

    try:
        for thread in threads:
            thread.start()

        READY_FILE.write_text("ready\n")
        logger.info(f"Readiness file created: {READY_FILE}", extra={"event": "reaper.ready"})

        # Blocks until SIGTERM/SIGINT sets the shutdown event
        for thread in threads:
            thread.join()

    except KeyboardInterrupt:
        logger.info("Reaper stopped by user (KeyboardInterrupt)")

    finally:
        READY_FILE.unlink(missing_ok=True)
        for session in sessions:
            session.close()
        engine.dispose()
        logger.info("Reaper shutdown complete", extra={"event": "reaper.shutdown"})


if __name__ == "__main__":
    main()
