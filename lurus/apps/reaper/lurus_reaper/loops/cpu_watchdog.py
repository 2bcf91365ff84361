"""CPU watchdog (ENABLE_PPROF=true).

Every 30 seconds samples host CPU usage with psutil. Above 80% it records a
10 second stack-sampling profile of this process to ./pprof/cpu-<ts>.txt:
one line per distinct stack, "count frame;frame;frame", ready for flame
graph tooling.
"""

import logging
import os
import sys
import threading
import time
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import psutil

from lurus_reaper.loops.shutdown import shutdown_event

logger = logging.getLogger(__name__)

CPU_THRESHOLD_PERCENT = 80.0
PROFILE_SECONDS = 10.0
SAMPLE_INTERVAL_SECONDS = 0.01


def get_pprof_dir() -> Path:
    return Path(os.getenv("PPROF_DIR", "./pprof"))


def _stack_key(frame) -> str:
    parts = []
    while frame is not None:
        code = frame.f_code
        parts.append(f"{code.co_name} ({os.path.basename(code.co_filename)}:{frame.f_lineno})")
        frame = frame.f_back
    return ";".join(reversed(parts))


def sample_stacks(duration_seconds: float, interval_seconds: float = SAMPLE_INTERVAL_SECONDS) -> Counter:
    """Sample every thread's stack except the caller's for duration_seconds."""
    own_id = threading.get_ident()
    stacks: Counter = Counter()
    deadline = time.monotonic() + duration_seconds
    while time.monotonic() < deadline and not shutdown_event.is_set():
        for thread_id, frame in sys._current_frames().items():
            if thread_id != own_id:
                stacks[_stack_key(frame)] += 1
        time.sleep(interval_seconds)
    return stacks


def write_profile(stacks: Counter, output_dir: Path, now: Optional[datetime] = None) -> Path:
    now = now or datetime.now(timezone.utc)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / f"cpu-{now.strftime('%Y%m%d%H%M%S')}.txt"
    with open(path, "w", encoding="utf-8") as f:
        for stack, count in stacks.most_common():
            f.write(f"{count} {stack}\n")
    return path


def check_cpu_once(
    threshold_percent: float = CPU_THRESHOLD_PERCENT,
    profile_seconds: float = PROFILE_SECONDS,
    output_dir: Optional[Path] = None,
) -> Optional[Path]:
    """Measure CPU over one second; profile when above threshold.

    Returns:
        Path of the written profile, or None when CPU was below threshold
    """
    percent = psutil.cpu_percent(interval=1)
    if percent <= threshold_percent:
        return None

    logger.warning(
        "CPU usage too high, capturing profile",
        extra={"event": "cpu_watchdog.triggered", "cpu_percent": percent, "profile_seconds": profile_seconds},
    )
    stacks = sample_stacks(profile_seconds)
    path = write_profile(stacks, output_dir or get_pprof_dir())
    logger.info(
        "CPU profile written",
        extra={"event": "cpu_watchdog.profile_written", "path": str(path), "stacks": len(stacks)},
    )
    return path


def cpu_watchdog_loop(
    interval_seconds: int = 30,
    threshold_percent: float = CPU_THRESHOLD_PERCENT,
    profile_seconds: float = PROFILE_SECONDS,
    output_dir: Optional[Path] = None,
    stop_after_one_iteration: bool = False,
) -> int:
    """Returns the number of profiles written."""
    logger.info(
        f"CPU watchdog started (interval={interval_seconds}s, threshold={threshold_percent}%)",
        extra={"event": "cpu_watchdog.started"},
    )
    profiles = 0
    while not shutdown_event.is_set():
        try:
            if check_cpu_once(threshold_percent, profile_seconds, output_dir) is not None:
                profiles += 1
        except OSError as e:
            logger.error(
                f"CPU watchdog failed: {e}",
                extra={"event": "cpu_watchdog.failed"},
                exc_info=True,
            )

        if stop_after_one_iteration:
            break
        shutdown_event.wait(interval_seconds)

    logger.info("CPU watchdog stopped", extra={"event": "cpu_watchdog.stopped", "profiles": profiles})
    return profiles
