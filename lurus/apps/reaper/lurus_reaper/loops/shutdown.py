"""Shared shutdown signal for every reaper loop."""

import logging
import signal
import threading

logger = logging.getLogger(__name__)

# Set by SIGTERM/SIGINT; every loop waits on it between ticks
shutdown_event = threading.Event()


def _signal_handler(signum, frame):
    sig_name = signal.Signals(signum).name
    logger.info(
        f"Received {sig_name} signal, initiating graceful shutdown...",
        extra={"event": "reaper.signal", "signal": sig_name},
    )
    shutdown_event.set()


def install_signal_handlers() -> None:
    """Register SIGTERM/SIGINT handlers. Must be called from the main thread."""
    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)
