"""Process-wide options with copy-on-write snapshots.

Options live in the `options` table and are mirrored into an immutable dict
that readers access without locking. Writers build a new dict and swap the
reference under a lock. A sync thread reloads the table every
SYNC_FREQUENCY seconds so changes made on another node propagate.
"""

import logging
import threading
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from lurus_api.db.models import Option

logger = logging.getLogger(__name__)

REGISTRATION_OPEN = "open"
REGISTRATION_INVITE_ONLY = "invite_only"
REGISTRATION_CLOSED = "closed"

DEFAULT_OPTIONS: dict[str, str] = {
    "RegistrationMode": REGISTRATION_OPEN,
    "PasswordRegisterEnabled": "true",
    "EmailVerificationEnabled": "false",
    "SMSAutoRegister": "false",
    "SubscriptionPlans": "",
    "SMSTemplateLogin": "",
    "SMSTemplateRegister": "",
    "SMSTemplateReset": "",
    "SMSTemplateBind": "",
    "SMSTemplateDefault": "",
    "QuotaPerUnit": "500000",
}


class OptionStore:
    """Copy-on-write option map."""

    def __init__(self, defaults: Optional[Mapping[str, str]] = None):
        self._defaults = dict(defaults or DEFAULT_OPTIONS)
        self._values: Mapping[str, str] = MappingProxyType(dict(self._defaults))
        self._write_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── reads ────────────────────────────────────────────────────────────────

    def get(self, key: str, default: str = "") -> str:
        return self._values.get(key, default)

    def get_bool(self, key: str, default: bool = False) -> bool:
        raw = self._values.get(key)
        if raw is None or raw == "":
            return default
        return raw.strip().lower() in {"true", "1", "yes", "on"}

    def get_int(self, key: str, default: int = 0) -> int:
        raw = self._values.get(key)
        try:
            return int(raw) if raw not in (None, "") else default
        except ValueError:
            logger.warning(
                "Option is not an integer, using default",
                extra={"event": "options.parse_failed", "key": key},
            )
            return default

    def snapshot(self) -> Mapping[str, str]:
        return self._values

    # ── writes ───────────────────────────────────────────────────────────────

    def apply_values(self, values: Mapping[str, str]) -> None:
        """Swap in defaults overlaid with values."""
        with self._write_lock:
            merged = dict(self._defaults)
            merged.update(values)
            self._values = MappingProxyType(merged)

    def set(self, db: Session, key: str, value: str) -> None:
        """Persist one option and publish it locally.

        Commits the session.
        """
        row = db.get(Option, key)
        if row is None:
            db.add(Option(key=key, value=value))
        else:
            row.value = value
        db.commit()

        with self._write_lock:
            updated = dict(self._values)
            updated[key] = value
            self._values = MappingProxyType(updated)

        logger.info("Option updated", extra={"event": "options.updated", "key": key})

    def load(self, db: Session) -> int:
        """Reload every option row from the database.

        Returns:
            Number of rows loaded
        """
        rows = db.execute(select(Option.key, Option.value)).all()
        self.apply_values({key: value for key, value in rows})
        return len(rows)

    # ── sync loop ────────────────────────────────────────────────────────────

    def start_sync(self, session_factory: Callable[[], Session], interval_seconds: int) -> None:
        """Start the background reload thread (idempotent)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._sync_loop,
            kwargs={"session_factory": session_factory, "interval_seconds": interval_seconds},
            name="OptionSync",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Option sync started",
            extra={"event": "options.sync.started", "interval_seconds": interval_seconds},
        )

    def stop_sync(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _sync_loop(self, session_factory: Callable[[], Session], interval_seconds: int) -> None:
        while not self._stop_event.wait(interval_seconds):
            db = session_factory()
            try:
                count = self.load(db)
                logger.debug("Options synced", extra={"event": "options.sync.ok", "count": count})
            except Exception as e:
                # Keep the previous snapshot; next tick retries
                logger.error(
                    "Option sync failed",
                    extra={"event": "options.sync.failed", "error": str(e)},
                    exc_info=True,
                )
            finally:
                db.close()


option_store = OptionStore()


def get_registration_mode() -> str:
    mode = option_store.get("RegistrationMode", REGISTRATION_OPEN)
    if mode not in {REGISTRATION_OPEN, REGISTRATION_INVITE_ONLY, REGISTRATION_CLOSED}:
        return REGISTRATION_OPEN
    return mode


def get_quota_per_unit() -> int:
    """Tokens granted per 1 RMB of top-up."""
    return option_store.get_int("QuotaPerUnit", 500_000)
