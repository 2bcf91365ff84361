"""Service-key plane (X-API-Key: lurus_ik_...).

SECURITY:
- Only the SHA-256 hash is looked up; the raw key is never logged
- Uniform 401 for unknown, disabled and expired keys
- last_used_at is best-effort and never blocks the request
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Depends, Request
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lurus_api.auth.principal import PLANE_SERVICE_KEY, Principal
from lurus_api.config.env import get_batch_update_interval, is_batch_update_enabled
from lurus_api.credentials.api_keys import lookup_api_key
from lurus_api.db.models import InternalApiKey
from lurus_api.db.session import SessionLocal, get_db
from lurus_api.errors import AuthError

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


class KeyUsageRecorder:
    """Writes InternalApiKey.last_used_at off the request path.

    Batched mode (BATCH_UPDATE_ENABLED=true): ids are collected in memory and
    flushed every BATCH_UPDATE_INTERVAL seconds in one UPDATE.
    Otherwise each use spawns a short-lived writer thread.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory
        self._pending: dict[int, datetime] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def batched(self) -> bool:
        return is_batch_update_enabled()

    def record(self, key_id: int, *, now: Optional[datetime] = None) -> None:
        now = now or datetime.now(timezone.utc)
        if self.batched:
            with self._lock:
                self._pending[key_id] = now
            return
        threading.Thread(
            target=self._write,
            args=({key_id: now},),
            name="KeyUsageWrite",
            daemon=True,
        ).start()

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def flush(self) -> int:
        """Write all pending timestamps. Returns the number of keys written."""
        with self._lock:
            pending, self._pending = self._pending, {}
        if not pending:
            return 0
        return self._write(pending)

    def _write(self, stamps: dict[int, datetime]) -> int:
        db = self.session_factory()
        try:
            for key_id, used_at in stamps.items():
                db.execute(
                    update(InternalApiKey)
                    .where(InternalApiKey.id == key_id)
                    .values(last_used_at=used_at)
                )
            db.commit()
            return len(stamps)
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(
                "API key last_used_at update failed",
                extra={"event": "api_key.last_used.failed", "keys": len(stamps), "error": str(e)},
            )
            return 0
        finally:
            db.close()

    def start(self) -> None:
        if not self.batched or (self._thread is not None and self._thread.is_alive()):
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._flush_loop, name="KeyUsageFlush", daemon=True)
        self._thread.start()
        logger.info(
            "API key usage batching started",
            extra={"event": "api_key.last_used.batch_started", "interval": get_batch_update_interval()},
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.flush()

    def _flush_loop(self) -> None:
        interval = max(get_batch_update_interval(), 1)
        while not self._stop_event.wait(interval):
            self.flush()


key_usage_recorder = KeyUsageRecorder()


def resolve_service_key(db: Session, raw_key: Optional[str]) -> Principal:
    """
    Raises:
        AuthError: Header missing, or key unknown, disabled or expired
    """
    if not raw_key:
        raise AuthError("API key required")
    row = lookup_api_key(db, raw_key.strip())
    if row is None:
        logger.warning("Service key authentication failed", extra={"event": "api_key.auth.failed"})
        raise AuthError("Invalid or expired API key")

    key_usage_recorder.record(row.id)
    return Principal(
        auth_plane=PLANE_SERVICE_KEY,
        tenant_id=row.tenant_id,
        scopes=frozenset(row.scopes or []),
        key_id=row.id,
        key_name=row.name,
    )


def get_service_principal(request: Request, db: Session = Depends(get_db)) -> Principal:
    """FastAPI dependency for /internal routes."""
    return resolve_service_key(db, request.headers.get(API_KEY_HEADER))
