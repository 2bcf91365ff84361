"""Webhook dedup gate: one business-processing per (provider, dedup_key).

Gateways redeliver on timeouts and retry storms; the ledger makes sure a
redelivery never reaches process_payment twice.

  1. INSERT ... ON CONFLICT (provider, dedup_key) DO NOTHING RETURNING id
       → row returned : first processor → continue
       → no row       : conflict → step 2
  2. UPDATE ... SET status='processing' WHERE status='failed' RETURNING id
       → row returned : previous attempt failed; re-claimed
       → no row       : 'done' or concurrent 'processing' → ACK 200, no side effects

The UNIQUE constraint guarantees exactly one INSERT wins under concurrency.
Both PostgreSQL and SQLite (tests) support ON CONFLICT ... RETURNING.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from lurus_api.db.models import WebhookDedupEvent

logger = logging.getLogger(__name__)

STATUS_PROCESSING = "processing"
STATUS_DONE = "done"
STATUS_FAILED = "failed"


# ---------------------------------------------------------------------------
# Dedup key extraction (deterministic per provider)
# ---------------------------------------------------------------------------


def get_stripe_dedup_key(event: dict) -> str:
    """Stripe event id (evt_...), stable across redeliveries."""
    event_id = event.get("id")
    if not event_id:
        raise ValueError("Cannot derive Stripe dedup_key: event 'id' missing")
    return f"ev_{event_id}"


def get_creem_dedup_key(payload: dict) -> str:
    """Creem event id, falling back to the checkout object id."""
    event_id = payload.get("id")
    if event_id:
        return f"ev_{event_id}"
    obj = payload.get("object") or {}
    object_id = obj.get("id") if isinstance(obj, dict) else None
    if object_id:
        return f"obj_{object_id}"
    raise ValueError("Cannot derive Creem dedup_key: no event id or object id")


def get_epay_dedup_key(params: dict) -> str:
    """out_trade_no + trade_status: a status change is a new event."""
    trade_no = params.get("out_trade_no")
    if not trade_no:
        raise ValueError("Cannot derive epay dedup_key: out_trade_no missing")
    return f"trade_{trade_no}_{params.get('trade_status', '')}"


# ---------------------------------------------------------------------------
# Atomic dedup gate
# ---------------------------------------------------------------------------


def _insert_for(db: Session):
    return postgresql.insert if db.get_bind().dialect.name == "postgresql" else sqlite.insert


def try_acquire_dedup(
    db: Session,
    provider: str,
    dedup_key: str,
    request_hash: Optional[str] = None,
) -> bool:
    """Attempt to claim processing rights for (provider, dedup_key).

    Returns:
        True:  first (or re-processing) handler → proceed
        False: duplicate → ACK with 200, zero side effects
    """
    now = datetime.now(timezone.utc)
    insert = _insert_for(db)
    stmt = (
        insert(WebhookDedupEvent)
        .values(
            provider=provider,
            dedup_key=dedup_key,
            first_seen_at=now,
            status=STATUS_PROCESSING,
            request_hash=request_hash,
        )
        .on_conflict_do_nothing(index_elements=["provider", "dedup_key"])
        .returning(WebhookDedupEvent.id)
    )
    row = db.execute(stmt).first()
    if row is not None:
        db.commit()
        logger.debug(
            "Webhook dedup acquired",
            extra={"event": "webhook.dedup.acquired", "provider": provider, "dedup_key_prefix": dedup_key[:16]},
        )
        return True

    retry = db.execute(
        update(WebhookDedupEvent)
        .where(
            WebhookDedupEvent.provider == provider,
            WebhookDedupEvent.dedup_key == dedup_key,
            WebhookDedupEvent.status == STATUS_FAILED,
        )
        .values(status=STATUS_PROCESSING, last_seen_at=now)
        .returning(WebhookDedupEvent.id)
    ).first()
    db.commit()

    if retry is not None:
        logger.info(
            "Webhook dedup re-claimed failed event",
            extra={"event": "webhook.dedup.reclaimed", "provider": provider, "dedup_key_prefix": dedup_key[:16]},
        )
        return True

    logger.info(
        "Webhook duplicate delivery",
        extra={"event": "webhook.dedup.duplicate", "provider": provider, "dedup_key_prefix": dedup_key[:16]},
    )
    return False


def _set_status(db: Session, provider: str, dedup_key: str, status: str, error: Optional[str] = None) -> None:
    values = {"status": status, "last_seen_at": datetime.now(timezone.utc)}
    if error is not None:
        values["last_error"] = error[:500]
    db.execute(
        update(WebhookDedupEvent)
        .where(WebhookDedupEvent.provider == provider, WebhookDedupEvent.dedup_key == dedup_key)
        .values(**values)
    )
    db.commit()


def mark_dedup_done(db: Session, provider: str, dedup_key: str) -> None:
    _set_status(db, provider, dedup_key, STATUS_DONE)


def mark_dedup_failed(db: Session, provider: str, dedup_key: str, error: str = "") -> None:
    """Failed events are re-claimable by the next redelivery. Discards the open transaction first."""
    db.rollback()
    _set_status(db, provider, dedup_key, STATUS_FAILED, error or None)
