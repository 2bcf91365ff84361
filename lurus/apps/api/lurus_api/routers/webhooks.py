"""Payment gateway webhooks (Stripe, Creem, Epay).

Error taxonomy (a gateway retries anything that is not 2xx):
  (A) Invalid JSON / malformed payload -> 400
  (B) Signature invalid -> 401
  (C) Required header missing -> 400
  (D) Our misconfig (missing secret) -> 500 WEBHOOK_PROVIDER_MISCONFIG
  (F) Internal DB/processing error after verification -> 500 WEBHOOK_INTERNAL_ERROR
Domain refusals (unknown subscription, already refunded...) are ACKed with
200: a redelivery cannot change the outcome.

Every verified event passes the dedup ledger before business processing, so
a redelivered payment confirmation is applied exactly once.
"""

import json as _json
import logging
from typing import Any, Awaitable, Callable, Optional

import stripe
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from lurus_api.billing.creem import verify_creem_signature
from lurus_api.billing.epay import get_epay_gateway, paid_cents
from lurus_api.billing.stripe_gateway import verify_stripe_signature
from lurus_api.billing.webhook_dedup import (
    get_creem_dedup_key,
    get_epay_dedup_key,
    get_stripe_dedup_key,
    mark_dedup_done,
    mark_dedup_failed,
    try_acquire_dedup,
)
from lurus_api.config.env import get_stripe_cny_per_usd, is_creem_test_mode
from lurus_api.context import request_id_var
from lurus_api.db.models import Subscription
from lurus_api.db.session import get_db
from lurus_api.errors import IAEError
from lurus_api.subscriptions.machine import get_subscription, process_payment, refund_by_payment_id
from lurus_api.tenancy.scoped import system_scope
from lurus_api.utils.sanitize import payload_hash_bytes, sanitize_str

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

EPAY_SUCCESS = "TRADE_SUCCESS"


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: Optional[str],
    provider: str,
    payload_hash: Optional[str],
    extra: Optional[dict] = None,
) -> JSONResponse:
    """Log once and return a Problem Details response.

    4xx -> warning log. 5xx -> error log plus Retry-After: 60.
    """
    request_id = request_id_var.get()
    log_extra: dict = {
        "event": f"webhook.{code.lower()}",
        "provider": provider,
        "payload_hash": payload_hash,
        "error_code": code,
    }
    if extra:
        log_extra.update(extra)
    if status >= 500:
        logger.error(code, extra=log_extra)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:lurus:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "provider": provider,
        "error_code": code,
        "instance": request_id or str(request.url.path),
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash

    headers = {"Content-Type": "application/problem+json"}
    if status >= 500:
        headers["Retry-After"] = "60"
    return JSONResponse(status_code=status, content=content, headers=headers)


def _subscription_id(metadata: Any) -> Optional[int]:
    """Subscription id from checkout metadata, None when not ours."""
    if not isinstance(metadata, dict) or metadata.get("type") != "subscription":
        return None
    try:
        return int(metadata.get("subscription_id") or 0) or None
    except (TypeError, ValueError):
        return None


async def _run_deduped(
    request: Request,
    db: Session,
    provider: str,
    dedup_key: str,
    payload_hash: str,
    handler: Callable[[], Awaitable[str]],
) -> Any:
    """Dedup gate plus business processing with the (F) taxonomy."""
    if not try_acquire_dedup(db, provider, dedup_key, payload_hash):
        return {"status": "already_processed"}
    try:
        outcome = await handler()
    except IAEError as exc:
        db.rollback()
        mark_dedup_done(db, provider, dedup_key)
        logger.warning(
            "Webhook event refused by domain rules",
            extra={
                "event": "webhook.event.refused",
                "provider": provider,
                "payload_hash": payload_hash,
                "error_code": exc.code.value,
                "error_msg": exc.message,
            },
        )
        return {"status": "ignored", "reason": exc.code.value}
    except Exception as exc:
        mark_dedup_failed(db, provider, dedup_key, type(exc).__name__)
        return _webhook_problem(
            request,
            500,
            code="WEBHOOK_INTERNAL_ERROR",
            title="Internal processing error",
            detail="An internal error occurred while processing the webhook",
            provider=provider,
            payload_hash=payload_hash,
            extra={"error_type": type(exc).__name__, "error_msg": sanitize_str(str(exc))},
        )
    mark_dedup_done(db, provider, dedup_key)
    return {"status": outcome}


def _confirm(db: Session, subscription_id: int, payment_id: str, method: str, amount_cents: int) -> str:
    outcome = process_payment(system_scope(db), subscription_id, payment_id, method, amount_cents)
    if outcome.duplicate:
        return "duplicate"
    return "queued" if outcome.queued else "processed"


# ============================================================================
# Stripe
# ============================================================================


def _stripe_paid_cents(session: dict, sub: Subscription) -> int:
    """Amount paid in the subscription's currency (Stripe charges USD)."""
    amount_total = session.get("amount_total")
    if amount_total is None:
        return sub.amount_cents
    currency = (session.get("currency") or "").upper()
    if currency == sub.currency.upper():
        return int(amount_total)
    return int(round(int(amount_total) * get_stripe_cny_per_usd()))


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
):
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)

    if not stripe_signature:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_MISSING_HEADERS",
            title="Missing required webhook headers",
            detail="Stripe-Signature header is absent",
            provider="stripe",
            payload_hash=payload_hash,
        )
    try:
        verify_stripe_signature(raw_body, stripe_signature)
    except ValueError:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfiguration",
            detail="Stripe webhook secret is not configured",
            provider="stripe",
            payload_hash=payload_hash,
        )
    except stripe.SignatureVerificationError:
        return _webhook_problem(
            request, 401,
            code="WEBHOOK_SIGNATURE_INVALID",
            title="Webhook signature verification failed",
            detail=None,
            provider="stripe",
            payload_hash=payload_hash,
        )

    try:
        event = _json.loads(raw_body)
        dedup_key = get_stripe_dedup_key(event)
        obj = event["data"]["object"]
    except (_json.JSONDecodeError, ValueError, KeyError, TypeError):
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_PAYLOAD",
            title="Invalid webhook payload",
            detail="Expected a Stripe event with id and data.object",
            provider="stripe",
            payload_hash=payload_hash,
        )

    event_type = event.get("type", "")
    logger.info(
        "WEBHOOK_RECEIVED",
        extra={"event": "webhook.received", "provider": "stripe", "type": event_type, "payload_hash": payload_hash},
    )

    async def handle() -> str:
        if event_type == "checkout.session.completed":
            subscription_id = _subscription_id(obj.get("metadata"))
            if subscription_id is None:
                return "ignored"
            sub = get_subscription(system_scope(db), subscription_id)
            payment_id = obj.get("payment_intent") or obj.get("id")
            return _confirm(db, subscription_id, payment_id, "stripe", _stripe_paid_cents(obj, sub))
        if event_type == "charge.refunded":
            payment_intent = obj.get("payment_intent")
            if not payment_intent:
                return "ignored"
            refund_by_payment_id(system_scope(db), payment_intent, reason="stripe charge.refunded")
            return "refunded"
        if event_type == "checkout.session.expired":
            # The payer may still retry with another method; the stale sweep expires the row
            logger.info(
                "Stripe checkout session expired",
                extra={"event": "stripe.session.expired", "subscription_id": _subscription_id(obj.get("metadata"))},
            )
        return "ignored"

    return await _run_deduped(request, db, "stripe", dedup_key, payload_hash, handle)


# ============================================================================
# Creem
# ============================================================================


@router.post("/creem")
async def creem_webhook(
    request: Request,
    creem_signature: Optional[str] = Header(None, alias="creem-signature"),
    db: Session = Depends(get_db),
):
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)

    try:
        # Sandbox deliveries are unsigned
        valid = is_creem_test_mode() or verify_creem_signature(raw_body, creem_signature)
    except ValueError:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfiguration",
            detail="Creem webhook secret is not configured",
            provider="creem",
            payload_hash=payload_hash,
        )
    if not valid:
        return _webhook_problem(
            request, 401,
            code="WEBHOOK_SIGNATURE_INVALID",
            title="Webhook signature verification failed",
            detail=None,
            provider="creem",
            payload_hash=payload_hash,
        )

    try:
        payload = _json.loads(raw_body)
        dedup_key = get_creem_dedup_key(payload)
    except (_json.JSONDecodeError, ValueError, AttributeError):
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_PAYLOAD",
            title="Invalid webhook payload",
            detail="Expected a Creem event with an id",
            provider="creem",
            payload_hash=payload_hash,
        )

    event_type = payload.get("eventType", "")
    logger.info(
        "WEBHOOK_RECEIVED",
        extra={"event": "webhook.received", "provider": "creem", "type": event_type, "payload_hash": payload_hash},
    )

    async def handle() -> str:
        obj = payload.get("object")
        if event_type != "checkout.completed" or not isinstance(obj, dict):
            return "ignored"
        subscription_id = _subscription_id(obj.get("metadata"))
        if subscription_id is None:
            return "ignored"
        order = obj.get("order") if isinstance(obj.get("order"), dict) else {}
        sub = get_subscription(system_scope(db), subscription_id)
        amount = order.get("amount", obj.get("amount"))
        paid = int(amount) if isinstance(amount, (int, float)) else sub.amount_cents
        payment_id = sub.payment_id or obj.get("id")
        return _confirm(db, subscription_id, payment_id, "creem", paid)

    return await _run_deduped(request, db, "creem", dedup_key, payload_hash, handle)


# ============================================================================
# Epay
# ============================================================================


@router.get("/epay/notify")
async def epay_notify(request: Request, db: Session = Depends(get_db)):
    """Epay asynchronous notify. The gateway expects the literal body "success"."""
    params = dict(request.query_params)
    payload_hash = payload_hash_bytes(str(request.url.query).encode("utf-8"))

    try:
        gateway = get_epay_gateway()
    except (KeyError, ValueError):
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfiguration",
            detail="Epay is not configured",
            provider="epay",
            payload_hash=payload_hash,
        )
    if not gateway.verify_notify(params):
        logger.warning(
            "WEBHOOK_SIGNATURE_INVALID",
            extra={"event": "webhook.signature_invalid", "provider": "epay", "payload_hash": payload_hash},
        )
        return PlainTextResponse("fail")

    trade_no = params.get("out_trade_no", "")
    if params.get("trade_status") != EPAY_SUCCESS or not trade_no:
        return PlainTextResponse("success")

    dedup_key = get_epay_dedup_key(params)

    async def handle() -> str:
        sub = system_scope(db).first(Subscription, Subscription.payment_id == trade_no)
        if sub is None:
            logger.error(
                "Subscription not found for epay trade",
                extra={"event": "epay.notify.unknown_trade", "trade_no": trade_no},
            )
            return "ignored"
        return _confirm(db, sub.id, trade_no, "epay", paid_cents(params, sub.amount_cents))

    result = await _run_deduped(request, db, "epay", dedup_key, payload_hash, handle)
    if isinstance(result, JSONResponse):
        return result
    return PlainTextResponse("success")
