"""Payment webhooks: signature checks, dedup ledger and payment application."""

import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from lurus_api.billing.creem import sign_creem_payload
from lurus_api.billing.epay import epay_sign
from lurus_api.db.models import DEFAULT_TENANT_ID, QuotaLog, Subscription, SubscriptionStatus, User, WebhookDedupEvent
from lurus_api.subscriptions.machine import create_pending
from lurus_api.tenancy.scoped import tenant_scope

EPAY_KEY = "epay-merchant-key"
STRIPE_SECRET = "whsec_test_secret"
CREEM_SECRET = "creem_test_secret"


def _credits(db: Session, user: User) -> int:
    return db.query(QuotaLog).filter_by(user_id=user.id, type="system").count()


def _pending(db: Session, user: User, method: str, payment_id: str = "") -> Subscription:
    sub = create_pending(tenant_scope(db, DEFAULT_TENANT_ID), user.id, "weekly", method)
    if payment_id:
        sub.payment_id = payment_id
        db.commit()
    return sub


# ── epay ──────────────────────────────────────────────────────────────────────


@pytest.fixture
def epay_env(monkeypatch):
    monkeypatch.setenv("EPAY_ADDRESS", "https://pay.example.com/submit.php")
    monkeypatch.setenv("EPAY_PID", "1001")
    monkeypatch.setenv("EPAY_KEY", EPAY_KEY)


def _epay_params(trade_no: str, money: str = "19.90") -> dict:
    params = {
        "pid": "1001",
        "trade_no": "2026030112000001",
        "out_trade_no": trade_no,
        "type": "alipay",
        "name": "Weekly",
        "money": money,
        "trade_status": "TRADE_SUCCESS",
    }
    params["sign"] = epay_sign(params, EPAY_KEY)
    params["sign_type"] = "MD5"
    return params


def test_epay_notify_applies_payment_once(client: TestClient, db_session: Session, epay_env, user: User):
    sub = _pending(db_session, user, "epay", payment_id="SUB1NO1TRADE")
    params = _epay_params("SUB1NO1TRADE")

    first = client.get("/webhooks/epay/notify", params=params)
    second = client.get("/webhooks/epay/notify", params=params)

    assert first.text == "success"
    assert second.text == "success"
    db_session.refresh(sub)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert _credits(db_session, user) == 1
    assert db_session.query(WebhookDedupEvent).filter_by(provider="epay").count() == 1


def test_epay_bad_signature_answers_fail(client: TestClient, db_session: Session, epay_env, user: User):
    sub = _pending(db_session, user, "epay", payment_id="SUB1NO1TRADE")
    params = _epay_params("SUB1NO1TRADE")
    params["money"] = "0.01"

    response = client.get("/webhooks/epay/notify", params=params)

    assert response.text == "fail"
    db_session.refresh(sub)
    assert sub.status == SubscriptionStatus.PENDING


def test_epay_unknown_trade_is_acknowledged(client: TestClient, epay_env):
    response = client.get("/webhooks/epay/notify", params=_epay_params("SUB9NO9UNKNOWN"))

    assert response.text == "success"


def test_epay_without_configuration(client: TestClient, monkeypatch):
    monkeypatch.delenv("EPAY_KEY", raising=False)

    response = client.get("/webhooks/epay/notify", params={"out_trade_no": "x"})

    assert response.status_code == 500
    assert response.json()["error_code"] == "WEBHOOK_PROVIDER_MISCONFIG"


# ── stripe ────────────────────────────────────────────────────────────────────


def _stripe_header(payload: str, secret: str = STRIPE_SECRET) -> str:
    ts = int(time.time())
    signature = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def _stripe_event(sub: Subscription, event_id: str = "evt_1") -> str:
    return json.dumps(
        {
            "id": event_id,
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_test_1",
                    "payment_intent": "pi_test_1",
                    "amount_total": sub.amount_cents,
                    "currency": "cny",
                    "metadata": {"type": "subscription", "subscription_id": str(sub.id)},
                }
            },
        }
    )


def test_stripe_missing_signature_header(client: TestClient):
    response = client.post("/webhooks/stripe", content=b"{}")

    assert response.status_code == 400
    assert response.headers["content-type"].startswith("application/problem+json")
    assert response.json()["error_code"] == "WEBHOOK_MISSING_HEADERS"


def test_stripe_without_secret_is_misconfig(client: TestClient, monkeypatch):
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)

    response = client.post("/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=abc"})

    assert response.status_code == 500
    assert response.headers["Retry-After"] == "60"


def test_stripe_bad_signature(client: TestClient, monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", STRIPE_SECRET)
    payload = '{"id": "evt_x"}'

    response = client.post(
        "/webhooks/stripe",
        content=payload.encode(),
        headers={"Stripe-Signature": _stripe_header(payload, secret="whsec_other")},
    )

    assert response.status_code == 401
    assert response.json()["error_code"] == "WEBHOOK_SIGNATURE_INVALID"


def test_stripe_checkout_completed(client: TestClient, db_session: Session, monkeypatch, user: User):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", STRIPE_SECRET)
    sub = _pending(db_session, user, "stripe", payment_id="cs_test_1")
    payload = _stripe_event(sub)

    first = client.post("/webhooks/stripe", content=payload.encode(), headers={"Stripe-Signature": _stripe_header(payload)})
    second = client.post("/webhooks/stripe", content=payload.encode(), headers={"Stripe-Signature": _stripe_header(payload)})

    assert first.json() == {"status": "processed"}
    assert second.json() == {"status": "already_processed"}
    db_session.refresh(sub)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.payment_id == "pi_test_1"
    assert _credits(db_session, user) == 1


def test_stripe_refund_event(client: TestClient, db_session: Session, monkeypatch, user: User):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", STRIPE_SECRET)
    sub = _pending(db_session, user, "stripe")
    paid = _stripe_event(sub)
    client.post("/webhooks/stripe", content=paid.encode(), headers={"Stripe-Signature": _stripe_header(paid)})

    refund = json.dumps(
        {"id": "evt_refund", "type": "charge.refunded", "data": {"object": {"payment_intent": "pi_test_1"}}}
    )
    response = client.post("/webhooks/stripe", content=refund.encode(), headers={"Stripe-Signature": _stripe_header(refund)})

    assert response.json() == {"status": "refunded"}
    db_session.refresh(sub)
    assert sub.status == SubscriptionStatus.REFUNDED


def test_stripe_refund_of_unknown_payment_is_ignored(client: TestClient, monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", STRIPE_SECRET)
    refund = json.dumps(
        {"id": "evt_refund_x", "type": "charge.refunded", "data": {"object": {"payment_intent": "pi_nobody"}}}
    )

    response = client.post("/webhooks/stripe", content=refund.encode(), headers={"Stripe-Signature": _stripe_header(refund)})

    assert response.status_code == 200
    assert response.json() == {"status": "ignored", "reason": "NOT_FOUND"}


# ── creem ─────────────────────────────────────────────────────────────────────


def _creem_event(sub: Subscription) -> bytes:
    return json.dumps(
        {
            "id": "evt_creem_1",
            "eventType": "checkout.completed",
            "object": {
                "id": "ch_creem_1",
                "order": {"amount": sub.amount_cents},
                "metadata": {"type": "subscription", "subscription_id": str(sub.id)},
            },
        }
    ).encode()


def test_creem_signed_checkout(client: TestClient, db_session: Session, monkeypatch, user: User):
    monkeypatch.setenv("CREEM_WEBHOOK_SECRET", CREEM_SECRET)
    sub = _pending(db_session, user, "creem", payment_id="ch_creem_1")
    body = _creem_event(sub)

    unsigned = client.post("/webhooks/creem", content=body)
    signed = client.post("/webhooks/creem", content=body, headers={"creem-signature": sign_creem_payload(body, CREEM_SECRET)})

    assert unsigned.status_code == 401
    assert signed.json() == {"status": "processed"}
    db_session.refresh(sub)
    assert sub.status == SubscriptionStatus.ACTIVE


def test_creem_test_mode_skips_signature(client: TestClient, db_session: Session, monkeypatch, user: User):
    monkeypatch.setenv("CREEM_TEST_MODE", "true")
    sub = _pending(db_session, user, "creem", payment_id="ch_creem_1")

    response = client.post("/webhooks/creem", content=_creem_event(sub))

    assert response.json() == {"status": "processed"}
