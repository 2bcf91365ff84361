"""Session-plane subscription endpoints and the plan catalogue."""

import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import lurus_api.routers.subscriptions as subscriptions_router
from lurus_api.billing.checkout import CheckoutSession
from lurus_api.config.options import option_store
from lurus_api.db.models import DEFAULT_TENANT_ID, Subscription, SubscriptionStatus, User
from lurus_api.errors import ValidationFailedError
from lurus_api.subscriptions.machine import grant
from lurus_api.subscriptions.plans import PLANS_OPTION_KEY, parse_catalogue, plan_catalogue
from lurus_api.tenancy.scoped import tenant_scope


@pytest.fixture
def logged_in(client: TestClient, factory, user: User) -> User:
    factory.login(client, user)
    return user


@pytest.fixture
def checkout_calls(monkeypatch):
    calls = []

    async def fake_checkout(method, sub, user):
        calls.append((method, sub.id, user.id))
        return CheckoutSession(payment_url=f"https://pay.example.com/{method}/{sub.id}", payment_id=f"ref_{sub.id}_{len(calls)}")

    monkeypatch.setattr(subscriptions_router, "create_checkout", fake_checkout)
    return calls


def _create(client: TestClient, plan_code: str = "weekly", method: str = "stripe") -> dict:
    response = client.post("/api/subscription", json={"plan_code": plan_code, "payment_method": method})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def test_plans_are_public(client: TestClient):
    response = client.get("/api/subscription/plans")

    codes = [plan["code"] for plan in response.json()["data"]]
    assert codes == ["weekly", "monthly", "quarterly", "yearly"]


def test_subscription_endpoints_require_session(client: TestClient):
    assert client.get("/api/subscription/self").status_code == 401
    assert client.post("/api/subscription", json={"plan_code": "weekly", "payment_method": "stripe"}).status_code == 401


def test_create_returns_payment_block(client: TestClient, logged_in: User):
    data = _create(client)

    assert data["subscription"]["status"] == SubscriptionStatus.PENDING
    assert data["payment"]["amount"] == 1990
    assert data["payment"]["currency"] == "CNY"


def test_create_rejects_bad_plan_and_method(client: TestClient, logged_in: User):
    bad_plan = client.post("/api/subscription", json={"plan_code": "forever", "payment_method": "stripe"})
    bad_method = client.post("/api/subscription", json={"plan_code": "weekly", "payment_method": "paypal"})

    assert bad_plan.status_code == 400
    assert bad_method.status_code == 400


def test_second_pending_conflicts(client: TestClient, logged_in: User):
    first = _create(client)

    response = client.post("/api/subscription", json={"plan_code": "monthly", "payment_method": "stripe"})

    assert response.status_code == 409
    assert response.json()["data"] == {"subscription_id": first["subscription"]["id"]}


def test_pay_records_payment_reference(client: TestClient, db_session: Session, logged_in: User, checkout_calls):
    sub_id = _create(client, method="epay")["subscription"]["id"]

    response = client.post(f"/api/subscription/{sub_id}/pay", json={"payment_method": "stripe"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["payment_url"] == f"https://pay.example.com/stripe/{sub_id}"
    assert checkout_calls == [("stripe", sub_id, logged_in.id)]
    row = db_session.get(Subscription, sub_id)
    db_session.refresh(row)
    assert row.payment_id == data["payment_id"]
    assert row.payment_method == "stripe"


def test_retry_payment_issues_new_reference(client: TestClient, logged_in: User, checkout_calls):
    sub_id = _create(client)["subscription"]["id"]

    first = client.post(f"/api/subscription/{sub_id}/pay").json()["data"]["payment_id"]
    second = client.post(f"/api/subscription/{sub_id}/retry-payment").json()["data"]["payment_id"]

    assert first != second
    status = client.get(f"/api/subscription/{sub_id}/status").json()["data"]
    assert status["payment_id"] == second
    assert status["status"] == SubscriptionStatus.PENDING


def test_cannot_pay_someone_elses_subscription(client: TestClient, factory, logged_in: User, checkout_calls):
    sub_id = _create(client)["subscription"]["id"]
    factory.login(client, factory.user("mallory"))

    response = client.post(f"/api/subscription/{sub_id}/pay")

    assert response.status_code == 404
    assert checkout_calls == []


def test_self_with_active_subscription_then_cancel(client: TestClient, db_session: Session, factory, logged_in: User):
    grant(tenant_scope(db_session, DEFAULT_TENANT_ID), logged_in.id, "weekly", 7, "test")

    me = client.get("/api/subscription/self").json()["data"]
    assert me["has_active"] is True
    assert me["subscription"]["plan_code"] == "weekly"
    assert me["quota"]["daily_quota"] == 500_000
    assert me["days_remaining"] in (6, 7)

    cancelled = client.post("/api/subscription/self/cancel")
    assert cancelled.json()["data"]["status"] == SubscriptionStatus.CANCELLED
    assert client.get("/api/subscription/self").json()["data"]["has_active"] is False

    history = client.get("/api/subscription/history").json()["data"]
    assert len(history) == 1


def test_cancel_without_subscription(client: TestClient, logged_in: User):
    response = client.post("/api/subscription/self/cancel")

    assert response.status_code == 404


# ── catalogue ─────────────────────────────────────────────────────────────────


def test_parse_catalogue_rejects_bad_input():
    with pytest.raises(ValidationFailedError):
        parse_catalogue("not json")
    with pytest.raises(ValidationFailedError):
        parse_catalogue([{"code": "x", "name": "X", "days": 0, "price_cents": 100}])
    with pytest.raises(ValidationFailedError):
        parse_catalogue(
            [
                {"code": "x", "name": "X", "days": 1, "price_cents": 100},
                {"code": "x", "name": "Y", "days": 2, "price_cents": 200},
            ]
        )


def test_catalogue_follows_option_and_falls_back_on_garbage():
    custom = [{"code": "trial", "name": "Trial", "days": 3, "price_cents": 0, "sort_order": 0}]
    option_store.apply_values({PLANS_OPTION_KEY: json.dumps(custom)})
    assert [p.code for p in plan_catalogue.all()] == ["trial"]

    option_store.apply_values({PLANS_OPTION_KEY: "[{broken"})
    assert "weekly" in [p.code for p in plan_catalogue.all()]


def test_disabled_plan_hidden_but_grantable():
    custom = [
        {"code": "weekly", "name": "Weekly", "days": 7, "price_cents": 1990},
        {"code": "legacy", "name": "Legacy", "days": 30, "price_cents": 990, "enabled": False},
    ]
    option_store.apply_values({PLANS_OPTION_KEY: json.dumps(custom)})

    assert [p.code for p in plan_catalogue.enabled()] == ["weekly"]
    assert plan_catalogue.get("legacy", include_disabled=True).days == 30
