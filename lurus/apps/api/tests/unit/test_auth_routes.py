"""Session plane: password login, registration and phone OTP flows."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from lurus_api.config.options import option_store
from lurus_api.credentials.invitations import create_codes
from lurus_api.credentials.verification import (
    PURPOSE_PHONE_BIND,
    PURPOSE_PHONE_LOGIN,
    PURPOSE_PHONE_RESET,
    verification_codes,
)
from lurus_api.db.models import DEFAULT_TENANT_ID, InvitationCode, User, UserStatus
from lurus_api.entitlements.store import get_user_by_phone
from lurus_api.main import app
from lurus_api.notify.sms import get_sms_client
from lurus_api.tenancy.scoped import tenant_scope

PHONE = "13800138000"


class FakeSms:
    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []

    async def send(self, phone: str, template_code: str, template_param: dict) -> None:
        self.sent.append((phone, template_code, template_param))


@pytest.fixture
def sms_enabled(monkeypatch):
    monkeypatch.setenv("SMS_ENABLED", "true")


@pytest.fixture
def fake_sms():
    sms = FakeSms()
    app.dependency_overrides[get_sms_client] = lambda: sms
    yield sms
    app.dependency_overrides.pop(get_sms_client, None)


# ── password login ────────────────────────────────────────────────────────────


def test_password_login_sets_session_cookie(client: TestClient, user: User):
    response = client.post("/api/user/login", json={"username": "alice", "password": "s3cret-pass"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["username"] == "alice"
    assert "session" in response.cookies

    me = client.get("/api/user/self")
    assert me.status_code == 200
    assert me.json()["data"]["id"] == user.id


def test_wrong_password_is_auth_failed(client: TestClient, user: User):
    response = client.post("/api/user/login", json={"username": "alice", "password": "nope-nope"})

    assert response.status_code == 401
    assert response.json() == {
        "success": False,
        "message": "Invalid username or password",
        "error_code": "AUTH_FAILED",
        "data": None,
    }


def test_unknown_user_gets_same_error(client: TestClient):
    response = client.post("/api/user/login", json={"username": "ghost", "password": "whatever1"})

    assert response.status_code == 401
    assert response.json()["message"] == "Invalid username or password"


def test_disabled_user_cannot_login(client: TestClient, db_session: Session, user: User):
    user.status = UserStatus.DISABLED
    db_session.commit()

    response = client.post("/api/user/login", json={"username": "alice", "password": "s3cret-pass"})

    assert response.status_code == 401
    assert response.json()["error_code"] == "USER_DISABLED"


def test_disabled_user_with_wrong_password_is_still_disabled(client: TestClient, db_session: Session, user: User):
    user.status = UserStatus.DISABLED
    db_session.commit()

    response = client.post("/api/user/login", json={"username": "alice", "password": "nope-nope"})

    assert response.status_code == 401
    assert response.json()["error_code"] == "USER_DISABLED"


def test_self_requires_session(client: TestClient):
    response = client.get("/api/user/self")

    assert response.status_code == 401
    assert response.json()["error_code"] == "AUTH_FAILED"


def test_tenant_slug_login_is_scoped(client: TestClient, factory):
    acme = factory.tenant("acme")
    factory.user("carol", tenant_id=acme.id)

    assert client.post("/api/user/login", json={"username": "carol", "password": "s3cret-pass"}).status_code == 401
    response = client.post("/api/t/acme/user/login", json={"username": "carol", "password": "s3cret-pass"})
    assert response.status_code == 200
    assert response.json()["data"]["tenant_id"] == acme.id


# ── registration ──────────────────────────────────────────────────────────────


def test_register_open_mode(client: TestClient, db_session: Session):
    response = client.post(
        "/api/user/register",
        json={"username": "newbie", "password": "password123", "email": "n@example.com"},
    )

    assert response.status_code == 200
    assert response.json()["data"]["username"] == "newbie"
    login = client.post("/api/user/login", json={"username": "newbie", "password": "password123"})
    assert login.status_code == 200


def test_register_duplicate_username(client: TestClient, user: User):
    response = client.post("/api/user/register", json={"username": "alice", "password": "password123"})

    assert response.status_code == 409
    assert response.json()["error_code"] == "USER_EXISTS"


def test_register_closed(client: TestClient):
    option_store.apply_values({"RegistrationMode": "closed"})

    response = client.post("/api/user/register", json={"username": "newbie", "password": "password123"})

    assert response.status_code == 403


def test_invite_only_consumes_code(client: TestClient, db_session: Session):
    option_store.apply_values({"RegistrationMode": "invite_only"})
    code = create_codes(db_session, count=1, created_by=0)[0].code

    missing = client.post("/api/user/register", json={"username": "newbie", "password": "password123"})
    assert missing.status_code == 400

    ok = client.post(
        "/api/user/register",
        json={"username": "newbie", "password": "password123", "invitation_code": code},
    )
    assert ok.status_code == 200

    reused = client.post(
        "/api/user/register",
        json={"username": "second", "password": "password123", "invitation_code": code},
    )
    assert reused.status_code == 409
    assert reused.json()["message"] == "invitation code already used"
    row = db_session.query(InvitationCode).filter_by(code=code).one()
    assert row.used_by == ok.json()["data"]["id"]


def test_invite_only_rejects_expired_code(client: TestClient, db_session: Session):
    option_store.apply_values({"RegistrationMode": "invite_only"})
    issued = datetime.now(timezone.utc) - timedelta(hours=2)
    code = create_codes(db_session, count=1, created_by=0, expires_in=3600, now=issued)[0].code

    response = client.post(
        "/api/user/register",
        json={"username": "latecomer", "password": "password123", "invitation_code": code},
    )

    assert response.status_code == 400
    assert response.json()["message"] == "invitation code expired"


def test_register_with_email_verification(client: TestClient):
    option_store.apply_values({"EmailVerificationEnabled": "true"})
    verification_codes.register("v", "n@example.com", "424242")

    bad = client.post(
        "/api/user/register",
        json={"username": "newbie", "password": "password123", "email": "n@example.com", "verification_code": "000000"},
    )
    assert bad.status_code == 400

    verification_codes.register("v", "n@example.com", "424242")
    good = client.post(
        "/api/user/register",
        json={"username": "newbie", "password": "password123", "email": "n@example.com", "verification_code": "424242"},
    )
    assert good.status_code == 200


# ── phone OTP ─────────────────────────────────────────────────────────────────


def test_sms_login_disabled_without_flag(client: TestClient):
    verification_codes.register(PURPOSE_PHONE_LOGIN, PHONE, "123456")

    response = client.post("/api/user/login/sms", json={"phone": PHONE, "code": "123456"})

    assert response.status_code == 400


def test_sms_login_existing_user(client: TestClient, factory, sms_enabled):
    existing = factory.user("phoneuser", phone=PHONE)
    verification_codes.register(PURPOSE_PHONE_LOGIN, PHONE, "123456")

    response = client.post("/api/user/login/sms", json={"phone": PHONE, "code": "123456"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["id"] == existing.id
    assert data["is_new_user"] is False
    assert "session" in response.cookies


def test_sms_login_auto_registers(client: TestClient, db_session: Session, sms_enabled):
    option_store.apply_values({"SMSAutoRegister": "true"})
    verification_codes.register(PURPOSE_PHONE_LOGIN, PHONE, "123456")

    response = client.post("/api/user/login/sms", json={"phone": PHONE, "code": "123456"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["is_new_user"] is True
    assert data["username"] == f"u{PHONE}"
    created = get_user_by_phone(tenant_scope(db_session, DEFAULT_TENANT_ID), PHONE)
    assert created.phone_verified is True
    assert created.password_hash is None

    replay = client.post("/api/user/login/sms", json={"phone": PHONE, "code": "123456"})
    assert replay.status_code == 400
    assert replay.json()["message"] == "Invalid or expired verification code"


def test_sms_login_unknown_phone_without_auto_register(client: TestClient, sms_enabled):
    verification_codes.register(PURPOSE_PHONE_LOGIN, PHONE, "123456")

    response = client.post("/api/user/login/sms", json={"phone": PHONE, "code": "123456"})

    assert response.status_code == 404
    assert response.json()["error_code"] == "USER_NOT_FOUND"


def test_sms_auto_register_blocked_in_invite_only(client: TestClient, sms_enabled):
    option_store.apply_values({"SMSAutoRegister": "true", "RegistrationMode": "invite_only"})
    verification_codes.register(PURPOSE_PHONE_LOGIN, PHONE, "123456")

    response = client.post("/api/user/login/sms", json={"phone": PHONE, "code": "123456"})

    assert response.status_code == 403


def test_sms_login_wrong_code(client: TestClient, factory, sms_enabled):
    factory.user("phoneuser", phone=PHONE)
    verification_codes.register(PURPOSE_PHONE_LOGIN, PHONE, "123456")

    response = client.post("/api/user/login/sms", json={"phone": PHONE, "code": "654321"})

    assert response.status_code == 400
    assert response.json()["error_code"] == "VALIDATION_FAILED"


def test_send_sms_code_stores_after_delivery(client: TestClient, sms_enabled, fake_sms):
    option_store.apply_values({"SMSTemplateDefault": "SMS_0001"})

    response = client.post("/api/verification/sms", json={"phone": PHONE, "purpose": "login"})

    assert response.status_code == 200
    assert len(fake_sms.sent) == 1
    phone, template, params = fake_sms.sent[0]
    assert (phone, template) == (PHONE, "SMS_0001")
    assert verification_codes.verify(PURPOSE_PHONE_LOGIN, PHONE, params["code"])


def test_send_sms_code_cooldown(client: TestClient, sms_enabled, fake_sms):
    option_store.apply_values({"SMSTemplateDefault": "SMS_0001"})

    assert client.post("/api/verification/sms", json={"phone": PHONE}).status_code == 200
    again = client.post("/api/verification/sms", json={"phone": PHONE})

    assert again.status_code == 429
    assert again.json()["error_code"] == "RATE_LIMITED"
    assert int(again.headers["Retry-After"]) > 0
    assert len(fake_sms.sent) == 1


def test_send_sms_code_without_template(client: TestClient, sms_enabled, fake_sms):
    response = client.post("/api/verification/sms", json={"phone": PHONE})

    assert response.status_code == 500
    assert fake_sms.sent == []


def test_bind_phone(client: TestClient, factory, user: User, sms_enabled):
    factory.login(client, user)
    verification_codes.register(PURPOSE_PHONE_BIND, PHONE, "777777")

    response = client.post("/api/user/bind/phone", json={"phone": PHONE, "code": "777777"})

    assert response.status_code == 200
    assert response.json()["data"]["phone"] == PHONE


def test_reset_password_by_phone(client: TestClient, factory, sms_enabled):
    factory.user("phoneuser", phone=PHONE)
    verification_codes.register(PURPOSE_PHONE_RESET, PHONE, "888888")

    response = client.post(
        "/api/user/reset/phone",
        json={"phone": PHONE, "code": "888888", "new_password": "brand-new-pass"},
    )
    assert response.status_code == 200

    login = client.post("/api/user/login", json={"username": "phoneuser", "password": "brand-new-pass"})
    assert login.status_code == 200


def test_logout_clears_cookie(client: TestClient, factory, user: User):
    factory.login(client, user)

    response = client.post("/api/user/logout")

    assert response.status_code == 200
    assert client.get("/api/user/self").status_code == 401
