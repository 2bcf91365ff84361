"""OIDC bearer plane: JWKS cache, ID token verification and claim mapping."""

import hashlib
import json
import time

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm
from sqlalchemy.orm import Session

import lurus_api.auth.oidc_auth as oidc_auth
from lurus_api.auth.oidc_auth import (
    CLAIM_ORG_DOMAIN,
    CLAIM_ORG_ID,
    CLAIM_ROLES,
    JWKSCache,
    OIDCClaims,
    OIDCVerifier,
    map_claims_to_principal,
    set_oidc_verifier,
)
from lurus_api.errors import AuthError, ErrorCode, ForbiddenError, NotFoundError
from lurus_api.tenancy.tenants import count_users, get_tenant_by_org

ISSUER = "https://auth.example.com"
KID = "key-1"


@pytest.fixture(scope="module")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def jwks_document(private_key) -> dict:
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": KID, "use": "sig", "alg": "RS256"})
    return {"keys": [jwk]}


@pytest.fixture
def fetches() -> list:
    return []


@pytest.fixture
def verifier(jwks_document, fetches) -> OIDCVerifier:
    def fetcher(uri: str) -> dict:
        fetches.append(uri)
        return jwks_document

    return OIDCVerifier(ISSUER, JWKSCache(f"{ISSUER}/oauth/v2/keys", fetcher=fetcher))


@pytest.fixture
def auto_create(monkeypatch):
    monkeypatch.setenv("ZITADEL_AUTO_CREATE_TENANT", "true")
    monkeypatch.setenv("ZITADEL_AUTO_CREATE_USER", "true")


def _token(private_key, *, kid: str = KID, issuer: str = ISSUER, exp_offset: int = 300, **claims) -> str:
    now = int(time.time())
    payload = {
        "sub": "zitadel-user-1",
        "iss": issuer,
        "iat": now,
        "exp": now + exp_offset,
        "email": "carol@acme.example.com",
        "preferred_username": "carol@acme.example.com",
        "name": "Carol",
        CLAIM_ORG_ID: "org-123",
        CLAIM_ORG_DOMAIN: "acme.example.com",
        CLAIM_ROLES: {"admin": {"org-123": "acme.example.com"}},
    }
    payload.update(claims)
    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


# ── verification ──────────────────────────────────────────────────────────────


def test_valid_token_yields_claims(verifier, private_key, fetches):
    claims = verifier.verify(_token(private_key))

    assert claims.sub == "zitadel-user-1"
    assert claims.org_id == "org-123"
    assert claims.roles == frozenset({"admin"})
    # First use refreshed the empty cache exactly once
    assert len(fetches) == 1
    verifier.verify(_token(private_key))
    assert len(fetches) == 1


def test_expired_token(verifier, private_key):
    with pytest.raises(AuthError) as exc_info:
        verifier.verify(_token(private_key, exp_offset=-60))
    assert exc_info.value.code == ErrorCode.EXPIRED


def test_wrong_issuer(verifier, private_key):
    with pytest.raises(AuthError) as exc_info:
        verifier.verify(_token(private_key, issuer="https://evil.example.com"))
    assert exc_info.value.code == ErrorCode.AUTH_FAILED


def test_unknown_kid_refreshes_then_fails(verifier, private_key, fetches):
    with pytest.raises(AuthError) as exc_info:
        verifier.verify(_token(private_key, kid="rotated"))
    assert exc_info.value.code == ErrorCode.INVALID_SIGNATURE
    assert len(fetches) == 1


def test_foreign_signature_rejected(verifier):
    other = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    with pytest.raises(AuthError) as exc_info:
        verifier.verify(_token(other))
    assert exc_info.value.code == ErrorCode.INVALID_SIGNATURE


def test_hs256_token_rejected(verifier):
    token = jwt.encode({"sub": "x", "iss": ISSUER, "exp": int(time.time()) + 60}, "secret", algorithm="HS256")

    with pytest.raises(AuthError):
        verifier.verify(token)


def test_failed_refresh_keeps_previous_keys(jwks_document):
    responses = [jwks_document]

    def flaky(uri: str) -> dict:
        if responses:
            return responses.pop()
        raise ValueError("bad json")

    cache = JWKSCache("https://auth.example.com/keys", fetcher=flaky)
    assert cache.refresh()
    assert not cache.refresh()
    assert cache.last_refresh_ok is False
    assert len(cache) == 1
    assert cache.get_key(KID) is not None


# ── claim mapping ─────────────────────────────────────────────────────────────


def _claims(**overrides) -> OIDCClaims:
    base = {
        "sub": "zitadel-user-1",
        "issuer": ISSUER,
        "email": "carol@acme.example.com",
        "preferred_username": "carol@acme.example.com",
        "name": "Carol",
        "org_id": "org-123",
        "org_domain": "acme.example.com",
    }
    base.update(overrides)
    return OIDCClaims(**base)


def test_unknown_org_without_auto_create(db_session: Session):
    with pytest.raises(ForbiddenError):
        map_claims_to_principal(db_session, _claims())


def test_missing_org_claim(db_session: Session, auto_create):
    with pytest.raises(AuthError):
        map_claims_to_principal(db_session, _claims(org_id=""))


def test_auto_create_tenant_and_user(db_session: Session, auto_create):
    principal = map_claims_to_principal(db_session, _claims())

    tenant = get_tenant_by_org(db_session, "org-123")
    assert tenant.slug == "acme-example-com"
    assert principal.tenant_id == tenant.id
    assert principal.username == "carol"

    again = map_claims_to_principal(db_session, _claims(name="Carol C."))
    assert again.user_id == principal.user_id


def test_unprovisioned_user_without_auto_create(db_session: Session, monkeypatch):
    monkeypatch.setenv("ZITADEL_AUTO_CREATE_TENANT", "true")

    with pytest.raises(NotFoundError) as exc_info:
        map_claims_to_principal(db_session, _claims())
    assert exc_info.value.code == ErrorCode.USER_NOT_FOUND


def test_concurrent_first_login_reuses_mapped_user(db_session: Session, auto_create, monkeypatch):
    first = map_claims_to_principal(db_session, _claims())
    lookups = []
    real_find = oidc_auth.find_mapping

    def mapped_too_late(scope, external_user_id):
        # The other login commits its mapping between our lookup and our insert
        lookups.append(external_user_id)
        return None if len(lookups) == 1 else real_find(scope, external_user_id)

    monkeypatch.setattr(oidc_auth, "find_mapping", mapped_too_late)

    second = map_claims_to_principal(db_session, _claims())

    assert second.user_id == first.user_id
    assert len(lookups) == 2
    assert count_users(db_session, first.tenant_id) == 1


def test_org_slug_collision_gets_suffix(db_session: Session, factory, auto_create):
    factory.tenant("acme-example-com")

    map_claims_to_principal(db_session, _claims())

    suffix = hashlib.sha256(b"org-123").hexdigest()[:6]
    assert get_tenant_by_org(db_session, "org-123").slug == f"acme-example-com-{suffix}"


# ── route ─────────────────────────────────────────────────────────────────────


@pytest.fixture
def installed(verifier):
    set_oidc_verifier(verifier)
    yield verifier
    set_oidc_verifier(None)


def test_oidc_self_route(client: TestClient, private_key, installed, auto_create):
    response = client.get("/api/oidc/self", headers={"Authorization": f"Bearer {_token(private_key)}"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["username"] == "carol"
    assert data["roles"] == ["admin"]


def test_oidc_route_rejects_relay_token(client: TestClient, installed):
    response = client.get("/api/oidc/self", headers={"Authorization": "Bearer sk-" + "a" * 48})

    assert response.status_code == 401
    assert response.json()["error_code"] == "UNKNOWN_PLANE"


def test_oidc_route_without_verifier(client: TestClient):
    response = client.get("/api/oidc/self", headers={"Authorization": "Bearer x.y.z"})

    assert response.status_code == 503
