"""User creation in the entitlement store."""

import pytest
from sqlalchemy.orm import Session

import lurus_api.entitlements.store as store
from lurus_api.db.models import DEFAULT_TENANT_ID, User
from lurus_api.errors import ConflictError, ErrorCode
from lurus_api.tenancy.scoped import tenant_scope
from lurus_api.tenancy.tenants import count_users


@pytest.fixture
def lookup_misses_once(monkeypatch):
    """Username lookup that misses the first time, as when a concurrent insert lands after it."""
    real_lookup = store.get_user_by_username
    calls = []

    def lookup(scope, username):
        calls.append(username)
        return None if len(calls) == 1 else real_lookup(scope, username)

    monkeypatch.setattr(store, "get_user_by_username", lookup)
    return calls


def test_idempotent_create_returns_user_inserted_concurrently(db_session: Session, user: User, lookup_misses_once):
    scope = tenant_scope(db_session, DEFAULT_TENANT_ID)

    created, is_duplicate = store.create_user(
        scope, username="alice", password="password123", idempotency_key="req-1"
    )

    assert is_duplicate is True
    assert created.id == user.id
    assert count_users(db_session, DEFAULT_TENANT_ID) == 1


def test_concurrent_create_without_idempotency_key_conflicts(db_session: Session, user: User, lookup_misses_once):
    scope = tenant_scope(db_session, DEFAULT_TENANT_ID)

    with pytest.raises(ConflictError) as exc_info:
        store.create_user(scope, username="alice", password="password123")

    assert exc_info.value.code == ErrorCode.USER_EXISTS
    assert lookup_misses_once == ["alice"]
