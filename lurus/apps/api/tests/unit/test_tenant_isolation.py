"""Tenant isolation: scoped reads, stamped writes and request binding.

1. A scope never returns rows of another tenant (reads, counts, PK lookup)
2. Objects added through a scope are stamped with the bound tenant
3. Adding an object bound to another tenant raises CrossTenantWriteError
4. Bulk updates never touch other tenants
5. Same username may exist in two tenants
6. Service key bound to tenant B cannot read tenant A's users
7. X-Target-Tenant-ID requires a platform-wide key
"""

import pytest
from sqlalchemy.orm import Session

from lurus_api.db.models import DEFAULT_TENANT_ID, QuotaLog, TenantStatus, User
from lurus_api.entitlements.store import get_user, get_user_by_username, write_quota_log
from lurus_api.tenancy.scoped import CrossTenantWriteError, system_scope, tenant_scope
from lurus_api.tenancy.tenants import set_tenant_status


@pytest.fixture
def two_tenants(factory):
    other = factory.tenant("acme")
    alice = factory.user("alice", quota=100)
    bob = factory.user("bob", tenant_id=other.id, quota=200)
    return other, alice, bob


def test_scope_reads_only_bound_tenant(db_session: Session, two_tenants):
    other, alice, bob = two_tenants

    default_scope = tenant_scope(db_session, DEFAULT_TENANT_ID)
    acme_scope = tenant_scope(db_session, other.id)

    assert get_user(default_scope, alice.id) is not None
    assert get_user(default_scope, bob.id) is None
    assert get_user(acme_scope, alice.id) is None
    assert get_user(acme_scope, bob.id).username == "bob"

    assert default_scope.count(User) == 1
    assert acme_scope.count(User) == 1
    assert system_scope(db_session).count(User) == 2


def test_scope_stamps_tenant_on_add(db_session: Session, two_tenants):
    other, _, bob = two_tenants
    scope = tenant_scope(db_session, other.id)

    write_quota_log(scope, bob, "system", "manual", 5)
    scope.commit()

    log = system_scope(db_session).first(QuotaLog, QuotaLog.user_id == bob.id)
    assert log.tenant_id == other.id


def test_adding_foreign_object_raises(db_session: Session, two_tenants):
    other, alice, _ = two_tenants
    scope = tenant_scope(db_session, other.id)

    foreign = QuotaLog(tenant_id=DEFAULT_TENANT_ID, user_id=alice.id, type="system", content="x", quota_delta=1)
    with pytest.raises(CrossTenantWriteError):
        scope.add(foreign)


def test_system_scope_requires_explicit_tenant(db_session: Session):
    with pytest.raises(CrossTenantWriteError):
        system_scope(db_session).add(QuotaLog(user_id=1, type="system", content="x", quota_delta=1))


def test_bulk_update_is_tenant_filtered(db_session: Session, two_tenants):
    other, alice, bob = two_tenants

    matched = tenant_scope(db_session, other.id).update(User, values={"group": "vip"})
    db_session.commit()

    assert matched == 1
    db_session.refresh(alice)
    db_session.refresh(bob)
    assert alice.group != "vip"
    assert bob.group == "vip"


def test_same_username_in_two_tenants(db_session: Session, factory, two_tenants):
    other, alice, _ = two_tenants

    twin = factory.user("alice", tenant_id=other.id)

    assert twin.id != alice.id
    assert get_user_by_username(tenant_scope(db_session, other.id), "alice").id == twin.id
    assert get_user_by_username(tenant_scope(db_session, DEFAULT_TENANT_ID), "alice").id == alice.id


def test_tenant_bound_key_cannot_read_other_tenant(client, factory, two_tenants):
    other, alice, bob = two_tenants
    key = factory.service_key(["user:read"], tenant_id=other.id)

    response = client.get(f"/internal/user/{alice.id}", headers={"X-API-Key": key})
    assert response.status_code == 404
    assert response.json()["error_code"] == "USER_NOT_FOUND"

    response = client.get(f"/internal/user/{bob.id}", headers={"X-API-Key": key})
    assert response.status_code == 200
    assert response.json()["data"]["username"] == "bob"


def test_target_tenant_header_requires_platform_key(client, factory, two_tenants):
    other, _, bob = two_tenants
    bound_key = factory.service_key(["user:read"], tenant_id=DEFAULT_TENANT_ID)
    platform_key = factory.service_key(["user:read"])

    denied = client.get(
        f"/internal/user/{bob.id}",
        headers={"X-API-Key": bound_key, "X-Target-Tenant-ID": other.id},
    )
    assert denied.status_code == 403
    assert denied.json()["error_code"] == "FORBIDDEN"

    allowed = client.get(
        f"/internal/user/{bob.id}",
        headers={"X-API-Key": platform_key, "X-Target-Tenant-ID": other.id},
    )
    assert allowed.status_code == 200
    assert allowed.json()["data"]["id"] == bob.id


def test_disabled_tenant_refuses_requests(client, db_session: Session, factory, two_tenants):
    other, _, bob = two_tenants
    key = factory.service_key(["user:read"], tenant_id=other.id)
    set_tenant_status(db_session, other.id, TenantStatus.DISABLED)

    response = client.get(f"/internal/user/{bob.id}", headers={"X-API-Key": key})

    assert response.status_code == 403
    assert response.json()["error_code"] == "TENANT_DISABLED"
