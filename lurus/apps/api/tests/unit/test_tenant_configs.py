"""Typed per-tenant configuration and tenant capacity."""

import pytest
from sqlalchemy.orm import Session

from lurus_api.errors import ForbiddenError, ValidationFailedError
from lurus_api.tenancy.configs import TenantConfigService
from lurus_api.tenancy.scoped import system_scope, tenant_scope
from lurus_api.tenancy.tenants import can_add_user


@pytest.fixture
def acme(factory):
    return factory.tenant("acme", max_users=2)


@pytest.fixture
def configs(db_session: Session, acme) -> TenantConfigService:
    return TenantConfigService(tenant_scope(db_session, acme.id))


def test_new_tenant_is_seeded_with_defaults(configs: TenantConfigService):
    assert configs.get_int("quota.new_user_quota") == 10000
    assert configs.get_float("billing.tax_rate") == pytest.approx(0.13)
    assert configs.get_string("billing.currency") == "CNY"
    assert configs.get_bool("quota.quota_reset_enabled", default=True) is False
    assert configs.get("security.max_login_attempts").is_system is True


def test_typed_getters_fall_back_on_type_mismatch(configs: TenantConfigService):
    configs.set("custom.label", "hello", "string")

    assert configs.get_int("custom.label", default=7) == 7
    assert configs.get_value("custom.missing", default="x") == "x"


def test_json_values_round_trip(configs: TenantConfigService):
    configs.set("custom.models", {"allow": ["gpt-4o"], "max": 3}, "json")

    assert configs.get_json("custom.models") == {"allow": ["gpt-4o"], "max": 3}


def test_type_mismatch_on_set_is_rejected(configs: TenantConfigService):
    with pytest.raises(ValidationFailedError):
        configs.set("quota.new_user_quota", "lots", "int")


def test_system_keys_are_read_only(configs: TenantConfigService):
    with pytest.raises(ForbiddenError):
        configs.set("security.session_timeout", 60)
    with pytest.raises(ForbiddenError):
        configs.delete("security.session_timeout")

    configs.set("security.session_timeout", 60, allow_system=True)
    assert configs.get_int("security.session_timeout") == 60


def test_prefix_listing(configs: TenantConfigService):
    keys = [row.key for row in configs.get_by_prefix("rate_limit.")]

    assert sorted(keys) == ["rate_limit.requests_per_day", "rate_limit.requests_per_minute"]


def test_copy_to_fills_only_missing_keys(db_session: Session, factory, configs: TenantConfigService):
    configs.set("custom.banner", "hi", "string")
    beta = factory.tenant("beta")
    target = TenantConfigService(tenant_scope(db_session, beta.id))
    target.set("billing.currency", "USD", "string")

    copied = configs.copy_to(target)

    assert copied == 1
    assert target.get_string("custom.banner") == "hi"
    assert target.get_string("billing.currency") == "USD"


def test_configs_are_tenant_local(db_session: Session, factory, configs: TenantConfigService):
    configs.set("custom.banner", "acme only", "string")
    beta = TenantConfigService(tenant_scope(db_session, factory.tenant("beta").id))

    assert beta.get("custom.banner") is None


def test_service_refuses_system_scope(db_session: Session):
    with pytest.raises(ValueError):
        TenantConfigService(system_scope(db_session))


def test_tenant_capacity(db_session: Session, factory, acme):
    assert can_add_user(db_session, acme)

    factory.user("a1", tenant_id=acme.id)
    factory.user("a2", tenant_id=acme.id)

    assert not can_add_user(db_session, acme)
