"""Pytest configuration and fixtures."""

import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api

# Must be set before lurus_api.db.session builds its engine
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LURUS_BCRYPT_ROUNDS", "4")
os.environ.setdefault("LURUS_JSON_LOGS", "false")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-0123456789abcdef")
# Keep service-key usage writes in memory (no writer threads against the app engine)
os.environ["BATCH_UPDATE_ENABLED"] = "true"

from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from lurus_api.auth.service_key_auth import key_usage_recorder
from lurus_api.auth.session_auth import issue_session_token
from lurus_api.config.options import option_store
from lurus_api.credentials.api_keys import create_api_key
from lurus_api.credentials.relay_tokens import create_token
from lurus_api.credentials.verification import send_limiter, verification_codes
from lurus_api.db.models import DEFAULT_TENANT_ID, Base, Tenant, User, UserRole
from lurus_api.db.session import get_db
from lurus_api.entitlements.store import provision_user
from lurus_api.main import app
from lurus_api.tenancy.scoped import tenant_scope
from lurus_api.tenancy.tenants import create_tenant, ensure_default_tenant

TEST_PASSWORD = "s3cret-pass"


def _sqlite_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite defers BEGIN; take over transaction control so SAVEPOINT works
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture(scope="function")
def db_session() -> Session:
    """Fresh in-memory database with the default tenant seeded."""
    engine = _sqlite_engine()
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()
    ensure_default_tenant(session)

    try:
        yield session
        session.rollback()
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state():
    """Options, OTP codes and send throttles are process-wide."""
    option_store.apply_values({})
    verification_codes.clear()
    send_limiter.clear()
    yield
    option_store.apply_values({})
    verification_codes.clear()
    send_limiter.clear()
    with key_usage_recorder._lock:
        key_usage_recorder._pending.clear()


@pytest.fixture
def client(db_session: Session):
    """TestClient with db_session dependency override."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close - db_session fixture handles it

    app.dependency_overrides[get_db] = override_get_db
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()


# ── factories ─────────────────────────────────────────────────────────────────


class Factory:
    """Row builders bound to the test session."""

    def __init__(self, db: Session):
        self.db = db

    def user(
        self,
        username: str = "alice",
        *,
        tenant_id: str = DEFAULT_TENANT_ID,
        role: int = UserRole.COMMON,
        password: Optional[str] = TEST_PASSWORD,
        email: str = "",
        phone: str = "",
        quota: int = 0,
    ) -> User:
        scope = tenant_scope(self.db, tenant_id)
        user = provision_user(
            scope,
            username=username,
            password=password,
            email=email,
            phone=phone,
            phone_verified=bool(phone),
            role=role,
        )
        user.quota = quota
        scope.commit()
        return user

    def tenant(self, slug: str, **kwargs) -> Tenant:
        return create_tenant(self.db, slug=slug, name=slug.title(), **kwargs)

    def service_key(self, scopes: list[str], *, tenant_id: Optional[str] = None) -> str:
        """Raw lurus_ik_ key; tenant_id=None issues a platform-wide key."""
        _, raw = create_api_key(
            self.db,
            name=f"svc-{tenant_id or 'platform'}",
            scopes=scopes,
            created_by=0,
            actor_role=UserRole.ROOT,
            tenant_id=tenant_id,
        )
        return raw

    def relay_token(self, user: User, *, name: str = "default", unlimited: bool = True, remain_quota: int = 0) -> str:
        _, raw, _ = create_token(
            tenant_scope(self.db, user.tenant_id),
            user.id,
            name,
            unlimited_quota=unlimited,
            remain_quota=remain_quota,
        )
        return raw

    @staticmethod
    def login(client: TestClient, user: User) -> None:
        """Attach a signed session cookie for user."""
        client.cookies.set(
            "session", issue_session_token(user.id, user.tenant_id), domain="testserver.local"
        )


@pytest.fixture
def factory(db_session: Session) -> Factory:
    return Factory(db_session)


@pytest.fixture
def user(factory: Factory) -> User:
    return factory.user("alice", quota=10_000_000)
