"""Pytest configuration for the reaper loops."""

import os
import sys
from pathlib import Path

_APPS = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(_APPS / "reaper"))
sys.path.insert(0, str(_APPS / "api"))

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LURUS_BCRYPT_ROUNDS", "4")
os.environ.setdefault("LURUS_JSON_LOGS", "false")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from lurus_api.db.models import DEFAULT_TENANT_ID, Base, User
from lurus_api.entitlements.store import provision_user
from lurus_api.tenancy.scoped import tenant_scope
from lurus_api.tenancy.tenants import ensure_default_tenant
from lurus_reaper.loops.shutdown import shutdown_event


def _sqlite_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture(scope="function")
def db_session() -> Session:
    engine = _sqlite_engine()
    Base.metadata.create_all(engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    ensure_default_tenant(session)

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture(autouse=True)
def clear_shutdown():
    shutdown_event.clear()
    yield
    shutdown_event.clear()


@pytest.fixture
def make_user(db_session: Session):
    """Build users in the default tenant."""

    def _make(username: str, **fields) -> User:
        scope = tenant_scope(db_session, DEFAULT_TENANT_ID)
        user = provision_user(scope, username=username)
        for name, value in fields.items():
            setattr(user, name, value)
        scope.commit()
        return user

    return _make
