"""Database session management."""

from typing import Generator

from sqlalchemy.orm import Session

from lurus_api.db.engine import build_engine, build_sessionmaker, resolve_database_url

engine = build_engine(resolve_database_url())

SessionLocal = build_sessionmaker(engine)


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session; closed when the response is sent."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
