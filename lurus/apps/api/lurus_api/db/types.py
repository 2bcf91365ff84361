"""Portable column types.

UTCDateTime stores timezone-aware UTC datetimes. PostgreSQL keeps the zone
natively (timestamptz); SQLite drops it, so values coming back without tzinfo
are re-tagged as UTC. Naive datetimes are rejected on write.

IdInteger is BIGINT on PostgreSQL and INTEGER on SQLite, where only INTEGER
PRIMARY KEY autoincrements.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, Integer
from sqlalchemy.types import TIMESTAMP, TypeDecorator

IdInteger = BigInteger().with_variant(Integer(), "sqlite")


class UTCDateTime(TypeDecorator):
    impl = TIMESTAMP(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
