"""Tenant-scoped data access handle.

Every read built through a TenantScope carries `tenant_id = :bound` in its
WHERE clause, every bulk UPDATE is filtered the same way, and every object
added through it is stamped with the bound tenant. The identity map is never
consulted for scoped models (no Session.get), so an object loaded for one
tenant cannot leak to a handle bound to another.

system_scope() is the single escape hatch: it applies no tenant filter and is
reserved for platform-admin code paths and background loops.
"""

from typing import Any, Optional, Sequence, TypeVar

from sqlalchemy import Select, func, select, update
from sqlalchemy.orm import Session

from lurus_api.db.models import (
    QuotaLog,
    RelayToken,
    Subscription,
    TenantConfig,
    User,
    UserIdentityMapping,
)

M = TypeVar("M")

TENANT_SCOPED_MODELS: frozenset[type] = frozenset({
    User,
    UserIdentityMapping,
    Subscription,
    RelayToken,
    QuotaLog,
    TenantConfig,
})


class CrossTenantWriteError(RuntimeError):
    """Raised when an object bound to another tenant is added to a scope."""


class TenantScope:
    """Session wrapper that injects the tenant predicate.

    Args:
        db: Underlying SQLAlchemy session (shared with the request)
        tenant_id: Bound tenant, or None for the system scope
    """

    def __init__(self, db: Session, tenant_id: Optional[str]):
        self._db = db
        self._tenant_id = tenant_id

    @property
    def tenant_id(self) -> Optional[str]:
        return self._tenant_id

    @property
    def is_system(self) -> bool:
        return self._tenant_id is None

    @property
    def session(self) -> Session:
        return self._db

    def _criteria(self, model: type, include_deleted: bool) -> list[Any]:
        criteria: list[Any] = []
        if self._tenant_id is not None and model in TENANT_SCOPED_MODELS:
            criteria.append(model.tenant_id == self._tenant_id)
        if not include_deleted and hasattr(model, "deleted_at"):
            criteria.append(model.deleted_at.is_(None))
        return criteria

    # ── reads ────────────────────────────────────────────────────────────────

    def query(
        self,
        model: type[M],
        *criteria: Any,
        include_deleted: bool = False,
        for_update: bool = False,
    ) -> Select:
        stmt = select(model).where(*self._criteria(model, include_deleted), *criteria)
        if for_update:
            # Locked reads must see the committed row, not a stale identity-map copy
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return stmt

    def first(self, model: type[M], *criteria: Any, **kwargs: Any) -> Optional[M]:
        order_by = kwargs.pop("order_by", None)
        stmt = self.query(model, *criteria, **kwargs)
        if order_by is not None:
            stmt = stmt.order_by(*order_by) if isinstance(order_by, (list, tuple)) else stmt.order_by(order_by)
        return self._db.execute(stmt.limit(1)).scalars().first()

    def all(
        self,
        model: type[M],
        *criteria: Any,
        order_by: Any = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        **kwargs: Any,
    ) -> Sequence[M]:
        stmt = self.query(model, *criteria, **kwargs)
        if order_by is not None:
            stmt = stmt.order_by(*order_by) if isinstance(order_by, (list, tuple)) else stmt.order_by(order_by)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return self._db.execute(stmt).scalars().all()

    def count(self, model: type, *criteria: Any, include_deleted: bool = False) -> int:
        stmt = (
            select(func.count())
            .select_from(model)
            .where(*self._criteria(model, include_deleted), *criteria)
        )
        return int(self._db.execute(stmt).scalar_one())

    def get(self, model: type[M], pk: Any, *, for_update: bool = False) -> Optional[M]:
        """Primary-key lookup that still honours the tenant predicate."""
        return self.first(model, model.id == pk, for_update=for_update)

    # ── writes ───────────────────────────────────────────────────────────────

    def add(self, obj: Any) -> Any:
        model = type(obj)
        if model in TENANT_SCOPED_MODELS:
            current = getattr(obj, "tenant_id", None)
            if self._tenant_id is not None:
                if current is not None and current != self._tenant_id:
                    raise CrossTenantWriteError(
                        f"{model.__name__} bound to tenant {current} added to scope {self._tenant_id}"
                    )
                obj.tenant_id = self._tenant_id
            elif current is None:
                raise CrossTenantWriteError(f"{model.__name__} added to system scope without tenant_id")
        self._db.add(obj)
        return obj

    def update(self, model: type, *criteria: Any, values: dict[str, Any]) -> int:
        """Bulk UPDATE restricted to the bound tenant.

        Returns:
            Number of rows matched
        """
        stmt = (
            update(model)
            .where(*self._criteria(model, include_deleted=True), *criteria)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        return self._db.execute(stmt).rowcount

    def flush(self) -> None:
        self._db.flush()

    def commit(self) -> None:
        self._db.commit()

    def rollback(self) -> None:
        self._db.rollback()

    def refresh(self, obj: Any) -> None:
        self._db.refresh(obj)


def tenant_scope(db: Session, tenant_id: str) -> TenantScope:
    if not tenant_id:
        raise ValueError("tenant_id is required for a tenant scope")
    return TenantScope(db, tenant_id)


def system_scope(db: Session) -> TenantScope:
    """Unfiltered handle for platform-admin paths and background loops."""
    return TenantScope(db, None)
