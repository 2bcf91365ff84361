"""Typed per-tenant configuration.

Values are stored as text with a declared type (string, int, bool, float,
json). Defaults are declared in tenant_defaults.yaml and seeded into every
new tenant. System keys (is_system) are read-only through the tenant path;
only platform-admin callers may change them.
"""

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional, Sequence

import yaml

from lurus_api.db.models import TenantConfig
from lurus_api.errors import ForbiddenError, NotFoundError, ValidationFailedError
from lurus_api.tenancy.scoped import TenantScope

logger = logging.getLogger(__name__)

CONFIG_TYPES = frozenset({"string", "int", "bool", "float", "json"})

DEFAULTS_PATH = Path(__file__).parent / "tenant_defaults.yaml"


@dataclass(frozen=True)
class ConfigDefault:
    key: str
    value: str
    type: str
    is_system: bool
    description: str


def encode_value(value: Any, value_type: str) -> str:
    """Render a Python value into its stored text form.

    Raises:
        ValidationFailedError: If the value does not fit the declared type
    """
    if value_type not in CONFIG_TYPES:
        raise ValidationFailedError(f"Unsupported config type: {value_type}")
    try:
        if value_type == "json":
            return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        if value_type == "bool":
            if isinstance(value, str):
                return "true" if value.strip().lower() in {"true", "1", "yes"} else "false"
            return "true" if value else "false"
        if value_type == "int":
            return str(int(value))
        if value_type == "float":
            return repr(float(value))
        return str(value)
    except (TypeError, ValueError) as e:
        raise ValidationFailedError(f"Value does not match type {value_type}: {e}") from e


def decode_value(raw: str, value_type: str) -> Any:
    if value_type == "int":
        return int(raw)
    if value_type == "float":
        return float(raw)
    if value_type == "bool":
        return raw.strip().lower() in {"true", "1", "yes"}
    if value_type == "json":
        return json.loads(raw) if raw else None
    return raw


@lru_cache(maxsize=1)
def load_default_configs(path: Path = DEFAULTS_PATH) -> tuple[ConfigDefault, ...]:
    """Load and flatten the YAML defaults (section.key → ConfigDefault)."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    defaults: list[ConfigDefault] = []
    for section, entries in data.items():
        for name, entry in (entries or {}).items():
            value_type = entry.get("type", "string")
            defaults.append(
                ConfigDefault(
                    key=f"{section}.{name}",
                    value=encode_value(entry.get("value"), value_type),
                    type=value_type,
                    is_system=bool(entry.get("system", False)),
                    description=entry.get("description", ""),
                )
            )
    return tuple(defaults)


class TenantConfigService:
    """Config accessors bound to one tenant scope."""

    def __init__(self, scope: TenantScope):
        if scope.is_system:
            raise ValueError("TenantConfigService requires a tenant-bound scope")
        self.scope = scope

    def get(self, key: str) -> Optional[TenantConfig]:
        return self.scope.first(TenantConfig, TenantConfig.key == key)

    def get_value(self, key: str, default: Any = None) -> Any:
        row = self.get(key)
        if row is None:
            return default
        try:
            return decode_value(row.value, row.type)
        except (ValueError, json.JSONDecodeError):
            logger.warning(
                "Tenant config value failed to decode",
                extra={"event": "tenant_config.decode_failed", "key": key, "type": row.type},
            )
            return default

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get_value(key, default)
        return int(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else default

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get_value(key, default)
        return value if isinstance(value, bool) else default

    def get_float(self, key: str, default: float = 0.0) -> float:
        value = self.get_value(key, default)
        return float(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else default

    def get_string(self, key: str, default: str = "") -> str:
        row = self.get(key)
        return row.value if row is not None else default

    def get_json(self, key: str, default: Any = None) -> Any:
        return self.get_value(key, default)

    def set(
        self,
        key: str,
        value: Any,
        value_type: Optional[str] = None,
        *,
        description: Optional[str] = None,
        allow_system: bool = False,
    ) -> TenantConfig:
        """Create or update a config value and commit.

        Raises:
            ForbiddenError: If the key is a system key and allow_system is False
            ValidationFailedError: If the value does not match the type
        """
        row = self.get(key)
        if row is not None and row.is_system and not allow_system:
            raise ForbiddenError(f"Config {key} is read-only")

        resolved_type = value_type or (row.type if row is not None else "string")
        encoded = encode_value(value, resolved_type)

        if row is None:
            row = TenantConfig(
                key=key,
                value=encoded,
                type=resolved_type,
                description=description or "",
            )
            self.scope.add(row)
        else:
            row.value = encoded
            row.type = resolved_type
            if description is not None:
                row.description = description
        self.scope.commit()

        logger.info(
            "Tenant config updated",
            extra={"event": "tenant_config.set", "key": key, "type": resolved_type},
        )
        return row

    def list(self, include_system: bool = True) -> Sequence[TenantConfig]:
        criteria = [] if include_system else [TenantConfig.is_system.is_(False)]
        return self.scope.all(TenantConfig, *criteria, order_by=TenantConfig.key)

    def get_by_prefix(self, prefix: str) -> Sequence[TenantConfig]:
        return self.scope.all(
            TenantConfig, TenantConfig.key.startswith(prefix, autoescape=True), order_by=TenantConfig.key
        )

    def delete(self, key: str, *, allow_system: bool = False) -> None:
        row = self.get(key)
        if row is None:
            raise NotFoundError(f"Config {key} not found")
        if row.is_system and not allow_system:
            raise ForbiddenError(f"Config {key} is read-only")
        self.scope.session.delete(row)
        self.scope.commit()

    def init_defaults(self, *, commit: bool = True) -> int:
        """Insert every default key missing for this tenant.

        Returns:
            Number of rows inserted
        """
        existing = {row.key for row in self.list(include_system=True)}
        inserted = 0
        for default in load_default_configs():
            if default.key in existing:
                continue
            self.scope.add(
                TenantConfig(
                    key=default.key,
                    value=default.value,
                    type=default.type,
                    is_system=default.is_system,
                    description=default.description,
                )
            )
            inserted += 1
        if commit:
            self.scope.commit()
        else:
            self.scope.flush()
        return inserted

    def copy_to(self, target: "TenantConfigService", *, commit: bool = True) -> int:
        """Copy every config of this tenant into another tenant (missing keys only)."""
        existing = {row.key for row in target.list(include_system=True)}
        copied = 0
        for row in self.list(include_system=True):
            if row.key in existing:
                continue
            target.scope.add(
                TenantConfig(
                    key=row.key,
                    value=row.value,
                    type=row.type,
                    is_system=row.is_system,
                    is_encrypted=row.is_encrypted,
                    description=row.description,
                )
            )
            copied += 1
        if commit:
            target.scope.commit()
        return copied
