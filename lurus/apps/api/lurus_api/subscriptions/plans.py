"""
Subscription plan catalogue with JSON Schema validation.

The catalogue is stored as JSON in the `SubscriptionPlans` option. An empty
option means the built-in defaults (fixtures/default_plans.json).
"""

import json
import logging
import threading
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from jsonschema import ValidationError as JsonSchemaValidationError
from jsonschema import validate
from pydantic import BaseModel
from sqlalchemy.orm import Session

from lurus_api.config.options import OptionStore, option_store
from lurus_api.errors import NotFoundError, ValidationFailedError

logger = logging.getLogger(__name__)

FIXTURES_DIR = Path(__file__).parent / "fixtures"
SCHEMA_PATH = FIXTURES_DIR / "plan_catalogue_schema.json"
DEFAULTS_PATH = FIXTURES_DIR / "default_plans.json"

PLANS_OPTION_KEY = "SubscriptionPlans"


class SubscriptionPlan(BaseModel):
    """One purchasable plan"""

    code: str
    name: str
    days: int
    price_cents: int
    currency: str = "CNY"
    daily_quota: int = 0
    total_quota: int = 0
    base_group: str = ""
    fallback_group: str = ""
    enabled: bool = True
    sort_order: int = 0


@lru_cache(maxsize=1)
def _load_schema() -> dict:
    with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
        return json.load(f)


@lru_cache(maxsize=1)
def _load_default_json() -> str:
    with open(DEFAULTS_PATH, "r", encoding="utf-8") as f:
        return f.read()


def parse_catalogue(raw: Any) -> list[SubscriptionPlan]:
    """
    Validate a catalogue (JSON text or decoded list) and parse it.

    Raises:
        ValidationFailedError: Not JSON, schema violation or duplicate code
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationFailedError(f"Plan catalogue is not valid JSON: {e.msg}") from e

    try:
        validate(instance=raw, schema=_load_schema())
    except JsonSchemaValidationError as e:
        raise ValidationFailedError(f"Plan catalogue schema validation failed: {e.message}") from e

    plans = [SubscriptionPlan(**item) for item in raw]
    codes = [p.code for p in plans]
    if len(codes) != len(set(codes)):
        raise ValidationFailedError("Plan catalogue contains duplicate codes")
    return sorted(plans, key=lambda p: (p.sort_order, p.code))


class PlanCatalogue:
    """Reads plans from the option store, re-parsing only when the option changes."""

    def __init__(self, store: OptionStore):
        self._store = store
        self._lock = threading.Lock()
        self._cached_raw: Optional[str] = None
        self._cached: list[SubscriptionPlan] = []

    def all(self) -> list[SubscriptionPlan]:
        raw = self._store.get(PLANS_OPTION_KEY, "") or _load_default_json()
        with self._lock:
            if raw == self._cached_raw:
                return list(self._cached)
            try:
                plans = parse_catalogue(raw)
            except ValidationFailedError as e:
                logger.error(
                    "Stored plan catalogue invalid, using defaults",
                    extra={"event": "plans.catalogue.invalid", "error": e.message},
                )
                raw = _load_default_json()
                plans = parse_catalogue(raw)
            self._cached_raw = raw
            self._cached = plans
            return list(plans)

    def enabled(self) -> list[SubscriptionPlan]:
        return [p for p in self.all() if p.enabled]

    def get(self, code: str, *, include_disabled: bool = False) -> SubscriptionPlan:
        """
        Raises:
            NotFoundError: Unknown or disabled plan code
        """
        for plan in self.all():
            if plan.code == code and (plan.enabled or include_disabled):
                return plan
        raise NotFoundError(f"Plan not found: {code}")

    def replace(self, db: Session, plans: Any) -> list[SubscriptionPlan]:
        """Validate and persist a new catalogue (admin). Commits."""
        parsed = parse_catalogue(plans)
        payload = json.dumps([p.model_dump() for p in parsed], ensure_ascii=False)
        self._store.set(db, PLANS_OPTION_KEY, payload)
        logger.info(
            "Plan catalogue updated",
            extra={"event": "plans.catalogue.updated", "codes": [p.code for p in parsed]},
        )
        return parsed


plan_catalogue = PlanCatalogue(option_store)
