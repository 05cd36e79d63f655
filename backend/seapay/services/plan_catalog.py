from __future__ import annotations

import json
from pathlib import Path
from threading import Lock
from typing import Any

from pydantic import BaseModel, Field, model_validator
from typing_extensions import Self

from seapay.enums import BillingPeriod, Tier

_lock = Lock()
_catalog: PlanCatalog | None = None


class PlanDefinition(BaseModel):
    plan_id: str = Field(min_length=1, max_length=64)
    name: str = ""
    tier: Tier
    billing_period: BillingPeriod
    amount_minor_units: int = Field(ge=0)
    duration_days: int | None = None
    credit_grant: int = 0

    @model_validator(mode="after")
    def _check_tier_shape(self) -> Self:
        if self.tier == Tier.premium and not self.duration_days:
            raise ValueError(f"{self.plan_id}: time-based plans need duration_days")
        if self.tier == Tier.super_user and self.credit_grant <= 0:
            raise ValueError(f"{self.plan_id}: topup plans need a positive credit_grant")
        return self

    @property
    def is_topup(self) -> bool:
        return self.billing_period == BillingPeriod.topup


class PlanCatalog:
    """Static plan id -> definition map. Not editable at runtime."""

    def __init__(self, plans: list[PlanDefinition]) -> None:
        self._plans: dict[str, PlanDefinition] = {}
        for plan in plans:
            if plan.plan_id in self._plans:
                raise ValueError(f"duplicate plan id: {plan.plan_id}")
            self._plans[plan.plan_id] = plan

    def __iter__(self):
        return iter(self._plans.values())

    def __len__(self) -> int:
        return len(self._plans)

    def get(self, plan_id: str | None) -> PlanDefinition | None:
        if not plan_id:
            return None
        return self._plans.get(plan_id)

    def resolve(self, plan_hint: str | None, amount: int | None) -> PlanDefinition | None:
        """
        Pick the plan an event paid for.

        A known plan hint always wins. Otherwise fall back to the price: when
        several plans share an amount the premium one is chosen, which is how
        bare payments of the monthly price were treated historically.
        """
        plan = self.get(plan_hint)
        if plan is not None:
            return plan
        if not amount:
            return None

        candidates = [p for p in self._plans.values() if p.amount_minor_units == amount]
        if not candidates:
            return None
        candidates.sort(key=lambda p: (p.tier != Tier.premium, p.plan_id))
        return candidates[0]


def _load_from_file() -> dict[str, Any]:
    path = Path(__file__).resolve().parents[1] / "config" / "plans.json"
    if not path.exists():
        return {"plans": []}
    return json.loads(path.read_text(encoding="utf-8"))


def load_catalog(data: dict[str, Any] | None = None) -> PlanCatalog:
    raw = data if data is not None else _load_from_file()
    return PlanCatalog([PlanDefinition.model_validate(p) for p in raw.get("plans", [])])


def get_catalog() -> PlanCatalog:
    global _catalog
    with _lock:
        if _catalog is None:
            _catalog = load_catalog()
        return _catalog
