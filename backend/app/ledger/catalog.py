"""Static catalog definitions for subscription plans and credit packages."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from .exceptions import InvalidPackage, InvalidPlan


@dataclass(frozen=True)
class PlanDefinition:
    """Economics of a subscription plan."""

    plan_id: str
    display_name: str
    duration_months: int
    free_credits_per_month: int
    bonus_credits_per_month: int

    @property
    def total_credits_per_month(self) -> int:
        return self.free_credits_per_month + self.bonus_credits_per_month


@dataclass(frozen=True)
class CreditPackage:
    """One-off credit bundle sold at a fixed price."""

    credits: int
    price_cents: int


PLAN_DEFINITIONS: Tuple[PlanDefinition, ...] = (
    PlanDefinition(
        plan_id="monthly",
        display_name="Monthly Premium",
        duration_months=1,
        free_credits_per_month=5,
        bonus_credits_per_month=20,
    ),
    PlanDefinition(
        plan_id="semiannual",
        display_name="Semi-Annual Premium",
        duration_months=6,
        free_credits_per_month=5,
        bonus_credits_per_month=20,
    ),
    PlanDefinition(
        plan_id="annual",
        display_name="Annual Premium",
        duration_months=12,
        free_credits_per_month=5,
        bonus_credits_per_month=20,
    ),
)

CREDIT_PACKAGES: Tuple[CreditPackage, ...] = (
    CreditPackage(credits=5, price_cents=100),
    CreditPackage(credits=25, price_cents=500),
    CreditPackage(credits=50, price_cents=1000),
    CreditPackage(credits=100, price_cents=2000),
)


@dataclass(frozen=True)
class PlanCatalog:
    """Immutable lookup of plans by id or provider price id, plus the package table."""

    plans: Mapping[str, PlanDefinition]
    price_plan_map: Mapping[str, str] = field(default_factory=dict)
    packages: Tuple[CreditPackage, ...] = CREDIT_PACKAGES

    def lookup(self, plan_id: str) -> PlanDefinition:
        """Return a plan definition, raising :class:`InvalidPlan` if unsupported."""

        try:
            return self.plans[plan_id]
        except KeyError as exc:
            raise InvalidPlan(plan_id) from exc

    def lookup_price(self, price_id: str) -> PlanDefinition:
        """Resolve a payment provider price id; plan ids are accepted as well."""

        plan_id = self.price_plan_map.get(price_id)
        if plan_id is None:
            if price_id in self.plans:
                return self.plans[price_id]
            raise InvalidPlan(price_id)
        return self.lookup(plan_id)

    def match_package(self, amount_cents: int, credits: Optional[int] = None) -> CreditPackage:
        """Return the package priced at ``amount_cents``; no fallback rate is applied."""

        for package in self.packages:
            if package.price_cents != amount_cents:
                continue
            if credits is not None and package.credits != credits:
                break
            return package
        raise InvalidPackage(amount_cents, credits)


def build_plan_catalog(price_plan_map: Optional[Mapping[str, str]] = None) -> PlanCatalog:
    """Build the catalog once per process from configured price ids."""

    plans: Dict[str, PlanDefinition] = {plan.plan_id: plan for plan in PLAN_DEFINITIONS}
    mapping = dict(price_plan_map or {})
    for price_id, plan_id in mapping.items():
        if plan_id not in plans:
            raise ValueError(f"Price {price_id} maps to unknown plan {plan_id}")
    return PlanCatalog(plans=plans, price_plan_map=mapping)


__all__ = [
    "CREDIT_PACKAGES",
    "CreditPackage",
    "PLAN_DEFINITIONS",
    "PlanCatalog",
    "PlanDefinition",
    "build_plan_catalog",
]
