"""Static plan catalog: quotas, prices and provider price references."""
from __future__ import annotations

from dataclasses import dataclass, field

from usage_billing.config import settings
from usage_billing.models.billing import PlanId
from usage_billing.services.exceptions import UnknownPlan


@dataclass(frozen=True)
class PlanLimits:
    max_active_projects: int
    max_records_per_cycle: int


@dataclass(frozen=True)
class PlanDefinition:
    plan_id: PlanId
    name: str
    max_active_projects: int
    max_records_per_cycle: int
    monthly_price_cents: int
    # Per month, billed yearly
    annual_price_cents: int
    monthly_price_ref: str | None = None
    annual_price_ref: str | None = None
    features: tuple[str, ...] = field(default_factory=tuple)

    @property
    def limits(self) -> PlanLimits:
        return PlanLimits(
            max_active_projects=self.max_active_projects,
            max_records_per_cycle=self.max_records_per_cycle,
        )

    @property
    def price_refs(self) -> tuple[str, ...]:
        return tuple(
            ref for ref in (self.monthly_price_ref, self.annual_price_ref) if ref
        )


# Lowest to highest
PLAN_ORDER: tuple[PlanId, ...] = (PlanId.free, PlanId.starter, PlanId.pro)


def build_catalog(s=settings) -> dict[PlanId, PlanDefinition]:
    return {
        PlanId.free: PlanDefinition(
            plan_id=PlanId.free,
            name="Free",
            max_active_projects=1,
            max_records_per_cycle=100,
            monthly_price_cents=0,
            annual_price_cents=0,
            features=("1 project", "100 feedback per month", "Basic widget"),
        ),
        PlanId.starter: PlanDefinition(
            plan_id=PlanId.starter,
            name="Starter",
            max_active_projects=3,
            max_records_per_cycle=500,
            monthly_price_cents=1900,
            annual_price_cents=1700,
            monthly_price_ref=s.stripe_price_starter_monthly or None,
            annual_price_ref=s.stripe_price_starter_annual or None,
            features=("3 projects", "500 feedback per month", "Widget customization"),
        ),
        PlanId.pro: PlanDefinition(
            plan_id=PlanId.pro,
            name="Pro",
            max_active_projects=10,
            max_records_per_cycle=2000,
            monthly_price_cents=3900,
            annual_price_cents=3500,
            monthly_price_ref=s.stripe_price_pro_monthly or None,
            annual_price_ref=s.stripe_price_pro_annual or None,
            features=(
                "10 projects",
                "2000 feedback per month",
                "Integrations",
                "Priority support",
            ),
        ),
    }


PLAN_CATALOG = build_catalog()


def _coerce_plan_id(plan_id: PlanId | str) -> PlanId:
    if isinstance(plan_id, PlanId):
        return plan_id
    try:
        return PlanId(str(plan_id).lower())
    except ValueError as exc:
        raise UnknownPlan(plan_id) from exc


def get_plan(plan_id: PlanId | str) -> PlanDefinition:
    plan = PLAN_CATALOG.get(_coerce_plan_id(plan_id))
    if plan is None:
        raise UnknownPlan(plan_id)
    return plan


def limits_for(plan_id: PlanId | str) -> PlanLimits:
    return get_plan(plan_id).limits


def list_plans() -> list[PlanDefinition]:
    return [PLAN_CATALOG[plan_id] for plan_id in PLAN_ORDER]


def plan_for_price(price_ref: str | None) -> PlanId:
    """Map a provider price id to the plan that sells it."""
    if price_ref:
        for plan in PLAN_CATALOG.values():
            if price_ref in plan.price_refs:
                return plan.plan_id
    raise UnknownPlan(price_ref)


def _rank(plan_id: PlanId | str) -> int:
    return PLAN_ORDER.index(_coerce_plan_id(plan_id))


def is_upgrade(current: PlanId | str, target: PlanId | str) -> bool:
    return _rank(target) > _rank(current)


def is_downgrade(current: PlanId | str, target: PlanId | str) -> bool:
    return _rank(target) < _rank(current)


def upgrade_options(current: PlanId | str) -> list[PlanDefinition]:
    return [PLAN_CATALOG[plan_id] for plan_id in PLAN_ORDER[_rank(current) + 1 :]]
