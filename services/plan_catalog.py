"""Static plan catalog: limits, features and pricing per plan code."""

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from models.models import BillingCycle, BillingPlanCode


ANNUAL_BILLING_DISCOUNT = 0.2
MONTHS_PER_YEAR = 12
DEFAULT_TRIAL_DAYS = 7
DEFAULT_BILLING_PERIOD_DAYS = 30
DEFAULT_ANNUAL_BILLING_PERIOD_DAYS = 365
DEFAULT_CURRENCY = "BRL"

FEATURE_LABELS: Mapping[str, str] = MappingProxyType({
    "team_invites": "Advanced team invitations",
    "priority_support": "Priority support",
    "advanced_analytics": "Advanced analytics",
    "bulk_product_actions": "Bulk actions",
    "api_access": "API access",
})


@dataclass(frozen=True)
class PlanLimits:
    """Quota limits for a plan. ``None`` means unlimited."""

    max_organizations: Optional[int] = None
    max_users: Optional[int] = None
    max_projects: Optional[int] = None
    max_monthly_usage: Optional[int] = None


@dataclass(frozen=True)
class PlanDefinition:
    code: BillingPlanCode
    name: str
    description: str
    monthly_price_cents: int
    limits: PlanLimits = field(default_factory=PlanLimits)
    features: Tuple[str, ...] = ()

    @property
    def is_paid(self) -> bool:
        return self.code != BillingPlanCode.FREE

    def has_feature(self, feature_key: str) -> bool:
        return feature_key in self.features

    def to_dict(self) -> Dict[str, object]:
        annual = get_annual_pricing(self.monthly_price_cents)
        return {
            "code": self.code.value,
            "name": self.name,
            "description": self.description,
            "monthly_price_cents": self.monthly_price_cents,
            "annual_total_cents": annual[0],
            "annual_monthly_equivalent_cents": annual[1],
            "limits": {
                "max_organizations": self.limits.max_organizations,
                "max_users": self.limits.max_users,
                "max_projects": self.limits.max_projects,
                "max_monthly_usage": self.limits.max_monthly_usage,
            },
            "features": list(self.features),
        }


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def get_annual_pricing(monthly_price_cents: int) -> Tuple[int, int]:
    """Return ``(annual_total_cents, monthly_equivalent_cents)`` with the annual discount applied."""
    annual_total = _round_half_up(monthly_price_cents * MONTHS_PER_YEAR * (1 - ANNUAL_BILLING_DISCOUNT))
    return annual_total, _round_half_up(annual_total / MONTHS_PER_YEAR)


def get_plan_charge_cents(monthly_price_cents: int, billing_cycle: Union[BillingCycle, str]) -> int:
    if to_billing_cycle(billing_cycle) == BillingCycle.ANNUAL:
        return get_annual_pricing(monthly_price_cents)[0]
    return monthly_price_cents


def get_billing_period_days(billing_cycle: Union[BillingCycle, str]) -> int:
    if to_billing_cycle(billing_cycle) == BillingCycle.ANNUAL:
        return DEFAULT_ANNUAL_BILLING_PERIOD_DAYS
    return DEFAULT_BILLING_PERIOD_DAYS


def to_billing_cycle(value: Union[BillingCycle, str, None]) -> BillingCycle:
    try:
        return BillingCycle(value)
    except ValueError:
        return BillingCycle.MONTHLY


def to_plan_code(value: Union[BillingPlanCode, str, None]) -> BillingPlanCode:
    try:
        return BillingPlanCode(value)
    except ValueError:
        return BillingPlanCode.FREE


def is_paid_plan(plan_code: Union[BillingPlanCode, str, None]) -> bool:
    return to_plan_code(plan_code) != BillingPlanCode.FREE


def is_unlimited_limit(value: Optional[int]) -> bool:
    return value is None


class PlanCatalog:
    """Immutable lookup table from plan code to definition.

    The catalog is handed to the services that need it instead of being read
    from a module global, so tests can inject a reduced or altered table.
    """

    def __init__(self, plans: Iterable[PlanDefinition]):
        ordered = list(plans)
        self._plans: Mapping[BillingPlanCode, PlanDefinition] = MappingProxyType(
            {plan.code: plan for plan in ordered}
        )
        self._sequence: Tuple[BillingPlanCode, ...] = tuple(plan.code for plan in ordered)
        if BillingPlanCode.FREE not in self._plans:
            raise ValueError("Plan catalog must define the FREE plan")

    def get(self, plan_code: Union[BillingPlanCode, str, None]) -> PlanDefinition:
        code = to_plan_code(plan_code)
        return self._plans.get(code, self._plans[BillingPlanCode.FREE])

    def __contains__(self, plan_code: object) -> bool:
        return plan_code in self._plans

    @property
    def sequence(self) -> Tuple[BillingPlanCode, ...]:
        return self._sequence

    def all(self) -> List[PlanDefinition]:
        return [self._plans[code] for code in self._sequence]


DEFAULT_PLAN_CATALOG = PlanCatalog([
    PlanDefinition(
        code=BillingPlanCode.FREE,
        name="Free",
        description="For a single-person organization getting started.",
        monthly_price_cents=0,
        limits=PlanLimits(max_users=1),
    ),
    PlanDefinition(
        code=BillingPlanCode.STARTER_50,
        name="Starter",
        description="Up to 50 users per organization.",
        monthly_price_cents=5_000,
        limits=PlanLimits(max_users=50),
        features=("team_invites", "bulk_product_actions"),
    ),
    PlanDefinition(
        code=BillingPlanCode.PRO_100,
        name="Pro",
        description="Up to 100 users per organization.",
        monthly_price_cents=10_000,
        limits=PlanLimits(max_users=100),
        features=("team_invites", "bulk_product_actions", "advanced_analytics", "api_access"),
    ),
    PlanDefinition(
        code=BillingPlanCode.SCALE_400,
        name="Scale",
        description="Unlimited users per organization.",
        monthly_price_cents=40_000,
        limits=PlanLimits(max_users=None),
        features=("team_invites", "bulk_product_actions", "advanced_analytics", "api_access", "priority_support"),
    ),
])
