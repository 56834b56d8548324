"""
Subscription plan definitions.

The paid plans are provisioned on Stripe as recurring prices of a single
product; see stripe_catalog.
"""
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

FREE = "free"
MONTHLY = "monthly"
ANNUAL = "annual"

PAID_PLANS = (MONTHLY, ANNUAL)

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_PAST_DUE = "past_due"

PRODUCT_NAME = "ConcurseIA Pro"
PRODUCT_DESCRIPTION = "Acesso ilimitado a simulados, questões e recomendações de estudo com IA"

UNLIMITED = -1


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    price: int  # minor currency units
    interval: Optional[str]  # month | year, None for free
    exam_limit: int
    nickname: Optional[str] = None
    price_id: Optional[str] = None


SUBSCRIPTION_PLANS: Dict[str, Plan] = {
    FREE: Plan(id=FREE, name="Gratuito", price=0, interval=None, exam_limit=1),
    MONTHLY: Plan(
        id=MONTHLY, name="Mensal", price=3900, interval="month",
        exam_limit=UNLIMITED, nickname="Plano Mensal",
    ),
    ANNUAL: Plan(
        id=ANNUAL, name="Anual", price=22800, interval="year",
        exam_limit=UNLIMITED, nickname="Plano Anual",
    ),
}


def is_paid_plan(plan_id: Optional[str]) -> bool:
    return plan_id in PAID_PLANS


def get_plan(plan_id: str) -> Plan:
    """Return the plan definition, raising KeyError for unknown ids."""
    return SUBSCRIPTION_PLANS[plan_id]


def plan_for_interval(interval: Optional[str]) -> Optional[str]:
    """Map a Stripe recurring interval back to a paid plan id."""
    for plan in SUBSCRIPTION_PLANS.values():
        if plan.interval and plan.interval == interval:
            return plan.id
    return None


def list_plans(price_ids: Optional[Dict[str, str]] = None) -> List[Plan]:
    """All plans in display order, with provisioned price ids filled in when known."""
    price_ids = price_ids or {}
    return [
        replace(plan, price_id=price_ids.get(plan.id))
        for plan in SUBSCRIPTION_PLANS.values()
    ]
