import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from sqlalchemy.orm import Session

from marketplace_billing.core.errors import PlanNotFoundError
from marketplace_billing.models.plan import Plan
from marketplace_billing.models.subscription import BillingCycle

logger = logging.getLogger(__name__)

TRIAL_SUFFIX = '_trial'
UNLIMITED = -1


def to_minor_units(amount) -> int:
    """Major currency units (Decimal/float/str) to integer centavos, half-up"""
    if amount is None:
        return 0
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def plan_family(plan_name: str) -> str:
    """'agente_pro' -> 'agente'. Plans only change within their family."""
    return plan_name.split('_', 1)[0]


def is_trial_plan(plan_name: str) -> bool:
    return plan_name.endswith(TRIAL_SUFFIX)


def price_for_cycle(plan: Plan, cycle: BillingCycle) -> int:
    """Plan price for one full cycle, in minor units"""
    monthly = to_minor_units(plan.price_monthly)
    if BillingCycle(cycle) == BillingCycle.YEARLY:
        if plan.price_yearly is None:
            return monthly * 12
        return to_minor_units(plan.price_yearly)
    return monthly


def feature_limit(plan: Plan, feature: str, default: int = 0) -> int:
    """Numeric feature limit; -1 means unlimited"""
    features = plan.features or {}
    value = features.get(feature, default)
    if value is None:
        return default
    return int(value)


class PlanCatalog:
    """Read-only view of the plans table for the lifetime of one session"""

    def __init__(self, db: Session):
        self.db = db

    def get_plan(self, plan_id: str) -> Plan:
        plan = self.db.query(Plan).filter(Plan.id == plan_id).first()
        if not plan:
            logger.error(f"get_plan: Failure - unknown plan {plan_id}")
            raise PlanNotFoundError(plan_id)
        return plan

    def find_plan(self, plan_id: Optional[str]) -> Optional[Plan]:
        if not plan_id:
            return None
        return self.db.query(Plan).filter(Plan.id == plan_id).first()

    def list_active_plans(self) -> List[Plan]:
        return (
            self.db.query(Plan)
            .filter(Plan.is_active == True)  # noqa: E712
            .order_by(Plan.display_order, Plan.price_monthly)
            .all()
        )

    def list_change_targets(self, current_plan: Plan) -> List[Plan]:
        """Active, non-trial plans of the same family, cheapest first"""
        family = plan_family(current_plan.name)
        plans = [
            plan for plan in self.list_active_plans()
            if plan_family(plan.name) == family and not is_trial_plan(plan.name)
        ]
        return sorted(plans, key=lambda plan: to_minor_units(plan.price_monthly))

    def serialize(self, plan: Plan) -> dict:
        return {
            'id': plan.id,
            'name': plan.name,
            'display_name': plan.display_name,
            'price_monthly': price_for_cycle(plan, BillingCycle.MONTHLY),
            'price_yearly': price_for_cycle(plan, BillingCycle.YEARLY),
            'features': plan.features or {},
            'is_active': plan.is_active,
        }
