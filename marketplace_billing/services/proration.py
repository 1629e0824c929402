import enum
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from pydantic import BaseModel

from marketplace_billing.models.subscription import BillingCycle

logger = logging.getLogger(__name__)


class ChangeType(str, enum.Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    CYCLE_CHANGE = "cycle_change"


class ProrationQuote(BaseModel):
    """Amounts in minor currency units"""
    change_type: ChangeType
    current_plan_credit: int
    new_plan_price: int
    immediate_charge: int
    credit_amount: int
    remaining_fraction: float


def determine_change_type(
    current_plan_id: str,
    current_cycle: BillingCycle,
    target_plan_id: str,
    target_cycle: BillingCycle,
    current_price_in_target_cycle: int,
    target_price: int,
) -> Optional[ChangeType]:
    """
    Classify a requested change. Both prices must already be expressed in
    the target cycle so a yearly discount cannot flip the direction.

    Returns None when nothing would change.
    """
    if current_plan_id == target_plan_id:
        if BillingCycle(current_cycle) == BillingCycle(target_cycle):
            return None
        return ChangeType.CYCLE_CHANGE

    if target_price > current_price_in_target_cycle:
        return ChangeType.UPGRADE
    if target_price < current_price_in_target_cycle:
        return ChangeType.DOWNGRADE
    return ChangeType.CYCLE_CHANGE


def remaining_fraction(now: datetime, period_start: datetime, period_end: datetime) -> Decimal:
    """Share of the current period still unused, clamped to [0, 1]"""
    total = Decimal(str((period_end - period_start).total_seconds()))
    if total <= 0:
        raise ValueError("current_period_end must be after current_period_start")
    remaining = Decimal(str((period_end - now).total_seconds())) / total
    return min(Decimal(1), max(Decimal(0), remaining))


def _round_minor(value: Decimal) -> int:
    return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def calculate(
    change_type: ChangeType,
    current_price: int,
    target_price: int,
    now: datetime,
    period_start: datetime,
    period_end: datetime,
) -> ProrationQuote:
    """
    Prorate a plan change for the remainder of the current period.

    current_price is the current plan in the current cycle and target_price
    the target plan in the target cycle, both for one full cycle. Every amount
    is rounded half-up to the minor unit. A downgrade takes effect at renewal
    and is never charged now; its credit is reported but not refunded.
    """
    remaining = remaining_fraction(now, period_start, period_end)
    current_plan_credit = _round_minor(remaining * current_price)
    new_plan_price = _round_minor(remaining * target_price)

    if change_type == ChangeType.DOWNGRADE:
        immediate_charge = 0
    else:
        immediate_charge = max(0, new_plan_price - current_plan_credit)
    credit_amount = max(0, current_plan_credit - new_plan_price)

    quote = ProrationQuote(
        change_type=change_type,
        current_plan_credit=current_plan_credit,
        new_plan_price=new_plan_price,
        immediate_charge=immediate_charge,
        credit_amount=credit_amount,
        remaining_fraction=float(remaining),
    )
    logger.debug(f"calculate: {quote}")
    return quote
