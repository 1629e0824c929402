import calendar
import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel
from sqlalchemy.orm import Session

from marketplace_billing.core.cache import (
    delete_cached_subscription_view,
    get_cached_plan_change,
    set_cached_plan_change,
)
from marketplace_billing.core.config import settings
from marketplace_billing.core.errors import ErrorCode, Failure
from marketplace_billing.core.middleware import ActorContext, is_admin_email
from marketplace_billing.models.account import Account
from marketplace_billing.models.plan import Plan
from marketplace_billing.models.subscription import BillingCycle, Subscription, SubscriptionStatus
from marketplace_billing.models.subscription_change import SubscriptionChangeRecord
from marketplace_billing.services import cooldown
from marketplace_billing.services.analytics_service import AnalyticsService
from marketplace_billing.services.payment_gateway import PaymentGateway
from marketplace_billing.services.plan_catalog import (
    PlanCatalog,
    is_trial_plan,
    plan_family,
    price_for_cycle,
)
from marketplace_billing.services.proration import (
    ChangeType,
    ProrationQuote,
    calculate,
    determine_change_type,
)
from marketplace_billing.services.subscription_state import (
    CHANGEABLE_STATUSES,
    effective_status_of,
)

logger = logging.getLogger(__name__)

COOLDOWN_BYPASS_SIGNAL = 'plan_change_cooldown_bypassed'


class PlanChangePreview(BaseModel):
    account_id: str
    current_plan_id: str
    current_billing_cycle: BillingCycle
    target_plan_id: str
    target_billing_cycle: BillingCycle
    change_type: ChangeType
    current_plan_credit: int
    new_plan_price: int
    immediate_charge: int
    credit_amount: int
    remaining_fraction: float
    effective_at: datetime
    currency: str
    cooldown: dict


class PlanChangeResult(BaseModel):
    success: bool = True
    change_id: str
    change_type: ChangeType
    plan_id: str
    billing_cycle: BillingCycle
    scheduled: bool
    effective_at: datetime
    new_period_end: datetime
    immediate_charge: int
    bypassed_cooldown: bool
    changed_by_admin: bool
    idempotency_key: str


class AdminAuthorizer:
    """Answers "is this actor id an administrator" from verified sources only"""

    def __init__(self, db: Session, verified_actor: Optional[ActorContext] = None):
        self.db = db
        self.verified_actor = verified_actor

    def is_admin(self, actor_id: Optional[str]) -> bool:
        if not actor_id:
            return False
        if self.verified_actor is not None and self.verified_actor.uid == actor_id:
            return self.verified_actor.is_admin
        account = self.db.query(Account).filter(Account.id == actor_id).first()
        if not account:
            return False
        return bool(account.is_admin) or is_admin_email(account.email)


def idempotency_key(
    account_id: str,
    current_plan_id: str,
    current_cycle: BillingCycle,
    last_change_id: Optional[str],
    target_plan_id: str,
    target_cycle: BillingCycle,
    now: datetime,
) -> str:
    """
    Same request from the same starting state inside one window -> same key.

    The starting state (plan, cycle and newest change record) is part of the
    key, so a new request made after another change never collides with an
    earlier one.
    """
    window = calendar.timegm(now.utctimetuple()) // settings.idempotency_window_seconds
    raw = (
        f"{account_id}:{current_plan_id}:{BillingCycle(current_cycle).value}:{last_change_id or '-'}:"
        f"{target_plan_id}:{BillingCycle(target_cycle).value}:{window}"
    )
    return hashlib.sha256(raw.encode()).hexdigest()


def parse_cycle(value) -> Optional[BillingCycle]:
    try:
        return BillingCycle(value)
    except ValueError:
        return None


def get_current_subscription(db: Session, account_id: str) -> Optional[Subscription]:
    """The account's newest non-superseded subscription"""
    return (
        db.query(Subscription)
        .filter(Subscription.account_id == account_id)
        .order_by(Subscription.created_at.desc())
        .first()
    )


def latest_change_record(db: Session, account_id: str) -> Optional[SubscriptionChangeRecord]:
    return (
        db.query(SubscriptionChangeRecord)
        .filter(SubscriptionChangeRecord.account_id == account_id)
        .order_by(SubscriptionChangeRecord.changed_at.desc())
        .first()
    )


def last_change_at(db: Session, subscription: Subscription) -> Optional[datetime]:
    latest = latest_change_record(db, subscription.account_id)
    candidates = [ts for ts in (latest.changed_at if latest else None, subscription.last_plan_change_at) if ts]
    return max(candidates) if candidates else None


@dataclass
class _ChangeContext:
    subscription: Subscription
    current_plan: Plan
    target_plan: Plan
    target_cycle: BillingCycle
    quote: ProrationQuote


class PlanChangeService:
    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        authorizer_factory=AdminAuthorizer,
    ):
        self.gateway = gateway or PaymentGateway()
        self.authorizer_factory = authorizer_factory
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)

    def _build_context(
        self,
        db: Session,
        account_id: str,
        target_plan_id: str,
        target_cycle: BillingCycle,
        now: datetime,
    ) -> Union[_ChangeContext, Failure]:
        """Shared validation for preview and commit. Raises PlanNotFoundError for unknown plans."""
        catalog = PlanCatalog(db)
        target_plan = catalog.get_plan(target_plan_id)
        if not target_plan.is_active or is_trial_plan(target_plan.name):
            return Failure(code=ErrorCode.PLAN_NOT_AVAILABLE, message=f"Plan {target_plan.name} is not available")

        subscription = get_current_subscription(db, account_id)
        if subscription is None:
            return Failure(code=ErrorCode.NO_SUBSCRIPTION, message="Account has no subscription")
        if not subscription.stripe_subscription_id:
            return Failure(
                code=ErrorCode.TRIAL_NO_STRIPE,
                message="Trial accounts must check out a paid plan before changing plans",
            )

        status = effective_status_of(subscription, now)
        if status == SubscriptionStatus.SUSPENDED:
            return Failure(code=ErrorCode.SUSPENDED, message="Subscription is suspended for non-payment")
        if status not in CHANGEABLE_STATUSES:
            return Failure(
                code=ErrorCode.SUBSCRIPTION_INACTIVE,
                message=f"Subscription is {status.value}",
                details={'status': status.value},
            )

        current_plan = catalog.get_plan(subscription.plan_id)
        if plan_family(current_plan.name) != plan_family(target_plan.name):
            return Failure(
                code=ErrorCode.PLAN_NOT_AVAILABLE,
                message=f"Plan {target_plan.name} belongs to a different plan family",
            )

        target_price = price_for_cycle(target_plan, target_cycle)
        change_type = determine_change_type(
            current_plan.id,
            subscription.billing_cycle,
            target_plan.id,
            target_cycle,
            price_for_cycle(current_plan, target_cycle),
            target_price,
        )
        if change_type is None:
            return Failure(code=ErrorCode.NO_CHANGE, message="Already subscribed to this plan and cycle")
        if change_type == ChangeType.DOWNGRADE and subscription.cancel_at_period_end:
            return Failure(
                code=ErrorCode.PENDING_CANCELLATION,
                message="Reactivate the subscription before scheduling a downgrade",
            )

        quote = calculate(
            change_type,
            price_for_cycle(current_plan, subscription.billing_cycle),
            target_price,
            now,
            subscription.current_period_start,
            subscription.current_period_end,
        )
        return _ChangeContext(subscription, current_plan, target_plan, target_cycle, quote)

    def _replay(
        self,
        db: Session,
        account_id: str,
        target_plan_id: str,
        cycle: BillingCycle,
        now: datetime,
    ) -> Optional[PlanChangeResult]:
        """
        Stored result for a retry of the account's newest change, if any.

        A cached result is only trusted while its change record is still the
        newest one, it is inside the idempotency window and the current
        subscription still reflects it.
        """
        latest = latest_change_record(db, account_id)
        if latest is None or latest.new_plan_id != target_plan_id or latest.new_billing_cycle != cycle.value:
            return None
        if (now - latest.changed_at).total_seconds() > settings.idempotency_window_seconds:
            return None

        key = (latest.details or {}).get('idempotency_key')
        cached = get_cached_plan_change(key) if key else None
        if not cached or cached.get('change_id') != latest.id:
            return None

        sub = get_current_subscription(db, account_id)
        if sub is None or sub.id != latest.subscription_id:
            return None
        if cached.get('scheduled'):
            applied = sub.scheduled_plan_id == target_plan_id and parse_cycle(sub.scheduled_billing_cycle) == cycle
        else:
            applied = sub.plan_id == target_plan_id and parse_cycle(sub.billing_cycle) == cycle
        return PlanChangeResult(**cached) if applied else None

    def preview_change(
        self,
        db: Session,
        account_id: str,
        target_plan_id: str,
        target_cycle,
        now: Optional[datetime] = None,
    ) -> Union[PlanChangePreview, Failure]:
        """Side-effect free quote of a plan change"""
        self.logger.info(f"preview_change: Entry - account: {account_id}, plan: {target_plan_id}, cycle: {target_cycle}")
        now = now or datetime.utcnow()

        cycle = parse_cycle(target_cycle)
        if cycle is None:
            return Failure(code=ErrorCode.VALIDATION_ERROR, message=f"Invalid billing cycle: {target_cycle}")

        context = self._build_context(db, account_id, target_plan_id, cycle, now)
        if isinstance(context, Failure):
            self.logger.info(f"preview_change: Rejected - {context.code.value}")
            return context

        sub = context.subscription
        cooldown_info = cooldown.evaluate(last_change_at(db, sub), now, settings.plan_change_cooldown_days)
        effective_at = sub.current_period_end if context.quote.change_type == ChangeType.DOWNGRADE else now

        preview = PlanChangePreview(
            account_id=account_id,
            current_plan_id=context.current_plan.id,
            current_billing_cycle=sub.billing_cycle,
            target_plan_id=context.target_plan.id,
            target_billing_cycle=cycle,
            change_type=context.quote.change_type,
            current_plan_credit=context.quote.current_plan_credit,
            new_plan_price=context.quote.new_plan_price,
            immediate_charge=context.quote.immediate_charge,
            credit_amount=context.quote.credit_amount,
            remaining_fraction=context.quote.remaining_fraction,
            effective_at=effective_at,
            currency=settings.currency,
            cooldown=cooldown_info.to_dict(),
        )
        self.logger.info(f"preview_change: Success - {preview.change_type.value}, charge: {preview.immediate_charge}")
        return preview

    def commit_change(
        self,
        db: Session,
        account_id: str,
        target_plan_id: str,
        target_cycle,
        acting_admin_id: Optional[str] = None,
        authorizer: Optional[AdminAuthorizer] = None,
        now: Optional[datetime] = None,
    ) -> Union[PlanChangeResult, Failure]:
        """
        Execute a plan change.

        Cooldown and the quote are always re-derived here; nothing from an
        earlier preview is trusted. Upgrades and cycle changes are invoiced
        immediately, downgrades are scheduled for the next renewal. Any
        processor error returns PAYMENT_FAILED with the subscription untouched.
        """
        self.logger.info(
            f"commit_change: Entry - account: {account_id}, plan: {target_plan_id}, "
            f"cycle: {target_cycle}, admin: {acting_admin_id}"
        )
        now = now or datetime.utcnow()

        cycle = parse_cycle(target_cycle)
        if cycle is None:
            return Failure(code=ErrorCode.VALIDATION_ERROR, message=f"Invalid billing cycle: {target_cycle}")

        replayed = self._replay(db, account_id, target_plan_id, cycle, now)
        if replayed is not None:
            self.logger.info(f"commit_change: Success - replayed result for {replayed.idempotency_key}")
            return replayed

        context = self._build_context(db, account_id, target_plan_id, cycle, now)
        if isinstance(context, Failure):
            self.logger.info(f"commit_change: Rejected - {context.code.value}")
            return context

        sub = context.subscription
        latest = latest_change_record(db, account_id)
        key = idempotency_key(
            account_id,
            sub.plan_id,
            sub.billing_cycle,
            latest.id if latest else None,
            context.target_plan.id,
            cycle,
            now,
        )
        authorizer = authorizer or self.authorizer_factory(db)
        is_verified_admin = authorizer.is_admin(acting_admin_id)
        cooldown_info = cooldown.evaluate(
            last_change_at(db, sub), now, settings.plan_change_cooldown_days, can_bypass=is_verified_admin
        )
        bypassed = False
        if cooldown_info.is_in_cooldown:
            if not cooldown_info.can_bypass:
                return Failure(
                    code=ErrorCode.COOLDOWN_ACTIVE,
                    message=f"Plan can be changed again in {cooldown_info.days_remaining} days",
                    details=cooldown_info.to_dict(),
                )
            bypassed = True

        # Webhooks may have moved the row since validation
        db.refresh(sub)
        status = effective_status_of(sub, now)
        if status == SubscriptionStatus.SUSPENDED:
            return Failure(code=ErrorCode.SUSPENDED, message="Subscription is suspended for non-payment")
        if status not in CHANGEABLE_STATUSES:
            return Failure(code=ErrorCode.SUBSCRIPTION_INACTIVE, message=f"Subscription is {status.value}")

        quote = context.quote
        target_plan = context.target_plan
        price_id = (
            target_plan.stripe_price_id_yearly if cycle == BillingCycle.YEARLY
            else target_plan.stripe_price_id_monthly
        )
        if not price_id:
            return Failure(
                code=ErrorCode.PLAN_NOT_AVAILABLE,
                message=f"Plan {target_plan.name} has no {cycle.value} price",
            )

        is_downgrade = quote.change_type == ChangeType.DOWNGRADE
        try:
            processor_sub = self.gateway.change_price(
                sub.stripe_subscription_id,
                price_id,
                proration_behavior='none' if is_downgrade else 'always_invoice',
                idempotency_key=key,
            )
        except Exception as e:
            self.analytics.log_failure(
                action='commit_change',
                error=str(e),
                account_id=account_id,
                parameters={'target_plan_id': target_plan.id, 'change_type': quote.change_type.value}
            )
            self.logger.error(f"commit_change: Failure - processor error: {e}")
            return Failure(code=ErrorCode.PAYMENT_FAILED, message=str(e) or "Payment processor error")

        try:
            previous_plan_id = sub.plan_id
            previous_cycle = BillingCycle(sub.billing_cycle)
            if is_downgrade:
                sub.scheduled_plan_id = target_plan.id
                sub.scheduled_billing_cycle = cycle
                effective_at = sub.current_period_end
            else:
                sub.plan_id = target_plan.id
                sub.billing_cycle = cycle
                sub.scheduled_plan_id = None
                sub.scheduled_billing_cycle = None
                if processor_sub.current_period_start and processor_sub.current_period_end:
                    sub.current_period_start = processor_sub.current_period_start
                    sub.current_period_end = processor_sub.current_period_end
                effective_at = now
            # A scheduled cancellation survives the price change
            sub.cancel_at_period_end = bool(processor_sub.cancel_at_period_end)
            sub.last_plan_change_at = now
            sub.updated_at = now

            record = SubscriptionChangeRecord(
                id=str(uuid.uuid4()),
                account_id=account_id,
                subscription_id=sub.id,
                previous_plan_id=previous_plan_id,
                previous_billing_cycle=previous_cycle.value,
                new_plan_id=target_plan.id,
                new_billing_cycle=cycle.value,
                change_type=quote.change_type.value,
                prorated_amount=quote.immediate_charge,
                changed_by=acting_admin_id if is_verified_admin else account_id,
                details={
                    'bypassed_cooldown': bypassed,
                    'changed_by_admin': is_verified_admin,
                    'idempotency_key': key,
                    'effective_at': effective_at.isoformat(),
                    'credit_amount': quote.credit_amount,
                },
                changed_at=now,
            )
            db.add(record)
            db.commit()
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(action='commit_change', error=str(e), account_id=account_id)
            self.logger.error(f"commit_change: Failure - charged but not recorded, awaiting webhook: {e}")
            raise

        result = PlanChangeResult(
            change_id=record.id,
            change_type=quote.change_type,
            plan_id=target_plan.id,
            billing_cycle=cycle,
            scheduled=is_downgrade,
            effective_at=effective_at,
            new_period_end=sub.current_period_end,
            immediate_charge=quote.immediate_charge,
            bypassed_cooldown=bypassed,
            changed_by_admin=is_verified_admin,
            idempotency_key=key,
        )
        set_cached_plan_change(key, result.model_dump(mode='json'))
        delete_cached_subscription_view(account_id)

        self.analytics.log_success(
            action='commit_change',
            account_id=account_id,
            parameters={
                'change_type': quote.change_type.value,
                'from_plan': previous_plan_id,
                'to_plan': target_plan.id,
                'immediate_charge': quote.immediate_charge,
            }
        )
        if bypassed:
            self.analytics.notify(
                COOLDOWN_BYPASS_SIGNAL,
                account_id=account_id,
                parameters={'admin_id': acting_admin_id, 'change_id': record.id},
            )
        self.logger.info(f"commit_change: Success - account: {account_id}, change: {record.id}")
        return result

    def selectable_plans(
        self,
        db: Session,
        account_id: str,
        now: Optional[datetime] = None,
    ) -> Union[List[dict], Failure]:
        """Plans the account may switch to, annotated with the change they would cause"""
        self.logger.info(f"selectable_plans: Entry - account: {account_id}")
        now = now or datetime.utcnow()

        subscription = get_current_subscription(db, account_id)
        if subscription is None:
            return Failure(code=ErrorCode.NO_SUBSCRIPTION, message="Account has no subscription")

        catalog = PlanCatalog(db)
        current_plan = catalog.get_plan(subscription.plan_id)
        cycle = BillingCycle(subscription.billing_cycle)
        options = []
        for plan in catalog.list_change_targets(current_plan):
            price = price_for_cycle(plan, cycle)
            change_type = determine_change_type(
                current_plan.id, cycle, plan.id, cycle, price_for_cycle(current_plan, cycle), price
            )
            if change_type == ChangeType.DOWNGRADE and subscription.cancel_at_period_end:
                continue
            options.append({
                **catalog.serialize(plan),
                'is_current': plan.id == current_plan.id,
                'change_type': change_type.value if change_type else None,
            })

        self.logger.info(f"selectable_plans: Success - {len(options)} options")
        return options
