import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Union

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace_billing.core.cache import (
    delete_cached_subscription_view,
    get_cached_subscription_view,
    set_cached_subscription_view,
)
from marketplace_billing.core.config import settings
from marketplace_billing.core.errors import ErrorCode, Failure, PaymentProcessorError
from marketplace_billing.models.subscription import (
    NON_TERMINAL_STATUSES,
    BillingCycle,
    Subscription,
    SubscriptionStatus,
)
from marketplace_billing.models.subscription_change import SubscriptionChangeRecord
from marketplace_billing.services.analytics_service import AnalyticsService
from marketplace_billing.services.payment_gateway import PaymentGateway, ProcessorSubscription
from marketplace_billing.services.plan_catalog import PlanCatalog, is_trial_plan
from marketplace_billing.services.plan_change_service import get_current_subscription
from marketplace_billing.services.subscription_state import (
    CANCELLABLE_STATUSES,
    SubscriptionStateMachine,
    effective_status,
    effective_status_of,
)

logger = logging.getLogger(__name__)

PROCESSOR_TERMINATED = (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)
# Statuses that block starting a trial
LIVE_STATUSES = CANCELLABLE_STATUSES + (SubscriptionStatus.PAST_DUE, SubscriptionStatus.SUSPENDED)


class CancelResult(BaseModel):
    cancel_at_period_end: bool
    effective_date: datetime


class ReactivateResult(BaseModel):
    success: bool = True
    status: SubscriptionStatus
    cancel_at_period_end: bool
    current_period_end: datetime


class TrialResult(BaseModel):
    success: bool = True
    subscription_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_end: datetime
    days_remaining: int


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SubscriptionService:
    def __init__(self, gateway: Optional[PaymentGateway] = None):
        self.gateway = gateway or PaymentGateway()
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)

    def get_all_plans(self, db: Session) -> list[dict]:
        """Get all active subscription plans"""
        self.logger.info("get_all_plans: Entry")
        catalog = PlanCatalog(db)
        plans = [catalog.serialize(plan) for plan in catalog.list_active_plans()]
        self.logger.info(f"get_all_plans: Success - {len(plans)} plans")
        return plans

    def _build_view(self, subscription: Subscription, now: datetime) -> dict:
        plan = subscription.plan
        status = effective_status_of(subscription, now)
        return {
            'subscription_id': subscription.id,
            'account_id': subscription.account_id,
            'plan_id': subscription.plan_id,
            'plan_name': plan.name if plan else None,
            'plan_display_name': plan.display_name if plan else None,
            'features': (plan.features or {}) if plan else {},
            'billing_cycle': BillingCycle(subscription.billing_cycle).value,
            'stored_status': SubscriptionStatus(subscription.status).value,
            'status': status.value,
            'current_period_start': subscription.current_period_start.isoformat(),
            'current_period_end': subscription.current_period_end.isoformat(),
            'cancel_at_period_end': bool(subscription.cancel_at_period_end),
            'scheduled_plan_id': subscription.scheduled_plan_id,
            'scheduled_billing_cycle': (
                BillingCycle(subscription.scheduled_billing_cycle).value
                if subscription.scheduled_billing_cycle else None
            ),
            'has_payment_processor': bool(subscription.stripe_subscription_id),
            'payment_failed_at': subscription.payment_failed_at.isoformat() if subscription.payment_failed_at else None,
            'last_plan_change_at': (
                subscription.last_plan_change_at.isoformat() if subscription.last_plan_change_at else None
            ),
            'stale': False,
        }

    def get_subscription_view(
        self,
        db: Session,
        account_id: str,
        now: Optional[datetime] = None,
    ) -> Union[dict, Failure]:
        """
        Current subscription with its effective status.

        A failed database read falls back to the last known-good view kept in
        Redis; its status is re-derived for `now` and it is flagged stale.
        """
        self.logger.info(f"get_subscription_view: Entry - account: {account_id}")
        now = now or datetime.utcnow()

        try:
            subscription = get_current_subscription(db, account_id)
            if subscription is None:
                return Failure(code=ErrorCode.NO_SUBSCRIPTION, message="Account has no subscription")
            view = self._build_view(subscription, now)
        except SQLAlchemyError as e:
            self.logger.error(f"get_subscription_view: Failure - {e}")
            cached = get_cached_subscription_view(account_id)
            if not cached:
                raise
            cached['status'] = effective_status(
                cached['stored_status'],
                cached['cancel_at_period_end'],
                _parse_datetime(cached['current_period_end']),
                now,
                processor_managed=cached.get('has_payment_processor', True),
            ).value
            cached['stale'] = True
            self.logger.info(f"get_subscription_view: Success - served stale view for {account_id}")
            return cached

        set_cached_subscription_view(account_id, view)
        self.logger.info(f"get_subscription_view: Success - account: {account_id}, status: {view['status']}")
        return view

    def start_trial(
        self,
        db: Session,
        account_id: str,
        now: Optional[datetime] = None,
    ) -> Union[TrialResult, Failure]:
        """
        Start the free trial. One trial per account, never on top of a live
        subscription. The trial has no processor subscription and ends with
        its period unless the account checks out a paid plan first.
        """
        self.logger.info(f"start_trial: Entry - account: {account_id}")
        now = now or datetime.utcnow()

        history = db.query(Subscription).filter(Subscription.account_id == account_id).all()
        previous_trials = [sub for sub in history if sub.plan is not None and is_trial_plan(sub.plan.name)]
        if previous_trials:
            self.logger.info(f"start_trial: Rejected - account {account_id} already used its trial")
            return Failure(
                code=ErrorCode.TRIAL_ALREADY_USED,
                message="The free trial can only be used once",
                details={'previous_trials': len(previous_trials)},
            )

        current = get_current_subscription(db, account_id)
        if current is not None and effective_status_of(current, now) in LIVE_STATUSES:
            return Failure(code=ErrorCode.ALREADY_SUBSCRIBED, message="Account already has a subscription")

        trial_plan = PlanCatalog(db).get_plan(settings.trial_plan_id)
        trial_end = now + timedelta(days=settings.trial_duration_days)
        try:
            subscription = Subscription(
                id=str(uuid.uuid4()),
                account_id=account_id,
                plan_id=trial_plan.id,
                billing_cycle=BillingCycle.MONTHLY,
                status=SubscriptionStatus.TRIALING,
                current_period_start=now,
                current_period_end=trial_end,
                cancel_at_period_end=False,
                created_at=now,
            )
            db.add(subscription)
            db.commit()
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(action='start_trial', error=str(e), account_id=account_id)
            self.logger.error(f"start_trial: Failure - {e}")
            raise

        delete_cached_subscription_view(account_id)
        self.analytics.log_success(
            action='start_trial',
            account_id=account_id,
            parameters={'plan_id': trial_plan.id, 'trial_days': settings.trial_duration_days}
        )
        self.logger.info(f"start_trial: Success - account: {account_id}, ends: {trial_end.isoformat()}")
        return TrialResult(
            subscription_id=subscription.id,
            plan_id=trial_plan.id,
            status=SubscriptionStatus.TRIALING,
            current_period_end=trial_end,
            days_remaining=settings.trial_duration_days,
        )

    def cancel_subscription(
        self,
        db: Session,
        account_id: str,
        now: Optional[datetime] = None,
    ) -> Union[CancelResult, Failure]:
        """Schedule cancellation at period end; access continues until then"""
        self.logger.info(f"cancel_subscription: Entry - account: {account_id}")
        now = now or datetime.utcnow()

        subscription = get_current_subscription(db, account_id)
        if subscription is None:
            return Failure(code=ErrorCode.NO_SUBSCRIPTION, message="Account has no subscription")

        status = effective_status_of(subscription, now)
        if status not in CANCELLABLE_STATUSES:
            code = ErrorCode.SUSPENDED if status == SubscriptionStatus.SUSPENDED else ErrorCode.SUBSCRIPTION_INACTIVE
            return Failure(code=code, message=f"Cannot cancel a subscription that is {status.value}")

        if subscription.cancel_at_period_end:
            self.logger.info("cancel_subscription: Success - already scheduled")
            return CancelResult(cancel_at_period_end=True, effective_date=subscription.current_period_end)

        if subscription.stripe_subscription_id:
            try:
                self.gateway.set_cancel_at_period_end(subscription.stripe_subscription_id, True)
            except PaymentProcessorError as e:
                self.analytics.log_failure(action='cancel_subscription', error=str(e), account_id=account_id)
                return Failure(code=ErrorCode.PAYMENT_FAILED, message=str(e))

        try:
            SubscriptionStateMachine(subscription).cancel_requested(now)
            # A pending cancellation replaces any pending downgrade
            subscription.scheduled_plan_id = None
            subscription.scheduled_billing_cycle = None
            db.commit()
        except Exception as e:
            db.rollback()
            self.logger.error(f"cancel_subscription: Failure - {e}")
            raise

        delete_cached_subscription_view(account_id)
        self.analytics.log_success(
            action='cancel_subscription',
            account_id=account_id,
            parameters={'subscription_id': subscription.id, 'plan_id': subscription.plan_id}
        )
        self.logger.info(f"cancel_subscription: Success - account: {account_id}, subscription: {subscription.id}")
        return CancelResult(cancel_at_period_end=True, effective_date=subscription.current_period_end)

    def reactivate_subscription(
        self,
        db: Session,
        account_id: str,
        now: Optional[datetime] = None,
    ) -> Union[ReactivateResult, Failure]:
        """Undo a scheduled cancellation while the period is still running"""
        self.logger.info(f"reactivate_subscription: Entry - account: {account_id}")
        now = now or datetime.utcnow()

        subscription = get_current_subscription(db, account_id)
        if subscription is None:
            return Failure(code=ErrorCode.NO_SUBSCRIPTION, message="Account has no subscription")
        if not subscription.stripe_subscription_id:
            return Failure(
                code=ErrorCode.SUBSCRIPTION_FULLY_CANCELED,
                message="No paid subscription exists to reactivate; check out a plan instead",
            )

        stored = SubscriptionStatus(subscription.status)
        if not subscription.cancel_at_period_end:
            if stored in PROCESSOR_TERMINATED:
                return Failure(code=ErrorCode.CANNOT_REACTIVATE, message="Subscription has already ended")
            return Failure(
                code=ErrorCode.NOT_SCHEDULED_FOR_CANCELLATION,
                message="Subscription is not scheduled for cancellation",
            )
        if now > subscription.current_period_end:
            return Failure(code=ErrorCode.CANNOT_REACTIVATE, message="The billing period has already ended")

        try:
            processor_sub = self.gateway.retrieve_subscription(subscription.stripe_subscription_id)
            if processor_sub.status in PROCESSOR_TERMINATED:
                self._apply_processor_state(subscription, processor_sub, now)
                db.commit()
                delete_cached_subscription_view(account_id)
                return Failure(
                    code=ErrorCode.CANNOT_REACTIVATE,
                    message="The payment processor already terminated this subscription",
                )
            self.gateway.set_cancel_at_period_end(subscription.stripe_subscription_id, False)
        except PaymentProcessorError as e:
            self.analytics.log_failure(action='reactivate_subscription', error=str(e), account_id=account_id)
            return Failure(code=ErrorCode.PAYMENT_FAILED, message=str(e))

        try:
            SubscriptionStateMachine(subscription).reactivate_requested(now)
            db.commit()
        except Exception as e:
            db.rollback()
            self.logger.error(f"reactivate_subscription: Failure - {e}")
            raise

        delete_cached_subscription_view(account_id)
        self.analytics.log_success(
            action='reactivate_subscription',
            account_id=account_id,
            parameters={'subscription_id': subscription.id}
        )
        self.logger.info(f"reactivate_subscription: Success - account: {account_id}")
        return ReactivateResult(
            status=SubscriptionStatus(subscription.status),
            cancel_at_period_end=subscription.cancel_at_period_end,
            current_period_end=subscription.current_period_end,
        )

    def _apply_processor_state(self, subscription: Subscription, processor_sub: ProcessorSubscription, now: datetime):
        SubscriptionStateMachine(subscription).overwrite_from_processor(
            processor_sub.status,
            now,
            period_start=processor_sub.current_period_start,
            period_end=processor_sub.current_period_end,
            cancel_at_period_end=processor_sub.cancel_at_period_end,
        )

    def sync_status(
        self,
        db: Session,
        account_id: str,
        now: Optional[datetime] = None,
    ) -> Union[dict, Failure]:
        """Pull the processor's view and overwrite local state with it"""
        self.logger.info(f"sync_status: Entry - account: {account_id}")
        now = now or datetime.utcnow()

        subscription = get_current_subscription(db, account_id)
        if subscription is None:
            return Failure(code=ErrorCode.NO_SUBSCRIPTION, message="Account has no subscription")
        if not subscription.stripe_subscription_id:
            return Failure(code=ErrorCode.TRIAL_NO_STRIPE, message="Subscription has no payment processor record")

        try:
            processor_sub = self.gateway.retrieve_subscription(subscription.stripe_subscription_id)
        except PaymentProcessorError as e:
            return Failure(code=ErrorCode.PAYMENT_FAILED, message=str(e))

        self._apply_processor_state(subscription, processor_sub, now)
        db.commit()
        delete_cached_subscription_view(account_id)
        self.logger.info(f"sync_status: Success - account: {account_id}, status: {processor_sub.stripe_status}")
        return self._build_view(subscription, now)

    def sync_all(self, db: Session, now: Optional[datetime] = None) -> dict:
        """Reconcile every processor-backed subscription. Errors are counted, not raised."""
        self.logger.info("sync_all: Entry")
        now = now or datetime.utcnow()
        subscriptions = db.query(Subscription).filter(
            Subscription.stripe_subscription_id.isnot(None),
            Subscription.status.in_(NON_TERMINAL_STATUSES),
        ).all()

        synced, failed = 0, 0
        for subscription in subscriptions:
            try:
                processor_sub = self.gateway.retrieve_subscription(subscription.stripe_subscription_id)
            except PaymentProcessorError as e:
                self.logger.warning(f"sync_all: skipping {subscription.id} - {e}")
                failed += 1
                continue
            self._apply_processor_state(subscription, processor_sub, now)
            synced += 1
        db.commit()

        self.analytics.log_success(action='sync_all', parameters={'synced': synced, 'failed': failed})
        self.logger.info(f"sync_all: Success - synced: {synced}, failed: {failed}")
        return {'synced': synced, 'failed': failed}

    def suspend_past_due(self, db: Session, now: Optional[datetime] = None) -> int:
        """Suspend past_due subscriptions whose grace window has run out"""
        self.logger.info("suspend_past_due: Entry")
        now = now or datetime.utcnow()
        cutoff = now - timedelta(days=settings.grace_period_days)

        try:
            overdue = db.query(Subscription).filter(
                Subscription.status == SubscriptionStatus.PAST_DUE,
                Subscription.payment_failed_at.isnot(None),
                Subscription.payment_failed_at <= cutoff,
            ).all()
            for subscription in overdue:
                SubscriptionStateMachine(subscription).payment_failed_final(now)
                delete_cached_subscription_view(subscription.account_id)
            db.commit()
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(action='suspend_past_due', error=str(e))
            self.logger.error(f"suspend_past_due: Failure - {e}")
            raise

        self.logger.info(f"suspend_past_due: Success - suspended: {len(overdue)}")
        return len(overdue)

    def expire_elapsed(self, db: Session, now: Optional[datetime] = None) -> int:
        """Persist the expired status for cancellations and processor-less trials whose period has ended"""
        self.logger.info("expire_elapsed: Entry")
        now = now or datetime.utcnow()

        try:
            candidates = db.query(Subscription).filter(
                Subscription.status != SubscriptionStatus.EXPIRED,
                Subscription.current_period_end < now,
            ).all()
            count = 0
            for subscription in candidates:
                if SubscriptionStateMachine(subscription).expire_if_elapsed(now):
                    delete_cached_subscription_view(subscription.account_id)
                    count += 1
            db.commit()
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(action='expire_elapsed', error=str(e))
            self.logger.error(f"expire_elapsed: Failure - {e}")
            raise

        self.logger.info(f"expire_elapsed: Success - expired: {count}")
        return count

    def activate_from_checkout(
        self,
        db: Session,
        account_id: str,
        plan_id: str,
        billing_cycle: BillingCycle,
        processor_sub: ProcessorSubscription,
        customer_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Create the subscription for a completed checkout, superseding the previous one"""
        self.logger.info(f"activate_from_checkout: Entry - account: {account_id}, plan: {plan_id}")
        now = now or datetime.utcnow()

        existing = db.query(Subscription).filter(
            Subscription.stripe_subscription_id == processor_sub.id
        ).first()
        if existing:
            self.logger.info(f"activate_from_checkout: Success - already recorded as {existing.id}")
            return existing

        PlanCatalog(db).get_plan(plan_id)

        previous = db.query(Subscription).filter(
            Subscription.account_id == account_id,
            Subscription.status.in_(NON_TERMINAL_STATUSES),
        ).all()
        for old in previous:
            SubscriptionStateMachine(old).overwrite_from_processor(SubscriptionStatus.EXPIRED, now)

        status = processor_sub.status
        if status not in CANCELLABLE_STATUSES:
            status = SubscriptionStatus.ACTIVE
        period_start = processor_sub.current_period_start or now
        period_end = processor_sub.current_period_end or (
            period_start + timedelta(days=365 if billing_cycle == BillingCycle.YEARLY else 30)
        )
        subscription = Subscription(
            id=str(uuid.uuid4()),
            account_id=account_id,
            plan_id=plan_id,
            billing_cycle=billing_cycle,
            status=status,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=False,
            stripe_subscription_id=processor_sub.id,
            stripe_customer_id=customer_id,
            created_at=now,
        )
        db.add(subscription)
        db.flush()
        delete_cached_subscription_view(account_id)

        self.analytics.log_success(
            action='activate_from_checkout',
            account_id=account_id,
            parameters={'plan_id': plan_id, 'billing_cycle': BillingCycle(billing_cycle).value}
        )
        self.logger.info(f"activate_from_checkout: Success - subscription: {subscription.id}")
        return subscription

    def get_change_history(self, db: Session, account_id: str) -> List[dict]:
        """Committed plan changes, newest first"""
        self.logger.info(f"get_change_history: Entry - account: {account_id}")
        records = db.query(SubscriptionChangeRecord).filter(
            SubscriptionChangeRecord.account_id == account_id
        ).order_by(SubscriptionChangeRecord.changed_at.desc()).all()

        history = [{
            'id': record.id,
            'change_type': record.change_type,
            'previous_plan_id': record.previous_plan_id,
            'previous_billing_cycle': record.previous_billing_cycle,
            'new_plan_id': record.new_plan_id,
            'new_billing_cycle': record.new_billing_cycle,
            'prorated_amount': record.prorated_amount,
            'changed_by': record.changed_by,
            'changed_at': record.changed_at.isoformat(),
            'details': record.details or {},
        } for record in records]

        self.logger.info(f"get_change_history: Success - count: {len(history)}")
        return history
