import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace_billing.core.cache import delete_cached_subscription_view
from marketplace_billing.core.config import settings
from marketplace_billing.core.errors import InvalidStateTransition
from marketplace_billing.models.account import Account
from marketplace_billing.models.processed_webhook_event import ProcessedWebhookEvent
from marketplace_billing.models.subscription import BillingCycle, Subscription, SubscriptionStatus
from marketplace_billing.services.analytics_service import AnalyticsService
from marketplace_billing.services.payment_gateway import PaymentGateway, ProcessorSubscription, from_timestamp
from marketplace_billing.services.subscription_service import SubscriptionService
from marketplace_billing.services.subscription_state import CANCELLABLE_STATUSES, SubscriptionStateMachine

logger = logging.getLogger(__name__)


def _invoice_subscription_id(invoice: dict) -> Optional[str]:
    if invoice.get('subscription'):
        return invoice['subscription']
    # Newer API versions nest it under parent.subscription_details
    parent = invoice.get('parent') or {}
    return (parent.get('subscription_details') or {}).get('subscription')


def _invoice_period(invoice: dict):
    lines = (invoice.get('lines') or {}).get('data') or []
    if not lines:
        return None, None
    period = lines[0].get('period') or {}
    return from_timestamp(period.get('start')), from_timestamp(period.get('end'))


class WebhookService:
    """Applies Stripe events to local subscriptions. Each event id is processed at most once."""

    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        subscriptions: Optional[SubscriptionService] = None,
    ):
        self.gateway = gateway or PaymentGateway()
        self.subscriptions = subscriptions or SubscriptionService(gateway=self.gateway)
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)
        self.handlers = {
            'checkout.session.completed': self._handle_checkout_completed,
            'invoice.paid': self._handle_payment_succeeded,
            'invoice.payment_succeeded': self._handle_payment_succeeded,
            'invoice.payment_failed': self._handle_payment_failed,
            'customer.subscription.updated': self._handle_subscription_updated,
            'customer.subscription.deleted': self._handle_subscription_deleted,
        }

    def _is_event_processed(self, db: Session, event_id: str) -> bool:
        return db.query(ProcessedWebhookEvent).filter(
            ProcessedWebhookEvent.event_id == event_id
        ).first() is not None

    def handle_event(self, db: Session, event: dict, now: Optional[datetime] = None) -> dict:
        event_id = event['id']
        event_type = event['type']
        self.logger.info(f"handle_event: Entry - {event_id} ({event_type})")
        now = now or datetime.utcnow()

        if self._is_event_processed(db, event_id):
            self.logger.info(f"handle_event: Success - duplicate {event_id} skipped")
            return {'received': True, 'duplicate': True}

        handler = self.handlers.get(event_type)
        if handler is None:
            self.logger.info(f"handle_event: Success - unhandled event type {event_type}")
            return {'received': True, 'handled': False}

        try:
            handler(db, event['data']['object'], now)
            db.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type, processed_at=now))
            db.commit()
        except IntegrityError as e:
            db.rollback()
            # Another delivery of the same event committed its ledger row first
            if self._is_event_processed(db, event_id):
                self.logger.info(f"handle_event: Success - concurrent duplicate {event_id} skipped")
                return {'received': True, 'duplicate': True}
            self._log_failure(event_id, event_type, e)
            raise
        except Exception as e:
            db.rollback()
            self._log_failure(event_id, event_type, e)
            raise

        self.logger.info(f"handle_event: Success - {event_id} ({event_type})")
        return {'received': True, 'handled': True}

    def _log_failure(self, event_id: str, event_type: str, error: Exception):
        self.analytics.log_failure(
            action='handle_webhook', error=str(error), parameters={'event_id': event_id, 'event_type': event_type}
        )
        self.logger.error(f"handle_event: Failure - {event_id} ({event_type}): {error}")

    def _find_subscription(self, db: Session, stripe_subscription_id: Optional[str], event: str) -> Optional[Subscription]:
        if not stripe_subscription_id:
            self.logger.warning(f"{event}: event carries no subscription id, dropped")
            return None
        subscription = db.query(Subscription).filter(
            Subscription.stripe_subscription_id == stripe_subscription_id
        ).first()
        if subscription is None:
            self.logger.warning(f"{event}: unknown subscription {stripe_subscription_id}, dropped")
        return subscription

    def _handle_payment_succeeded(self, db: Session, invoice: dict, now: datetime):
        subscription = self._find_subscription(db, _invoice_subscription_id(invoice), 'payment_succeeded')
        if subscription is None:
            return
        period_start, period_end = _invoice_period(invoice)
        try:
            applied = SubscriptionStateMachine(subscription).payment_succeeded(now, period_start, period_end)
        except InvalidStateTransition as e:
            self.logger.warning(f"payment_succeeded: ignored for {subscription.id} - {e}")
            return
        if applied:
            self.logger.info(f"payment_succeeded: scheduled plan change applied to {subscription.id}")
        delete_cached_subscription_view(subscription.account_id)

    def _handle_payment_failed(self, db: Session, invoice: dict, now: datetime):
        subscription = self._find_subscription(db, _invoice_subscription_id(invoice), 'payment_failed')
        if subscription is None:
            return
        attempt_count = invoice.get('attempt_count') or 0
        final = invoice.get('next_payment_attempt') is None or attempt_count >= settings.max_payment_attempts

        machine = SubscriptionStateMachine(subscription)
        if SubscriptionStatus(subscription.status) in CANCELLABLE_STATUSES:
            machine.payment_failed(now)
        if final and SubscriptionStatus(subscription.status) == SubscriptionStatus.PAST_DUE:
            machine.payment_failed_final(now)
            self.analytics.log_event(
                'subscription_suspended',
                account_id=subscription.account_id,
                parameters={'subscription_id': subscription.id, 'attempt_count': attempt_count}
            )
        delete_cached_subscription_view(subscription.account_id)

    def _handle_subscription_updated(self, db: Session, data: dict, now: datetime):
        processor_sub = ProcessorSubscription.from_stripe(data)
        subscription = self._find_subscription(db, processor_sub.id, 'subscription_updated')
        if subscription is None:
            return
        SubscriptionStateMachine(subscription).overwrite_from_processor(
            processor_sub.status,
            now,
            period_start=processor_sub.current_period_start,
            period_end=processor_sub.current_period_end,
            cancel_at_period_end=processor_sub.cancel_at_period_end,
        )
        delete_cached_subscription_view(subscription.account_id)

    def _handle_subscription_deleted(self, db: Session, data: dict, now: datetime):
        processor_sub = ProcessorSubscription.from_stripe(data)
        subscription = self._find_subscription(db, processor_sub.id, 'subscription_deleted')
        if subscription is None:
            return
        SubscriptionStateMachine(subscription).overwrite_from_processor(
            SubscriptionStatus.CANCELED,
            now,
            period_start=processor_sub.current_period_start,
            period_end=processor_sub.current_period_end,
            cancel_at_period_end=False,
        )
        delete_cached_subscription_view(subscription.account_id)

    def _handle_checkout_completed(self, db: Session, session: dict, now: datetime):
        metadata = session.get('metadata') or {}
        account_id = metadata.get('account_id')
        plan_id = metadata.get('plan_id')
        stripe_subscription_id = session.get('subscription')
        customer_id = session.get('customer')

        if not account_id or not plan_id:
            self.logger.warning("checkout_completed: missing account_id/plan_id metadata, dropped")
            return
        if not stripe_subscription_id:
            self.logger.warning(f"checkout_completed: no subscription for account {account_id}, dropped")
            return

        try:
            cycle = BillingCycle(metadata.get('billing_cycle', BillingCycle.MONTHLY.value))
        except ValueError:
            cycle = BillingCycle.MONTHLY

        account = db.query(Account).filter(Account.id == account_id).first()
        if account is None:
            self.logger.warning(f"checkout_completed: unknown account {account_id}, dropped")
            return
        if customer_id and not account.stripe_customer_id:
            account.stripe_customer_id = customer_id

        processor_sub = self.gateway.retrieve_subscription(stripe_subscription_id)
        self.subscriptions.activate_from_checkout(
            db, account_id, plan_id, cycle, processor_sub, customer_id=customer_id, now=now
        )
