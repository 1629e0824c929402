import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import stripe

from marketplace_billing.core.config import settings
from marketplace_billing.core.errors import PaymentProcessorError
from marketplace_billing.models.subscription import SubscriptionStatus

logger = logging.getLogger(__name__)

# Stripe subscription status -> local status
STRIPE_STATUS_MAP = {
    'trialing': SubscriptionStatus.TRIALING,
    'active': SubscriptionStatus.ACTIVE,
    'past_due': SubscriptionStatus.PAST_DUE,
    'incomplete': SubscriptionStatus.PAST_DUE,
    'unpaid': SubscriptionStatus.SUSPENDED,
    'paused': SubscriptionStatus.SUSPENDED,
    'canceled': SubscriptionStatus.CANCELED,
    'incomplete_expired': SubscriptionStatus.EXPIRED,
}


def map_processor_status(stripe_status: Optional[str]) -> SubscriptionStatus:
    return STRIPE_STATUS_MAP.get(stripe_status or 'active', SubscriptionStatus.ACTIVE)


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Stripe epoch seconds -> naive UTC datetime"""
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


@dataclass
class ProcessorSubscription:
    id: str
    stripe_status: str
    status: SubscriptionStatus
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    item_id: Optional[str] = None
    price_id: Optional[str] = None

    @classmethod
    def from_stripe(cls, data) -> "ProcessorSubscription":
        items = (data.get('items') or {}).get('data') or []
        first_item = items[0] if items else {}
        # Newer API versions only carry the period on the subscription item
        period_start = data.get('current_period_start') or first_item.get('current_period_start')
        period_end = data.get('current_period_end') or first_item.get('current_period_end')
        return cls(
            id=data.get('id'),
            stripe_status=data.get('status'),
            status=map_processor_status(data.get('status')),
            current_period_start=from_timestamp(period_start),
            current_period_end=from_timestamp(period_end),
            cancel_at_period_end=bool(data.get('cancel_at_period_end', False)),
            item_id=first_item.get('id'),
            price_id=(first_item.get('price') or {}).get('id'),
        )


class PaymentGateway:
    """Stripe calls used by the billing core. Every Stripe error surfaces as PaymentProcessorError."""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or settings.stripe_secret_key
        self.logger = logging.getLogger(__name__)

    def _init_stripe(self):
        stripe.api_key = self.api_key

    def _wrap(self, operation: str, error: Exception) -> PaymentProcessorError:
        message = getattr(error, 'user_message', None) or str(error) or 'Payment processor error'
        code = getattr(error, 'code', None)
        self.logger.error(f"{operation}: Failure - {message}")
        return PaymentProcessorError(message, processor_code=code)

    def retrieve_subscription(self, stripe_subscription_id: str) -> ProcessorSubscription:
        self.logger.info(f"retrieve_subscription: Entry - {stripe_subscription_id}")
        self._init_stripe()
        try:
            data = stripe.Subscription.retrieve(stripe_subscription_id)
        except stripe.StripeError as e:
            raise self._wrap('retrieve_subscription', e)
        result = ProcessorSubscription.from_stripe(data)
        self.logger.info(f"retrieve_subscription: Success - {result.id}, status: {result.stripe_status}")
        return result

    def change_price(
        self,
        stripe_subscription_id: str,
        price_id: str,
        proration_behavior: str,
        idempotency_key: str,
    ) -> ProcessorSubscription:
        """
        Swap the subscription's price.

        'always_invoice' charges the prorated difference right away and fails
        on a declined card instead of leaving an open invoice behind.
        'none' leaves billing untouched until the next renewal. A scheduled
        cancellation is left as it is.
        """
        self.logger.info(
            f"change_price: Entry - {stripe_subscription_id}, price: {price_id}, proration: {proration_behavior}"
        )
        self._init_stripe()
        try:
            current = stripe.Subscription.retrieve(stripe_subscription_id)
            items = (current.get('items') or {}).get('data') or []
            if not items:
                raise PaymentProcessorError(f"Subscription {stripe_subscription_id} has no items")
            params = {
                'items': [{'id': items[0].get('id'), 'price': price_id}],
                'proration_behavior': proration_behavior,
                'idempotency_key': idempotency_key,
            }
            if proration_behavior == 'always_invoice':
                params['payment_behavior'] = 'error_if_incomplete'
            data = stripe.Subscription.modify(stripe_subscription_id, **params)
        except stripe.StripeError as e:
            raise self._wrap('change_price', e)
        result = ProcessorSubscription.from_stripe(data)
        self.logger.info(f"change_price: Success - {result.id}")
        return result

    def set_cancel_at_period_end(self, stripe_subscription_id: str, cancel: bool) -> ProcessorSubscription:
        self.logger.info(f"set_cancel_at_period_end: Entry - {stripe_subscription_id}, cancel: {cancel}")
        self._init_stripe()
        try:
            data = stripe.Subscription.modify(stripe_subscription_id, cancel_at_period_end=cancel)
        except stripe.StripeError as e:
            raise self._wrap('set_cancel_at_period_end', e)
        self.logger.info(f"set_cancel_at_period_end: Success - {stripe_subscription_id}")
        return ProcessorSubscription.from_stripe(data)

    def charge_once(
        self,
        customer_id: str,
        amount: int,
        description: str,
        idempotency_key: str,
    ) -> str:
        """Invoice and collect a one-off amount (minor units). Returns the invoice id."""
        self.logger.info(f"charge_once: Entry - customer: {customer_id}, amount: {amount}")
        self._init_stripe()
        try:
            stripe.InvoiceItem.create(
                customer=customer_id,
                amount=amount,
                currency=settings.currency,
                description=description,
                idempotency_key=f"{idempotency_key}:item",
            )
            invoice = stripe.Invoice.create(
                customer=customer_id,
                collection_method='charge_automatically',
                pending_invoice_items_behavior='include',
                idempotency_key=f"{idempotency_key}:invoice",
            )
            paid = stripe.Invoice.pay(invoice.get('id'))
        except stripe.StripeError as e:
            raise self._wrap('charge_once', e)
        if paid.get('status') != 'paid':
            raise PaymentProcessorError(f"Invoice {paid.get('id')} was not paid")
        self.logger.info(f"charge_once: Success - invoice: {paid.get('id')}")
        return paid.get('id')

    def construct_event(self, payload: bytes, sig_header: str):
        """Verify the webhook signature and return the event"""
        return stripe.Webhook.construct_event(payload, sig_header, settings.stripe_webhook_secret)
