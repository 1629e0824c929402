"""
Tests for Stripe webhook event handling
"""

import calendar
from datetime import timedelta
from unittest.mock import patch

import pytest

from marketplace_billing.models.processed_webhook_event import ProcessedWebhookEvent
from marketplace_billing.models.subscription import Subscription, SubscriptionStatus
from marketplace_billing.services.subscription_service import SubscriptionService
from marketplace_billing.services.webhook_service import WebhookService

from conftest import NOW, PERIOD_END, PERIOD_START


def _ts(value):
    return calendar.timegm(value.utctimetuple())


def _event(event_id, event_type, obj):
    return {'id': event_id, 'type': event_type, 'data': {'object': obj}}


def _invoice(sub_id='sub_1', attempt_count=1, next_attempt=1, period=(PERIOD_START, PERIOD_END)):
    return {
        'id': 'in_1',
        'subscription': sub_id,
        'attempt_count': attempt_count,
        'next_payment_attempt': next_attempt,
        'lines': {'data': [{'period': {'start': _ts(period[0]), 'end': _ts(period[1])}}]},
    }


@pytest.fixture
def mock_analytics():
    with patch("marketplace_billing.services.webhook_service.AnalyticsService") as analytics_cls, \
         patch("marketplace_billing.services.subscription_service.AnalyticsService"):
        yield analytics_cls.return_value


@pytest.fixture
def service(gateway, mock_analytics):
    return WebhookService(gateway=gateway, subscriptions=SubscriptionService(gateway=gateway))


@pytest.fixture
def account(plans, make_account):
    return make_account('acct_1')


class TestHandleEvent:

    def test_duplicate_event_is_skipped(self, db_session, service, account, make_subscription):
        subscription = make_subscription(status=SubscriptionStatus.ACTIVE)
        event = _event('evt_1', 'invoice.payment_failed', _invoice())

        first = service.handle_event(db_session, event, now=NOW)
        subscription.status = SubscriptionStatus.ACTIVE
        db_session.commit()
        second = service.handle_event(db_session, event, now=NOW)

        assert first == {'received': True, 'handled': True}
        assert second == {'received': True, 'duplicate': True}
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert db_session.query(ProcessedWebhookEvent).count() == 1

    def test_concurrent_duplicate_is_skipped(self, db_session, service, account, make_subscription, mock_analytics):
        subscription = make_subscription(status=SubscriptionStatus.ACTIVE)
        # The other delivery committed between our ledger check and our insert
        db_session.add(ProcessedWebhookEvent(event_id='evt_1', event_type='invoice.payment_failed', processed_at=NOW))
        db_session.commit()
        event = _event('evt_1', 'invoice.payment_failed', _invoice())

        with patch.object(service, '_is_event_processed', side_effect=[False, True]):
            result = service.handle_event(db_session, event, now=NOW)

        assert result == {'received': True, 'duplicate': True}
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert db_session.query(ProcessedWebhookEvent).count() == 1
        mock_analytics.log_failure.assert_not_called()

    def test_unhandled_type_is_not_recorded(self, db_session, service):
        result = service.handle_event(db_session, _event('evt_2', 'customer.created', {}), now=NOW)

        assert result == {'received': True, 'handled': False}
        assert db_session.query(ProcessedWebhookEvent).count() == 0

    def test_unknown_subscription_is_dropped(self, db_session, service, account, make_subscription):
        make_subscription()

        result = service.handle_event(
            db_session, _event('evt_3', 'invoice.payment_failed', _invoice(sub_id='sub_unknown')), now=NOW
        )

        assert result['handled'] is True
        assert db_session.query(ProcessedWebhookEvent).count() == 1

    def test_handler_error_rolls_back_and_raises(self, db_session, service, gateway, account, mock_analytics):
        gateway.retrieve_subscription.side_effect = RuntimeError("stripe down")
        session = {
            'subscription': 'sub_new',
            'customer': 'cus_1',
            'metadata': {'account_id': 'acct_1', 'plan_id': 'agente_pro', 'billing_cycle': 'monthly'},
        }

        with pytest.raises(RuntimeError):
            service.handle_event(db_session, _event('evt_4', 'checkout.session.completed', session), now=NOW)

        assert db_session.query(ProcessedWebhookEvent).count() == 0
        mock_analytics.log_failure.assert_called_once()


class TestInvoiceEvents:

    def test_payment_failed_enters_grace(self, db_session, service, account, make_subscription):
        subscription = make_subscription()

        service.handle_event(db_session, _event('evt_5', 'invoice.payment_failed', _invoice()), now=NOW)

        assert subscription.status == SubscriptionStatus.PAST_DUE
        assert subscription.payment_failed_at == NOW

    def test_final_attempt_suspends(self, db_session, service, account, make_subscription, mock_analytics):
        subscription = make_subscription(status=SubscriptionStatus.PAST_DUE, payment_failed_at=NOW - timedelta(days=6))

        service.handle_event(
            db_session, _event('evt_6', 'invoice.payment_failed', _invoice(attempt_count=4, next_attempt=None)),
            now=NOW,
        )

        assert subscription.status == SubscriptionStatus.SUSPENDED
        assert mock_analytics.log_event.call_args.args[0] == 'subscription_suspended'

    def test_payment_succeeded_restores_suspended(self, db_session, service, account, make_subscription):
        subscription = make_subscription(status=SubscriptionStatus.SUSPENDED, payment_failed_at=NOW - timedelta(days=9))

        service.handle_event(db_session, _event('evt_7', 'invoice.paid', _invoice()), now=NOW)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.payment_failed_at is None

    def test_renewal_applies_scheduled_downgrade(self, db_session, service, account, make_subscription):
        subscription = make_subscription(plan_id='agente_pro', scheduled_plan_id='agente_basico')
        next_end = PERIOD_END + timedelta(days=30)

        service.handle_event(
            db_session,
            _event('evt_8', 'invoice.payment_succeeded', _invoice(period=(PERIOD_END, next_end))),
            now=PERIOD_END + timedelta(hours=1),
        )

        assert subscription.plan_id == 'agente_basico'
        assert subscription.scheduled_plan_id is None
        assert subscription.current_period_end == next_end

    def test_subscription_id_under_parent(self, db_session, service, account, make_subscription):
        subscription = make_subscription()
        invoice = _invoice(sub_id=None)
        invoice['parent'] = {'subscription_details': {'subscription': 'sub_1'}}

        service.handle_event(db_session, _event('evt_9', 'invoice.payment_failed', invoice), now=NOW)

        assert subscription.status == SubscriptionStatus.PAST_DUE


class TestSubscriptionEvents:

    def test_updated_overwrites_local_state(self, db_session, service, account, make_subscription):
        subscription = make_subscription(status=SubscriptionStatus.PAST_DUE)
        next_end = PERIOD_END + timedelta(days=30)
        data = {
            'id': 'sub_1',
            'status': 'active',
            'cancel_at_period_end': True,
            'current_period_start': _ts(PERIOD_END),
            'current_period_end': _ts(next_end),
            'items': {'data': [{'id': 'si_1', 'price': {'id': 'price_basico_m'}}]},
        }

        service.handle_event(db_session, _event('evt_10', 'customer.subscription.updated', data), now=NOW)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.cancel_at_period_end is True
        assert subscription.current_period_end == next_end

    def test_period_read_from_item_on_newer_api(self, db_session, service, account, make_subscription):
        subscription = make_subscription()
        next_end = PERIOD_END + timedelta(days=30)
        data = {
            'id': 'sub_1',
            'status': 'active',
            'items': {'data': [{
                'id': 'si_1',
                'current_period_start': _ts(PERIOD_END),
                'current_period_end': _ts(next_end),
            }]},
        }

        service.handle_event(db_session, _event('evt_11', 'customer.subscription.updated', data), now=NOW)

        assert subscription.current_period_end == next_end

    def test_deleted_marks_canceled(self, db_session, service, account, make_subscription):
        subscription = make_subscription(cancel_at_period_end=True)
        data = {'id': 'sub_1', 'status': 'canceled', 'items': {'data': []}}

        service.handle_event(db_session, _event('evt_12', 'customer.subscription.deleted', data), now=NOW)

        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.cancel_at_period_end is False


class TestCheckoutCompleted:

    def test_creates_subscription(
        self, db_session, service, gateway, account, make_subscription, processor_subscription
    ):
        trial = make_subscription(plan_id='agente_trial', status=SubscriptionStatus.TRIALING, stripe_subscription_id=None)
        gateway.retrieve_subscription.return_value = processor_subscription(sub_id='sub_new')
        session = {
            'subscription': 'sub_new',
            'customer': 'cus_9',
            'metadata': {'account_id': 'acct_1', 'plan_id': 'agente_pro', 'billing_cycle': 'yearly'},
        }

        service.handle_event(db_session, _event('evt_13', 'checkout.session.completed', session), now=NOW)

        created = db_session.query(Subscription).filter(Subscription.stripe_subscription_id == 'sub_new').one()
        assert created.plan_id == 'agente_pro'
        assert created.billing_cycle.value == 'yearly'
        assert created.stripe_customer_id == 'cus_9'
        assert trial.status == SubscriptionStatus.EXPIRED

    def test_missing_metadata_is_dropped(self, db_session, service, gateway, account):
        service.handle_event(
            db_session, _event('evt_14', 'checkout.session.completed', {'subscription': 'sub_new'}), now=NOW
        )

        gateway.retrieve_subscription.assert_not_called()
        assert db_session.query(Subscription).count() == 0
