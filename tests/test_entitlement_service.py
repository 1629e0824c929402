"""
Tests for listing and featured-listing entitlements
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from marketplace_billing.models.listing import Listing
from marketplace_billing.models.subscription import SubscriptionStatus
from marketplace_billing.models.upsell import (
    ActiveUpsellGrant,
    FeaturedPropertyGrant,
    GrantStatus,
    Upsell,
    UpsellType,
)
from marketplace_billing.services.entitlement_service import EntitlementService, usage_indicators

from conftest import NOW, PERIOD_END, PERIOD_START


@pytest.fixture
def service():
    return EntitlementService()


@pytest.fixture
def add_listings(db_session):
    def _add(count, account_id='acct_1', status='active'):
        for _ in range(count):
            db_session.add(Listing(id=str(uuid.uuid4()), account_id=account_id, status=status))
        db_session.commit()
    return _add


@pytest.fixture
def slot_upsell(db_session):
    upsell = Upsell(
        id='slot_extra_5', name='5 propiedades extra', upsell_type=UpsellType.PROPERTY_SLOT,
        price=Decimal('199.00'), is_recurring=True, duration_days=30, quantity=5,
    )
    db_session.add(upsell)
    db_session.commit()
    return upsell


def _grant(db_session, upsell, status=GrantStatus.ACTIVE, start=PERIOD_START, end=PERIOD_END, quantity=5):
    grant = ActiveUpsellGrant(
        id=str(uuid.uuid4()), account_id='acct_1', upsell_id=upsell.id,
        status=status, quantity=quantity, start_date=start, end_date=end,
    )
    db_session.add(grant)
    db_session.commit()
    return grant


class TestUsageIndicators:

    def test_unlimited(self):
        assert usage_indicators(500, -1) == {
            'remaining': -1, 'usage_percent': 0, 'is_near_limit': False, 'is_at_limit': False,
        }

    def test_zero_limit(self):
        result = usage_indicators(0, 0)
        assert result['usage_percent'] == 100
        assert result['is_at_limit'] is True
        assert result['remaining'] == 0

    def test_near_limit_from_eighty_percent(self):
        assert usage_indicators(8, 10)['is_near_limit'] is True
        assert usage_indicators(7, 10)['is_near_limit'] is False

    def test_at_limit_is_not_near_limit(self):
        result = usage_indicators(10, 10)
        assert result['is_at_limit'] is True
        assert result['is_near_limit'] is False
        assert result['usage_percent'] == 100

    def test_over_limit_clamps(self):
        result = usage_indicators(12, 10)
        assert result['remaining'] == 0
        assert result['usage_percent'] == 100


class TestListingEntitlement:

    def test_room_left(self, db_session, service, plans, make_account, make_subscription, add_listings):
        make_account('acct_1')
        make_subscription(plan_id='agente_basico')
        add_listings(3)
        add_listings(4, status='sold')

        check = service.can_create(db_session, 'acct_1', 'listing', now=NOW)

        assert check.can_create is True
        assert check.reason is None
        assert check.used == 3
        assert check.limit == 10
        assert check.remaining == 7

    def test_limit_reached(self, db_session, service, plans, make_account, make_subscription, add_listings):
        make_account('acct_1')
        make_subscription(plan_id='agente_basico')
        add_listings(8)
        add_listings(2, status='pending_review')

        check = service.can_create(db_session, 'acct_1', 'listing', now=NOW)

        assert check.can_create is False
        assert check.reason == 'limit_reached'
        assert check.is_at_limit is True

    def test_slot_upsell_extends_limit(
        self, db_session, service, plans, make_account, make_subscription, add_listings, slot_upsell
    ):
        make_account('acct_1')
        make_subscription(plan_id='agente_basico')
        add_listings(10)
        _grant(db_session, slot_upsell)

        check = service.can_create(db_session, 'acct_1', 'listing', now=NOW)

        assert check.limit == 15
        assert check.can_create is True

    def test_cancelled_grant_counts_until_end_date(
        self, db_session, service, plans, make_account, make_subscription, slot_upsell
    ):
        make_account('acct_1')
        make_subscription(plan_id='agente_basico')
        _grant(db_session, slot_upsell, status=GrantStatus.CANCELLED)

        check = service.can_create(db_session, 'acct_1', 'listing', now=NOW)

        assert check.limit == 15

    def test_elapsed_grant_ignored_before_expiry_job(
        self, db_session, service, plans, make_account, make_subscription, slot_upsell
    ):
        make_account('acct_1')
        make_subscription(plan_id='agente_basico')
        _grant(db_session, slot_upsell, end=NOW - timedelta(days=1))

        check = service.can_create(db_session, 'acct_1', 'listing', now=NOW)

        assert check.limit == 10

    def test_unlimited_plan(self, db_session, service, plans, make_account, make_subscription, add_listings):
        make_account('acct_1')
        make_subscription(plan_id='agente_elite')
        add_listings(50)

        check = service.can_create(db_session, 'acct_1', 'listing', now=NOW)

        assert check.can_create is True
        assert check.remaining == -1
        assert check.usage_percent == 0

    def test_unverified_email(self, db_session, service, plans, make_account, make_subscription):
        make_account('acct_1', email_verified=False)
        make_subscription(plan_id='agente_basico')

        check = service.can_create(db_session, 'acct_1', 'listing', now=NOW)

        assert check.can_create is False
        assert check.reason == 'verification_required'

    def test_token_verification_overrides_stored_flag(
        self, db_session, service, plans, make_account, make_subscription
    ):
        make_account('acct_1', email_verified=False)
        make_subscription(plan_id='agente_basico')

        check = service.can_create(db_session, 'acct_1', 'listing', email_verified=True, now=NOW)

        assert check.can_create is True

    def test_gates_are_reported_independently(
        self, db_session, service, plans, make_account, make_subscription, add_listings
    ):
        make_account('acct_1', email_verified=False)
        make_subscription(plan_id='agente_basico', status=SubscriptionStatus.SUSPENDED)
        add_listings(10)

        check = service.can_create(db_session, 'acct_1', 'listing', now=NOW)

        assert check.reason == 'subscription_inactive'
        assert check.blocked_by == ['subscription_inactive', 'verification_required', 'limit_reached']
        assert check.subscription_status == 'suspended'

    def test_no_subscription(self, db_session, service, plans, make_account):
        make_account('acct_1')

        check = service.can_create(db_session, 'acct_1', 'listing', now=NOW)

        assert check.can_create is False
        assert check.reason == 'no_subscription'

    def test_past_due_is_blocked(self, db_session, service, plans, make_account, make_subscription):
        make_account('acct_1')
        make_subscription(plan_id='agente_basico', status=SubscriptionStatus.PAST_DUE)

        check = service.can_create(db_session, 'acct_1', 'listing', now=NOW)

        assert check.can_create is False
        assert check.reason == 'subscription_inactive'
        assert check.subscription_status == 'past_due'

    def test_trial_without_processor_ends_with_period(
        self, db_session, service, plans, make_account, make_subscription
    ):
        make_account('acct_1')
        make_subscription(
            plan_id='agente_trial', status=SubscriptionStatus.TRIALING,
            stripe_subscription_id=None, stripe_customer_id=None,
        )

        during = service.can_create(db_session, 'acct_1', 'listing', now=NOW)
        after = service.can_create(db_session, 'acct_1', 'listing', now=PERIOD_END + timedelta(days=120))

        assert during.can_create is True
        assert after.can_create is False
        assert after.reason == 'subscription_inactive'
        assert after.subscription_status == 'expired'

    def test_expired_by_period_end(self, db_session, service, plans, make_account, make_subscription):
        make_account('acct_1')
        make_subscription(plan_id='agente_basico', cancel_at_period_end=True)

        check = service.can_create(db_session, 'acct_1', 'listing', now=PERIOD_END + timedelta(days=1))

        assert check.reason == 'subscription_inactive'
        assert check.subscription_status == 'expired'

    def test_unknown_resource_kind(self, db_session, service):
        with pytest.raises(ValueError):
            service.can_create(db_session, 'acct_1', 'open_house', now=NOW)


class TestFeaturedEntitlement:

    def test_counts_featured_grants_of_current_period(
        self, db_session, service, plans, make_account, make_subscription, add_listings
    ):
        make_account('acct_1')
        make_subscription(plan_id='agente_basico')
        add_listings(1)
        listing = db_session.query(Listing).first()
        for start in (PERIOD_START - timedelta(days=10), PERIOD_START + timedelta(days=2)):
            db_session.add(FeaturedPropertyGrant(
                id=str(uuid.uuid4()), account_id='acct_1', listing_id=listing.id,
                status=GrantStatus.ACTIVE, start_date=start, end_date=start + timedelta(days=30),
            ))
        db_session.commit()

        check = service.can_create(db_session, 'acct_1', 'featured_listing', now=NOW)

        assert check.limit == 2
        assert check.used == 1
        assert check.remaining == 1
        assert check.can_create is True
