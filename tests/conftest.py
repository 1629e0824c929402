"""
Pytest configuration for testing
"""

import json
import os
import uuid
from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Create mock Firebase credentials before any imports
credentials_path = "/tmp/test-billing-creds.json"
if not os.path.exists(credentials_path):
    os.makedirs(os.path.dirname(credentials_path), exist_ok=True)
    with open(credentials_path, "w") as f:
        json.dump({
            "type": "service_account",
            "project_id": "test-project",
            "private_key_id": "test-key-id",
            "client_email": "test@test-project.iam.gserviceaccount.com",
            "client_id": "123456789",
            "token_uri": "https://oauth2.googleapis.com/token",
        }, f)

# Set up environment variables for testing before any imports
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["FIREBASE_PROJECT_ID"] = "test-project"
os.environ["FIREBASE_CREDENTIALS_PATH"] = credentials_path
os.environ["REDIS_URL"] = "redis://localhost:6379/1"
os.environ["REDIS_PASSWORD"] = ""
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_dummy"
os.environ["ADMIN_EMAILS"] = "ops@inmuebles.test"

# Reference clock: 2026-03-01 -> 2026-03-31 is a 30 day period, NOW is its midpoint
PERIOD_START = datetime(2026, 3, 1)
PERIOD_END = datetime(2026, 3, 31)
NOW = datetime(2026, 3, 16)


class FakeCache:
    """In-memory stand-in for RedisCache with the same JSON round trip"""

    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ttl_minutes):
        self.store[key] = json.loads(json.dumps(value, default=str))

    def delete(self, key):
        self.store.pop(key, None)

    def ping(self):
        return True


@pytest.fixture(autouse=True)
def mock_firebase_admin(monkeypatch):
    """Mock Firebase Admin SDK to avoid initialization issues in tests"""
    mock_credentials = MagicMock()
    monkeypatch.setattr("firebase_admin.credentials.Certificate", mock_credentials.Certificate)

    mock_init = MagicMock()
    monkeypatch.setattr("firebase_admin.initialize_app", mock_init)

    mock_auth = MagicMock()
    monkeypatch.setattr("firebase_admin.auth", mock_auth)

    # Analytics writes go to Firestore
    mock_firestore = MagicMock()
    monkeypatch.setattr("firebase_admin.firestore.client", mock_firestore)

    yield mock_auth


@pytest.fixture(autouse=True)
def fake_cache(monkeypatch):
    """Replace the global Redis cache with a dict"""
    cache = FakeCache()
    monkeypatch.setattr("marketplace_billing.core.cache._cache_instance", cache)
    return cache


@pytest.fixture(scope="function")
def db_engine():
    """In-memory SQLite shared by every connection of one test"""
    from marketplace_billing.core.database import Base
    import marketplace_billing.models  # noqa: F401

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine):
    """Create a new database session for a test"""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = TestingSessionLocal()

    yield session

    session.rollback()
    session.close()


@pytest.fixture
def plans(db_session):
    """The agente family plus one plan of another family"""
    from marketplace_billing.models.plan import Plan

    rows = {
        'agente_trial': Plan(
            id='agente_trial', name='agente_trial', display_name='Agente Prueba',
            price_monthly=Decimal('0'), price_yearly=Decimal('0'),
            features={'max_properties': 3, 'featured_per_month': 0},
            display_order=0,
        ),
        'agente_basico': Plan(
            id='agente_basico', name='agente_basico', display_name='Agente Basico',
            price_monthly=Decimal('249.00'), price_yearly=Decimal('2490.00'),
            features={'max_properties': 10, 'featured_per_month': 2},
            stripe_price_id_monthly='price_basico_m', stripe_price_id_yearly='price_basico_y',
            display_order=1,
        ),
        'agente_pro': Plan(
            id='agente_pro', name='agente_pro', display_name='Agente Pro',
            price_monthly=Decimal('599.00'), price_yearly=Decimal('5990.00'),
            features={'max_properties': 30, 'featured_per_month': 5},
            stripe_price_id_monthly='price_pro_m', stripe_price_id_yearly='price_pro_y',
            display_order=2,
        ),
        'agente_elite': Plan(
            id='agente_elite', name='agente_elite', display_name='Agente Elite',
            price_monthly=Decimal('999.00'), price_yearly=None,
            features={'max_properties': -1, 'featured_per_month': 15},
            stripe_price_id_monthly='price_elite_m',
            display_order=3,
        ),
        'inmobiliaria_start': Plan(
            id='inmobiliaria_start', name='inmobiliaria_start', display_name='Inmobiliaria Start',
            price_monthly=Decimal('1499.00'), price_yearly=None,
            features={'max_properties': 100, 'featured_per_month': 10},
            stripe_price_id_monthly='price_inmo_m',
            display_order=4,
        ),
    }
    db_session.add_all(rows.values())
    db_session.commit()
    return rows


@pytest.fixture
def make_account(db_session):
    from marketplace_billing.models.account import Account

    def _make(account_id='acct_1', email=None, email_verified=True, is_admin=False, stripe_customer_id='cus_1'):
        account = Account(
            id=account_id,
            email=email or f"{account_id}@inmuebles.test",
            email_verified=email_verified,
            is_admin=is_admin,
            stripe_customer_id=stripe_customer_id,
        )
        db_session.add(account)
        db_session.commit()
        return account

    return _make


@pytest.fixture
def make_subscription(db_session):
    from marketplace_billing.models.subscription import BillingCycle, Subscription, SubscriptionStatus

    def _make(
        account_id='acct_1',
        plan_id='agente_basico',
        status=SubscriptionStatus.ACTIVE,
        billing_cycle=BillingCycle.MONTHLY,
        period_start=PERIOD_START,
        period_end=PERIOD_END,
        cancel_at_period_end=False,
        stripe_subscription_id='sub_1',
        stripe_customer_id='cus_1',
        last_plan_change_at=None,
        created_at=PERIOD_START,
        **extra,
    ):
        subscription = Subscription(
            id=str(uuid.uuid4()),
            account_id=account_id,
            plan_id=plan_id,
            billing_cycle=billing_cycle,
            status=status,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=cancel_at_period_end,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=stripe_customer_id,
            last_plan_change_at=last_plan_change_at,
            created_at=created_at,
            **extra,
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _make


@pytest.fixture
def gateway():
    """PaymentGateway double; no Stripe calls leave the test"""
    from marketplace_billing.services.payment_gateway import PaymentGateway
    return MagicMock(spec=PaymentGateway)


@pytest.fixture
def processor_subscription():
    from marketplace_billing.services.payment_gateway import ProcessorSubscription
    from marketplace_billing.models.subscription import SubscriptionStatus

    def _make(
        sub_id='sub_1',
        stripe_status='active',
        status=SubscriptionStatus.ACTIVE,
        period_start=PERIOD_START,
        period_end=PERIOD_END,
        cancel_at_period_end=False,
    ):
        return ProcessorSubscription(
            id=sub_id,
            stripe_status=stripe_status,
            status=status,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=cancel_at_period_end,
            item_id='si_1',
        )

    return _make
