"""
Tests for the billing-admin CLI
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from sqlalchemy.orm import sessionmaker

from marketplace_billing.cli.admin import cli
from marketplace_billing.models.account import Account
from marketplace_billing.models.subscription import Subscription, SubscriptionStatus

from conftest import NOW, PERIOD_END


@pytest.fixture
def runner(db_engine):
    """CliRunner whose commands open sessions on the test database"""
    factory = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    with patch("marketplace_billing.cli.admin.SessionLocal", factory):
        yield CliRunner()


class TestAdminCommand:

    def test_grant_admin(self, runner, db_session, plans, make_account):
        make_account('acct_1')

        result = runner.invoke(cli, ['admin', '--id', 'acct_1', '--set'])

        assert result.exit_code == 0
        assert "Granted admin" in result.output
        db_session.expire_all()
        assert db_session.get(Account, 'acct_1').is_admin is True

    def test_list_admins(self, runner, plans, make_account):
        make_account('acct_1', is_admin=True)
        make_account('acct_2')

        result = runner.invoke(cli, ['admin', '--list'])

        assert "Found 1 admins" in result.output
        assert "acct_1@inmuebles.test" in result.output

    def test_unknown_account(self, runner, plans):
        result = runner.invoke(cli, ['admin', '--email', 'nobody@inmuebles.test', '--set'])

        assert "Account not found" in result.output


class TestShowCommand:

    def test_show_reports_effective_status(self, runner, plans, make_account, make_subscription):
        make_account('acct_1')
        make_subscription(cancel_at_period_end=True)

        with patch("marketplace_billing.cli.admin.datetime") as mock_datetime:
            mock_datetime.utcnow.return_value = PERIOD_END + timedelta(days=1)
            result = runner.invoke(cli, ['show', '--id', 'acct_1'])

        assert result.exit_code == 0
        assert "status expired (stored active)" in result.output
        assert "[cancels at period end]" in result.output


class TestJobCommands:

    def test_suspend_past_due(self, runner, db_session, plans, make_account, make_subscription):
        make_account('acct_1')
        subscription = make_subscription(
            status=SubscriptionStatus.PAST_DUE, payment_failed_at=NOW - timedelta(days=30)
        )

        with patch("marketplace_billing.services.subscription_service.AnalyticsService"), \
             patch("marketplace_billing.services.subscription_service.PaymentGateway"):
            result = runner.invoke(cli, ['suspend-past-due'])

        assert result.exit_code == 0
        assert "Suspended 1 subscriptions" in result.output
        db_session.expire_all()
        assert db_session.get(Subscription, subscription.id).status == SubscriptionStatus.SUSPENDED
