"""
Tests for plan change proration
"""

from datetime import datetime

import pytest

from marketplace_billing.models.subscription import BillingCycle
from marketplace_billing.services.proration import (
    ChangeType,
    calculate,
    determine_change_type,
    remaining_fraction,
)

from conftest import NOW, PERIOD_END, PERIOD_START


class TestDetermineChangeType:

    def test_same_plan_same_cycle_is_no_change(self):
        assert determine_change_type(
            'agente_pro', BillingCycle.MONTHLY, 'agente_pro', BillingCycle.MONTHLY, 59900, 59900
        ) is None

    def test_same_plan_other_cycle_is_cycle_change(self):
        assert determine_change_type(
            'agente_pro', BillingCycle.MONTHLY, 'agente_pro', BillingCycle.YEARLY, 599000, 599000
        ) == ChangeType.CYCLE_CHANGE

    def test_more_expensive_plan_is_upgrade(self):
        assert determine_change_type(
            'agente_basico', BillingCycle.MONTHLY, 'agente_pro', BillingCycle.MONTHLY, 24900, 59900
        ) == ChangeType.UPGRADE

    def test_cheaper_plan_is_downgrade(self):
        assert determine_change_type(
            'agente_pro', BillingCycle.MONTHLY, 'agente_basico', BillingCycle.MONTHLY, 59900, 24900
        ) == ChangeType.DOWNGRADE

    def test_equal_price_other_plan_is_cycle_change(self):
        assert determine_change_type(
            'agente_a', BillingCycle.MONTHLY, 'agente_b', BillingCycle.MONTHLY, 30000, 30000
        ) == ChangeType.CYCLE_CHANGE


class TestRemainingFraction:

    def test_midpoint(self):
        assert remaining_fraction(NOW, PERIOD_START, PERIOD_END) == 0.5

    def test_clamped_after_period_end(self):
        assert remaining_fraction(datetime(2026, 4, 5), PERIOD_START, PERIOD_END) == 0

    def test_clamped_before_period_start(self):
        assert remaining_fraction(datetime(2026, 2, 1), PERIOD_START, PERIOD_END) == 1

    def test_empty_period_rejected(self):
        with pytest.raises(ValueError):
            remaining_fraction(NOW, PERIOD_END, PERIOD_END)


class TestCalculate:

    def test_upgrade_at_half_period(self):
        """24900 -> 59900 with half the period left"""
        quote = calculate(ChangeType.UPGRADE, 24900, 59900, NOW, PERIOD_START, PERIOD_END)

        assert quote.current_plan_credit == 12450
        assert quote.new_plan_price == 29950
        assert quote.immediate_charge == 17500
        assert quote.credit_amount == 0
        assert quote.remaining_fraction == 0.5

    def test_downgrade_never_charges(self):
        quote = calculate(ChangeType.DOWNGRADE, 59900, 24900, NOW, PERIOD_START, PERIOD_END)

        assert quote.immediate_charge == 0
        assert quote.credit_amount == 29950 - 12450

    def test_nothing_left_charges_nothing(self):
        for change_type in ChangeType:
            quote = calculate(change_type, 24900, 599000, PERIOD_END, PERIOD_START, PERIOD_END)
            assert quote.immediate_charge == 0
            assert quote.current_plan_credit == 0

    def test_cycle_change_prorates_target_cycle(self):
        quote = calculate(ChangeType.CYCLE_CHANGE, 59900, 599000, NOW, PERIOD_START, PERIOD_END)

        assert quote.new_plan_price == 299500
        assert quote.current_plan_credit == 29950
        assert quote.immediate_charge == 299500 - 29950

    def test_rounds_half_up(self):
        # half of 25 is 12.5 -> 13, half of 51 is 25.5 -> 26
        quote = calculate(ChangeType.UPGRADE, 25, 51, NOW, PERIOD_START, PERIOD_END)

        assert quote.current_plan_credit == 13
        assert quote.new_plan_price == 26
        assert quote.immediate_charge == 13

    def test_amounts_never_negative(self):
        quote = calculate(ChangeType.UPGRADE, 59900, 24900, NOW, PERIOD_START, PERIOD_END)

        assert quote.immediate_charge == 0
        assert quote.credit_amount > 0
