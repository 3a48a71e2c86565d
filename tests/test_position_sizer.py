"""
Tests for tradecore/position_sizer.py
"""

import math

import pytest

from tradecore import position_sizer
from tradecore.datastructures import RiskParameters, RiskSettings, SizedOrder
from tradecore.errors import RiskValidationError


def _make_risk(**overrides):
    defaults = dict(
        account_balance=10000.0,
        risk_percentage_per_trade=1.0,
        risk_reward_ratio=2.0,
        max_position_size=1000.0,
        max_risk_per_trade=2.0,
    )
    defaults.update(overrides)
    return RiskParameters(**defaults)


# ---------------------------------------------------------------------------
# Sizing
# ---------------------------------------------------------------------------


class TestSize:
    """Tests for stop / target / quantity derivation."""

    def test_buy_example(self):
        """Happy path: 1% of 10k with a 1-unit stop distance buys 100 units."""
        order = position_sizer.size('buy', 100.0, _make_risk())

        assert order.valid is True
        assert order.stop_loss == pytest.approx(99.0)
        assert order.take_profit == pytest.approx(102.0)
        assert order.position_size == pytest.approx(100.0)

    def test_sell_mirrors_levels(self):
        order = position_sizer.size('sell', 100.0, _make_risk())

        assert order.valid is True
        assert order.stop_loss == pytest.approx(101.0)
        assert order.take_profit == pytest.approx(98.0)
        assert order.position_size == pytest.approx(100.0)

    def test_rejects_size_above_max_position(self):
        """Failure case: percentage risk passes but the quantity cap does not."""
        order = position_sizer.size('buy', 100.0, _make_risk(max_position_size=50.0))

        assert order.valid is False
        assert 'exceeds max' in order.rejection_reason
        assert order.position_size == pytest.approx(100.0)

    def test_hold_cannot_be_sized(self):
        with pytest.raises(ValueError):
            position_sizer.size('hold', 100.0, _make_risk())

    @pytest.mark.parametrize("entry_price", [0.0, -5.0, math.inf, math.nan])
    def test_rejects_non_positive_or_non_finite_entry(self, entry_price):
        """Edge case: garbage prices produce an invalid order, not an exception."""
        order = position_sizer.size('buy', entry_price, _make_risk())
        assert order.valid is False

    def test_take_profit_below_zero_is_rejected(self):
        """Edge case: a huge reward ratio pushes a short's target negative."""
        order = position_sizer.size('sell', 100.0, _make_risk(risk_reward_ratio=200.0))

        assert order.valid is False
        assert 'take_profit' in order.rejection_reason

    def test_ensure_valid_raises_with_reason(self):
        order = position_sizer.size('buy', 100.0, _make_risk(max_position_size=50.0))
        with pytest.raises(RiskValidationError, match='exceeds max'):
            position_sizer.ensure_valid(order)

    def test_ensure_valid_passes_valid_order_through(self):
        order = position_sizer.size('buy', 100.0, _make_risk())
        assert position_sizer.ensure_valid(order) is order


class TestRiskParameters:

    @pytest.mark.parametrize("field,value", [
        ('account_balance', 0.0),
        ('risk_percentage_per_trade', -1.0),
        ('max_position_size', math.nan),
        ('risk_reward_ratio', math.inf),
    ])
    def test_invalid_values_raise(self, field, value):
        with pytest.raises(RiskValidationError):
            _make_risk(**{field: value})

    def test_risk_above_max_per_trade_raises(self):
        with pytest.raises(RiskValidationError):
            _make_risk(risk_percentage_per_trade=3.0, max_risk_per_trade=2.0)

    def test_settings_with_balance(self):
        settings = RiskSettings.from_dict({'riskPercentage': 1.5, 'riskRewardRatio': 3})
        risk = settings.with_balance(2500.0)

        assert risk.account_balance == 2500.0
        assert risk.risk_percentage_per_trade == 1.5
        assert risk.risk_reward_ratio == 3.0
        assert risk.max_risk_per_trade == 2.0


# ---------------------------------------------------------------------------
# Price sanity gate
# ---------------------------------------------------------------------------


class TestCheckPriceSanity:
    """Tests for the strict-inequality pre-submission gate."""

    def _buy(self):
        return SizedOrder('buy', 100.0, 99.0, 102.0, 100.0, True)

    def _sell(self):
        return SizedOrder('sell', 100.0, 101.0, 98.0, 100.0, True)

    def test_price_inside_range_passes(self):
        position_sizer.check_price_sanity(self._buy(), 100.5)
        position_sizer.check_price_sanity(self._sell(), 99.5)

    @pytest.mark.parametrize("market_price", [99.0, 98.0, 102.0, 150.0])
    def test_buy_outside_or_on_boundary_rejected(self, market_price):
        """Failure case: equality with a protective level is a rejection."""
        with pytest.raises(RiskValidationError):
            position_sizer.check_price_sanity(self._buy(), market_price)

    @pytest.mark.parametrize("market_price", [101.0, 98.0, 97.0])
    def test_sell_outside_or_on_boundary_rejected(self, market_price):
        with pytest.raises(RiskValidationError):
            position_sizer.check_price_sanity(self._sell(), market_price)

    @pytest.mark.parametrize("market_price", [0.0, -1.0, math.nan])
    def test_invalid_market_price_rejected(self, market_price):
        with pytest.raises(RiskValidationError):
            position_sizer.check_price_sanity(self._buy(), market_price)
