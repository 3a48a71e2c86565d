"""
Tests for tradecore/order_executor.py

Runs the full balance -> size -> sanity -> place -> ledger -> protection
flow against the simulated venue.
"""

from unittest.mock import AsyncMock

import pytest

from tradecore.alerts import CRITICAL, INFO
from tradecore.datastructures import BotConfig, RiskSettings, Signal
from tradecore.errors import InvalidOrderError, RiskValidationError
from tradecore.order_executor import OrderExecutor


def _make_bot(**overrides):
    defaults = dict(bot_id='bot-1', symbol='BTC/USDT', venue_id='simulation')
    defaults.update(overrides)
    return BotConfig(**defaults)


def _buy(price=100.0, confidence=0.9):
    return Signal('buy', confidence, {'price': price}, price)


@pytest.fixture
def order_executor(exchange, executor, ledger, alerts):
    return OrderExecutor(exchange, executor, ledger, alerts=alerts, quote_currency='USDT',
                         min_account_balance=10.0, protective_orders=True)


class TestExecuteSignal:
    """Tests for OrderExecutor.execute_signal()."""

    @pytest.mark.asyncio
    async def test_happy_path_places_entry_and_protection(self, order_executor, exchange, ledger, alerts):
        record = await order_executor.execute_signal(_make_bot(), _buy())

        assert record.side == 'buy'
        assert record.quantity == pytest.approx(100.0)
        assert record.stop_loss == pytest.approx(99.0)
        assert record.take_profit == pytest.approx(102.0)
        assert record.unprotected is False

        stop = exchange.orders[record.stop_loss_order_id]
        target = exchange.orders[record.take_profit_order_id]
        assert (stop['type'], stop['side'], stop['price']) == ('stop', 'sell', pytest.approx(99.0))
        assert (target['type'], target['side'], target['price']) == ('limit', 'sell', pytest.approx(102.0))

        legs = ledger.store.find(parent_id=record.id)
        assert [(leg.id, leg.leg, leg.side, leg.status) for leg in legs] == [
            (record.stop_loss_order_id, 'stop_loss', 'sell', 'open'),
            (record.take_profit_order_id, 'take_profit', 'sell', 'open'),
        ]

        assert ledger.get(record.id) == record
        assert [a.kind for a in alerts.received] == ['TRADE_EXECUTED']
        assert alerts.received[0].severity == INFO

    @pytest.mark.asyncio
    async def test_balance_includes_used_funds(self, order_executor, exchange):
        exchange.balances['USDT'] = {'free': 4000.0, 'used': 1000.0}
        assert await order_executor.fetch_account_balance('simulation') == 5000.0

    @pytest.mark.asyncio
    async def test_hold_signal_is_refused(self, order_executor):
        with pytest.raises(ValueError):
            await order_executor.execute_signal(_make_bot(), Signal.hold(100.0))

    @pytest.mark.asyncio
    async def test_low_balance_is_rejected(self, order_executor, exchange):
        exchange.balances['USDT'] = {'free': 5.0, 'used': 0.0}
        with pytest.raises(RiskValidationError, match='Insufficient balance'):
            await order_executor.execute_signal(_make_bot(), _buy())
        assert exchange.orders == {}

    @pytest.mark.asyncio
    async def test_oversized_trade_is_rejected_before_submission(self, order_executor, exchange, ledger):
        bot = _make_bot(risk=RiskSettings(max_position_size=10.0))

        with pytest.raises(RiskValidationError, match='exceeds max'):
            await order_executor.execute_signal(bot, _buy())

        assert exchange.orders == {}
        assert ledger.trades('bot-1') == []

    @pytest.mark.asyncio
    async def test_price_moved_outside_levels_is_rejected(self, order_executor, exchange):
        """Failure case: market ran past the take-profit since the signal."""
        exchange.price = 103.0

        with pytest.raises(RiskValidationError, match='outside protective range'):
            await order_executor.execute_signal(_make_bot(), _buy(price=100.0))
        assert exchange.orders == {}

    @pytest.mark.asyncio
    async def test_rejected_submission_is_recorded_as_failed(self, order_executor, exchange, ledger):
        exchange.place_order = AsyncMock(side_effect=InvalidOrderError('Order quantity too small'))

        with pytest.raises(InvalidOrderError):
            await order_executor.execute_signal(_make_bot(), _buy())

        [failed] = ledger.trades('bot-1')
        assert failed.status == 'failed'
        assert failed.id.startswith('FAILED_')
        assert 'Order quantity too small' in failed.notes
        exchange.place_order.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_protective_leg_raises_critical_alert(self, order_executor, exchange, ledger, alerts):
        """Failure case: the entry filled but the stop could not be placed."""
        place_order = exchange.place_order

        async def flaky(symbol, order_type, side, quantity, price=None):
            if order_type == 'stop':
                raise InvalidOrderError('trigger price invalid')
            return await place_order(symbol, order_type, side, quantity, price)

        exchange.place_order = flaky

        record = await order_executor.execute_signal(_make_bot(), _buy())

        assert record.unprotected is True
        assert record.stop_loss_order_id is None
        assert record.take_profit_order_id is not None
        assert 'UNPROTECTED' in record.notes
        assert ledger.get(record.id).unprotected is True
        assert [leg.leg for leg in ledger.store.find(parent_id=record.id)] == ['take_profit']

        critical = [a for a in alerts.received if a.severity == CRITICAL]
        assert len(critical) == 1
        assert critical[0].kind == 'UNPROTECTED_POSITION'
        assert critical[0].context['trade_id'] == record.id

    @pytest.mark.asyncio
    async def test_protection_can_be_disabled(self, exchange, executor, ledger, alerts):
        order_executor = OrderExecutor(exchange, executor, ledger, alerts=alerts, protective_orders=False,
                                       quote_currency='USDT', min_account_balance=10.0)

        record = await order_executor.execute_signal(_make_bot(), _buy())

        assert record.stop_loss_order_id is None
        assert len(exchange.orders) == 1

    @pytest.mark.asyncio
    async def test_sell_signal_protects_with_buy_legs(self, order_executor, exchange):
        record = await order_executor.execute_signal(_make_bot(), Signal('sell', 0.8, {}, 100.0))

        assert record.side == 'sell'
        assert exchange.orders[record.stop_loss_order_id]['side'] == 'buy'
        assert exchange.orders[record.stop_loss_order_id]['price'] == pytest.approx(101.0)
        assert exchange.orders[record.take_profit_order_id]['price'] == pytest.approx(98.0)
