"""
Tests for tradecore/exchange_connector.py

BybitExchange is exercised against a mocked pybit HTTP session; the
SimulatedExchange is exercised directly.
"""

from unittest.mock import MagicMock

import pytest
import requests
from pybit.exceptions import FailedRequestError, InvalidRequestError

from conftest import make_candles
from tradecore.errors import InvalidOrderError, TransientVenueError
from tradecore.exchange_connector import BybitExchange, SimulatedExchange


def _ok(result):
    return {'retCode': 0, 'retMsg': 'OK', 'result': result}


def _raw_order(**overrides):
    raw = {
        'orderId': 'abc-1',
        'symbol': 'BTCUSDT',
        'side': 'Buy',
        'orderType': 'Market',
        'orderStatus': 'Filled',
        'qty': '0.5',
        'cumExecQty': '0.5',
        'avgPrice': '30000',
        'cumExecValue': '15000',
        'cumExecFee': '15',
        'price': '0',
    }
    raw.update(overrides)
    return raw


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def bybit(session):
    return BybitExchange(api_key='k', api_secret='s', testnet=True, category='spot', session=session)


# ---------------------------------------------------------------------------
# BybitExchange
# ---------------------------------------------------------------------------


class TestBybitExchange:
    """Tests for pybit response mapping and error translation."""

    @pytest.mark.asyncio
    async def test_candles_sorted_oldest_first(self, bybit, session):
        session.get_kline.return_value = _ok({'list': [
            ['3000', '3', '3', '3', '3', '1'],
            ['1000', '1', '1', '1', '1', '1'],
            ['2000', '2', '2', '2', '2', '1'],
        ]})

        candles = await bybit.fetch_candles('BTC/USDT', '4h', 3)

        assert [c.timestamp for c in candles] == [1000, 2000, 3000]
        assert candles[-1].close == 3.0
        session.get_kline.assert_called_once_with(category='spot', symbol='BTCUSDT', interval='240', limit=3)

    @pytest.mark.asyncio
    async def test_unknown_interval_defaults_to_hourly(self, bybit, session):
        session.get_kline.return_value = _ok({'list': []})
        await bybit.fetch_candles('BTCUSDT', '7m', 10)
        assert session.get_kline.call_args.kwargs['interval'] == '60'

    @pytest.mark.asyncio
    async def test_balance_splits_free_and_locked(self, bybit, session):
        session.get_wallet_balance.return_value = _ok({'list': [
            {'coin': [{'coin': 'USDT', 'walletBalance': '1000', 'locked': '250'}]},
        ]})

        balances = await bybit.fetch_balance()

        assert balances['USDT'] == {'free': 750.0, 'used': 250.0}

    @pytest.mark.asyncio
    async def test_ticker(self, bybit, session):
        session.get_tickers.return_value = _ok({'list': [
            {'bid1Price': '99.5', 'ask1Price': '100.5', 'lastPrice': '100'},
        ]})
        assert await bybit.fetch_ticker('BTCUSDT') == {'bid': 99.5, 'ask': 100.5, 'last': 100.0}

    @pytest.mark.asyncio
    async def test_market_order_returns_fill_state(self, bybit, session):
        session.place_order.return_value = _ok({'orderId': 'abc-1'})
        session.get_open_orders.return_value = _ok({'list': [_raw_order()]})

        order = await bybit.place_order('BTCUSDT', 'market', 'buy', 0.5)

        assert order['id'] == 'abc-1'
        assert order['status'] == 'closed'
        assert order['filled'] == 0.5
        assert order['average'] == 30000.0
        assert session.place_order.call_args.kwargs['orderType'] == 'Market'
        assert session.place_order.call_args.kwargs['side'] == 'Buy'

    @pytest.mark.asyncio
    async def test_stop_leg_is_conditional_market(self, bybit, session):
        session.place_order.return_value = _ok({'orderId': 'sl-1'})
        session.get_open_orders.return_value = _ok({'list': []})

        order = await bybit.place_order('BTCUSDT', 'stop', 'sell', 0.5, 29000.0)

        kwargs = session.place_order.call_args.kwargs
        assert kwargs['orderType'] == 'Market'
        assert kwargs['triggerPrice'] == '29000.0'
        assert order['status'] == 'open'
        assert order['id'] == 'sl-1'

    @pytest.mark.asyncio
    async def test_list_orders_merges_open_and_history(self, bybit, session):
        session.get_open_orders.return_value = _ok({'list': [
            _raw_order(orderId='a', orderStatus='PartiallyFilled', cumExecQty='0.2'),
        ]})
        session.get_order_history.return_value = _ok({'list': [
            _raw_order(orderId='a', orderStatus='New', cumExecQty='0'),
            _raw_order(orderId='b', orderStatus='Cancelled'),
        ]})

        orders = {o['id']: o for o in await bybit.list_orders('BTCUSDT')}

        assert orders['a']['status'] == 'open'
        assert orders['a']['filled'] == 0.2
        assert orders['b']['status'] == 'canceled'

    @pytest.mark.asyncio
    async def test_invalid_request_maps_to_invalid_order(self, bybit, session):
        session.place_order.side_effect = InvalidRequestError(
            request='place_order', message='Order quantity too small', status_code=10001,
            time='0', resp_headers={},
        )
        with pytest.raises(InvalidOrderError, match='too small'):
            await bybit.place_order('BTCUSDT', 'market', 'buy', 0.0001)

    @pytest.mark.asyncio
    async def test_failed_request_maps_to_transient(self, bybit, session):
        session.get_tickers.side_effect = FailedRequestError(
            request='get_tickers', message='Bad gateway', status_code=502, time='0', resp_headers={},
        )
        with pytest.raises(TransientVenueError):
            await bybit.fetch_ticker('BTCUSDT')

    @pytest.mark.asyncio
    async def test_network_error_maps_to_transient(self, bybit, session):
        session.get_wallet_balance.side_effect = requests.exceptions.ConnectionError('reset')
        with pytest.raises(TransientVenueError):
            await bybit.fetch_balance()

    @pytest.mark.asyncio
    async def test_non_zero_ret_code_is_rejection(self, bybit, session):
        session.cancel_order.return_value = {'retCode': 110001, 'retMsg': 'Order does not exist', 'result': {}}
        with pytest.raises(InvalidOrderError, match='110001'):
            await bybit.cancel_order('missing', 'BTCUSDT')


# ---------------------------------------------------------------------------
# SimulatedExchange
# ---------------------------------------------------------------------------


class TestSimulatedExchange:
    """Tests for the in-process venue."""

    @pytest.mark.asyncio
    async def test_market_order_fills_at_last_price(self, exchange):
        order = await exchange.place_order('BTC/USDT', 'market', 'buy', 2.0)

        assert order['status'] == 'closed'
        assert order['filled'] == 2.0
        assert order['average'] == 100.0
        assert order['cost'] == 200.0

    @pytest.mark.asyncio
    async def test_resting_orders_can_be_cancelled(self, exchange):
        order = await exchange.place_order('BTC/USDT', 'limit', 'sell', 1.0, 105.0)
        assert order['status'] == 'open'

        result = await exchange.cancel_order(order['id'], 'BTC/USDT')

        assert result['status'] == 'canceled'
        assert (await exchange.list_orders('BTC/USDT'))[0]['status'] == 'canceled'

    @pytest.mark.asyncio
    async def test_rejects_zero_quantity(self, exchange):
        with pytest.raises(InvalidOrderError):
            await exchange.place_order('BTC/USDT', 'market', 'buy', 0.0)

    @pytest.mark.asyncio
    async def test_cancel_unknown_order(self, exchange):
        with pytest.raises(InvalidOrderError):
            await exchange.cancel_order('sim-404', 'BTC/USDT')

    @pytest.mark.asyncio
    async def test_injected_failures_raise_in_order(self, exchange):
        exchange.fail_next = [TransientVenueError('first'), InvalidOrderError('second')]

        with pytest.raises(TransientVenueError):
            await exchange.fetch_ticker('BTC/USDT')
        with pytest.raises(InvalidOrderError):
            await exchange.fetch_balance()
        assert (await exchange.fetch_ticker('BTC/USDT'))['last'] == 100.0

    @pytest.mark.asyncio
    async def test_generated_candles_are_ordered(self):
        exchange = SimulatedExchange(start_price=100.0, seed=1)
        candles = await exchange.fetch_candles('BTC/USDT', '1m', 50)

        assert len(candles) == 50
        assert all(a.timestamp < b.timestamp for a, b in zip(candles, candles[1:]))
        assert all(c.low <= c.close <= c.high for c in candles)

    @pytest.mark.asyncio
    async def test_preset_candles_are_windowed(self, exchange):
        exchange.candles = make_candles(range(1, 11))

        candles = await exchange.fetch_candles('BTC/USDT', '1h', 3)

        assert [c.close for c in candles] == [8, 9, 10]
