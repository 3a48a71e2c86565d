# tradecore/exchange_connector.py
import asyncio
import itertools
import logging
import random
import time
from typing import Dict, List, Optional

import requests
from pybit.exceptions import FailedRequestError, InvalidRequestError
# Import the synchronous HTTP client from pybit
from pybit.unified_trading import HTTP

from tradecore.config import config
from tradecore.datastructures import Candle
from tradecore.errors import InvalidOrderError, TransientVenueError

# Timeframe label -> Bybit kline interval
BYBIT_INTERVALS = {
    '1m': '1', '5m': '5', '15m': '15', '30m': '30',
    '1h': '60', '4h': '240', '1d': 'D',
}

# Bybit orderStatus -> generic venue vocabulary used by the ledger
BYBIT_ORDER_STATUS = {
    'Created': 'open',
    'New': 'open',
    'PartiallyFilled': 'open',
    'Untriggered': 'open',
    'Triggered': 'open',
    'Filled': 'closed',
    'Cancelled': 'canceled',
    'PartiallyFilledCanceled': 'canceled',
    'Deactivated': 'canceled',
    'Rejected': 'rejected',
}


class Exchange:
    """
    The venue capability consumed by the trading core. Every method is a
    suspension point and may raise TransientVenueError or InvalidOrderError.

    Orders are plain dicts: {id, symbol, side, type, status, amount, filled,
    average, cost, fee, price}; status is one of open/closed/canceled/rejected.
    """
    venue_id = 'exchange'

    async def fetch_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        raise NotImplementedError

    async def fetch_balance(self) -> Dict[str, dict]:
        raise NotImplementedError

    async def fetch_ticker(self, symbol: str) -> dict:
        raise NotImplementedError

    async def place_order(self, symbol: str, order_type: str, side: str,
                          quantity: float, price: Optional[float] = None) -> dict:
        raise NotImplementedError

    async def cancel_order(self, order_id: str, symbol: str) -> dict:
        raise NotImplementedError

    async def list_orders(self, symbol: Optional[str] = None) -> List[dict]:
        raise NotImplementedError


class BybitExchange(Exchange):
    """
    Bybit v5 unified account through pybit. The pybit client is
    synchronous, so every call runs in the default thread pool executor.
    """
    venue_id = 'bybit'

    def __init__(self, api_key: str = None, api_secret: str = None,
                 testnet: bool = None, category: str = None, session: HTTP = None):
        self.category = category or config.CATEGORY
        self.session = session or HTTP(
            testnet=config.TESTNET if testnet is None else testnet,
            api_key=api_key or config.API_KEY,
            api_secret=api_secret or config.API_SECRET,
        )
        logging.info(f"Initialized LIVE pybit HTTP session ({self.category}).")

    async def _call(self, method: str, **kwargs) -> dict:
        loop = asyncio.get_running_loop()
        fn = getattr(self.session, method)
        try:
            response = await loop.run_in_executor(None, lambda: fn(**kwargs))
        except InvalidRequestError as e:
            raise InvalidOrderError(f"Bybit rejected {method}: {e.message}") from e
        except (FailedRequestError, requests.exceptions.RequestException, ConnectionError, TimeoutError) as e:
            raise TransientVenueError(f"Bybit {method} failed: {e}") from e

        if response.get('retCode') != 0:
            raise InvalidOrderError(f"Bybit {method} returned {response.get('retCode')}: {response.get('retMsg')}")
        return response['result']

    @staticmethod
    def _to_symbol(symbol: str) -> str:
        # BTC/USDT -> BTCUSDT
        return symbol.replace('/', '')

    @staticmethod
    def _parse_order(raw: dict) -> dict:
        filled = float(raw.get('cumExecQty') or 0)
        average = float(raw.get('avgPrice') or 0) or None
        return {
            'id': raw.get('orderId'),
            'symbol': raw.get('symbol'),
            'side': (raw.get('side') or '').lower(),
            'type': (raw.get('orderType') or '').lower(),
            'status': BYBIT_ORDER_STATUS.get(raw.get('orderStatus'), 'open'),
            'amount': float(raw.get('qty') or 0),
            'filled': filled,
            'average': average,
            'cost': float(raw.get('cumExecValue') or 0),
            'fee': float(raw.get('cumExecFee') or 0),
            'price': float(raw.get('price') or 0) or None,
        }

    async def fetch_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        result = await self._call(
            'get_kline',
            category=self.category,
            symbol=self._to_symbol(symbol),
            interval=BYBIT_INTERVALS.get(interval, '60'),
            limit=limit,
        )
        # Bybit returns newest first
        return sorted((Candle.from_row(row) for row in result['list']), key=lambda c: c.timestamp)

    async def fetch_balance(self) -> Dict[str, dict]:
        result = await self._call('get_wallet_balance', accountType='UNIFIED')
        balances = {}
        for account in result.get('list', []):
            for coin in account.get('coin', []):
                total = float(coin.get('walletBalance') or 0)
                locked = float(coin.get('locked') or 0)
                balances[coin['coin']] = {'free': total - locked, 'used': locked}
        return balances

    async def fetch_ticker(self, symbol: str) -> dict:
        result = await self._call('get_tickers', category=self.category, symbol=self._to_symbol(symbol))
        ticker = result['list'][0]
        return {
            'bid': float(ticker['bid1Price']),
            'ask': float(ticker['ask1Price']),
            'last': float(ticker['lastPrice']),
        }

    async def place_order(self, symbol: str, order_type: str, side: str,
                          quantity: float, price: Optional[float] = None) -> dict:
        params = {
            'category': self.category,
            'symbol': self._to_symbol(symbol),
            'side': side.capitalize(),
            'qty': str(quantity),
        }
        if order_type == 'stop':
            # Conditional market order fired at the trigger price
            params.update(orderType='Market', triggerPrice=str(price),
                          triggerDirection=2 if side == 'sell' else 1)
        elif order_type == 'limit':
            params.update(orderType='Limit', price=str(price))
        else:
            params.update(orderType='Market')

        logging.info(f"Placing LIVE order: {params}")
        result = await self._call('place_order', **params)
        order_id = result['orderId']

        # The create endpoint only acknowledges; fetch the fill state
        detail = await self._call('get_open_orders', category=self.category,
                                  symbol=params['symbol'], orderId=order_id)
        if detail.get('list'):
            return self._parse_order(detail['list'][0])
        return {'id': order_id, 'symbol': symbol, 'side': side, 'type': order_type,
                'status': 'open', 'amount': quantity, 'filled': 0.0, 'average': None,
                'cost': 0.0, 'fee': 0.0, 'price': price}

    async def cancel_order(self, order_id: str, symbol: str) -> dict:
        result = await self._call('cancel_order', category=self.category,
                                  symbol=self._to_symbol(symbol), orderId=order_id)
        return {'id': result.get('orderId', order_id), 'status': 'canceled'}

    async def list_orders(self, symbol: Optional[str] = None) -> List[dict]:
        params = {'category': self.category}
        if symbol:
            params['symbol'] = self._to_symbol(symbol)
        open_orders = await self._call('get_open_orders', **params)
        history = await self._call('get_order_history', **params)

        orders = {}
        for raw in itertools.chain(history.get('list', []), open_orders.get('list', [])):
            order = self._parse_order(raw)
            orders[order['id']] = order
        return list(orders.values())


class SimulatedExchange(Exchange):
    """
    In-process venue for SIMULATION mode and tests. Prices follow a random
    walk, market orders fill immediately at the last price, limit and stop
    orders rest until cancelled.
    """
    venue_id = 'simulation'

    def __init__(self, start_price: float = 30000.0, balance: float = None,
                 quote_currency: str = None, seed: Optional[int] = None):
        self.price = start_price
        self.quote_currency = quote_currency or config.QUOTE_CURRENCY
        self.balances = {self.quote_currency: {'free': balance if balance is not None else config.INITIAL_CAPITAL,
                                               'used': 0.0}}
        self.orders: Dict[str, dict] = {}
        self.candles: List[Candle] = []
        self.fail_next: List[Exception] = []
        self._rng = random.Random(seed)
        self._ids = itertools.count(1)

    def _maybe_fail(self):
        if self.fail_next:
            raise self.fail_next.pop(0)

    def _step(self):
        self.price += self._rng.uniform(-0.001, 0.001) * self.price

    async def fetch_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        self._maybe_fail()
        if self.candles:
            return self.candles[-limit:]
        now = int(time.time() * 1000)
        candles = []
        for i in range(limit):
            open_ = self.price
            self._step()
            high, low = max(open_, self.price), min(open_, self.price)
            candles.append(Candle(now - (limit - i) * 60000, open_, high, low, self.price,
                                  self._rng.uniform(0.001, 1)))
        return candles

    async def fetch_balance(self) -> Dict[str, dict]:
        self._maybe_fail()
        return {currency: dict(values) for currency, values in self.balances.items()}

    async def fetch_ticker(self, symbol: str) -> dict:
        self._maybe_fail()
        return {'bid': self.price * 0.9999, 'ask': self.price * 1.0001, 'last': self.price}

    async def place_order(self, symbol: str, order_type: str, side: str,
                          quantity: float, price: Optional[float] = None) -> dict:
        self._maybe_fail()
        if quantity <= 0:
            raise InvalidOrderError(f"Invalid order quantity {quantity}")
        logging.info(f"[SIMULATION] Placing {order_type} {side} {quantity} {symbol} @ {price or self.price}")

        order = {'id': f"sim-{next(self._ids)}", 'symbol': symbol, 'side': side, 'type': order_type,
                 'amount': quantity, 'price': price, 'fee': 0.0}
        if order_type == 'market':
            order.update(status='closed', filled=quantity, average=self.price, cost=quantity * self.price)
        else:
            order.update(status='open', filled=0.0, average=None, cost=0.0)
        self.orders[order['id']] = order
        return dict(order)

    async def cancel_order(self, order_id: str, symbol: str) -> dict:
        self._maybe_fail()
        order = self.orders.get(order_id)
        if order is None:
            raise InvalidOrderError(f"Unknown order {order_id}")
        if order['status'] == 'open':
            order['status'] = 'canceled'
        return {'id': order_id, 'status': order['status']}

    async def list_orders(self, symbol: Optional[str] = None) -> List[dict]:
        self._maybe_fail()
        return [dict(o) for o in self.orders.values() if symbol is None or o['symbol'] == symbol]
