"""
Shared test fixtures for the trading core tests.

Provides reusable fixtures for:
- Candle series factories
- Simulated exchange and an instant-retry ResilientExecutor
- In-memory order ledger and a silent alert dispatcher
"""

import pytest

from tradecore.alerts import AlertDispatcher
from tradecore.datastructures import Candle
from tradecore.exchange_connector import SimulatedExchange
from tradecore.ledger import InMemoryTradeStore, OrderLedger
from tradecore.resilience import CircuitBreakerRegistry, ResilientExecutor, RetryPolicy


async def no_sleep(_delay):
    return None


def make_candles(closes, start=1_700_000_000_000, step=60_000):
    """Candles whose OHLC all sit on the given closes."""
    return [
        Candle(start + i * step, close, close, close, close, 1.0)
        for i, close in enumerate(closes)
    ]


# ---------------------------------------------------------------------------
# Venue fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def exchange():
    """A simulated venue pinned at price 100 with 10k USDT."""
    return SimulatedExchange(start_price=100.0, balance=10000.0, quote_currency='USDT', seed=7)


@pytest.fixture
def executor():
    """ResilientExecutor that retries without sleeping."""
    return ResilientExecutor(
        breakers=CircuitBreakerRegistry(failure_threshold=5, success_threshold=2, timeout=60),
        retry_policy=RetryPolicy(max_retries=2, initial_delay=0.01, max_delay=0.05, multiplier=2),
        sleep=no_sleep,
    )


# ---------------------------------------------------------------------------
# Ledger and alerts
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    return InMemoryTradeStore()


@pytest.fixture
def ledger(store):
    return OrderLedger(store)


@pytest.fixture
def alerts():
    """Dispatcher with the webhook disabled; alerts are collected on `.received`."""
    dispatcher = AlertDispatcher(webhook_url='')
    dispatcher.received = []
    dispatcher.subscribe(dispatcher.received.append)
    return dispatcher
