# tradecore/backtester.py
import logging
import math
from dataclasses import dataclass, field, asdict
from typing import List, Sequence

import numpy as np
import pandas as pd

from tradecore.config import config
from tradecore.datastructures import BacktestState, Candle, Signal, StrategyParameters, StrategyType
from tradecore.strategy_logic import SignalEngine

TRADING_DAYS = 252


@dataclass(frozen=True)
class BacktestConfig:
    initial_balance: float = config.INITIAL_CAPITAL
    fee_rate: float = config.TAKER_FEE
    slippage_rate: float = config.SLIPPAGE
    order_quantity: float = 1.0
    symbol: str = 'BACKTEST'


@dataclass
class BacktestReport:
    metrics: dict
    trades: List[dict]
    equity_curve: List[dict]
    config: dict = field(default_factory=dict)

    def to_frame(self) -> pd.DataFrame:
        """Equity curve as a DataFrame indexed by candle timestamp."""
        if not self.equity_curve:
            return pd.DataFrame(columns=['equity'])
        return pd.DataFrame(self.equity_curve).set_index('timestamp')


class BacktestSimulator:
    """
    Replays a candle series through the SignalEngine against a simulated
    balance. Single threaded and deterministic; each run owns its state,
    so independent runs can execute in parallel.
    """
    def __init__(self, engine: SignalEngine = None):
        self.engine = engine or SignalEngine()

    def run(self, strategy_type, parameters: StrategyParameters, candles: Sequence[Candle],
            bt_config: BacktestConfig = None) -> BacktestReport:
        bt_config = bt_config or BacktestConfig()
        strategy_type = StrategyType.parse(strategy_type)
        state = BacktestState(balance=bt_config.initial_balance)
        logging.info(f"Starting backtest of {strategy_type.value} over {len(candles)} candles.")

        candles = list(candles)
        for i, candle in enumerate(candles):
            signal = self.engine.evaluate(strategy_type, parameters, candles[:i + 1])
            if signal.action != 'hold':
                self._execute(state, signal, candle, bt_config)
            self._record_equity(state, candle)

        metrics = calculate_metrics(state, bt_config.initial_balance)
        logging.info(f"Backtest done: {metrics['total_trades']} closing trades, "
                     f"return {metrics['total_return'] * 100:.2f}%.")
        return BacktestReport(
            metrics=metrics,
            trades=state.trades,
            equity_curve=state.equity_curve,
            config=asdict(bt_config),
        )

    def _execute(self, state: BacktestState, signal: Signal, candle: Candle, bt_config: BacktestConfig):
        symbol, amount = bt_config.symbol, bt_config.order_quantity
        slip = 1 + bt_config.slippage_rate if signal.action == 'buy' else 1 - bt_config.slippage_rate
        price = signal.reference_price * slip
        cost = amount * price
        fee = cost * bt_config.fee_rate
        position = state.positions.get(symbol, 0.0)

        # Unfillable orders are skipped, mirroring an insufficient-funds no-op
        if signal.action == 'buy':
            if state.balance < cost + fee:
                return
            state.balance -= cost + fee
            state.positions[symbol] = position + amount
        else:
            if position < amount:
                return
            state.balance += cost - fee
            state.positions[symbol] = position - amount

        state.trades.append({
            'timestamp': candle.timestamp,
            'action': signal.action,
            'symbol': symbol,
            'amount': amount,
            'price': price,
            'fee': fee,
            'value': cost,
            'balance': state.balance,
            'confidence': signal.confidence,
        })

    @staticmethod
    def _record_equity(state: BacktestState, candle: Candle):
        equity = state.balance + sum(qty * candle.close for qty in state.positions.values())
        state.equity_curve.append({'timestamp': candle.timestamp, 'equity': equity})


def _win_rate(trades: List[dict]) -> float:
    last_buy = {}
    wins = sells = 0
    for trade in trades:
        if trade['action'] == 'buy':
            last_buy[trade['symbol']] = trade['price']
            continue
        sells += 1
        entry = last_buy.get(trade['symbol'])
        if entry is not None and trade['price'] > entry:
            wins += 1
    return wins / sells if sells else 0.0


def calculate_metrics(state: BacktestState, initial_balance: float) -> dict:
    equity = np.array([point['equity'] for point in state.equity_curve], dtype=float)
    sells = sum(1 for t in state.trades if t['action'] == 'sell')

    metrics = {
        'total_return': 0.0,
        'sharpe_ratio': 0.0,
        'max_drawdown': 0.0,
        'win_rate': _win_rate(state.trades),
        'total_trades': sells,
        'fills': len(state.trades),
        'final_balance': state.balance,
        'final_equity': float(equity[-1]) if len(equity) else initial_balance,
    }
    if len(equity) == 0:
        return metrics

    metrics['total_return'] = float((equity[-1] - initial_balance) / initial_balance)

    if len(equity) > 1:
        returns = np.diff(equity) / equity[:-1]
        std = returns.std()
        if std > 0:
            metrics['sharpe_ratio'] = float(returns.mean() / std * math.sqrt(TRADING_DAYS))

    peaks = np.maximum.accumulate(equity)
    metrics['max_drawdown'] = float(np.max((peaks - equity) / peaks))
    return metrics
