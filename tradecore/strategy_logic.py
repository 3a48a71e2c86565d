# tradecore/strategy_logic.py
import logging
import math
from typing import Dict, Sequence

import pandas as pd
import pandas_ta as ta

from tradecore.datastructures import Candle, Signal, StrategyParameters, StrategyType
from tradecore.errors import InsufficientDataError

BUY_PERCENT_B = 0.2
SELL_PERCENT_B = 0.8
HYBRID_TREND_WEIGHT = 0.6
HYBRID_BOLLINGER_WEIGHT = 0.4
HYBRID_THRESHOLD = 0.5
CONFLUENCE_VOTES = 3


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """Builds an OHLCV DataFrame indexed by timestamp."""
    df = pd.DataFrame(
        [(c.timestamp, c.open, c.high, c.low, c.close, c.volume) for c in candles],
        columns=['timestamp', 'open', 'high', 'low', 'close', 'volume'],
    )
    return df.set_index('timestamp')


def _last(series, back: int = 1) -> float:
    """Value `back` bars from the end, NaN when the indicator is not ready."""
    if series is None or len(series) < back:
        return math.nan
    value = series.iloc[-back]
    return float(value) if pd.notna(value) else math.nan


def _vote(bullish: bool, bearish: bool) -> int:
    if bullish:
        return 1
    if bearish:
        return -1
    return 0


class Strategy:
    """Common interface for the strategy variants."""
    strategy_type: StrategyType

    def required_lookback(self, params: StrategyParameters) -> int:
        raise NotImplementedError

    def evaluate(self, df: pd.DataFrame, params: StrategyParameters) -> Signal:
        raise NotImplementedError


class TrendConfluenceStrategy(Strategy):
    """
    RSI + SMA + MACD confluence. Four sub-signals vote bullish or bearish;
    three matching votes are needed to act.
    """
    strategy_type = StrategyType.TREND_CONFLUENCE

    def required_lookback(self, params: StrategyParameters) -> int:
        # MACD needs two signal-line values to detect a crossover
        return max(
            params.rsi.period + 1,
            params.sma.long_period,
            params.macd.slow_period + params.macd.signal_period,
        )

    def evaluate(self, df: pd.DataFrame, params: StrategyParameters) -> Signal:
        close = df['close']
        price = float(close.iloc[-1])

        rsi = _last(ta.rsi(close, length=params.rsi.period))
        sma_short = _last(ta.sma(close, length=params.sma.short_period))
        sma_long = _last(ta.sma(close, length=params.sma.long_period))

        macd_df = ta.macd(
            close,
            fast=params.macd.fast_period,
            slow=params.macd.slow_period,
            signal=params.macd.signal_period,
        )
        # Columns are MACD, histogram, signal
        macd_line = macd_df.iloc[:, 0] if macd_df is not None else None
        signal_line = macd_df.iloc[:, 2] if macd_df is not None else None
        macd_now, macd_prev = _last(macd_line), _last(macd_line, 2)
        sig_now, sig_prev = _last(signal_line), _last(signal_line, 2)

        votes = {
            'rsi': _vote(rsi < params.rsi.oversold, rsi > params.rsi.overbought),
            'trend': _vote(price > sma_long, price < sma_long),
            'golden_cross': _vote(sma_short > sma_long, sma_short < sma_long),
            'macd': _vote(
                macd_prev <= sig_prev and macd_now > sig_now,
                macd_prev >= sig_prev and macd_now < sig_now,
            ),
        }
        bullish = sum(1 for v in votes.values() if v > 0)
        bearish = sum(1 for v in votes.values() if v < 0)

        action, confidence = 'hold', 0.0
        if bullish >= CONFLUENCE_VOTES:
            action, confidence = 'buy', bullish / len(votes)
        elif bearish >= CONFLUENCE_VOTES:
            action, confidence = 'sell', bearish / len(votes)

        indicators = {
            'rsi': rsi,
            'sma_short': sma_short,
            'sma_long': sma_long,
            'macd': macd_now,
            'macd_signal': sig_now,
            'price': price,
        }
        return Signal(action, confidence, indicators, price)


class BollingerBandStrategy(Strategy):
    """Mean reversion on %B: buy near the lower band, sell near the upper."""
    strategy_type = StrategyType.BOLLINGER_BANDS

    def required_lookback(self, params: StrategyParameters) -> int:
        return params.bollinger.period

    def evaluate(self, df: pd.DataFrame, params: StrategyParameters) -> Signal:
        close = df['close']
        price = float(close.iloc[-1])
        period, width = params.bollinger.period, params.bollinger.std_dev

        middle = _last(ta.sma(close, length=period))
        deviation = _last(ta.stdev(close, length=period, ddof=0))
        upper = middle + width * deviation
        lower = middle - width * deviation

        indicators = {'upper': upper, 'middle': middle, 'lower': lower, 'price': price}
        band = upper - lower
        if not math.isfinite(band) or band <= 0:
            # Flat market: %B is undefined
            return Signal.hold(price, indicators)

        percent_b = (price - lower) / band
        indicators['percent_b'] = percent_b

        action, confidence = 'hold', 0.0
        if percent_b < BUY_PERCENT_B:
            action, confidence = 'buy', 1 - percent_b
        elif percent_b > SELL_PERCENT_B:
            action, confidence = 'sell', percent_b
        return Signal(action, min(max(confidence, 0.0), 1.0), indicators, price)


class HybridStrategy(Strategy):
    """Weighted blend of the trend and Bollinger strategies."""
    strategy_type = StrategyType.HYBRID

    def __init__(self):
        self.trend = TrendConfluenceStrategy()
        self.bollinger = BollingerBandStrategy()

    def required_lookback(self, params: StrategyParameters) -> int:
        return max(self.trend.required_lookback(params), self.bollinger.required_lookback(params))

    def evaluate(self, df: pd.DataFrame, params: StrategyParameters) -> Signal:
        trend = self.trend.evaluate(df, params)
        bands = self.bollinger.evaluate(df, params)

        score = (HYBRID_TREND_WEIGHT * trend.signed_confidence
                 + HYBRID_BOLLINGER_WEIGHT * bands.signed_confidence)

        action = 'hold'
        if score > HYBRID_THRESHOLD:
            action = 'buy'
        elif score < -HYBRID_THRESHOLD:
            action = 'sell'

        indicators = {**trend.indicators, **bands.indicators, 'hybrid_score': score}
        return Signal(action, abs(score), indicators, trend.reference_price)


STRATEGIES: Dict[StrategyType, Strategy] = {
    s.strategy_type: s for s in (TrendConfluenceStrategy(), BollingerBandStrategy(), HybridStrategy())
}

_unregistered = set(StrategyType) - set(STRATEGIES)
if _unregistered:
    raise RuntimeError(f"No strategy implementation registered for {_unregistered}")


class SignalEngine:
    """
    Pure signal generation: (candles, strategy parameters) -> Signal.
    Short histories produce a zero-confidence hold instead of an error.
    """
    def __init__(self, strategies: Dict[StrategyType, Strategy] = None):
        self.strategies = strategies or STRATEGIES

    def required_lookback(self, strategy_type: StrategyType, params: StrategyParameters) -> int:
        return self.strategies[StrategyType.parse(strategy_type)].required_lookback(params)

    def ensure_history(self, strategy_type, params: StrategyParameters, candles: Sequence[Candle]):
        lookback = self.required_lookback(strategy_type, params)
        if len(candles) < lookback:
            raise InsufficientDataError(f"{StrategyType.parse(strategy_type).value} needs {lookback} candles, "
                                        f"got {len(candles)}")

    def evaluate(self, strategy_type, params: StrategyParameters, candles: Sequence[Candle]) -> Signal:
        strategy = self.strategies[StrategyType.parse(strategy_type)]
        reference_price = candles[-1].close if candles else 0.0

        try:
            self.ensure_history(strategy_type, params, candles)
        except InsufficientDataError as e:
            logging.debug(f"STRATEGY: {e}. Holding.")
            return Signal.hold(reference_price)

        return strategy.evaluate(candles_to_frame(candles), params)
