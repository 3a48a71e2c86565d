# tradecore/datastructures.py
import asyncio
import enum
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from tradecore.errors import RiskValidationError

Side = Literal['buy', 'sell']
Action = Literal['buy', 'sell', 'hold']

TERMINAL_STATUSES = frozenset({'filled', 'cancelled', 'failed', 'closed'})
OPEN_STATUSES = ('open', 'partially_filled', 'pending')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Candle:
    """A single OHLCV bar as delivered by the venue."""
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_row(cls, row) -> 'Candle':
        ts, o, h, l, c, v = row[:6]
        return cls(int(ts), float(o), float(h), float(l), float(c), float(v))


@dataclass(frozen=True)
class Signal:
    """A strategy's recommendation for the latest bar."""
    action: Action
    confidence: float
    indicators: Dict[str, float]
    reference_price: float

    @classmethod
    def hold(cls, reference_price: float = 0.0, indicators: Optional[Dict[str, float]] = None) -> 'Signal':
        return cls('hold', 0.0, dict(indicators or {}), reference_price)

    @property
    def signed_confidence(self) -> float:
        if self.action == 'buy':
            return self.confidence
        if self.action == 'sell':
            return -self.confidence
        return 0.0


class StrategyType(enum.Enum):
    TREND_CONFLUENCE = 'RSI_SMA_MACD'
    BOLLINGER_BANDS = 'BOLLINGER_BANDS'
    HYBRID = 'HYBRID'

    @classmethod
    def parse(cls, label) -> 'StrategyType':
        if isinstance(label, cls):
            return label
        for member in cls:
            if label in (member.value, member.name):
                return member
        raise ValueError(f"Unknown strategy: {label}")


@dataclass(frozen=True)
class RsiParams:
    period: int = 14
    overbought: float = 70.0
    oversold: float = 30.0


@dataclass(frozen=True)
class SmaParams:
    short_period: int = 20
    long_period: int = 200


@dataclass(frozen=True)
class MacdParams:
    fast_period: int = 12
    slow_period: int = 26
    signal_period: int = 9


@dataclass(frozen=True)
class BollingerParams:
    period: int = 20
    std_dev: float = 2.0


@dataclass(frozen=True)
class StrategyParameters:
    """Indicator settings shared by all strategy variants."""
    rsi: RsiParams = field(default_factory=RsiParams)
    sma: SmaParams = field(default_factory=SmaParams)
    macd: MacdParams = field(default_factory=MacdParams)
    bollinger: BollingerParams = field(default_factory=BollingerParams)

    def __post_init__(self):
        periods = (self.rsi.period, self.sma.short_period, self.sma.long_period,
                   self.macd.fast_period, self.macd.slow_period, self.macd.signal_period,
                   self.bollinger.period)
        if any(p <= 0 for p in periods):
            raise ValueError(f"Indicator periods must be positive: {periods}")
        if self.sma.short_period >= self.sma.long_period:
            raise ValueError("SMA short period must be below the long period")
        if self.macd.fast_period >= self.macd.slow_period:
            raise ValueError("MACD fast period must be below the slow period")
        if self.rsi.oversold >= self.rsi.overbought:
            raise ValueError("RSI oversold threshold must be below overbought")
        if self.bollinger.std_dev <= 0:
            raise ValueError("Bollinger standard deviation must be positive")

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'StrategyParameters':
        """Builds parameters from the stored bot JSON (camelCase keys)."""
        data = data or {}
        rsi = data.get('rsi', {})
        sma = data.get('sma', {})
        macd = data.get('macd', {})
        bb = data.get('bollinger', {})
        return cls(
            rsi=RsiParams(
                period=int(rsi.get('period', RsiParams.period)),
                overbought=float(rsi.get('overbought', RsiParams.overbought)),
                oversold=float(rsi.get('oversold', RsiParams.oversold)),
            ),
            sma=SmaParams(
                short_period=int(sma.get('shortPeriod', SmaParams.short_period)),
                long_period=int(sma.get('longPeriod', SmaParams.long_period)),
            ),
            macd=MacdParams(
                fast_period=int(macd.get('fastPeriod', MacdParams.fast_period)),
                slow_period=int(macd.get('slowPeriod', MacdParams.slow_period)),
                signal_period=int(macd.get('signalPeriod', MacdParams.signal_period)),
            ),
            bollinger=BollingerParams(
                period=int(bb.get('period', BollingerParams.period)),
                std_dev=float(bb.get('standardDev', BollingerParams.std_dev)),
            ),
        )


@dataclass(frozen=True)
class RiskParameters:
    account_balance: float
    risk_percentage_per_trade: float
    risk_reward_ratio: float
    max_position_size: float
    max_risk_per_trade: float

    def __post_init__(self):
        values = asdict(self)
        bad = [name for name, value in values.items() if not (math.isfinite(value) and value > 0)]
        if bad:
            raise RiskValidationError(f"Risk parameters must be positive: {', '.join(bad)}")
        if self.risk_percentage_per_trade > self.max_risk_per_trade:
            raise RiskValidationError(
                f"Risk per trade {self.risk_percentage_per_trade}% exceeds max {self.max_risk_per_trade}%"
            )


@dataclass(frozen=True)
class RiskSettings:
    """Per-bot risk configuration; the balance is only known at trade time."""
    risk_percentage: float = 1.0
    risk_reward_ratio: float = 2.0
    max_position_size: float = 10000.0
    max_risk_per_trade: float = 2.0

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'RiskSettings':
        data = data or {}
        return cls(
            risk_percentage=float(data.get('riskPercentage', cls.risk_percentage)),
            risk_reward_ratio=float(data.get('riskRewardRatio', cls.risk_reward_ratio)),
            max_position_size=float(data.get('maxPositionSize', cls.max_position_size)),
            max_risk_per_trade=float(data.get('maxRiskPerTrade', cls.max_risk_per_trade)),
        )

    def with_balance(self, balance: float) -> RiskParameters:
        return RiskParameters(
            account_balance=balance,
            risk_percentage_per_trade=self.risk_percentage,
            risk_reward_ratio=self.risk_reward_ratio,
            max_position_size=self.max_position_size,
            max_risk_per_trade=self.max_risk_per_trade,
        )


@dataclass(frozen=True)
class SizedOrder:
    side: Side
    entry_price: float
    stop_loss: float
    take_profit: float
    position_size: float
    valid: bool
    rejection_reason: Optional[str] = None


@dataclass
class TradeRecord:
    """A persisted trade. Owned and mutated only by the OrderLedger."""
    id: str
    exchange_order_id: str
    bot_id: str
    symbol: str
    side: Side
    status: str
    quantity: float
    price: float
    executed_qty: float = 0.0
    avg_executed_price: Optional[float] = None
    cost: Optional[float] = None
    fee: float = 0.0
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    profit_loss: Optional[float] = None
    profit_loss_percent: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)
    filled_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    notes: str = ''
    unprotected: bool = False
    stop_loss_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    # Set on protective exit orders: the entry they protect and which leg they are
    parent_id: Optional[str] = None
    leg: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_leg(self) -> bool:
        return self.parent_id is not None

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ('created_at', 'filled_at', 'closed_at'):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'TradeRecord':
        data = dict(data)
        for key in ('created_at', 'filled_at', 'closed_at'):
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


@dataclass
class BotConfig:
    """Static definition of a bot, as stored by the surrounding application."""
    bot_id: str
    symbol: str
    strategy: StrategyType = StrategyType.TREND_CONFLUENCE
    parameters: StrategyParameters = field(default_factory=StrategyParameters)
    risk: RiskSettings = field(default_factory=RiskSettings)
    interval: str = '1h'
    venue_id: str = 'bybit'

    @classmethod
    def from_dict(cls, data: dict) -> 'BotConfig':
        return cls(
            bot_id=str(data['id']),
            symbol=data['symbol'],
            strategy=StrategyType.parse(data.get('strategy', StrategyType.TREND_CONFLUENCE.value)),
            parameters=StrategyParameters.from_dict(data.get('parameters')),
            risk=RiskSettings.from_dict(data.get('riskManagement')),
            interval=data.get('interval', '1h'),
            venue_id=data.get('venue', 'bybit'),
        )


@dataclass
class BotRuntime:
    """Live state of a running bot. Owned exclusively by the BotManager."""
    bot_id: str
    strategy_type: StrategyType
    parameters: StrategyParameters
    interval: str
    is_active: bool = False
    last_trade_time: Optional[float] = None
    cancel_token: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class BacktestState:
    balance: float
    positions: Dict[str, float] = field(default_factory=dict)
    trades: List[dict] = field(default_factory=list)
    equity_curve: List[dict] = field(default_factory=list)


@dataclass
class PerformanceSnapshot:
    total_trades: int = 0
    open_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_profit: float = 0.0
    total_loss: float = 0.0
    net_profit: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    last_trade_at: Optional[datetime] = None
    recent_trades: List[dict] = field(default_factory=list)


@dataclass
class CycleResult:
    """Outcome of one scheduler cycle for one bot."""
    bot_id: str
    status: Literal['skipped', 'hold', 'traded', 'rejected', 'failed']
    reason: str = ''
    signal: Optional[Signal] = None
    trade: Optional[TradeRecord] = None
