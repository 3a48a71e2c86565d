# tradecore/position_sizer.py
import logging
import math

from tradecore.datastructures import RiskParameters, SizedOrder, Side
from tradecore.errors import RiskValidationError


def calculate_stop_loss(side: Side, entry_price: float, risk_percentage: float) -> float:
    stop_distance = entry_price * (risk_percentage / 100)
    return entry_price - stop_distance if side == 'buy' else entry_price + stop_distance


def calculate_take_profit(side: Side, entry_price: float, stop_loss: float, risk_reward_ratio: float) -> float:
    reward_distance = abs(entry_price - stop_loss) * risk_reward_ratio
    return entry_price + reward_distance if side == 'buy' else entry_price - reward_distance


def calculate_position_size(account_balance: float, risk_percentage: float,
                            entry_price: float, stop_loss: float) -> float:
    """Units such that hitting the stop loses `risk_percentage` of the balance."""
    dollar_risk = account_balance * (risk_percentage / 100)
    price_difference = abs(entry_price - stop_loss)
    if price_difference == 0:
        return math.inf
    return dollar_risk / price_difference


def size(side: Side, entry_price: float, risk: RiskParameters) -> SizedOrder:
    """
    Derives stop-loss, take-profit and position size for a new entry and
    runs the statistical risk checks. Never raises for a rejected trade;
    the result carries `valid=False` and a reason instead.
    """
    if side not in ('buy', 'sell'):
        raise ValueError(f"Cannot size a '{side}' order")

    pct = risk.risk_percentage_per_trade
    stop_loss = calculate_stop_loss(side, entry_price, pct)
    position_size = calculate_position_size(risk.account_balance, pct, entry_price, stop_loss)
    take_profit = calculate_take_profit(side, entry_price, stop_loss, risk.risk_reward_ratio)

    def rejected(reason: str) -> SizedOrder:
        logging.info(f"RISK: Rejected {side} @ {entry_price}: {reason}")
        return SizedOrder(side, entry_price, stop_loss, take_profit, position_size, False, reason)

    values = {'entry_price': entry_price, 'stop_loss': stop_loss,
              'take_profit': take_profit, 'position_size': position_size}
    for name, value in values.items():
        if not math.isfinite(value) or value <= 0:
            return rejected(f"{name} is not a positive finite number ({value})")

    if position_size > risk.max_position_size:
        return rejected(f"position size {position_size:.8f} exceeds max {risk.max_position_size}")

    potential_loss = abs(entry_price - stop_loss) * position_size
    risk_pct = (potential_loss / risk.account_balance) * 100
    # Tolerate float noise from the round trip through the stop distance
    if risk_pct > risk.max_risk_per_trade + 1e-9:
        return rejected(f"risk {risk_pct:.4f}% exceeds max {risk.max_risk_per_trade}%")

    return SizedOrder(side, entry_price, stop_loss, take_profit, position_size, True)


def ensure_valid(order: SizedOrder) -> SizedOrder:
    if not order.valid:
        raise RiskValidationError(order.rejection_reason or "Trade does not meet risk management criteria")
    return order


def check_price_sanity(order: SizedOrder, market_price: float) -> None:
    """
    Hard gate before submission: the market must sit strictly between the
    protective levels, otherwise the order is inverted or would trigger
    immediately.
    """
    if not math.isfinite(market_price) or market_price <= 0:
        raise RiskValidationError(f"Invalid market price {market_price}")

    if order.side == 'buy':
        ok = order.stop_loss < market_price < order.take_profit
    else:
        ok = order.take_profit < market_price < order.stop_loss

    if not ok:
        raise RiskValidationError(
            f"Market price {market_price} outside protective range for {order.side}: "
            f"stop_loss={order.stop_loss}, take_profit={order.take_profit}"
        )
