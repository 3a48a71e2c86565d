# tradecore/ledger.py
import itertools
import json
import logging
import math
import time
from collections import deque
from dataclasses import replace
from pathlib import Path
from typing import Deque, Dict, List, Optional

import numpy as np

from tradecore.datastructures import (
    OPEN_STATUSES,
    PerformanceSnapshot,
    SizedOrder,
    TradeRecord,
    utcnow,
)
from tradecore.errors import ReconciliationError
from tradecore.resilience import ResilientExecutor, RetryPolicy

HISTORY_LIMIT = 100

# Fields that may still change once a trade reached a terminal status
POST_TERMINAL_FIELDS = frozenset({'profit_loss', 'profit_loss_percent', 'closed_at'})

RECONCILE_RETRY = RetryPolicy(max_retries=2, initial_delay=0.5)


class TradeStore:
    """Persistence collaborator for trade records."""

    def create(self, record: TradeRecord) -> TradeRecord:
        raise NotImplementedError

    def get(self, trade_id: str) -> Optional[TradeRecord]:
        raise NotImplementedError

    def find(self, **criteria) -> List[TradeRecord]:
        """Records whose attributes equal the criteria; tuple values match any member."""
        raise NotImplementedError

    def update(self, trade_id: str, **changes) -> TradeRecord:
        raise NotImplementedError

    def append_history(self, bot_id: str, entry: dict):
        raise NotImplementedError

    def history(self, bot_id: str) -> List[dict]:
        raise NotImplementedError


def _matches(record: TradeRecord, criteria: dict) -> bool:
    for key, expected in criteria.items():
        value = getattr(record, key)
        if isinstance(expected, (tuple, list, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


class InMemoryTradeStore(TradeStore):
    def __init__(self):
        self.records: Dict[str, TradeRecord] = {}
        self.histories: Dict[str, Deque[dict]] = {}

    def create(self, record: TradeRecord) -> TradeRecord:
        if record.id in self.records:
            raise KeyError(f"Trade {record.id} already exists")
        self.records[record.id] = replace(record)
        return replace(record)

    def get(self, trade_id: str) -> Optional[TradeRecord]:
        record = self.records.get(trade_id)
        return replace(record) if record else None

    def find(self, **criteria) -> List[TradeRecord]:
        found = [replace(r) for r in self.records.values() if _matches(r, criteria)]
        return sorted(found, key=lambda r: r.created_at)

    def update(self, trade_id: str, **changes) -> TradeRecord:
        record = self.records[trade_id]
        for key, value in changes.items():
            setattr(record, key, value)
        return replace(record)

    def append_history(self, bot_id: str, entry: dict):
        self.histories.setdefault(bot_id, deque(maxlen=HISTORY_LIMIT)).append(entry)

    def history(self, bot_id: str) -> List[dict]:
        return list(self.histories.get(bot_id, ()))


class JsonTradeStore(InMemoryTradeStore):
    """In-memory store flushed to a JSON file after every write."""

    def __init__(self, path):
        super().__init__()
        self.state_file = Path(path)
        self._load_state()

    def _load_state(self):
        if not self.state_file.exists():
            return
        logging.info(f"Found trade state file {self.state_file}. Loading previous state.")
        with open(self.state_file, 'r') as f:
            state = json.load(f)
        for data in state.get('trades', []):
            record = TradeRecord.from_dict(data)
            self.records[record.id] = record
        for bot_id, entries in state.get('history', {}).items():
            self.histories[bot_id] = deque(entries, maxlen=HISTORY_LIMIT)
        logging.info(f"Loaded {len(self.records)} trades from {self.state_file}.")

    def save_state(self):
        state = {
            'trades': [r.to_dict() for r in self.records.values()],
            'history': {bot_id: list(entries) for bot_id, entries in self.histories.items()},
        }
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_file.with_suffix('.tmp')
        with open(tmp, 'w') as f:
            json.dump(state, f, indent=4, default=str)
        tmp.replace(self.state_file)

    def create(self, record: TradeRecord) -> TradeRecord:
        created = super().create(record)
        self.save_state()
        return created

    def update(self, trade_id: str, **changes) -> TradeRecord:
        updated = super().update(trade_id, **changes)
        self.save_state()
        return updated

    def append_history(self, bot_id: str, entry: dict):
        super().append_history(bot_id, entry)
        self.save_state()


def derive_status(venue_order: dict, current: str) -> str:
    """Maps the venue's order view onto a ledger status."""
    status = (venue_order.get('status') or '').lower()
    filled = float(venue_order.get('filled') or 0)
    amount = float(venue_order.get('amount') or 0)

    if status in ('closed', 'done'):
        return 'filled' if filled >= amount else 'partially_filled'
    if status in ('canceled', 'cancelled'):
        return 'cancelled'
    if status == 'open' and filled > 0:
        return 'partially_filled'
    return current


class OrderLedger:
    """
    Owns trade records: creates them on submission, keeps them in sync with
    the venue and backfills realised P&L. Terminal records are frozen apart
    from the P&L fields.
    """
    def __init__(self, store: TradeStore = None):
        self.store = store or InMemoryTradeStore()
        self._failed_ids = itertools.count(1)

    # --- writes ---

    def _update(self, record: TradeRecord, **changes) -> TradeRecord:
        if record.is_terminal:
            blocked = set(changes) - POST_TERMINAL_FIELDS
            if blocked:
                raise ReconciliationError(
                    f"Trade {record.id} is {record.status}; refusing to change {sorted(blocked)}"
                )
        return self.store.update(record.id, **changes)

    def _create(self, record: TradeRecord) -> TradeRecord:
        created = self.store.create(record)
        self.store.append_history(record.bot_id, created.to_dict())
        return created

    def record_submission(self, bot_id: str, symbol: str, sized_order: SizedOrder,
                          venue_order: dict) -> TradeRecord:
        record = TradeRecord(
            id=str(venue_order['id']),
            exchange_order_id=str(venue_order['id']),
            bot_id=bot_id,
            symbol=symbol,
            side=sized_order.side,
            status='open' if venue_order.get('status') else 'pending',
            quantity=sized_order.position_size,
            price=sized_order.entry_price,
            executed_qty=float(venue_order.get('filled') or 0),
            avg_executed_price=venue_order.get('average'),
            cost=venue_order.get('cost'),
            fee=float(venue_order.get('fee') or 0),
            stop_loss=sized_order.stop_loss,
            take_profit=sized_order.take_profit,
        )
        logging.info(f"LEDGER: Recorded {record.side} {record.quantity:.8f} {symbol} as {record.status} "
                     f"(order {record.exchange_order_id}) for bot {bot_id}.")
        return self._create(record)

    def record_failure(self, bot_id: str, symbol: str, sized_order: SizedOrder,
                       error: BaseException) -> TradeRecord:
        synthetic_id = f"FAILED_{int(time.time() * 1000)}_{next(self._failed_ids)}"
        record = TradeRecord(
            id=synthetic_id,
            exchange_order_id=synthetic_id,
            bot_id=bot_id,
            symbol=symbol,
            side=sized_order.side,
            status='failed',
            quantity=sized_order.position_size,
            price=sized_order.entry_price,
            stop_loss=sized_order.stop_loss,
            take_profit=sized_order.take_profit,
            notes=f"{type(error).__name__}: {error}",
        )
        logging.error(f"LEDGER: Order submission failed for bot {bot_id} {symbol}: {error}")
        return self._create(record)

    def mark_unprotected(self, trade_id: str, reason: str) -> TradeRecord:
        record = self.store.get(trade_id)
        notes = f"{record.notes}\nUNPROTECTED: {reason}".strip()
        return self.store.update(trade_id, unprotected=True, notes=notes)

    def attach_protection(self, trade_id: str, stop_loss_order_id: Optional[str] = None,
                          take_profit_order_id: Optional[str] = None) -> TradeRecord:
        changes = {}
        if stop_loss_order_id:
            changes['stop_loss_order_id'] = stop_loss_order_id
        if take_profit_order_id:
            changes['take_profit_order_id'] = take_profit_order_id
        return self.store.update(trade_id, **changes) if changes else self.store.get(trade_id)

    def record_protective_leg(self, entry: TradeRecord, leg: str, venue_order: dict,
                              quantity: float, price: float) -> TradeRecord:
        """Tracks a resting stop-loss / take-profit order as its own exit record."""
        record = TradeRecord(
            id=str(venue_order['id']),
            exchange_order_id=str(venue_order['id']),
            bot_id=entry.bot_id,
            symbol=entry.symbol,
            side='sell' if entry.side == 'buy' else 'buy',
            status='open' if venue_order.get('status') else 'pending',
            quantity=quantity,
            price=price,
            executed_qty=float(venue_order.get('filled') or 0),
            avg_executed_price=venue_order.get('average'),
            cost=venue_order.get('cost'),
            fee=float(venue_order.get('fee') or 0),
            parent_id=entry.id,
            leg=leg,
        )
        logging.info(f"LEDGER: Recorded {leg} leg {record.exchange_order_id} @ {price:.4f} for trade {entry.id}.")
        return self._create(record)

    # --- queries ---

    def get(self, trade_id: str) -> Optional[TradeRecord]:
        return self.store.get(trade_id)

    def open_trades(self, bot_id: str) -> List[TradeRecord]:
        return self.store.find(bot_id=bot_id, status=OPEN_STATUSES)

    def trades(self, bot_id: str) -> List[TradeRecord]:
        return self.store.find(bot_id=bot_id)

    def history(self, bot_id: str) -> List[dict]:
        return self.store.history(bot_id)

    # --- venue sync ---

    async def reconcile(self, venue_id: str, bot_id: str, exchange, executor: ResilientExecutor) -> int:
        """
        Syncs the bot's non-terminal trades with the venue order list and
        returns how many records changed. Re-running without venue-side
        changes performs no writes.
        """
        open_trades = self.open_trades(bot_id)
        if not open_trades:
            logging.debug(f"[Reconciliation] No open trades to reconcile for bot {bot_id}.")
            return 0

        updated = 0
        for symbol in sorted({t.symbol for t in open_trades}):
            venue_orders = await executor.execute(
                venue_id, lambda symbol=symbol: exchange.list_orders(symbol), retry_policy=RECONCILE_RETRY
            )
            by_id = {str(order['id']): order for order in venue_orders}

            for trade in (t for t in open_trades if t.symbol == symbol):
                try:
                    if self._reconcile_trade(trade, by_id.get(trade.exchange_order_id)):
                        updated += 1
                except (ReconciliationError, KeyError, TypeError, ValueError) as e:
                    logging.error(f"[Reconciliation] Error updating trade {trade.exchange_order_id}: {e}")

        logging.info(f"[Reconciliation] Bot {bot_id}: {updated}/{len(open_trades)} open trades updated.")
        return updated

    def _reconcile_trade(self, trade: TradeRecord, venue_order: Optional[dict]) -> bool:
        if venue_order is None:
            logging.warning(f"[Reconciliation] Order {trade.exchange_order_id} not found on exchange")
            return False

        new_status = derive_status(venue_order, trade.status)
        executed_qty = float(venue_order.get('filled') or 0)
        avg_price = venue_order.get('average') or trade.avg_executed_price

        if (new_status == trade.status and executed_qty == trade.executed_qty
                and avg_price == trade.avg_executed_price):
            return False

        changes = {
            'status': new_status,
            'executed_qty': executed_qty,
            'avg_executed_price': avg_price,
            'cost': executed_qty * (avg_price or trade.price),
        }
        if new_status == 'filled' and trade.filled_at is None:
            changes['filled_at'] = utcnow()
        self._update(trade, **changes)
        logging.info(f"[Reconciliation] Updated order {trade.exchange_order_id}: {trade.status} -> {new_status}, "
                     f"filled: {executed_qty}/{trade.quantity}")
        return True

    async def _cancel(self, trade: TradeRecord, reason: str, venue_id: str, exchange,
                      executor: ResilientExecutor) -> bool:
        try:
            result = await executor.execute(
                venue_id, lambda: exchange.cancel_order(trade.exchange_order_id, trade.symbol)
            )
        except Exception as e:
            logging.error(f"Error cancelling trade {trade.id} for bot {trade.bot_id}: {e}")
            return False
        if result.get('status') not in ('canceled', 'cancelled'):
            # Filled before the cancel arrived; reconciliation records the fill
            logging.info(f"Trade {trade.id} is already {result.get('status')} at the venue, not cancelled.")
            return False
        notes = f"{trade.notes}\n{reason} at {utcnow().isoformat()}".strip()
        self._update(trade, status='cancelled', closed_at=utcnow(), notes=notes)
        return True

    async def cancel_open_trades(self, venue_id: str, bot_id: str, exchange,
                                 executor: ResilientExecutor) -> int:
        """
        Best effort: a failed cancellation is logged and the next trade is
        tried. Resting protective legs are cancelled along with the entries.
        """
        cancelled = 0
        for trade in self.open_trades(bot_id):
            if await self._cancel(trade, 'Cancelled on bot stop', venue_id, exchange, executor):
                cancelled += 1
        return cancelled

    async def cancel_stale_legs(self, venue_id: str, bot_id: str, exchange,
                                executor: ResilientExecutor) -> int:
        """
        Cancels resting protective legs whose position is already closed,
        either by the sibling leg filling or by a separate exit.
        """
        cancelled = 0
        for leg in self.open_trades(bot_id):
            if not leg.is_leg:
                continue
            entry = self.store.get(leg.parent_id)
            if entry is not None and entry.closed_at is None and entry.status not in ('cancelled', 'failed'):
                continue
            if await self._cancel(leg, f"Cancelled: position {leg.parent_id} closed", venue_id, exchange, executor):
                cancelled += 1
        if cancelled:
            logging.info(f"LEDGER: Cancelled {cancelled} stale protective legs for bot {bot_id}.")
        return cancelled

    # --- profit ---

    def close_and_compute_profit(self, trade_id: str) -> Optional[float]:
        """
        Pairs a filled entry with the next later opposite-side fill of the
        same bot and symbol, and writes realised P&L onto both records.
        A trade that already carries P&L (a closed entry or a consumed exit)
        is never paired again. Protective legs only close their own entry.
        """
        trade = self.store.get(trade_id)
        if trade is None or trade.status != 'filled':
            return None
        if trade.profit_loss is not None:
            return trade.profit_loss
        if trade.is_leg:
            return None

        opposite = 'sell' if trade.side == 'buy' else 'buy'
        candidates = [
            t for t in self.store.find(bot_id=trade.bot_id, symbol=trade.symbol, side=opposite, status='filled')
            if t.profit_loss is None
            and (t.parent_id == trade.id or (not t.is_leg and t.created_at > trade.created_at))
        ]
        if not candidates:
            return None
        exit_trade = candidates[0]

        entry_price = trade.avg_executed_price or trade.price
        exit_price = exit_trade.avg_executed_price or exit_trade.price
        quantity = min(trade.executed_qty, exit_trade.executed_qty)
        sign = 1 if trade.side == 'buy' else -1
        profit_loss = (exit_price - entry_price) * quantity * sign
        notional = entry_price * quantity
        profit_loss_percent = (profit_loss / notional) * 100 if notional else 0.0

        self._update(trade, profit_loss=profit_loss, profit_loss_percent=profit_loss_percent,
                     closed_at=exit_trade.created_at)
        self._update(exit_trade, profit_loss=-profit_loss, profit_loss_percent=-profit_loss_percent)
        logging.info(f"LEDGER: Closed trade {trade.id} against {exit_trade.id}, P&L {profit_loss:.4f}.")
        return profit_loss

    def settle(self, bot_id: str) -> int:
        """Pairs every still-open filled entry of the bot, oldest first. Returns how many closed."""
        closed = 0
        for trade in self.trades(bot_id):
            if trade.status != 'filled' or trade.profit_loss is not None or trade.is_leg:
                continue
            # An exit consumed earlier in this pass returns its stored P&L but never gets closed_at
            if self.close_and_compute_profit(trade.id) is not None and self.store.get(trade.id).closed_at:
                closed += 1
        return closed

    # --- reporting ---

    def performance(self, bot_id: str) -> PerformanceSnapshot:
        return compute_performance(self.trades(bot_id))


def compute_performance(trades: List[TradeRecord]) -> PerformanceSnapshot:
    """
    Deterministic performance figures recomputed from the full trade list.
    P&L figures count closed entries only; their exits carry the mirrored
    amount. Protective legs count as trades once they fill.
    """
    ordered = sorted((t for t in trades if not t.is_leg or t.status == 'filled'),
                     key=lambda t: (t.created_at, t.id))
    if not ordered:
        return PerformanceSnapshot()

    closed = [t for t in ordered
              if t.status == 'filled' and t.closed_at is not None and t.profit_loss is not None]
    pnl = [t.profit_loss for t in closed]
    wins = [p for p in pnl if p > 0]
    losses = [p for p in pnl if p < 0]

    total_profit = sum(wins)
    total_loss = abs(sum(losses))

    running = np.cumsum(pnl) if pnl else np.array([0.0])
    peaks = np.maximum.accumulate(np.maximum(running, 0.0))
    max_drawdown = float(np.max(peaks - running)) if pnl else 0.0

    returns = np.array(pnl)
    std = float(returns.std()) if len(returns) else 0.0
    sharpe = float(returns.mean() / std * math.sqrt(252)) if std > 0 else 0.0

    last = ordered[-1]
    recent = [
        {'id': t.id, 'symbol': t.symbol, 'side': t.side, 'status': t.status,
         'quantity': t.quantity, 'price': t.price, 'profit_loss': t.profit_loss,
         'created_at': t.created_at.isoformat()}
        for t in ordered[-HISTORY_LIMIT:]
    ]
    return PerformanceSnapshot(
        total_trades=len(ordered),
        open_trades=sum(1 for t in ordered if t.status in OPEN_STATUSES),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=(len(wins) / len(closed)) * 100 if closed else 0.0,
        total_profit=total_profit,
        total_loss=total_loss,
        net_profit=total_profit - total_loss,
        max_drawdown=max_drawdown,
        sharpe_ratio=sharpe,
        last_trade_at=last.filled_at or last.created_at,
        recent_trades=recent,
    )
