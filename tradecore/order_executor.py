# tradecore/order_executor.py
import logging

from tradecore import position_sizer
from tradecore.alerts import AlertDispatcher
from tradecore.config import config
from tradecore.datastructures import BotConfig, Signal, SizedOrder, TradeRecord
from tradecore.errors import RiskValidationError
from tradecore.exchange_connector import Exchange
from tradecore.ledger import OrderLedger
from tradecore.resilience import ResilientExecutor


class OrderExecutor:
    """
    Turns an actionable Signal into a venue order: sizes it against the
    live balance, gates it on the current price, submits it through the
    ResilientExecutor and records the outcome in the ledger. Protective
    stop-loss / take-profit legs are placed right after the entry fills and
    tracked in the ledger as exit records of the entry.
    """
    def __init__(self, exchange: Exchange, executor: ResilientExecutor, ledger: OrderLedger,
                 alerts: AlertDispatcher = None, quote_currency: str = None,
                 min_account_balance: float = None, protective_orders: bool = None):
        self.exchange = exchange
        self.executor = executor
        self.ledger = ledger
        self.alerts = alerts or AlertDispatcher()
        self.quote_currency = quote_currency or config.QUOTE_CURRENCY
        self.min_account_balance = (config.MIN_ACCOUNT_BALANCE if min_account_balance is None
                                    else min_account_balance)
        self.protective_orders = config.PROTECTIVE_ORDERS if protective_orders is None else protective_orders

    async def _venue(self, venue_id: str, operation):
        return await self.executor.execute(venue_id, operation)

    async def fetch_account_balance(self, venue_id: str) -> float:
        balances = await self._venue(venue_id, self.exchange.fetch_balance)
        quote = balances.get(self.quote_currency) or {}
        return float(quote.get('free') or 0) + float(quote.get('used') or 0)

    async def execute_signal(self, bot: BotConfig, signal: Signal) -> TradeRecord:
        if signal.action == 'hold':
            raise ValueError("Refusing to execute a hold signal")

        account_balance = await self.fetch_account_balance(bot.venue_id)
        if account_balance < self.min_account_balance:
            raise RiskValidationError(
                f"Insufficient balance for trading: {account_balance:.2f} {self.quote_currency}"
            )

        risk = bot.risk.with_balance(account_balance)
        sized = position_sizer.ensure_valid(position_sizer.size(signal.action, signal.reference_price, risk))

        ticker = await self._venue(bot.venue_id, lambda: self.exchange.fetch_ticker(bot.symbol))
        position_sizer.check_price_sanity(sized, float(ticker['last']))

        logging.info(f"Executor submitting {sized.side} {sized.position_size:.8f} {bot.symbol} for bot {bot.bot_id} "
                     f"(SL {sized.stop_loss:.4f}, TP {sized.take_profit:.4f}).")
        try:
            venue_order = await self._venue(
                bot.venue_id,
                lambda: self.exchange.place_order(bot.symbol, 'market', sized.side, sized.position_size),
            )
        except Exception as e:
            self.ledger.record_failure(bot.bot_id, bot.symbol, sized, e)
            raise

        record = self.ledger.record_submission(bot.bot_id, bot.symbol, sized, venue_order)

        if self.protective_orders:
            record = await self._protect(bot, record, sized)

        await self.alerts.info(
            'TRADE_EXECUTED',
            f"{sized.side} {sized.position_size:.8f} {bot.symbol} @ {signal.reference_price}",
            bot_id=bot.bot_id, order_id=record.exchange_order_id, confidence=signal.confidence,
        )
        return record

    async def _protect(self, bot: BotConfig, record: TradeRecord, sized: SizedOrder) -> TradeRecord:
        """Places the exit legs; a missing leg leaves the position unprotected."""
        exit_side = 'sell' if sized.side == 'buy' else 'buy'
        quantity = record.executed_qty or sized.position_size

        legs = {'stop_loss': ('stop', sized.stop_loss), 'take_profit': ('limit', sized.take_profit)}
        order_ids = {}
        failures = []
        for leg, (order_type, price) in legs.items():
            try:
                order = await self._venue(
                    bot.venue_id,
                    lambda order_type=order_type, price=price: self.exchange.place_order(
                        bot.symbol, order_type, exit_side, quantity, price
                    ),
                )
                order_ids[leg] = str(order['id'])
                self.ledger.record_protective_leg(record, leg, order, quantity, price)
            except Exception as e:
                logging.error(f"Failed to place {leg} leg for trade {record.id}: {e}", exc_info=True)
                failures.append(f"{leg}: {e}")

        record = self.ledger.attach_protection(
            record.id,
            stop_loss_order_id=order_ids.get('stop_loss'),
            take_profit_order_id=order_ids.get('take_profit'),
        )
        if failures:
            reason = '; '.join(failures)
            record = self.ledger.mark_unprotected(record.id, reason)
            await self.alerts.critical(
                'UNPROTECTED_POSITION',
                f"Position {record.id} on {bot.symbol} is open without protection: {reason}",
                bot_id=bot.bot_id, trade_id=record.id, symbol=bot.symbol,
                stop_loss=sized.stop_loss, take_profit=sized.take_profit,
            )
        return record
