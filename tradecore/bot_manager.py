# tradecore/bot_manager.py
import asyncio
import logging
import time
from typing import Callable, Dict, Optional

from tradecore.config import config
from tradecore.datastructures import BotConfig, BotRuntime, CycleResult
from tradecore.errors import BotStateError, CircuitOpenError, RiskValidationError, TradingError
from tradecore.exchange_connector import Exchange
from tradecore.ledger import OrderLedger
from tradecore.order_executor import OrderExecutor
from tradecore.resilience import ResilientExecutor
from tradecore.strategy_logic import SignalEngine

INTERVAL_MS = {
    '1m': 60_000,
    '5m': 300_000,
    '15m': 900_000,
    '30m': 1_800_000,
    '1h': 3_600_000,
    '4h': 14_400_000,
    '1d': 86_400_000,
}


def interval_ms(label: str) -> int:
    return INTERVAL_MS.get(label, INTERVAL_MS['1h'])


class TradingLoop:
    """
    The periodic evaluate -> decide -> execute cycle of a single bot.
    A cycle always resolves before the next one is armed.
    """
    def __init__(self, bot: BotConfig, runtime: BotRuntime, exchange: Exchange,
                 executor: ResilientExecutor, ledger: OrderLedger, order_executor: OrderExecutor,
                 engine: SignalEngine = None, min_confidence: float = None,
                 cooldown: float = None, candle_limit: int = None,
                 reconcile_interval: float = None, clock: Callable[[], float] = time.monotonic):
        self.bot = bot
        self.runtime = runtime
        self.exchange = exchange
        self.executor = executor
        self.ledger = ledger
        self.order_executor = order_executor
        self.engine = engine or SignalEngine()
        self.min_confidence = config.MIN_CONFIDENCE if min_confidence is None else min_confidence
        self.cooldown = config.COOLDOWN_SECONDS if cooldown is None else cooldown
        self.candle_limit = candle_limit or config.CANDLE_LIMIT
        self.reconcile_interval = (config.RECONCILE_INTERVAL_SECONDS if reconcile_interval is None
                                   else reconcile_interval)
        self.clock = clock
        self.last_reconcile: Optional[float] = None

    def in_cooldown(self, now: float) -> bool:
        last = self.runtime.last_trade_time
        return last is not None and now - last < self.cooldown

    async def reconcile(self, now: float):
        """
        Syncs open trades with the venue, backfills P&L on filled entries and
        cancels protective legs left behind by closed positions.
        """
        if self.last_reconcile is not None and now - self.last_reconcile < self.reconcile_interval:
            return
        self.last_reconcile = now
        venue_id, bot_id = self.bot.venue_id, self.bot.bot_id
        try:
            await self.ledger.reconcile(venue_id, bot_id, self.exchange, self.executor)
        except Exception as e:
            logging.error(f"[{bot_id}] Reconciliation failed: {e}")
            return
        self.ledger.settle(bot_id)
        await self.ledger.cancel_stale_legs(venue_id, bot_id, self.exchange, self.executor)

    async def run_cycle(self) -> CycleResult:
        bot_id = self.bot.bot_id
        now = self.clock()
        if self.in_cooldown(now):
            logging.debug(f"[{bot_id}] In cooldown, skipping cycle.")
            return CycleResult(bot_id, 'skipped', reason='cooldown')

        await self.reconcile(now)

        try:
            candles = await self.executor.execute(
                self.bot.venue_id,
                lambda: self.exchange.fetch_candles(self.bot.symbol, self.runtime.interval, self.candle_limit),
            )
            signal = self.engine.evaluate(self.runtime.strategy_type, self.runtime.parameters, candles)
        except CircuitOpenError as e:
            breaker = self.executor.breakers.get(self.bot.venue_id).snapshot()
            logging.warning(f"[{bot_id}] Venue unavailable, skipping cycle: {e} {breaker}")
            return CycleResult(bot_id, 'failed', reason=str(e))
        except Exception as e:
            logging.error(f"[{bot_id}] Market data or analysis failed: {e}", exc_info=True)
            return CycleResult(bot_id, 'failed', reason=str(e))

        if signal.action == 'hold' or signal.confidence < self.min_confidence:
            logging.info(f"[{bot_id}] {signal.action.upper()} at {signal.confidence:.2f} confidence. No trade.")
            return CycleResult(bot_id, 'hold', signal=signal)

        logging.info(f"[{bot_id}] {signal.action.upper()} signal at {signal.confidence:.2f} confidence "
                     f"(price {signal.reference_price}).")
        try:
            trade = await self.order_executor.execute_signal(self.bot, signal)
        except RiskValidationError as e:
            logging.warning(f"[{bot_id}] Trade rejected: {e}")
            return CycleResult(bot_id, 'rejected', reason=str(e), signal=signal)
        except (TradingError, ValueError) as e:
            logging.error(f"[{bot_id}] Trade execution failed: {e}")
            return CycleResult(bot_id, 'failed', reason=str(e), signal=signal)

        self.runtime.last_trade_time = now
        return CycleResult(bot_id, 'traded', signal=signal, trade=trade)

    async def run(self):
        token = self.runtime.cancel_token
        interval = interval_ms(self.runtime.interval) / 1000
        logging.info(f"[{self.bot.bot_id}] Trading loop started ({self.runtime.interval}).")
        while not token.is_set():
            try:
                await self.run_cycle()
            except Exception as e:
                logging.error(f"[{self.bot.bot_id}] Unexpected error in trading cycle: {e}", exc_info=True)
            try:
                await asyncio.wait_for(token.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logging.info(f"[{self.bot.bot_id}] Trading loop stopped.")


class BotManager:
    """
    Starts and stops the trading loops of multiple bots. Owns the runtime
    state of every active bot; nothing else mutates it.
    """
    def __init__(self, exchange: Exchange, executor: ResilientExecutor, ledger: OrderLedger,
                 order_executor: OrderExecutor = None, engine: SignalEngine = None, **loop_options):
        self.exchange = exchange
        self.executor = executor
        self.ledger = ledger
        self.order_executor = order_executor or OrderExecutor(exchange, executor, ledger)
        self.engine = engine or SignalEngine()
        self.loop_options = loop_options
        self.active_bots: Dict[str, dict] = {}

    def is_running(self, bot_id: str) -> bool:
        return bot_id in self.active_bots

    def runtime(self, bot_id: str) -> Optional[BotRuntime]:
        instance = self.active_bots.get(bot_id)
        return instance['runtime'] if instance else None

    def start_bot(self, bot: BotConfig) -> BotRuntime:
        if bot.bot_id in self.active_bots:
            raise BotStateError(f"Bot {bot.bot_id} is already running")

        logging.info(f"BOT MANAGER: Starting bot {bot.bot_id} on {bot.symbol} "
                     f"({bot.strategy.value}, {bot.interval}).")
        runtime = BotRuntime(
            bot_id=bot.bot_id,
            strategy_type=bot.strategy,
            parameters=bot.parameters,
            interval=bot.interval,
            is_active=True,
        )
        loop = TradingLoop(bot, runtime, self.exchange, self.executor, self.ledger,
                           self.order_executor, engine=self.engine, **self.loop_options)
        self.active_bots[bot.bot_id] = {
            'bot': bot,
            'runtime': runtime,
            'loop': loop,
            'task': asyncio.create_task(loop.run()),
        }
        logging.info(f"Bot {bot.bot_id} is now active.")
        return runtime

    async def stop_bot(self, bot_id: str) -> int:
        """Stops the loop, lets the in-flight cycle finish, then cancels open trades."""
        if bot_id not in self.active_bots:
            raise BotStateError(f"Bot {bot_id} is not running")

        logging.info(f"BOT MANAGER: Stopping bot {bot_id}.")
        instance = self.active_bots.pop(bot_id)
        runtime = instance['runtime']
        runtime.cancel_token.set()
        await asyncio.gather(instance['task'], return_exceptions=True)
        runtime.is_active = False

        cancelled = await self.ledger.cancel_open_trades(
            instance['bot'].venue_id, bot_id, self.exchange, self.executor
        )
        logging.info(f"Bot {bot_id} has been fully stopped ({cancelled} open trades cancelled).")
        return cancelled

    async def stop_all(self):
        logging.info("Stopping all active bots...")
        for bot_id in list(self.active_bots):
            await self.stop_bot(bot_id)
