# main.py
import asyncio
import dataclasses
import json
import logging
import signal
from pathlib import Path

from tradecore.alerts import AlertDispatcher
from tradecore.bot_manager import BotManager
from tradecore.config import config
from tradecore.datastructures import BotConfig
from tradecore.exchange_connector import BybitExchange, SimulatedExchange
from tradecore.ledger import JsonTradeStore, OrderLedger
from tradecore.logger import setup_logging
from tradecore.order_executor import OrderExecutor
from tradecore.resilience import ResilientExecutor


def load_bots(path) -> list:
    bots_file = Path(path)
    if not bots_file.exists():
        logging.warning(f"No bot definitions found at {bots_file}.")
        return []
    with open(bots_file, 'r') as f:
        data = json.load(f)
    return [BotConfig.from_dict(entry) for entry in data.get('bots', data if isinstance(data, list) else [])]


async def main():
    setup_logging()
    logging.info(f"Initializing trading core in {config.MODE} mode...")

    exchange = BybitExchange() if config.MODE == 'LIVE' else SimulatedExchange()
    executor = ResilientExecutor()
    ledger = OrderLedger(JsonTradeStore(Path(config.STATE_DIR) / 'trades.json'))
    alerts = AlertDispatcher()
    order_executor = OrderExecutor(exchange, executor, ledger, alerts=alerts)
    bot_manager = BotManager(exchange, executor, ledger, order_executor=order_executor)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    for bot in load_bots(config.BOTS_FILE):
        # Every bot trades on the venue this process is connected to
        bot_manager.start_bot(dataclasses.replace(bot, venue_id=exchange.venue_id))

    logging.info(f"Started {len(bot_manager.active_bots)} bots. Waiting for shutdown signal...")
    await stop_event.wait()

    logging.info("Received shutdown signal. Stopping bots...")
    await bot_manager.stop_all()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    finally:
        logging.info("Bot shutdown complete.")
