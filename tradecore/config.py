# tradecore/config.py
import os
from dotenv import load_dotenv
import logging

# Load environment variables from a .env file for local development
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Main configuration class loading settings from environment variables."""
    # --- Exchange Credentials ---
    API_KEY = os.getenv('BYBIT_API_KEY')
    API_SECRET = os.getenv('BYBIT_API_SECRET')
    TESTNET = _env_bool('BYBIT_TESTNET', 'false')
    CATEGORY = os.getenv('BYBIT_CATEGORY', 'spot')
    QUOTE_CURRENCY = os.getenv('QUOTE_CURRENCY', 'USDT')

    # --- Bot Mode ---
    # Set to 'LIVE' to use real exchange connections
    MODE = os.getenv('MODE', 'SIMULATION')

    # --- Trading Loop ---
    MIN_CONFIDENCE = float(os.getenv('MIN_CONFIDENCE', 0.7))
    COOLDOWN_SECONDS = float(os.getenv('COOLDOWN_SECONDS', 300))
    CANDLE_LIMIT = int(os.getenv('CANDLE_LIMIT', 200))
    MIN_ACCOUNT_BALANCE = float(os.getenv('MIN_ACCOUNT_BALANCE', 10.0))
    RECONCILE_INTERVAL_SECONDS = float(os.getenv('RECONCILE_INTERVAL_SECONDS', 300))
    PROTECTIVE_ORDERS = _env_bool('PROTECTIVE_ORDERS', 'true')

    # --- Resilience ---
    RETRY_MAX_RETRIES = int(os.getenv('RETRY_MAX_RETRIES', 3))
    RETRY_INITIAL_DELAY = float(os.getenv('RETRY_INITIAL_DELAY', 1.0))  # seconds
    RETRY_MAX_DELAY = float(os.getenv('RETRY_MAX_DELAY', 30.0))
    RETRY_MULTIPLIER = float(os.getenv('RETRY_MULTIPLIER', 2.0))
    CB_FAILURE_THRESHOLD = int(os.getenv('CB_FAILURE_THRESHOLD', 5))
    CB_SUCCESS_THRESHOLD = int(os.getenv('CB_SUCCESS_THRESHOLD', 2))
    CB_TIMEOUT_SECONDS = float(os.getenv('CB_TIMEOUT_SECONDS', 60.0))

    # --- Backtesting ---
    INITIAL_CAPITAL = float(os.getenv('INITIAL_CAPITAL', 10000.0))
    TAKER_FEE = float(os.getenv('TAKER_FEE', 0.001))  # As fraction
    SLIPPAGE = float(os.getenv('SLIPPAGE', 0.001))  # As fraction

    # --- Storage & Alerts ---
    STATE_DIR = os.getenv('STATE_DIR', './state')
    BOTS_FILE = os.getenv('BOTS_FILE', './bots.json')
    ALERT_WEBHOOK_URL = os.getenv('ALERT_WEBHOOK_URL')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # --- Validation ---
    if MODE == 'LIVE' and (not API_KEY or not API_SECRET):
        logging.warning("API_KEY or API_SECRET not found in environment variables.")

config = Config()
