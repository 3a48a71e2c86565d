# tradecore/errors.py


class TradingError(Exception):
    """Base class for every error raised by the trading core."""


class InsufficientDataError(TradingError):
    """Too few candles for the requested strategy lookback."""


class RiskValidationError(TradingError, ValueError):
    """A sizing or pre-trade sanity check rejected the trade."""


class TransientVenueError(TradingError):
    """Network or timeout problem talking to the venue. Safe to retry."""


class InvalidOrderError(TradingError):
    """The venue rejected the order semantics. Never retried."""


class CircuitOpenError(TradingError):
    """The venue's circuit breaker is open; the call was not attempted."""

    def __init__(self, venue_id: str, retry_at: float):
        super().__init__(f"Circuit breaker {venue_id} is OPEN")
        self.venue_id = venue_id
        self.retry_at = retry_at


class ReconciliationError(TradingError):
    """A single trade could not be reconciled against venue state."""


class BotStateError(TradingError):
    """Illegal bot lifecycle transition (start twice, stop when stopped)."""
