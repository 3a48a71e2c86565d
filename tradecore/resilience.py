# tradecore/resilience.py
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from tradecore.config import config
from tradecore.errors import (
    CircuitOpenError,
    InvalidOrderError,
    RiskValidationError,
    TransientVenueError,
)

T = TypeVar('T')
Operation = Callable[[], Awaitable[T]]

CLOSED = 'CLOSED'
OPEN = 'OPEN'
HALF_OPEN = 'HALF_OPEN'

_TRANSIENT_MARKERS = ('timeout', 'timed out', 'econnrefused', 'etimedout', 'connection reset')


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = config.RETRY_MAX_RETRIES
    initial_delay: float = config.RETRY_INITIAL_DELAY
    max_delay: float = config.RETRY_MAX_DELAY
    multiplier: float = config.RETRY_MULTIPLIER
    jitter: float = 0.1

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (0-based), without jitter."""
        return min(self.initial_delay * (self.multiplier ** attempt), self.max_delay)


def is_transient_error(error: BaseException) -> bool:
    """Default retry predicate: network trouble yes, order semantics never."""
    if isinstance(error, (InvalidOrderError, RiskValidationError, CircuitOpenError)):
        return False
    if 'invalid order' in str(error).lower():
        return False
    if isinstance(error, (TransientVenueError, TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


async def retry_with_backoff(
    operation: Operation,
    policy: RetryPolicy = None,
    should_retry: Callable[[BaseException], bool] = is_transient_error,
    on_retry: Callable[[int, float, BaseException], None] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Runs `operation` up to `max_retries + 1` times. Non-retryable errors
    and the error of the final attempt are re-raised unchanged.
    """
    policy = policy or RetryPolicy()

    for attempt in range(policy.max_retries + 1):
        try:
            return await operation()
        except Exception as error:
            if attempt == policy.max_retries or not should_retry(error):
                raise

            delay = policy.delay_for(attempt)
            delay += delay * policy.jitter * random.random()
            if on_retry:
                on_retry(attempt, delay, error)
            else:
                logging.warning(f"Retry {attempt + 1}/{policy.max_retries} in {delay:.2f}s after: {error}")
            await sleep(delay)


class CircuitBreaker:
    """
    Per-venue circuit breaker shared by every bot trading that venue.
    State transitions happen under a lock; the guarded call itself does not
    hold it, so concurrent bots are not serialised by the breaker.
    """
    def __init__(self, name: str,
                 failure_threshold: int = config.CB_FAILURE_THRESHOLD,
                 success_threshold: int = config.CB_SUCCESS_THRESHOLD,
                 timeout: float = config.CB_TIMEOUT_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout = timeout
        self.clock = clock

        self.state = CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_attempt_time = clock()
        self._lock = asyncio.Lock()

    async def call(self, operation: Operation) -> T:
        async with self._lock:
            if self.state == OPEN:
                if self.clock() < self.next_attempt_time:
                    raise CircuitOpenError(self.name, self.next_attempt_time)
                logging.info(f"CIRCUIT BREAKER: {self.name} OPEN -> HALF_OPEN, probing venue.")
                self.state = HALF_OPEN

        try:
            result = await operation()
        except Exception:
            async with self._lock:
                self._on_failure()
            raise

        async with self._lock:
            self._on_success()
        return result

    def _on_success(self):
        self.failure_count = 0
        if self.state == HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                logging.info(f"CIRCUIT BREAKER: {self.name} HALF_OPEN -> CLOSED.")
                self.state = CLOSED
                self.success_count = 0

    def _on_failure(self):
        self.failure_count += 1
        if self.state == HALF_OPEN:
            self._trip()
            self.success_count = 0
        elif self.state == CLOSED and self.failure_count >= self.failure_threshold:
            self._trip()

    def _trip(self):
        self.state = OPEN
        self.next_attempt_time = self.clock() + self.timeout
        logging.error(f"CIRCUIT BREAKER: {self.name} is OPEN after {self.failure_count} failures; "
                      f"next attempt in {self.timeout:.0f}s.")

    def snapshot(self) -> dict:
        return {
            'state': self.state,
            'failure_count': self.failure_count,
            'success_count': self.success_count,
            'next_attempt_time': self.next_attempt_time if self.state == OPEN else None,
        }

    def reset(self):
        self.state = CLOSED
        self.failure_count = 0
        self.success_count = 0


class CircuitBreakerRegistry:
    """One breaker per venue id, created lazily."""
    def __init__(self, **breaker_kwargs):
        self.breaker_kwargs = breaker_kwargs
        self.breakers: Dict[str, CircuitBreaker] = {}

    def get(self, venue_id: str) -> CircuitBreaker:
        if venue_id not in self.breakers:
            self.breakers[venue_id] = CircuitBreaker(venue_id, **self.breaker_kwargs)
        return self.breakers[venue_id]


class ResilientExecutor:
    """Wraps venue calls: circuit breaker outside, retry-with-backoff inside."""
    def __init__(self, breakers: CircuitBreakerRegistry = None, retry_policy: RetryPolicy = None,
                 should_retry: Callable[[BaseException], bool] = is_transient_error,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.breakers = breakers or CircuitBreakerRegistry()
        self.retry_policy = retry_policy or RetryPolicy()
        self.should_retry = should_retry
        self.sleep = sleep

    async def execute(self, venue_id: str, operation: Operation,
                      retry_policy: Optional[RetryPolicy] = None) -> T:
        policy = retry_policy or self.retry_policy

        async def retrying():
            return await retry_with_backoff(
                operation,
                policy=policy,
                should_retry=self.should_retry,
                on_retry=lambda attempt, delay, error: logging.warning(
                    f"[{venue_id}] Retry {attempt + 1}/{policy.max_retries} in {delay:.2f}s: {error}"
                ),
                sleep=self.sleep,
            )

        return await self.breakers.get(venue_id).call(retrying)
