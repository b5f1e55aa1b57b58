"""
Backoff for transient store and broker failures
"""
import logging
import random
import time
from typing import Any, Callable, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)

class RetryConfig:
    """How often and how patiently to retry, and which exceptions qualify."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[Sequence[type]] = None,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions: List[type] = list(retryable_exceptions or [Exception])

    def with_attempts(self, max_attempts: int) -> "RetryConfig":
        return RetryConfig(max_attempts, self.base_delay, self.max_delay, self.exponential_base,
                           self.jitter, self.retryable_exceptions)

    def retries(self, error: Exception) -> bool:
        return isinstance(error, tuple(self.retryable_exceptions))

    def delay(self, attempt: int) -> float:
        """Backoff before attempt ``attempt + 1``, shortened by up to half when jittered."""
        delay = min(self.base_delay * self.exponential_base ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.5, 1.0)
        return delay

def retry_call(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Call ``func``, retrying the errors ``config`` allows until its attempts run out.

    The last exception is re-raised unchanged so callers translate it into
    their own error type.
    """
    name = getattr(func, "__name__", repr(func))
    attempt = 1
    while True:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not config.retries(e):
                raise
            if attempt >= config.max_attempts:
                logger.error(f"Giving up on {name} after {attempt} attempt(s): {e}")
                raise
            delay = config.delay(attempt)
            logger.warning(f"Attempt {attempt}/{config.max_attempts} of {name} failed: {e}. Retrying in {delay:.2f}s")
            time.sleep(delay)
            attempt += 1

# Dropped connections, lost compare-and-swap races and duplicate inserts
TRANSIENT_STORE_EXCEPTIONS = [OperationalError, IntegrityError, StaleDataError]

STORE_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.05,
    max_delay=1.0,
    retryable_exceptions=TRANSIENT_STORE_EXCEPTIONS,
)

# A retried run that finds the round already in history returns the recorded result
SETTLEMENT_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.2,
    max_delay=5.0,
    retryable_exceptions=TRANSIENT_STORE_EXCEPTIONS,
)

KAFKA_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    max_delay=15.0,
)
