"""Circuit breaker and retry policy for third-party token refreshes"""

import logging
import time
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

# 4xx responses worth retrying
RETRYABLE_CLIENT_STATUSES = {408, 429}


class CircuitBreaker:
    """
    Counts consecutive failures and refuses work once the threshold is reached.

    After reset_timeout seconds the breaker goes half-open and lets one trial
    call through: a success closes it again, a failure re-opens it.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 3, reset_timeout: float = 3600.0):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self._state = self.CLOSED

    @property
    def state(self) -> str:
        if (
            self._state == self.OPEN
            and self.last_failure_time is not None
            and time.monotonic() - self.last_failure_time >= self.reset_timeout
        ):
            self._state = self.HALF_OPEN
        return self._state

    def is_open(self) -> bool:
        return self.state == self.OPEN

    def record_success(self) -> None:
        if self._state != self.CLOSED:
            logger.info("✅ Circuit breaker closed after successful call")
        self.failure_count = 0
        self.last_failure_time = None
        self._state = self.CLOSED

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self._state == self.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self._state != self.OPEN:
                logger.warning(
                    f"⚠️ Circuit breaker opened after {self.failure_count} consecutive failures"
                )
            self._state = self.OPEN

    def reset(self) -> None:
        self.failure_count = 0
        self.last_failure_time = None
        self._state = self.CLOSED


class RetryManager:
    """Bounded retries with exponential backoff. Delays are in seconds."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 10.0):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def is_retryable(self, error: Optional[BaseException]) -> bool:
        if error is None:
            return True
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            return status >= 500 or status in RETRYABLE_CLIENT_STATUSES
        return True

    def should_retry(self, error: Optional[BaseException], attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        return self.is_retryable(error)

    def get_backoff_time(self, attempt: int) -> float:
        """Delay before the given (1-based) retry attempt"""
        delay = self.base_delay * (2 ** max(attempt - 1, 0))
        return min(delay, self.max_delay)
