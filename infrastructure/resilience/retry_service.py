"""
Bounded retries and circuit breaking for backend calls.

Every network call the chat engine makes goes through one RetryPolicy.
Only transient failures (BackendUnavailableError) are retried; permanent
ones surface on the first attempt.
"""

import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from config.app_config import RetryConfig, get_config
from infrastructure.external.chat_backend_client import BackendUnavailableError
from utils.logging_config import get_logger

logger = get_logger(__name__)

RETRIABLE_ERRORS = (BackendUnavailableError,)


def exponential_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    multiplier: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Delay before retry number `attempt + 1`

    Args:
        attempt: Zero-based index of the attempt that just failed
        base_delay: Delay after the first failure, in seconds
        max_delay: Cap applied before jitter, in seconds
        multiplier: Growth factor between attempts
        jitter: Add up to 10% random jitter

    Returns:
        Seconds to sleep
    """
    delay = min(base_delay * (multiplier ** attempt), max_delay)
    if jitter and delay > 0:
        # Avoid every widget on a page retrying in lockstep
        delay += random.uniform(0, 0.1 * delay)
    return delay


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy: retries after the first attempt, with exponential delay"""
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: bool = True

    @classmethod
    def from_config(cls, config: Optional[RetryConfig] = None) -> 'RetryPolicy':
        config = config or get_config().retry
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            multiplier=config.multiplier,
            max_delay=config.max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        return exponential_backoff_delay(attempt, self.base_delay, self.max_delay, self.multiplier, self.jitter)


class CircuitBreakerState(Enum):
    CLOSED = "closed"        # calls pass through
    OPEN = "open"            # calls fail fast
    HALF_OPEN = "half_open"  # one probe call allowed


class CircuitBreakerError(Exception):
    """Raised instead of calling an endpoint whose circuit is open"""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit '{name}' is open, next probe in {retry_after:.0f}s")
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """
    Fails fast after `failure_threshold` consecutive transient failures.

    Once `recovery_timeout` seconds have passed since the circuit opened, a
    single probe call is let through: success closes the circuit, failure
    re-opens it for another full timeout. Permanent errors pass through
    without counting, since they say nothing about the endpoint's health.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        expected_exception: tuple = RETRIABLE_ERRORS,
        name: str = "backend",
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name
        self._clock = clock

        self.state = CircuitBreakerState.CLOSED
        self.consecutive_failures = 0
        self.total_failures = 0
        self.opened_at: Optional[float] = None
        self._lock = threading.Lock()

    def retry_after(self) -> float:
        """Seconds until an open circuit lets a probe through"""
        if self.state != CircuitBreakerState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self._clock() - self.opened_at))

    def _open(self) -> None:
        self.state = CircuitBreakerState.OPEN
        self.opened_at = self._clock()

    def can_execute(self) -> bool:
        with self._lock:
            if self.state == CircuitBreakerState.OPEN and self.retry_after() <= 0:
                self.state = CircuitBreakerState.HALF_OPEN
                logger.info(f"Circuit '{self.name}' half-open, probing")
            return self.state != CircuitBreakerState.OPEN

    def execute(self, func: Callable) -> Any:
        """
        Call `func` unless the circuit is open

        Raises:
            CircuitBreakerError: the circuit is open
            Whatever `func` raises
        """
        if not self.can_execute():
            raise CircuitBreakerError(self.name, self.retry_after())

        try:
            result = func()
        except self.expected_exception:
            with self._lock:
                self.consecutive_failures += 1
                self.total_failures += 1
                if self.state == CircuitBreakerState.HALF_OPEN:
                    self._open()
                    logger.warning(f"Circuit '{self.name}' probe failed, open again")
                elif self.consecutive_failures >= self.failure_threshold:
                    self._open()
                    logger.warning(f"Circuit '{self.name}' opened after {self.consecutive_failures} failures")
            raise

        with self._lock:
            if self.state == CircuitBreakerState.HALF_OPEN:
                logger.info(f"Circuit '{self.name}' closed, endpoint recovered")
            self.state = CircuitBreakerState.CLOSED
            self.consecutive_failures = 0
            self.opened_at = None
        return result

    def get_state(self) -> Dict[str, Any]:
        """Snapshot for diagnostics"""
        with self._lock:
            return {
                "name": self.name,
                "state": self.state.value,
                "consecutive_failures": self.consecutive_failures,
                "total_failures": self.total_failures,
                "failure_threshold": self.failure_threshold,
                "retry_after": round(self.retry_after(), 1),
            }

    def reset(self):
        with self._lock:
            self.state = CircuitBreakerState.CLOSED
            self.consecutive_failures = 0
            self.opened_at = None
        logger.info(f"Circuit '{self.name}' reset")


class RetryService:
    """
    Runs calls under a RetryPolicy and hands out named circuit breakers.
    `sleep` is injectable so tests don't wait.
    """

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self.logger = get_logger(__name__)
        self._sleep = sleep
        self._circuit_breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def retry_with_backoff(
        self,
        func: Callable,
        policy: Optional[RetryPolicy] = None,
        on_retry: Optional[Callable[[int, Exception], None]] = None
    ) -> Any:
        """
        Call `func`, retrying transient failures with exponential backoff

        Args:
            func: Zero-argument callable
            policy: Retry policy; defaults to the configured one
            on_retry: Called as on_retry(retry_number, error) before each sleep

        Raises:
            The last transient error once retries are exhausted, or any
            other error immediately
        """
        policy = policy or RetryPolicy.from_config()
        attempt = 0
        while True:
            try:
                result = func()
            except RETRIABLE_ERRORS as e:
                if attempt >= policy.max_attempts:
                    self.logger.error(f"Giving up after {attempt} retries: {e}")
                    raise
                delay = policy.delay_for(attempt)
                attempt += 1
                self.logger.warning(f"Transient failure ({e}), retry {attempt}/{policy.max_attempts} in {delay:.2f}s")
                if on_retry:
                    on_retry(attempt, e)
                self._sleep(delay)
                continue

            if attempt:
                self.logger.info(f"Succeeded after {attempt} retries")
            return result

    def get_circuit_breaker(self, name: str, failure_threshold: int = 5, recovery_timeout: float = 60) -> CircuitBreaker:
        """Get or create the circuit breaker registered under `name`"""
        with self._lock:
            breaker = self._circuit_breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    failure_threshold=failure_threshold,
                    recovery_timeout=recovery_timeout,
                    name=name
                )
                self._circuit_breakers[name] = breaker
            return breaker


_retry_service: Optional[RetryService] = None


def get_retry_service() -> RetryService:
    global _retry_service
    if _retry_service is None:
        _retry_service = RetryService()
    return _retry_service
