"""
Resilience infrastructure - handles retry logic, circuit breakers, and fault tolerance.
"""

from .retry_service import (
    RetryService,
    RetryPolicy,
    CircuitBreaker,
    CircuitBreakerState,
    CircuitBreakerError,
    RETRIABLE_ERRORS,
    get_retry_service,
    exponential_backoff_delay
)

__all__ = [
    'RetryService',
    'RetryPolicy',
    'CircuitBreaker',
    'CircuitBreakerState',
    'CircuitBreakerError',
    'RETRIABLE_ERRORS',
    'get_retry_service',
    'exponential_backoff_delay'
]
