"""
Circuit Breaker pattern implementation for preventing cascade failures
"""
import asyncio
import functools
import time
from enum import Enum
from typing import Callable, Any
from dataclasses import dataclass
import logging

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    CLOSED = "CLOSED"      # Normal operation
    OPEN = "OPEN"          # Circuit is open, failing fast
    HALF_OPEN = "HALF_OPEN"  # Trying to recover

@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker"""
    failure_threshold: int = 5  # Number of failures before opening
    reset_timeout: float = 60.0  # Seconds to wait before trying half-open
    success_threshold: int = 3   # Successes needed to close from half-open
    timeout: float = 10.0        # Operation timeout

class CircuitBreakerException(Exception):
    """Raised when circuit breaker is open"""
    pass

class CircuitBreaker:
    """Circuit breaker implementation"""

    def __init__(self, name: str, config: CircuitBreakerConfig):
        self.name = name
        self.config = config
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0
        self.last_state_change = time.time()

    def _should_attempt_reset(self) -> bool:
        """Check if we should try to reset the circuit"""
        return (self.state == CircuitState.OPEN and
                time.time() - self.last_failure_time >= self.config.reset_timeout)

    def _record_success(self):
        """Record a successful operation"""
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                self.success_count = 0
                self.last_state_change = time.time()
                logger.info(f"Circuit breaker {self.name} closed after successful recovery")
        elif self.state == CircuitState.CLOSED:
            self.failure_count = 0

    def _record_failure(self):
        """Record a failed operation"""
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == CircuitState.CLOSED:
            if self.failure_count >= self.config.failure_threshold:
                self.state = CircuitState.OPEN
                self.last_state_change = time.time()
                logger.warning(f"Circuit breaker {self.name} opened after {self.failure_count} failures")
        elif self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            self.success_count = 0
            self.last_state_change = time.time()
            logger.warning(f"Circuit breaker {self.name} re-opened during half-open state")

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection and the configured timeout"""

        if self._should_attempt_reset():
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0
            self.last_state_change = time.time()
            logger.info(f"Circuit breaker {self.name} entering half-open state")

        if self.state == CircuitState.OPEN:
            raise CircuitBreakerException(f"Circuit breaker {self.name} is open")

        try:
            if asyncio.iscoroutinefunction(func):
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.config.timeout)
            else:
                loop = asyncio.get_running_loop()
                result = await asyncio.wait_for(
                    loop.run_in_executor(None, functools.partial(func, *args, **kwargs)),
                    timeout=self.config.timeout
                )

            self._record_success()
            return result

        except Exception:
            self._record_failure()
            raise

    def get_state(self) -> dict:
        """Get current circuit breaker state"""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "last_state_change": self.last_state_change,
            "uptime_since_last_change": time.time() - self.last_state_change
        }

# Wrapped clients carry their own request timeout; the breaker bound sits just above it
BREAKER_TIMEOUT_MARGIN_SECONDS = 5.0

def breaker_timeout(client_timeout: float) -> float:
    """Longest a breaker-wrapped call to a client with this timeout can take"""
    return client_timeout + BREAKER_TIMEOUT_MARGIN_SECONDS

def zcash_rpc_breaker(timeout: float) -> CircuitBreaker:
    return CircuitBreaker("zcash_rpc", CircuitBreakerConfig(
        failure_threshold=5,
        reset_timeout=30.0,
        success_threshold=2,
        timeout=timeout
    ))

def provider_breaker(timeout: float) -> CircuitBreaker:
    return CircuitBreaker("settlement_provider", CircuitBreakerConfig(
        failure_threshold=3,
        reset_timeout=60.0,
        success_threshold=1,
        timeout=timeout
    ))
