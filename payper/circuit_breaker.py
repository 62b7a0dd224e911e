"""
Circuit breaker for generation providers.

Stops hammering a provider that keeps failing; callers get
ProviderUnavailable immediately until the cool-down elapses.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable, Optional

from payper.errors import ProviderUnavailable

logger = logging.getLogger("payper.circuit_breaker")


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking requests
    HALF_OPEN = "half_open"  # Testing if provider recovered


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration."""
    failure_threshold: int = 5  # Failures before opening
    success_threshold: int = 2  # Successes to close from half-open
    timeout_seconds: float = 60.0  # Time before trying again
    half_open_max_requests: int = 3  # Max requests in half-open state


class CircuitOpenError(ProviderUnavailable):
    """Raised when the circuit for a provider is open."""
    code = "circuit_open"


class CircuitBreaker:
    """
    Tracks consecutive provider failures and temporarily blocks calls.

    Only exceptions listed in `trip_on` count as failures; input errors such
    as InvalidOptions pass through without affecting the circuit.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        trip_on: tuple = (ProviderUnavailable,),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.trip_on = trip_on
        self._clock = clock
        self._lock = Lock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_requests = 0

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            self._check_and_update_state()
            return self._state

    def call(self, func, *args, **kwargs):
        """
        Execute func with circuit breaker protection.

        Raises:
            CircuitOpenError: If the circuit is open
        """
        with self._lock:
            self._check_and_update_state()

            if self._state == CircuitState.OPEN:
                raise CircuitOpenError(
                    f"Provider '{self.name}' is temporarily unavailable (circuit open)",
                    provider_id=self.name,
                )

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_requests >= self.config.half_open_max_requests:
                    raise CircuitOpenError(
                        f"Provider '{self.name}' is recovering; max half-open requests reached",
                        provider_id=self.name,
                    )
                self._half_open_requests += 1

        # Execute outside lock
        try:
            result = func(*args, **kwargs)
        except self.trip_on:
            self._on_failure()
            raise
        except BaseException:
            self._release_half_open_slot()
            raise
        self._on_success()
        return result

    def _check_and_update_state(self) -> None:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.config.timeout_seconds:
                self._state = CircuitState.HALF_OPEN
                self._half_open_requests = 0
                logger.info("Circuit '%s' half-open, probing provider", self.name)

    def _release_half_open_slot(self) -> None:
        # errors outside trip_on say nothing about provider health
        with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._half_open_requests > 0:
                self._half_open_requests -= 1

    def _on_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._state = CircuitState.CLOSED
                    self._failure_count = 0
                    self._success_count = 0
                    self._half_open_requests = 0
                    logger.info("Circuit '%s' closed", self.name)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def _on_failure(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._open()
            elif self._state == CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.config.failure_threshold:
                    self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._success_count = 0
        self._half_open_requests = 0
        logger.warning(
            "Circuit '%s' opened after %d failures; blocking for %.0fs",
            self.name, self._failure_count, self.config.timeout_seconds,
        )

    def reset(self) -> None:
        """Manually reset circuit to closed state."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._opened_at = None
            self._half_open_requests = 0

    def get_stats(self) -> dict:
        """Snapshot of the circuit for health reporting."""
        with self._lock:
            self._check_and_update_state()
            remaining = 0.0
            if self._state == CircuitState.OPEN and self._opened_at is not None:
                remaining = max(0.0, self.config.timeout_seconds - (self._clock() - self._opened_at))
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "time_until_retry": remaining,
            }
