"""Tests for the provider circuit breaker."""

import pytest

from payper.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitOpenError, CircuitState
from payper.errors import InvalidOptions, ProviderUnavailable


def failing():
    raise ProviderUnavailable("down", provider_id="veo")


class TestCircuitBreaker:
    """Test state transitions."""

    def setup_method(self):
        """Set up test fixtures."""
        self.now = [0.0]
        self.breaker = CircuitBreaker(
            "veo",
            CircuitBreakerConfig(failure_threshold=3, success_threshold=2, timeout_seconds=30),
            clock=lambda: self.now[0],
        )

    def _trip(self):
        for _ in range(3):
            with pytest.raises(ProviderUnavailable):
                self.breaker.call(failing)

    def test_opens_after_threshold(self):
        self._trip()
        assert self.breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            self.breaker.call(lambda: "ok")

    def test_success_resets_failure_count(self):
        for _ in range(2):
            with pytest.raises(ProviderUnavailable):
                self.breaker.call(failing)
        assert self.breaker.call(lambda: "ok") == "ok"
        with pytest.raises(ProviderUnavailable):
            self.breaker.call(failing)
        assert self.breaker.state == CircuitState.CLOSED

    def test_input_errors_do_not_trip(self):
        """A rejected prompt says nothing about provider health."""
        def rejected():
            raise InvalidOptions("bad size")

        for _ in range(5):
            with pytest.raises(InvalidOptions):
                self.breaker.call(rejected)
        assert self.breaker.state == CircuitState.CLOSED

    def test_half_open_recovery(self):
        self._trip()
        self.now[0] = 31.0
        assert self.breaker.state == CircuitState.HALF_OPEN

        self.breaker.call(lambda: "ok")
        assert self.breaker.state == CircuitState.HALF_OPEN
        self.breaker.call(lambda: "ok")
        assert self.breaker.state == CircuitState.CLOSED

    def test_half_open_failure_reopens(self):
        self._trip()
        self.now[0] = 31.0
        with pytest.raises(ProviderUnavailable):
            self.breaker.call(failing)
        assert self.breaker.state == CircuitState.OPEN

    def test_stats_and_reset(self):
        self._trip()
        self.now[0] = 10.0
        stats = self.breaker.get_stats()
        assert stats["state"] == "open"
        assert stats["time_until_retry"] == pytest.approx(20.0)

        self.breaker.reset()
        assert self.breaker.state == CircuitState.CLOSED

    def test_input_errors_release_half_open_slots(self):
        """Rejected requests during recovery must not use up the half-open budget."""
        def rejected():
            raise InvalidOptions("bad size")

        self._trip()
        self.now[0] = 31.0
        for _ in range(5):
            with pytest.raises(InvalidOptions):
                self.breaker.call(rejected)

        assert self.breaker.call(lambda: "ok") == "ok"
        assert self.breaker.call(lambda: "ok") == "ok"
        assert self.breaker.state == CircuitState.CLOSED

        self.now[0] = 10_000.0
        assert self.breaker.call(lambda: "ok") == "ok"
