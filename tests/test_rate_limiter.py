"""Tests for challenge rate limiting."""

import pytest

from payper.rate_limiter import ChallengeRateLimiter, RateLimitConfig, RateLimitError


class TestChallengeRateLimiter:
    """Test per-client sliding windows."""

    def setup_method(self):
        """Set up test fixtures."""
        self.now = [1000.0]
        self.limiter = ChallengeRateLimiter(
            RateLimitConfig(challenges_per_minute=2, challenges_per_hour=3, max_outstanding_usd_per_hour=1.0),
            clock=lambda: self.now[0],
        )

    def test_per_minute_limit(self):
        self.limiter.check_and_record("alice", 0.05)
        self.limiter.check_and_record("alice", 0.05)
        with pytest.raises(RateLimitError, match="per minute"):
            self.limiter.check_and_record("alice", 0.05)

    def test_clients_are_independent(self):
        self.limiter.check_and_record("alice")
        self.limiter.check_and_record("alice")
        self.limiter.check_and_record("bob")

    def test_window_slides(self):
        self.limiter.check_and_record("alice")
        self.limiter.check_and_record("alice")
        self.now[0] += 61
        self.limiter.check_and_record("alice")
        with pytest.raises(RateLimitError, match="per hour"):
            self.now[0] += 61
            self.limiter.check_and_record("alice")

    def test_outstanding_usd_limit(self):
        self.limiter.check_and_record("alice", 0.6)
        with pytest.raises(RateLimitError, match="Outstanding"):
            self.limiter.check_and_record("alice", 0.5)

    def test_rejected_request_is_not_recorded(self):
        self.limiter.check_and_record("alice", 0.9)
        with pytest.raises(RateLimitError):
            self.limiter.check_and_record("alice", 0.5)
        assert self.limiter.get_stats("alice")["challenges_last_minute"] == 1

    def test_stats_and_reset(self):
        self.limiter.check_and_record("alice", 0.25)
        stats = self.limiter.get_stats("alice")
        assert stats["outstanding_usd_last_hour"] == pytest.approx(0.25)
        assert stats["minute_remaining"] == 1

        self.limiter.reset("alice")
        assert self.limiter.get_stats("alice")["challenges_last_hour"] == 0

    def test_rate_limit_error_is_retryable(self):
        assert RateLimitError.retryable is True
