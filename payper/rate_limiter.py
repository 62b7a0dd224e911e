"""
Rate limiting for payment challenges.

Every 402 challenge stores a pending payment; unbounded issuance would let a
single client grow that store without ever paying.
"""

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional

from payper.errors import PayperError


@dataclass
class RateLimitConfig:
    """Rate limit configuration."""
    challenges_per_minute: int = 30
    challenges_per_hour: int = 300
    max_outstanding_usd_per_hour: float = 25.0


class RateLimitError(PayperError):
    """Raised when a client requests too many challenges."""
    code = "rate_limited"
    retryable = True


class ChallengeRateLimiter:
    """
    Sliding-window limiter on challenge count and challenged USD value per client.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._lock = Lock()

        self._minute: dict[str, deque] = defaultdict(deque)
        self._hour: dict[str, deque] = defaultdict(deque)
        # (timestamp, usd) per client
        self._usd_hour: dict[str, deque] = defaultdict(deque)

    def check_and_record(self, client_id: str, amount_usd: float = 0.0) -> None:
        """
        Check if a new challenge is allowed and record it.

        Raises:
            RateLimitError: If a limit is exceeded
        """
        with self._lock:
            now = self._clock()
            self._clean_old_entries(client_id, now)

            if len(self._minute[client_id]) >= self.config.challenges_per_minute:
                raise RateLimitError(
                    f"Rate limit exceeded: {self.config.challenges_per_minute} "
                    f"payment challenges per minute for client '{client_id}'"
                )

            if len(self._hour[client_id]) >= self.config.challenges_per_hour:
                raise RateLimitError(
                    f"Rate limit exceeded: {self.config.challenges_per_hour} "
                    f"payment challenges per hour for client '{client_id}'"
                )

            outstanding = sum(usd for _, usd in self._usd_hour[client_id])
            if outstanding + amount_usd > self.config.max_outstanding_usd_per_hour:
                raise RateLimitError(
                    f"Outstanding challenge value exceeded: ${outstanding + amount_usd:.2f} "
                    f"(max: ${self.config.max_outstanding_usd_per_hour:.2f} per hour "
                    f"for client '{client_id}')"
                )

            self._minute[client_id].append(now)
            self._hour[client_id].append(now)
            self._usd_hour[client_id].append((now, amount_usd))

    def _clean_old_entries(self, client_id: str, now: float) -> None:
        minute = self._minute[client_id]
        while minute and now - minute[0] > 60:
            minute.popleft()

        hour = self._hour[client_id]
        while hour and now - hour[0] > 3600:
            hour.popleft()

        usd = self._usd_hour[client_id]
        while usd and now - usd[0][0] > 3600:
            usd.popleft()

    def get_stats(self, client_id: str) -> dict:
        """Current usage for a client."""
        with self._lock:
            now = self._clock()
            self._clean_old_entries(client_id, now)
            outstanding = sum(usd for _, usd in self._usd_hour[client_id])
            return {
                "client_id": client_id,
                "challenges_last_minute": len(self._minute[client_id]),
                "challenges_last_hour": len(self._hour[client_id]),
                "outstanding_usd_last_hour": outstanding,
                "minute_remaining": self.config.challenges_per_minute - len(self._minute[client_id]),
                "hour_remaining": self.config.challenges_per_hour - len(self._hour[client_id]),
            }

    def reset(self, client_id: Optional[str] = None) -> None:
        """Reset limits for one client or all clients."""
        with self._lock:
            if client_id:
                self._minute.pop(client_id, None)
                self._hour.pop(client_id, None)
                self._usd_hour.pop(client_id, None)
            else:
                self._minute.clear()
                self._hour.clear()
                self._usd_hour.clear()
