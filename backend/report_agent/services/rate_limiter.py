"""Rolling-window request limits per user, backed by an external counter store."""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from report_agent.core.logging import logger
from report_agent.models.report import RateLimitStatus


class RateLimitCounterStore(Protocol):
    def count_requests_since(self, user_id: str, since: float) -> Tuple[int, Optional[float]]: ...

    def record_request(self, user_id: str, customer_id: Optional[str], occurred_at: float) -> None: ...

    def prune_requests(self, before: float) -> int: ...


@dataclass(frozen=True)
class RateLimitWindow:
    name: str
    seconds: int
    limit: int


@dataclass(frozen=True)
class RateLimitConfig:
    per_minute: int = 10
    per_hour: int = 100
    per_day: int = 500

    def windows(self) -> Tuple[RateLimitWindow, ...]:
        return (
            RateLimitWindow("minute", 60, self.per_minute),
            RateLimitWindow("hour", 3600, self.per_hour),
            RateLimitWindow("day", 86400, self.per_day),
        )

    def longest_window_seconds(self) -> int:
        return max(window.seconds for window in self.windows())


class RateLimiter:
    """Checks every window together and reports the first one that is full.

    Fails open: when the counter store raises, the request is allowed and the
    error is logged. Availability wins over enforcement during a store outage,
    so a sustained outage means limits are not enforced until the store is back.
    """

    def __init__(
        self,
        store: RateLimitCounterStore,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.config = config or RateLimitConfig()
        self._clock = clock

    def check_limit(self, user_id: str, include_current: bool = True) -> RateLimitStatus:
        """Report whether one more request fits.

        ``remaining`` counts the request being checked unless ``include_current``
        is false, which is how a status query reads it.
        """
        now = self._clock()
        pending = 1 if include_current else 0
        remaining: Dict[str, int] = {}
        try:
            for window in self.config.windows():
                count, oldest = self.store.count_requests_since(user_id, now - window.seconds)
                if count >= window.limit:
                    retry_after = window.seconds
                    if oldest is not None:
                        retry_after = oldest + window.seconds - now
                    remaining[window.name] = 0
                    return RateLimitStatus(
                        allowed=False,
                        limit_type=window.name,
                        retry_after_seconds=max(1, math.ceil(retry_after)),
                        remaining=remaining,
                    )
                remaining[window.name] = max(0, window.limit - (count + pending))
        except Exception as exc:
            logger.error(
                "Rate limit store unavailable; allowing request",
                user_id=user_id,
                error=str(exc),
            )
            return RateLimitStatus(allowed=True, remaining={})

        return RateLimitStatus(allowed=True, remaining=remaining)

    def record_request(self, user_id: str, customer_id: Optional[str] = None) -> None:
        now = self._clock()
        try:
            self.store.record_request(user_id, customer_id, now)
            # Nothing older than the longest window is ever counted again.
            self.store.prune_requests(now - self.config.longest_window_seconds())
        except Exception as exc:
            logger.error(
                "Failed to record request for rate limiting",
                user_id=user_id,
                customer_id=customer_id,
                error=str(exc),
            )

    def current_usage(self, user_id: str) -> Dict[str, Dict[str, int]]:
        """Count and limit per window without consuming a slot."""
        now = self._clock()
        usage: Dict[str, Dict[str, int]] = {}
        for window in self.config.windows():
            count, _ = self.store.count_requests_since(user_id, now - window.seconds)
            usage[window.name] = {
                "used": count,
                "limit": window.limit,
                "remaining": max(0, window.limit - count),
            }
        return usage
