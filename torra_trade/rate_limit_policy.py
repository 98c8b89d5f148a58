"""Rate-limit policy: pace requests per endpoint with a sliding window.

The exchange enforces its own request-weight limits; this keeps the client
under them so the ranking fan-out degrades into short waits instead of 429s.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional


@dataclass
class RateLimitQuota:
    """Per-endpoint rate-limit quota."""
    requests_per_window: int  # max requests allowed in the window
    window_seconds: float     # window length in seconds


@dataclass
class RateLimitState:
    """Request history for a single endpoint."""
    quota: RateLimitQuota
    clock: Callable[[], float] = time.monotonic
    request_times: List[float] = field(default_factory=list)  # monotonic timestamps

    def _prune(self, now: float) -> None:
        # Remove requests outside the current window
        cutoff = now - self.quota.window_seconds
        self.request_times = [t for t in self.request_times if t > cutoff]

    def is_allowed(self) -> bool:
        """Check if a new request fits under the quota."""
        self._prune(self.clock())
        # Check if we have capacity
        return len(self.request_times) < self.quota.requests_per_window

    def record_request(self) -> None:
        self.request_times.append(self.clock())

    def time_until_allowed(self) -> float:
        """Seconds until the next request is allowed; 0 if allowed now."""
        if self.is_allowed():
            return 0.0
        # Window is full; next slot opens when the oldest request expires
        oldest = min(self.request_times)
        return max(0.0, oldest + self.quota.window_seconds - self.clock())


class RateLimitManager:
    """Enforce rate-limit quotas per endpoint path."""

    # Binance spot allows 6000 request weight per minute per IP and 10 orders
    # per second per account; these stay well inside both.
    DEFAULT_QUOTAS = {
        "/api/v3/order": RateLimitQuota(requests_per_window=8, window_seconds=1),
        "/api/v3/order/oco": RateLimitQuota(requests_per_window=8, window_seconds=1),
        "/api/v3/klines": RateLimitQuota(requests_per_window=20, window_seconds=1),
        "default": RateLimitQuota(requests_per_window=20, window_seconds=1),
    }

    def __init__(
        self,
        quotas: Optional[Dict[str, RateLimitQuota]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.quotas = quotas or self.DEFAULT_QUOTAS.copy()
        self.clock = clock
        self.states: Dict[str, RateLimitState] = {}

    def _get_state(self, endpoint: str) -> RateLimitState:
        if endpoint not in self.states:
            # Unknown paths share the default quota values but keep their own history
            quota = self.quotas.get(endpoint, self.quotas.get("default"))
            self.states[endpoint] = RateLimitState(quota=quota, clock=self.clock)
        return self.states[endpoint]

    def is_allowed(self, endpoint: str) -> bool:
        return self._get_state(endpoint).is_allowed()

    def record_request(self, endpoint: str) -> None:
        self._get_state(endpoint).record_request()

    def time_until_allowed(self, endpoint: str) -> float:
        return self._get_state(endpoint).time_until_allowed()

    async def wait_if_needed(self, endpoint: str, max_wait: float = 30.0) -> bool:
        """Wait until a request to endpoint is allowed, then record it.

        Args:
            endpoint: API endpoint path
            max_wait: Maximum time to wait in seconds

        Returns:
            True if the request was admitted, False if max_wait would be exceeded
        """
        start = self.clock()
        while not self.is_allowed(endpoint):
            wait_time = self.time_until_allowed(endpoint)
            elapsed = self.clock() - start
            if elapsed + wait_time > max_wait:
                # Waiting would exceed the caller's budget
                return False
            await asyncio.sleep(wait_time)

        self.record_request(endpoint)
        return True
