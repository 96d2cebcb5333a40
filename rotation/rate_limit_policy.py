"""Rate-limit policy: enforce request quotas per endpoint group with a sliding window."""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .config import RateLimitConfig


@dataclass
class RateLimitQuota:
    """Per-endpoint rate-limit quota."""
    requests_per_window: int  # max requests allowed in the window
    window_seconds: float     # time window in seconds


@dataclass
class RateLimitState:
    """Track request history for a single endpoint group."""
    quota: RateLimitQuota
    clock: Callable[[], float] = time.monotonic
    request_times: list = field(default_factory=list)

    def _prune(self, now: float) -> None:
        cutoff = now - self.quota.window_seconds
        self.request_times = [t for t in self.request_times if t > cutoff]

    def is_allowed(self) -> bool:
        """Check if a new request is allowed under the quota."""
        self._prune(self.clock())
        return len(self.request_times) < self.quota.requests_per_window

    def record_request(self) -> None:
        self.request_times.append(self.clock())

    def time_until_allowed(self) -> float:
        """Return seconds until next request is allowed. 0 if allowed now."""
        if self.is_allowed():
            return 0.0
        oldest = min(self.request_times)
        return max(0.0, oldest + self.quota.window_seconds - self.clock())


class RateLimitManager:
    """Enforce rate-limit quotas per Kraken endpoint group.

    Endpoints are grouped as ``public``, ``private`` and ``orders``
    (AddOrder/CancelOrder); unknown groups use ``default``.
    """

    DEFAULT_QUOTAS = {
        "public": RateLimitQuota(requests_per_window=1, window_seconds=1),
        "private": RateLimitQuota(requests_per_window=1, window_seconds=1),
        "orders": RateLimitQuota(requests_per_window=1, window_seconds=1),
        "default": RateLimitQuota(requests_per_window=1, window_seconds=1),
    }

    def __init__(self, quotas: Optional[Dict[str, RateLimitQuota]] = None, clock: Callable[[], float] = time.monotonic):
        self.quotas = quotas or self.DEFAULT_QUOTAS.copy()
        self.clock = clock
        self.states: Dict[str, RateLimitState] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, cfg: RateLimitConfig) -> "RateLimitManager":
        return cls({
            "public": RateLimitQuota(cfg.public_per_second, 1),
            "private": RateLimitQuota(cfg.private_per_second, 1),
            "orders": RateLimitQuota(cfg.orders_per_second, 1),
            "default": RateLimitQuota(cfg.private_per_second, 1),
        })

    @staticmethod
    def group_for(path: str) -> str:
        if path.startswith("/0/public/"):
            return "public"
        if path.endswith("/AddOrder") or path.endswith("/CancelOrder"):
            return "orders"
        if path.startswith("/0/private/"):
            return "private"
        return "default"

    def _get_state(self, group: str) -> RateLimitState:
        if group not in self.states:
            quota = self.quotas.get(group, self.quotas.get("default"))
            self.states[group] = RateLimitState(quota=quota, clock=self.clock)
        return self.states[group]

    def is_allowed(self, group: str) -> bool:
        return self._get_state(group).is_allowed()

    def record_request(self, group: str) -> None:
        self._get_state(group).record_request()

    def time_until_allowed(self, group: str) -> float:
        return self._get_state(group).time_until_allowed()

    async def acquire(self, group: str, max_wait: float = 60.0) -> bool:
        """Wait until a request to ``group`` is allowed and record it.

        Returns:
            True if allowed (or waited successfully), False if ``max_wait`` would be exceeded
        """
        async with self._lock:
            waited = 0.0
            while not self.is_allowed(group):
                wait_time = self.time_until_allowed(group)
                if waited + wait_time > max_wait:
                    return False
                await asyncio.sleep(wait_time)
                waited += wait_time
            self.record_request(group)
            return True
