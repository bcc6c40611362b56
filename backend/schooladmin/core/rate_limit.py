"""
Rate limiting.

Features:
- In-memory sliding window per (policy, client IP)
- Tiered ceilings: baseline, trusted, admin (``None`` means exempt)
- Policies that only count failed attempts (login brute-force protection)
- TODO: Replace with Redis-based rate limiting for multi-instance deployments
"""
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from starlette.requests import HTTPConnection

logger = logging.getLogger(__name__)


class TrustTier(str, Enum):
    BASELINE = "baseline"
    TRUSTED = "trusted"
    ADMIN = "admin"


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    window_seconds: int
    baseline: Optional[int]
    trusted: Optional[int]
    admin: Optional[int]
    message: str
    count_failures_only: bool = False

    def limit_for(self, tier: TrustTier) -> Optional[int]:
        return getattr(self, tier.value)


@dataclass(frozen=True)
class RateLimitResult:
    limited: bool
    limit: Optional[int]
    remaining: Optional[int]
    retry_after: int


FIFTEEN_MINUTES = 15 * 60
ONE_HOUR = 60 * 60

RATE_LIMITS: Dict[str, RateLimitPolicy] = {
    "api": RateLimitPolicy(
        name="api",
        window_seconds=FIFTEEN_MINUTES,
        baseline=5000,
        trusted=None,
        admin=None,
        message="Too many requests from this IP, please try again later.",
    ),
    "strict": RateLimitPolicy(
        name="strict",
        window_seconds=FIFTEEN_MINUTES,
        baseline=500,
        trusted=2000,
        admin=2000,
        message="Too many requests from this IP, please try again later.",
    ),
    "upload": RateLimitPolicy(
        name="upload",
        window_seconds=ONE_HOUR,
        baseline=5,
        trusted=100,
        admin=None,
        message="Too many file uploads. Please try again later.",
    ),
    "registration": RateLimitPolicy(
        name="registration",
        window_seconds=ONE_HOUR,
        baseline=1,
        trusted=1,
        admin=1,
        message=(
            "You can only register once per hour. If you have a pending registration, "
            "please wait for admin approval."
        ),
    ),
    "login": RateLimitPolicy(
        name="login",
        window_seconds=FIFTEEN_MINUTES,
        baseline=5,
        trusted=20,
        admin=50,
        message="Too many login attempts. Please try again in 15 minutes.",
        count_failures_only=True,
    ),
}


class InMemoryRateLimiter:
    """
    Sliding-window counter keyed by policy and client key.

    Note: This only works correctly for single-instance deployments.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        # Structure: {policy: {key: [timestamps]}}
        self._windows: Dict[str, Dict[str, list[float]]] = defaultdict(lambda: defaultdict(list))
        self._clock = clock
        self._cleanup_interval = 60  # seconds
        self._last_cleanup = clock()

    def _cleanup_old_entries(self, max_window: int) -> None:
        current_time = self._clock()
        if current_time - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = current_time
        cutoff = current_time - max_window
        for policy in list(self._windows.keys()):
            for key in list(self._windows[policy].keys()):
                self._windows[policy][key] = [ts for ts in self._windows[policy][key] if ts > cutoff]
                if not self._windows[policy][key]:
                    del self._windows[policy][key]
            if not self._windows[policy]:
                del self._windows[policy]

    def _recent(self, policy: RateLimitPolicy, key: str) -> list[float]:
        cutoff = self._clock() - policy.window_seconds
        recent = [ts for ts in self._windows[policy.name][key] if ts > cutoff]
        self._windows[policy.name][key] = recent
        return recent

    def _retry_after(self, policy: RateLimitPolicy, recent: list[float]) -> int:
        if not recent:
            return policy.window_seconds
        return max(1, int(recent[0] + policy.window_seconds - self._clock()))

    def check(self, policy: RateLimitPolicy, key: str, tier: TrustTier, *, record: bool = True) -> RateLimitResult:
        """
        Check (and by default count) one request against ``policy``.

        With ``record=False`` the request is only checked; callers count it
        later through ``record`` if it turns out to matter.
        """
        limit = policy.limit_for(tier)
        if limit is None:
            return RateLimitResult(limited=False, limit=None, remaining=None, retry_after=0)

        self._cleanup_old_entries(ONE_HOUR)
        recent = self._recent(policy, key)

        if len(recent) >= limit:
            logger.warning(
                f"Rate limit exceeded for {policy.name}",
                extra={
                    "event": "rate_limit_exceeded",
                    "policy": policy.name,
                    "tier": tier.value,
                    "total_requests": len(recent),
                    "max_requests": limit,
                },
            )
            return RateLimitResult(
                limited=True,
                limit=limit,
                remaining=0,
                retry_after=self._retry_after(policy, recent),
            )

        if record:
            recent.append(self._clock())
        used = len(recent)
        return RateLimitResult(limited=False, limit=limit, remaining=max(0, limit - used), retry_after=0)

    def record(self, policy: RateLimitPolicy, key: str) -> None:
        self._recent(policy, key).append(self._clock())

    def reset(self) -> None:
        self._windows.clear()


def get_client_ip(request: HTTPConnection) -> str:
    """Get client IP from request, considering proxies."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # X-Forwarded-For can contain multiple IPs, first is the client
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"
