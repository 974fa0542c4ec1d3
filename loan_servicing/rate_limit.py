"""
Rate Limiting Module

Fixed-window counters keyed by (category, subject). Counters live in a shared
store that increments atomically and expires each key with its window, so a
new window always starts from zero.
"""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Tuple, Union

import redis

from .errors import RateLimitExceededError
from .logging_config import get_logger, log_action


UNKNOWN_CLIENT = "unknown"


class RateLimitCategory(Enum):
    """Named limits with their own windows"""
    AUTH = "auth"
    API = "api"
    UPLOAD = "upload"


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


DEFAULT_RULES: Dict[RateLimitCategory, RateLimitRule] = {
    RateLimitCategory.AUTH: RateLimitRule(limit=5, window_seconds=15 * 60),
    RateLimitCategory.API: RateLimitRule(limit=100, window_seconds=60),
    RateLimitCategory.UPLOAD: RateLimitRule(limit=20, window_seconds=60 * 60),
}


@dataclass(frozen=True)
class Limited:
    """Outcome of a counted check; reset_at is epoch seconds"""
    allowed: bool
    limit: int
    remaining: int
    reset_at: int

    def retry_after(self, now: float) -> int:
        return max(int(self.reset_at - now), 1)

    def to_response(self) -> dict:
        return {"success": self.allowed, "remaining": self.remaining, "resetAt": self.reset_at}


@dataclass(frozen=True)
class Unlimited:
    """Limiting is administratively disabled; nothing was counted"""
    allowed: bool = True

    def to_response(self) -> dict:
        # -1 is the wire marker for "unlimited", never a count
        return {"success": True, "remaining": -1, "resetAt": 0}


RateLimitResult = Union[Limited, Unlimited]


class CounterStore(ABC):
    """Shared counter store with atomic increment-with-expiry"""

    @abstractmethod
    def increment(self, key: str, ttl_seconds: int) -> int:
        """Atomically add one to key, (re)arming its expiry; returns the new count"""
        pass


class RedisCounterStore(CounterStore):
    """Counters in Redis; INCR and EXPIRE run in one MULTI/EXEC block"""

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> 'RedisCounterStore':
        return cls(redis.Redis.from_url(url))

    def increment(self, key: str, ttl_seconds: int) -> int:
        pipe = self.client.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, ttl_seconds)
        count, _ = pipe.execute()
        return int(count)


class InMemoryCounterStore(CounterStore):
    """Process-local counters for tests and single-worker deployments"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def increment(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            self._counters = {k: v for k, v in self._counters.items() if v[1] > now}
            count, _ = self._counters.get(key, (0, 0.0))
            count += 1
            self._counters[key] = (count, now + ttl_seconds)
            return count


class RateLimiter:
    """Fixed-window rate limiter over a CounterStore"""

    def __init__(
        self,
        store: CounterStore,
        enabled: bool = True,
        rules: Optional[Dict[RateLimitCategory, RateLimitRule]] = None,
        prefix: str = "ratelimit",
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.enabled = enabled
        self.rules = dict(DEFAULT_RULES)
        if rules:
            self.rules.update(rules)
        self.prefix = prefix
        self.clock = clock
        self.logger = get_logger("servicing.rate_limit")

    def check(self, subject: str, category: Union[RateLimitCategory, str]) -> RateLimitResult:
        """
        Count one request for subject and report whether it is within the limit

        Args:
            subject: Client IP or authenticated user id, chosen by the caller
            category: Which named limit applies

        Returns:
            Limited, or Unlimited when limiting is disabled
        """
        if not self.enabled:
            return Unlimited()

        category = RateLimitCategory(category)
        rule = self.rules[category]
        now = self.clock()
        window_start = int(now // rule.window_seconds) * rule.window_seconds
        key = f"{self.prefix}:{category.value}:{subject}:{window_start}"

        count = self.store.increment(key, rule.window_seconds)
        result = Limited(
            allowed=count <= rule.limit,
            limit=rule.limit,
            remaining=max(rule.limit - count, 0),
            reset_at=window_start + rule.window_seconds,
        )

        if not result.allowed:
            log_action(
                self.logger, "warning", f"Rate limit exceeded for {category.value}",
                action="rate_limited", resource=f"{category.value}:{subject}",
                extra={"count": count, "limit": rule.limit, "reset_at": result.reset_at}
            )
        return result

    def enforce(self, subject: str, category: Union[RateLimitCategory, str]) -> RateLimitResult:
        """
        Like check(), but raises when the limit is exhausted

        Raises:
            RateLimitExceededError: with the seconds until the window resets
        """
        result = self.check(subject, category)
        if not result.allowed:
            raise RateLimitExceededError(
                retry_after=result.retry_after(self.clock()), reset_at=result.reset_at
            )
        return result


def client_ip(headers: Mapping[str, str]) -> str:
    """
    Pick the rate-limit subject for an anonymous request: first address of
    X-Forwarded-For, then X-Real-IP, then "unknown".
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return UNKNOWN_CLIENT


def create_rate_limiter(config) -> RateLimiter:
    """Build the limiter described by a ServicingConfig"""
    logger = get_logger("servicing.rate_limit")

    if not config.enable_rate_limiting:
        logger.info("Rate limiting disabled")
        return RateLimiter(InMemoryCounterStore(), enabled=False, prefix=config.rate_limit_prefix)

    if config.redis_url:
        store = RedisCounterStore.from_url(config.redis_url)
    else:
        logger.warning("No redis_url configured; rate-limit counters are local to this process")
        store = InMemoryCounterStore()

    return RateLimiter(store, enabled=True, prefix=config.rate_limit_prefix)
