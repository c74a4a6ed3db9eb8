"""
=============================================================================
RATE LIMITING MIDDLEWARE
=============================================================================

Per-client rate limiting with the Token Bucket algorithm.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   refill: tokens_per_second        bucket (capacity = burst)        │
    │                │                   ┌──────────┐                     │
    │                └─────────────────► │ ● ● ● ●  │                     │
    │                                    │ ● ●      │                     │
    │                                    └────┬─────┘                     │
    │                                         │ 1 token per request       │
    │                                         ▼                           │
    │                          token? → continue    none? → 429           │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

This is the one built-in stage with shared mutable state (the buckets),
so every bucket read and update happens under the middleware's lock.
Concurrent requests through the same pipeline never double-spend a token.

=============================================================================
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional
import logging
import threading
import time

from .base import Middleware, NextHandler
from ..http.request import HTTPRequest
from ..http.response import HTTPResponse, too_many_requests


logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class TokenBucket:
    """
    A single client's bucket.

    Config: max_tokens=10, tokens_per_second=1

        t=0   10/10  allowed → 9
        ...
        t=0    0/10  REJECTED
        t=5    5/10  allowed → 4

    Not thread-safe on its own; RateLimitMiddleware serialises access.
    """

    max_tokens: float
    tokens_per_second: float
    clock: Clock = field(default=time.monotonic, repr=False)
    tokens: float = field(default=-1.0)
    last_update: float = field(default=-1.0)

    def __post_init__(self):
        if self.tokens < 0:
            self.tokens = self.max_tokens
        if self.last_update < 0:
            self.last_update = self.clock()

    def consume(self, tokens: float = 1.0) -> bool:
        """Take ``tokens`` if available. Returns whether it succeeded."""
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def _refill(self) -> None:
        now = self.clock()
        elapsed = max(0.0, now - self.last_update)
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.tokens_per_second)
        self.last_update = now

    @property
    def available_tokens(self) -> float:
        self._refill()
        return self.tokens

    def time_until_available(self, tokens: float = 1.0) -> float:
        """Seconds until ``tokens`` can be consumed (0 if already)."""
        self._refill()
        if self.tokens >= tokens:
            return 0.0
        return (tokens - self.tokens) / self.tokens_per_second


class RateLimitMiddleware(Middleware):
    """
    Rate limit requests per key (client IP by default).

    Usage:
        RateLimitMiddleware(requests_per_second=10, burst_size=20)

        # per API key
        RateLimitMiddleware(key_func=lambda r: r.get_header("X-API-Key") or r.client_ip)

    Allowed responses carry X-RateLimit-Limit / X-RateLimit-Remaining;
    rejected ones are 429 with Retry-After.
    """

    def __init__(
        self,
        requests_per_second: float = 10.0,
        burst_size: int = 20,
        key_func: Optional[Callable[[HTTPRequest], str]] = None,
        cleanup_interval: float = 60.0,
        bucket_ttl: float = 300.0,
        clock: Clock = time.monotonic,
    ):
        """
        Args:
            requests_per_second: Sustained rate (refill speed)
            burst_size: Bucket capacity
            key_func: Maps a request to its bucket key
            cleanup_interval: Seconds between sweeps of idle buckets
            bucket_ttl: Idle seconds after which a bucket is dropped
            clock: Monotonic time source
        """
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be > 0")
        if burst_size < 1:
            raise ValueError("burst_size must be >= 1")

        self.requests_per_second = requests_per_second
        self.burst_size = burst_size
        self.key_func = key_func or self._default_key_func
        self.cleanup_interval = cleanup_interval
        self.bucket_ttl = bucket_ttl
        self._clock = clock

        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    @staticmethod
    def _default_key_func(request: HTTPRequest) -> str:
        return request.client_ip or "anonymous"

    def __call__(self, request: HTTPRequest, next: NextHandler) -> HTTPResponse:
        key = self.key_func(request)

        with self._lock:
            bucket = self._get_bucket(key)
            allowed = bucket.consume()
            remaining = int(bucket.tokens)
            retry_after = 0 if allowed else int(bucket.time_until_available()) + 1

        if not allowed:
            logger.warning(f"Rate limit exceeded for {key}: {request.method} {request.path}")
            return too_many_requests(retry_after, self.burst_size)

        response = next(request)
        response.headers["X-RateLimit-Limit"] = str(self.burst_size)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response

    def _get_bucket(self, key: str) -> TokenBucket:
        # Caller holds self._lock.
        if self._clock() - self._last_cleanup > self.cleanup_interval:
            self._cleanup()

        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(
                max_tokens=self.burst_size,
                tokens_per_second=self.requests_per_second,
                clock=self._clock,
            )
            self._buckets[key] = bucket
        return bucket

    def _cleanup(self) -> None:
        now = self._clock()
        expired = [
            key for key, bucket in self._buckets.items()
            if now - bucket.last_update > self.bucket_ttl
        ]
        for key in expired:
            del self._buckets[key]
        if expired:
            logger.debug(f"Dropped {len(expired)} idle rate limit buckets")
        self._last_cleanup = now

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one key's bucket, or all of them."""
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)
