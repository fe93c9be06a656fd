"""Per-endpoint token buckets for outbound HTTP.

``connectors.http.send`` takes a token from the endpoint's bucket before
every request. Buckets are process-wide: the Privy app secret, the builder
key and the RPC endpoint are shared by every user session, so their limits
are too.

Acquisition reserves a token up front and sleeps off any deficit, so
concurrent callers are served in arrival order without a lock.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Mapping

from alphascope.config import RateLimitConfig
from alphascope.observability.metrics import metrics


@dataclass(frozen=True)
class EndpointLimit:
    tokens_per_second: float
    max_burst: int


DEFAULT_LIMITS: dict[str, EndpointLimit] = {
    "privy": EndpointLimit(tokens_per_second=5.0, max_burst=10),
    "rpc": EndpointLimit(tokens_per_second=20.0, max_burst=40),
    "relayer": EndpointLimit(tokens_per_second=2.0, max_burst=5),
    "clob": EndpointLimit(tokens_per_second=10.0, max_burst=20),
    "data": EndpointLimit(tokens_per_second=5.0, max_burst=10),
}
_FALLBACK = EndpointLimit(tokens_per_second=5.0, max_burst=10)


class TokenBucket:
    def __init__(self, endpoint: str, limit: EndpointLimit):
        self.endpoint = endpoint
        self.limit = limit
        self._tokens = float(limit.max_burst)
        self._stamp = time.monotonic()

    def _reserve(self) -> float:
        """Take one token now; return how long the caller must wait for it."""
        now = time.monotonic()
        self._tokens = min(
            float(self.limit.max_burst),
            self._tokens + (now - self._stamp) * self.limit.tokens_per_second,
        )
        self._stamp = now
        self._tokens -= 1.0
        if self._tokens >= 0:
            return 0.0
        return -self._tokens / self.limit.tokens_per_second

    async def acquire(self) -> None:
        delay = self._reserve()
        if delay > 0:
            metrics.incr("rate_limit.throttled", endpoint=self.endpoint)
            await asyncio.sleep(delay)


class RateLimiterRegistry:
    def __init__(self) -> None:
        self._buckets: dict[str, TokenBucket] = {}

    def get(self, endpoint: str) -> TokenBucket:
        bucket = self._buckets.get(endpoint)
        if bucket is None:
            bucket = TokenBucket(endpoint, DEFAULT_LIMITS.get(endpoint, _FALLBACK))
            self._buckets[endpoint] = bucket
        return bucket

    def configure(self, endpoint: str, tokens_per_second: float, max_burst: int) -> None:
        """Replace the bucket for ``endpoint``; pending reservations are dropped."""
        if tokens_per_second <= 0 or max_burst < 1:
            raise ValueError(f"invalid rate limit for {endpoint}: {tokens_per_second}/s burst {max_burst}")
        self._buckets[endpoint] = TokenBucket(endpoint, EndpointLimit(tokens_per_second, max_burst))

    def apply(self, overrides: Mapping[str, RateLimitConfig]) -> None:
        for endpoint, limit in overrides.items():
            self.configure(endpoint, limit.tokens_per_second, limit.max_burst)


rate_limiter = RateLimiterRegistry()
