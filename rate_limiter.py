"""
Per-client rate limiting for the REST endpoints.

Requests are counted per client address in a sliding window; a client over
the limit gets HTTP 429 with a ``Retry-After`` header.
"""
import math
import time
from collections import defaultdict
from typing import Callable, Dict, List
from fastapi import HTTPException, Request
from constants import RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SECONDS
from logging_config import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """
    Simple in-memory sliding-window rate limiter.

    State lives in this process only, like the connection registry.
    """

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the rate limiter.

        Args:
            max_requests: Maximum number of requests allowed in the window
            window_seconds: Time window in seconds
            clock: Monotonic time source, replaceable in tests
        """
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self.requests: Dict[str, List[float]] = defaultdict(list)

    def _recent(self, key: str, now: float) -> List[float]:
        recent = [t for t in self.requests.get(key, []) if now - t < self.window_seconds]
        if recent:
            self.requests[key] = recent
        else:
            self.requests.pop(key, None)
        return recent

    def check_rate_limit(self, key: str) -> bool:
        """
        Record one request for ``key`` if it is within the limit.

        Returns:
            bool: True if the request is allowed, False if the limit is exceeded
        """
        now = self.clock()
        recent = self._recent(key, now)
        if len(recent) >= self.max_requests:
            return False
        self.requests[key].append(now)
        return True

    def retry_after(self, key: str) -> int:
        """Whole seconds until the oldest request for ``key`` leaves the window."""
        now = self.clock()
        recent = self._recent(key, now)
        if len(recent) < self.max_requests:
            return 0
        return max(1, math.ceil(recent[0] + self.window_seconds - now))

    def reset(self):
        self.requests.clear()


def client_key(request: Request) -> str:
    """Client address as seen through one trusted proxy hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        if hops:
            return hops[-1]
    if request.client:
        return request.client.host
    return "unknown"


async def enforce_rate_limit(request: Request):
    """Router dependency: raise 429 when the caller is over its request budget."""
    limiter: RateLimiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return
    key = client_key(request)
    if not limiter.check_rate_limit(key):
        retry_after = limiter.retry_after(key)
        logger.warning(f"Rate limit exceeded for {key} on {request.url.path}, retry after {retry_after}s")
        raise HTTPException(
            status_code=429,
            detail="rate_limited",
            headers={"Retry-After": str(retry_after)},
        )
