"""Rate limiter implementation using a sliding window per client and path."""

import asyncio
import time
from typing import Dict, List, Optional

from fastapi import Request
from structlog import get_logger

logger = get_logger()


class RateLimitExceeded(Exception):
    """Exception raised when rate limit is exceeded."""
    pass


class RateLimiter:
    """Rate limiter with endpoint-specific limits."""

    def __init__(self, rate_limit: int = 50, time_window: int = 60):
        """Initialize rate limiter with configurable parameters."""
        self.rate_limit = rate_limit
        self.time_window = time_window  # in seconds
        self.requests: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        logger.info(
            "rate_limiter_initialized",
            rate_limit=rate_limit,
            time_window=time_window
        )

    async def start(self):
        """Start the rate limiter cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

    async def stop(self):
        """Stop the rate limiter cleanup task."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    def _prune(self, key: str, now: float) -> None:
        cutoff_time = now - self.time_window
        self.requests[key] = [ts for ts in self.requests.get(key, []) if ts > cutoff_time]

    async def _periodic_cleanup(self):
        """Periodically drop keys with no recent requests."""
        while True:
            await asyncio.sleep(self.time_window)
            async with self._lock:
                now = time.time()
                for key in list(self.requests.keys()):
                    self._prune(key, now)
                    if not self.requests[key]:
                        del self.requests[key]

    async def check_rate_limit(self, key: str) -> None:
        """Record a request for ``key`` or raise ``RateLimitExceeded``."""
        async with self._lock:
            now = time.time()
            self._prune(key, now)

            if len(self.requests[key]) >= self.rate_limit:
                logger.warning(
                    "rate_limit_exceeded",
                    key=key,
                    current_requests=len(self.requests[key]),
                    rate_limit=self.rate_limit
                )
                raise RateLimitExceeded(
                    f"Rate limit of {self.rate_limit} requests per {self.time_window} seconds exceeded"
                )

            self.requests[key].append(now)


async def rate_limit_middleware(
    request: Request,
    rate_limiter: Optional[RateLimiter] = None
) -> None:
    """Rate limiting keyed by caller identity (or client address) and path."""
    if rate_limiter is None:
        return

    caller = request.headers.get("x-user-id") or (request.client.host if request.client else "unknown")
    key = f"{caller}:{request.url.path}"

    await rate_limiter.check_rate_limit(key)
