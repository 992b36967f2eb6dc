"""Rate limiter per host."""
import asyncio
import logging
import time
from collections import defaultdict
from typing import Dict
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


class RateLimiter:
    """Spaces out requests to the same host to at most ``rate_per_second``."""

    def __init__(self, rate_per_second: float):
        self.rate_per_second = rate_per_second
        self.min_interval = 1.0 / rate_per_second if rate_per_second > 0 else 0
        self._last_request: Dict[str, float] = defaultdict(float)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _get_host(self, url: str) -> str:
        parsed = urlparse(url)
        return f"{parsed.scheme}://{parsed.netloc}"

    async def acquire(self, url: str) -> None:
        """Wait if necessary to respect the rate limit."""
        if self.min_interval <= 0:
            return
        host = self._get_host(url)
        async with self._locks[host]:
            last = self._last_request[host]
            elapsed = time.monotonic() - last
            if last and elapsed < self.min_interval:
                wait_time = self.min_interval - elapsed
                logger.debug(f"Rate limiting {host}: sleeping {wait_time:.3f}s")
                await asyncio.sleep(wait_time)
            self._last_request[host] = time.monotonic()
