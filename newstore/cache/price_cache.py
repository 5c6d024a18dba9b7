import asyncio
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PriceCache:
    """Single value TTL cache for the ticket price.

    The clock is injectable so tests control expiry.
    """

    def __init__(self, ttl: float = 60, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self.lock = asyncio.Lock()
        self._value: Optional[int] = None
        self._expires: float = 0.0

    async def get(self) -> int | None:
        async with self.lock:
            if self._value is not None and self.clock() < self._expires:
                return self._value
            self._value = None
            return None

    async def set(self, value: int) -> None:
        async with self.lock:
            self._value = value
            self._expires = self.clock() + self.ttl

    async def invalidate(self) -> None:
        async with self.lock:
            if self._value is not None:
                logger.debug("Ticket price cache invalidated")
            self._value = None
            self._expires = 0.0
