"""
Process-wide gate enforcing a minimum interval between outbound ERP calls.

The upstream quota is shared by every linked account of the app, so one gate
is created at startup and handed to every client instead of living in a
module global.
"""

import asyncio
import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


class RateGate:

    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable = asyncio.sleep):
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call: float = float("-inf")

    async def acquire(self) -> float:
        """
        Wait for this caller's slot. Callers are served one at a time in
        arrival order.

        Returns:
            float: seconds spent waiting
        """
        async with self._lock:
            wait = self._last_call + self.min_interval - self._clock()
            if wait > 0:
                logger.debug(f"Rate gate holding call for {wait:.3f}s")
                await self._sleep(wait)
            else:
                wait = 0.0
            self._last_call = self._clock()
            return wait
