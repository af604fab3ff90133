"""Registry Throttle - Bounded concurrency for registry calls.

One slot per unit of work (a device import, delete, migrate...). Slots are
counted by hand under an asyncio.Condition rather than with a Semaphore so
the number held can be published as the ``registry_in_flight`` gauge and the
peak checked by tests.
"""

import asyncio
from typing import Any

import structlog

from ..constants import DEFAULT_MAX_CONCURRENCY
from ..observability.metrics import get_global_collector

logger = structlog.get_logger(__name__)


class RegistryThrottle:
    """
    Cap the number of registry calls in flight.

    A runner shares one throttle across the dispatchers it builds.

    Usage:
        throttle = RegistryThrottle(max_concurrency=8)
        async with throttle:
            await client.create_device(device)
    """

    def __init__(self, max_concurrency: int = DEFAULT_MAX_CONCURRENCY) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")

        self.max_concurrency = max_concurrency
        self._held = 0
        self._slot_freed = asyncio.Condition()

        self.peak_in_flight = 0
        self.total_acquired = 0
        self.collector = get_global_collector()

    @property
    def in_flight(self) -> int:
        """Number of slots currently held."""
        return self._held

    async def acquire(self) -> None:
        """Wait until fewer than max_concurrency slots are held, then take one."""
        async with self._slot_freed:
            await self._slot_freed.wait_for(lambda: self._held < self.max_concurrency)
            self._held += 1
            self.total_acquired += 1
            if self._held > self.peak_in_flight:
                self.peak_in_flight = self._held
            self.collector.update_in_flight(self._held)

        logger.debug("Throttle slot taken", in_flight=self._held, limit=self.max_concurrency)

    async def release(self) -> None:
        """Give a slot back and wake one waiting unit."""
        async with self._slot_freed:
            if self._held == 0:
                logger.warning("Throttle released with no slot held")
                return
            self._held -= 1
            self.collector.update_in_flight(self._held)
            self._slot_freed.notify(1)

        logger.debug("Throttle slot freed", in_flight=self._held, limit=self.max_concurrency)

    async def __aenter__(self) -> "RegistryThrottle":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.release()

    def stats(self) -> dict[str, int]:
        """Limit, slots held, peak held and total acquisitions."""
        return {
            "limit": self.max_concurrency,
            "in_flight": self._held,
            "peak_in_flight": self.peak_in_flight,
            "total_acquired": self.total_acquired,
        }
