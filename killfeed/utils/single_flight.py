"""
Single-Flight Guard
At most one in-flight operation per key; a second caller is turned away instead of queued
"""

import logging
from contextlib import asynccontextmanager
from typing import Hashable, Set

logger = logging.getLogger(__name__)


class SingleFlight:
    """Set of in-flight keys, each released when its operation finishes or is cancelled"""

    def __init__(self, name: str = "single-flight"):
        self.name = name
        self._in_flight: Set[Hashable] = set()

    def try_acquire(self, key: Hashable) -> bool:
        if key in self._in_flight:
            logger.debug(f"{self.name}: {key} already in flight")
            return False
        self._in_flight.add(key)
        return True

    def release(self, key: Hashable):
        self._in_flight.discard(key)

    def is_in_flight(self, key: Hashable) -> bool:
        return key in self._in_flight

    @asynccontextmanager
    async def acquire(self, key: Hashable):
        """Yields True when the caller owns the key, False when someone else does"""
        acquired = self.try_acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)
