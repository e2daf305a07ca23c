"""Shared keyed store interface."""

import time
from abc import ABC, abstractmethod
from typing import Callable

from trustcore.models.lock import LockRecord
from trustcore.models.rate_limit import RateLimitCounter

Clock = Callable[[], float]


def now_ms(clock: Clock = time.time) -> int:
    """Current time from `clock` as epoch milliseconds."""
    return int(clock() * 1000)


class KeyedStore(ABC):
    """
    Key/value store shared by every process instance.

    Every write that must be race-free is a single atomic operation here;
    callers never read-then-write.
    """

    name = "store"

    @abstractmethod
    async def increment(self, key: str, window_ms: int) -> RateLimitCounter:
        """
        Atomically add one to the counter at `key`.

        The expiry is set only by the first increment of a window; once it
        passes, the next increment starts a new window at count 1.

        Args:
            key: Counter key
            window_ms: Window length for a fresh counter

        Returns:
            Counter state after the increment

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """

    @abstractmethod
    async def claim(self, key: str, owner: str, ttl_ms: int) -> bool:
        """
        Atomically take or refresh ownership of `key`.

        Succeeds when the key is absent, expired, or already held by `owner`.

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """

    @abstractmethod
    async def delete_if_owner(self, key: str, owner: str) -> bool:
        """
        Atomically delete `key` only if `owner` holds an unexpired claim on it.

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """

    @abstractmethod
    async def get_owner(self, key: str) -> LockRecord | None:
        """Return the unexpired claim on `key`, if any."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the store is reachable."""
