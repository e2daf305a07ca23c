"""Process-local keyed store and its expiry sweeper."""

import asyncio
import time
from dataclasses import dataclass

from trustcore.logging.config import get_logger
from trustcore.models.lock import LockRecord
from trustcore.models.rate_limit import RateLimitCounter
from trustcore.store.base import Clock, KeyedStore, now_ms

logger = get_logger(__name__)


@dataclass
class _Entry:
    expires_at: int
    count: int = 0
    owner: str | None = None


class MemoryStore(KeyedStore):
    """
    Single-process keyed store.

    Safe across coroutines of one event loop, not across processes. Expired
    entries are treated as absent on access and physically removed by
    `purge_expired()`.
    """

    name = "memory"

    def __init__(self, clock: Clock = time.time) -> None:
        """
        Initialize the store.

        Args:
            clock: Returns the current time as epoch seconds
        """
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _live(self, key: str, now: int) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None or entry.expires_at <= now:
            return None
        return entry

    async def increment(self, key: str, window_ms: int) -> RateLimitCounter:
        async with self._lock:
            now = now_ms(self._clock)
            entry = self._live(key, now)
            if entry is None:
                entry = _Entry(expires_at=now + window_ms)
                self._entries[key] = entry
            entry.count += 1
            return RateLimitCounter(count=entry.count, expires_at=entry.expires_at)

    async def claim(self, key: str, owner: str, ttl_ms: int) -> bool:
        async with self._lock:
            now = now_ms(self._clock)
            entry = self._live(key, now)
            if entry is not None and entry.owner != owner:
                return False
            self._entries[key] = _Entry(expires_at=now + ttl_ms, owner=owner)
            return True

    async def delete_if_owner(self, key: str, owner: str) -> bool:
        async with self._lock:
            entry = self._live(key, now_ms(self._clock))
            if entry is None or entry.owner != owner:
                return False
            del self._entries[key]
            return True

    async def get_owner(self, key: str) -> LockRecord | None:
        async with self._lock:
            entry = self._live(key, now_ms(self._clock))
            if entry is None or entry.owner is None:
                return None
            return LockRecord(key=key, owner=entry.owner, expires_at=entry.expires_at)

    async def ping(self) -> bool:
        return True

    async def purge_expired(self) -> int:
        """
        Remove every expired entry.

        Returns:
            Number of entries removed
        """
        async with self._lock:
            now = now_ms(self._clock)
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()


class ExpirySweeper:
    """
    Background task that periodically purges a MemoryStore.

    The owner must call `start()` and `stop()`; `run_once()` performs a
    single sweep and is what tests drive directly.
    """

    def __init__(self, store: MemoryStore, interval_seconds: float = 60.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.store = store
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        removed = await self.store.purge_expired()
        if removed:
            logger.debug(
                "Purged expired fallback entries",
                extra={"context": {"removed": removed, "remaining": len(self.store)}},
            )
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Expiry sweep failed")

    def start(self) -> None:
        """Start sweeping; a second call while running is a no-op."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="trustcore-expiry-sweeper")
        logger.info(
            "Expiry sweeper started",
            extra={"context": {"interval_seconds": self.interval_seconds}},
        )

    async def stop(self) -> None:
        """Cancel the task and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweeper stopped")
