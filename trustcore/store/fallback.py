"""Degrade to a process-local store when the shared store is unreachable."""

from typing import Awaitable, Callable, TypeVar

from trustcore.exceptions import StoreUnavailableError
from trustcore.logging.config import get_logger
from trustcore.models.lock import LockRecord
from trustcore.models.rate_limit import RateLimitCounter
from trustcore.store.base import KeyedStore

logger = get_logger(__name__)

T = TypeVar("T")


class FallbackStore(KeyedStore):
    """
    Route operations to `primary`, or to `fallback` while primary is down.

    Only StoreUnavailableError triggers the switch. Every call retries the
    primary first, so recovery is detected on the next operation. The switch
    and the recovery are each logged once per transition.

    The fallback is not shared between instances; counters kept there are
    approximate across a fleet.
    """

    def __init__(self, primary: KeyedStore, fallback: KeyedStore) -> None:
        self.primary = primary
        self.fallback = fallback
        self.degraded = False
        self.name = f"{primary.name}+{fallback.name}"

    def _enter_degraded(self, operation: str, exc: StoreUnavailableError) -> None:
        if self.degraded:
            return
        self.degraded = True
        logger.warning(
            "Shared store unavailable, using process-local fallback",
            extra={
                "context": {
                    "primary": self.primary.name,
                    "fallback": self.fallback.name,
                    "operation": operation,
                    "error_message": exc.message,
                }
            },
        )

    def _leave_degraded(self) -> None:
        if not self.degraded:
            return
        self.degraded = False
        logger.info(
            "Shared store recovered, leaving process-local fallback",
            extra={"context": {"primary": self.primary.name}},
        )

    async def _route(
        self,
        operation: str,
        primary_call: Callable[[], Awaitable[T]],
        fallback_call: Callable[[], Awaitable[T]],
    ) -> T:
        try:
            result = await primary_call()
        except StoreUnavailableError as e:
            self._enter_degraded(operation, e)
            return await fallback_call()
        self._leave_degraded()
        return result

    async def increment(self, key: str, window_ms: int) -> RateLimitCounter:
        return await self._route(
            "increment",
            lambda: self.primary.increment(key, window_ms),
            lambda: self.fallback.increment(key, window_ms),
        )

    async def claim(self, key: str, owner: str, ttl_ms: int) -> bool:
        return await self._route(
            "claim",
            lambda: self.primary.claim(key, owner, ttl_ms),
            lambda: self.fallback.claim(key, owner, ttl_ms),
        )

    async def delete_if_owner(self, key: str, owner: str) -> bool:
        return await self._route(
            "delete_if_owner",
            lambda: self.primary.delete_if_owner(key, owner),
            lambda: self.fallback.delete_if_owner(key, owner),
        )

    async def get_owner(self, key: str) -> LockRecord | None:
        return await self._route(
            "get_owner",
            lambda: self.primary.get_owner(key),
            lambda: self.fallback.get_owner(key),
        )

    async def ping(self) -> bool:
        return await self.primary.ping()
