"""Distributed try-locks guarding per-resource financial operations."""

import math
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

from trustcore.config import settings
from trustcore.exceptions import ConflictError, StoreUnavailableError, ValidationError
from trustcore.logging.config import get_logger
from trustcore.models.lock import LockRecord
from trustcore.store.base import KeyedStore

logger = get_logger(__name__)


def make_owner_token(client_ip: str, user_id: str | None = None) -> str:
    """Opaque holder token unique to one request."""
    return f"{client_ip or 'unknown'}:{user_id or 'anonymous'}:{uuid.uuid4().hex}"


class LockManager:
    """
    Non-blocking mutual exclusion per lock key.

    There is no waiting or queueing: a losing caller gets False and must
    reject its operation. Fails closed: if the store cannot be reached,
    acquire returns False.

    Give this manager the durable store, never a process-local fallback.
    """

    def __init__(self, store: KeyedStore, default_ttl_ms: int | None = None) -> None:
        """
        Initialize the lock manager.

        Args:
            store: Durable keyed store shared by every instance
            default_ttl_ms: TTL used when callers pass none
        """
        self.store = store
        self.default_ttl_ms = default_ttl_ms or settings.lock_default_ttl_ms

    @staticmethod
    def _store_key(lock_key: str) -> str:
        return f"lock:{lock_key}"

    def _validate(self, lock_key: str, owner: str, ttl_ms: int) -> None:
        if not lock_key:
            raise ValidationError("lock_key is required", field="lock_key")
        if not owner:
            raise ValidationError("owner is required", field="owner")
        if ttl_ms <= 0:
            raise ValidationError("ttl_ms must be positive", field="ttl_ms")

    async def acquire(self, lock_key: str, owner: str, ttl_ms: int | None = None) -> bool:
        """
        Try to take the lock.

        Re-acquiring a lock already held by the same owner refreshes its TTL.

        Args:
            lock_key: Resource identifier, e.g. "withdrawal:user1"
            owner: Holder token
            ttl_ms: Lock lifetime

        Returns:
            True if the caller now holds the lock
        """
        ttl_ms = ttl_ms or self.default_ttl_ms
        self._validate(lock_key, owner, ttl_ms)
        try:
            acquired = await self.store.claim(self._store_key(lock_key), owner, ttl_ms)
        except StoreUnavailableError as e:
            logger.error(
                "Lock store unavailable, refusing lock",
                extra={"context": {"lock_key": lock_key, "error_message": e.message}},
            )
            return False

        if not acquired:
            logger.info("Lock held by another owner", extra={"context": {"lock_key": lock_key}})
        return acquired

    async def release(self, lock_key: str, owner: str) -> bool:
        """
        Release the lock if `owner` holds it.

        Returns:
            True if the lock was released; False if it is held by someone
            else, already expired, or the store is unreachable
        """
        if not lock_key or not owner:
            raise ValidationError("lock_key and owner are required")
        try:
            released = await self.store.delete_if_owner(self._store_key(lock_key), owner)
        except StoreUnavailableError as e:
            logger.error(
                "Lock store unavailable, release not confirmed",
                extra={"context": {"lock_key": lock_key, "error_message": e.message}},
            )
            return False

        if not released:
            logger.debug("Release ignored, not the holder", extra={"context": {"lock_key": lock_key}})
        return released

    async def get_holder(self, lock_key: str) -> LockRecord | None:
        record = await self.store.get_owner(self._store_key(lock_key))
        if record is None:
            return None
        return record.model_copy(update={"key": lock_key})

    @asynccontextmanager
    async def hold(
        self, lock_key: str, owner: str, ttl_ms: int | None = None
    ) -> AsyncIterator[str]:
        """
        Run a block while holding the lock; release on every exit path.

        Raises:
            ConflictError: If the lock could not be acquired
        """
        ttl_ms = ttl_ms or self.default_ttl_ms
        if not await self.acquire(lock_key, owner, ttl_ms):
            raise ConflictError(
                retry_after=max(1, math.ceil(ttl_ms / 1000)),
                details={"resource": lock_key},
            )
        try:
            yield owner
        finally:
            await self.release(lock_key, owner)
