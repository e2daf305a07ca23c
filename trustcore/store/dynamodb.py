"""DynamoDB-backed keyed store shared across process instances."""

import time
from typing import Any

from trustcore.config import settings
from trustcore.exceptions import StoreUnavailableError
from trustcore.logging.config import get_logger
from trustcore.models.lock import LockRecord
from trustcore.models.rate_limit import RateLimitCounter
from trustcore.repositories.base import BaseRepository
from trustcore.store.base import Clock, KeyedStore, now_ms

logger = get_logger(__name__)


# count and ttl are DynamoDB reserved words
_INCREMENT_EXPRESSION = (
    "SET #count = if_not_exists(#count, :zero) + :one, "
    "expires_at = if_not_exists(expires_at, :exp), "
    "#ttl = if_not_exists(#ttl, :ttl)"
)

_MAX_INCREMENT_ATTEMPTS = 3


def _ttl_seconds(expires_at_ms: int) -> int:
    """DynamoDB TTL attribute (epoch seconds, rounded up)."""
    return expires_at_ms // 1000 + 1


class DynamoDBStore(BaseRepository, KeyedStore):
    """
    Keyed store over a single DynamoDB table.

    Items carry `store_key`, `expires_at` (epoch ms) and a `ttl` attribute
    so DynamoDB expires stale rows on its own. Expiry is always checked
    against `expires_at`, since TTL deletion is lazy.
    """

    name = "dynamodb"

    def __init__(
        self,
        table_name: str | None = None,
        clock: Clock = time.time,
        session=None,
    ) -> None:
        """
        Initialize the store.

        Args:
            table_name: Table name (defaults to settings.dynamodb_table_store)
            clock: Returns the current time as epoch seconds
            session: Optional shared aioboto3 session
        """
        super().__init__(table_name or settings.dynamodb_table_store, session=session)
        self._clock = clock

    async def _increment_live(
        self, key: str, now: int, window_ms: int
    ) -> dict[str, Any] | None:
        expires = now + window_ms
        return await self.update_item(
            key={"store_key": key},
            update_expression=_INCREMENT_EXPRESSION,
            expression_values={
                ":zero": 0,
                ":one": 1,
                ":exp": expires,
                ":ttl": _ttl_seconds(expires),
                ":now": now,
            },
            expression_names={"#count": "count", "#ttl": "ttl"},
            condition="attribute_not_exists(store_key) OR expires_at > :now",
        )

    async def increment(self, key: str, window_ms: int) -> RateLimitCounter:
        for _ in range(_MAX_INCREMENT_ATTEMPTS):
            now = now_ms(self._clock)
            attrs = await self._increment_live(key, now, window_ms)
            if attrs is not None:
                return RateLimitCounter(
                    count=int(attrs["count"]), expires_at=int(attrs["expires_at"])
                )

            # Window elapsed: only one writer may start the next one
            expires = now + window_ms
            started = await self.put_item(
                {
                    "store_key": key,
                    "count": 1,
                    "expires_at": expires,
                    "ttl": _ttl_seconds(expires),
                },
                condition="expires_at <= :now",
                expression_values={":now": now},
            )
            if started:
                return RateLimitCounter(count=1, expires_at=expires)

        logger.error(
            "Counter contention did not settle",
            extra={"context": {"store_key": key, "attempts": _MAX_INCREMENT_ATTEMPTS}},
        )
        raise StoreUnavailableError("Counter update contention", store=self.table_name)

    async def claim(self, key: str, owner: str, ttl_ms: int) -> bool:
        now = now_ms(self._clock)
        expires = now + ttl_ms
        return await self.put_item(
            {
                "store_key": key,
                "owner": owner,
                "expires_at": expires,
                "ttl": _ttl_seconds(expires),
            },
            condition=(
                "attribute_not_exists(store_key) OR expires_at <= :now OR #owner = :owner"
            ),
            expression_names={"#owner": "owner"},
            expression_values={":now": now, ":owner": owner},
        )

    async def delete_if_owner(self, key: str, owner: str) -> bool:
        return await self.delete_item(
            {"store_key": key},
            condition="#owner = :owner AND expires_at > :now",
            expression_names={"#owner": "owner"},
            expression_values={":owner": owner, ":now": now_ms(self._clock)},
        )

    async def get_owner(self, key: str) -> LockRecord | None:
        item = await self.get_item({"store_key": key})
        if not item or "owner" not in item:
            return None
        expires_at = int(item["expires_at"])
        if expires_at <= now_ms(self._clock):
            return None
        return LockRecord(key=key, owner=item["owner"], expires_at=expires_at)

    async def ping(self) -> bool:
        try:
            await self.get_item({"store_key": "__health__"})
        except StoreUnavailableError:
            return False
        return True
