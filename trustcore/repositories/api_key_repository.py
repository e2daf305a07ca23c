"""API Key repositories: DynamoDB and in-process."""

import asyncio
from datetime import datetime
from typing import Optional

from trustcore.config import settings
from trustcore.models.api_key import ApiKey
from trustcore.repositories.base import BaseRepository, from_dynamo

PREFIX_INDEX = "PrefixIndex"
USER_INDEX = "UserIndex"


class ApiKeyRepository(BaseRepository):
    """
    Repository for API Key operations in DynamoDB.

    Keys are looked up by their non-secret prefix through the PrefixIndex
    GSI, so validation never scans the table.
    """

    def __init__(self, table_name: str | None = None, session=None) -> None:
        """Initialize ApiKeyRepository with api_keys table."""
        super().__init__(table_name or settings.dynamodb_table_api_keys, session=session)

    async def get_by_id(self, key_id: str) -> Optional[ApiKey]:
        """
        Get API key by ID.

        Args:
            key_id: API key partition key (UUID)

        Returns:
            ApiKey if found, None otherwise
        """
        item = await self.get_item({"key_id": key_id})
        if item:
            return ApiKey(**from_dynamo(item))
        return None

    async def get_by_prefix(self, key_prefix: str) -> list[ApiKey]:
        """
        Get all API keys sharing a lookup prefix.

        Args:
            key_prefix: Non-secret fragment of the plaintext key

        Returns:
            Candidate keys (usually one)
        """
        items = await self.query_index(PREFIX_INDEX, "key_prefix", key_prefix)
        return [ApiKey(**from_dynamo(item)) for item in items]

    async def list_by_user(self, user_id: str) -> list[ApiKey]:
        """
        Get every key owned by a user, oldest first.

        Args:
            user_id: Owning user

        Returns:
            The user's keys
        """
        items = await self.query_index(USER_INDEX, "user_id", user_id)
        keys = [ApiKey(**from_dynamo(item)) for item in items]
        return sorted(keys, key=lambda k: k.created_at)

    async def count_by_user(self, user_id: str) -> int:
        return len(await self.list_by_user(user_id))

    async def create(self, api_key: ApiKey) -> ApiKey:
        """
        Create a new API key in DynamoDB.

        Args:
            api_key: ApiKey model to store

        Returns:
            The created ApiKey

        Raises:
            ValueError: If a key with the same key_id already exists
        """
        written = await self.put_item(
            api_key.model_dump(mode="json"),
            condition="attribute_not_exists(key_id)",
        )
        if not written:
            raise ValueError(f"Duplicate key_id: {api_key.key_id}")
        return api_key

    async def save(self, api_key: ApiKey) -> ApiKey:
        """Overwrite an existing key record."""
        await self.put_item(api_key.model_dump(mode="json"))
        return api_key

    async def record_usage(self, key_id: str, client_ip: str, used_at: datetime) -> None:
        """
        Atomically bump usage counters after a successful validation.

        Args:
            key_id: Key that was used
            client_ip: Caller IP
            used_at: Validation time
        """
        await self.update_item(
            key={"key_id": key_id},
            update_expression=(
                "SET usage_count = if_not_exists(usage_count, :zero) + :one, "
                "last_used_at = :at, last_used_ip = :ip"
            ),
            expression_values={
                ":zero": 0,
                ":one": 1,
                ":at": used_at.isoformat(),
                ":ip": client_ip,
            },
            condition="attribute_exists(key_id)",
        )

    async def delete(self, key_id: str) -> bool:
        return await self.delete_item(
            {"key_id": key_id}, condition="attribute_exists(key_id)"
        )


class InMemoryApiKeyRepository:
    """Single-process API key storage with the same interface as ApiKeyRepository."""

    def __init__(self) -> None:
        self._keys: dict[str, ApiKey] = {}
        self._lock = asyncio.Lock()

    async def get_by_id(self, key_id: str) -> Optional[ApiKey]:
        key = self._keys.get(key_id)
        return key.model_copy(deep=True) if key else None

    async def get_by_prefix(self, key_prefix: str) -> list[ApiKey]:
        return [
            k.model_copy(deep=True) for k in self._keys.values() if k.key_prefix == key_prefix
        ]

    async def list_by_user(self, user_id: str) -> list[ApiKey]:
        keys = [k.model_copy(deep=True) for k in self._keys.values() if k.user_id == user_id]
        return sorted(keys, key=lambda k: k.created_at)

    async def count_by_user(self, user_id: str) -> int:
        return sum(1 for k in self._keys.values() if k.user_id == user_id)

    async def create(self, api_key: ApiKey) -> ApiKey:
        async with self._lock:
            if api_key.key_id in self._keys:
                raise ValueError(f"Duplicate key_id: {api_key.key_id}")
            self._keys[api_key.key_id] = api_key.model_copy(deep=True)
        return api_key

    async def save(self, api_key: ApiKey) -> ApiKey:
        async with self._lock:
            self._keys[api_key.key_id] = api_key.model_copy(deep=True)
        return api_key

    async def record_usage(self, key_id: str, client_ip: str, used_at: datetime) -> None:
        async with self._lock:
            key = self._keys.get(key_id)
            if key is None:
                return
            key.usage_count += 1
            key.last_used_at = used_at
            key.last_used_ip = client_ip

    async def delete(self, key_id: str) -> bool:
        async with self._lock:
            return self._keys.pop(key_id, None) is not None
