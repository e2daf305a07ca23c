"""Base repository class with common DynamoDB operations."""

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from trustcore.config import settings
from trustcore.exceptions import StoreUnavailableError
from trustcore.logging.config import get_logger

logger = get_logger(__name__)

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


def get_dynamodb_config() -> dict[str, Any]:
    """
    Build DynamoDB client configuration based on environment.

    Uses the default credential chain unless explicit credentials are set.
    Adds endpoint_url when a local endpoint is configured.

    Returns:
        Dictionary of boto3 client parameters
    """
    config: dict[str, Any] = {"region_name": settings.aws_region}

    if settings.dynamodb_endpoint_url:
        config["endpoint_url"] = settings.dynamodb_endpoint_url

    # Temporary credentials need all three values
    if settings.aws_access_key_id:
        config["aws_access_key_id"] = settings.aws_access_key_id
    if settings.aws_secret_access_key:
        config["aws_secret_access_key"] = settings.aws_secret_access_key
    if settings.aws_session_token:
        config["aws_session_token"] = settings.aws_session_token

    return config


def is_conditional_failure(exc: ClientError) -> bool:
    """Return True when a conditional write was rejected."""
    return exc.response.get("Error", {}).get("Code") == CONDITIONAL_CHECK_FAILED


def from_dynamo(value: Any) -> Any:
    """Convert DynamoDB Decimals back to ints, recursively."""
    if isinstance(value, Decimal):
        return int(value)
    if isinstance(value, dict):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    return value


class BaseRepository:
    """
    Base repository providing common DynamoDB operations.

    All repository methods are async and use aioboto3 for
    non-blocking database operations. Infrastructure failures surface as
    StoreUnavailableError; rejected conditional writes are reported through
    return values instead of exceptions.
    """

    def __init__(self, table_name: str, session: aioboto3.Session | None = None) -> None:
        """
        Initialize repository with table name.

        Args:
            table_name: Name of the DynamoDB table
            session: Optional aioboto3 session to share between repositories
        """
        self.table_name = table_name
        self.session = session or aioboto3.Session()

    @asynccontextmanager
    async def table(self) -> AsyncIterator[Any]:
        """Yield the DynamoDB Table resource for this repository."""
        async with self.session.resource("dynamodb", **get_dynamodb_config()) as dynamodb:
            yield await dynamodb.Table(self.table_name)

    def _unavailable(self, exc: Exception) -> StoreUnavailableError:
        logger.error(
            "DynamoDB operation failed",
            extra={
                "context": {
                    "table": self.table_name,
                    "error_type": type(exc).__name__,
                    "error_message": str(exc),
                }
            },
        )
        return StoreUnavailableError(store=self.table_name)

    async def put_item(
        self,
        item: dict[str, Any],
        condition: str | None = None,
        expression_names: dict[str, str] | None = None,
        expression_values: dict[str, Any] | None = None,
    ) -> bool:
        """
        Put item into DynamoDB table.

        Args:
            item: Dictionary representing the item to store
            condition: Optional ConditionExpression
            expression_names: Attribute name mappings for the condition
            expression_values: Values for the condition

        Returns:
            True if written, False if the condition rejected the write

        Raises:
            StoreUnavailableError: If DynamoDB cannot be reached
        """
        params: dict[str, Any] = {"Item": item}
        if condition:
            params["ConditionExpression"] = condition
        if expression_names:
            params["ExpressionAttributeNames"] = expression_names
        if expression_values:
            params["ExpressionAttributeValues"] = expression_values
        try:
            async with self.table() as table:
                await table.put_item(**params)
            return True
        except ClientError as e:
            if is_conditional_failure(e):
                return False
            raise self._unavailable(e) from e
        except BotoCoreError as e:
            raise self._unavailable(e) from e

    async def get_item(self, key: dict[str, Any]) -> dict[str, Any] | None:
        """
        Get item from DynamoDB table by key.

        Args:
            key: Dictionary with partition key

        Returns:
            Item dictionary or None if not found

        Raises:
            StoreUnavailableError: If DynamoDB cannot be reached
        """
        try:
            async with self.table() as table:
                response = await table.get_item(Key=key, ConsistentRead=True)
                return response.get("Item")
        except (ClientError, BotoCoreError) as e:
            raise self._unavailable(e) from e

    async def delete_item(
        self,
        key: dict[str, Any],
        condition: str | None = None,
        expression_names: dict[str, str] | None = None,
        expression_values: dict[str, Any] | None = None,
    ) -> bool:
        """
        Delete item from DynamoDB table.

        Args:
            key: Dictionary with partition key
            condition: Optional ConditionExpression
            expression_names: Attribute name mappings for the condition
            expression_values: Values for the condition

        Returns:
            True if deleted, False if the condition rejected the delete
        """
        params: dict[str, Any] = {"Key": key}
        if condition:
            params["ConditionExpression"] = condition
        if expression_names:
            params["ExpressionAttributeNames"] = expression_names
        if expression_values:
            params["ExpressionAttributeValues"] = expression_values
        try:
            async with self.table() as table:
                await table.delete_item(**params)
            return True
        except ClientError as e:
            if is_conditional_failure(e):
                return False
            raise self._unavailable(e) from e
        except BotoCoreError as e:
            raise self._unavailable(e) from e

    async def update_item(
        self,
        key: dict[str, Any],
        update_expression: str,
        expression_values: dict[str, Any],
        expression_names: dict[str, str] | None = None,
        condition: str | None = None,
    ) -> dict[str, Any] | None:
        """
        Update item in DynamoDB table.

        Args:
            key: Dictionary with partition key
            update_expression: DynamoDB update expression
            expression_values: Values for the update expression
            expression_names: Optional attribute name mappings for reserved keywords
            condition: Optional ConditionExpression

        Returns:
            Updated item attributes, or None if the condition rejected the update
        """
        params: dict[str, Any] = {
            "Key": key,
            "UpdateExpression": update_expression,
            "ExpressionAttributeValues": expression_values,
            "ReturnValues": "ALL_NEW",
        }
        if expression_names:
            params["ExpressionAttributeNames"] = expression_names
        if condition:
            params["ConditionExpression"] = condition
        try:
            async with self.table() as table:
                response = await table.update_item(**params)
            return response.get("Attributes", {})
        except ClientError as e:
            if is_conditional_failure(e):
                return None
            raise self._unavailable(e) from e
        except BotoCoreError as e:
            raise self._unavailable(e) from e

    async def query_index(
        self, index_name: str, key_name: str, value: Any
    ) -> list[dict[str, Any]]:
        """
        Query a global secondary index for all items with the given key.

        Args:
            index_name: GSI name
            key_name: Hash key attribute of the index
            value: Value to match

        Returns:
            All matching items across pages
        """
        items: list[dict[str, Any]] = []
        params: dict[str, Any] = {
            "IndexName": index_name,
            "KeyConditionExpression": "#k = :v",
            "ExpressionAttributeNames": {"#k": key_name},
            "ExpressionAttributeValues": {":v": value},
        }
        try:
            async with self.table() as table:
                while True:
                    response = await table.query(**params)
                    items.extend(response.get("Items", []))
                    last_key = response.get("LastEvaluatedKey")
                    if not last_key:
                        break
                    params["ExclusiveStartKey"] = last_key
        except (ClientError, BotoCoreError) as e:
            raise self._unavailable(e) from e
        return items

    async def scan_all(self) -> list[dict[str, Any]]:
        """
        Scan the whole table.

        Returns:
            Every item across pages
        """
        items: list[dict[str, Any]] = []
        params: dict[str, Any] = {}
        try:
            async with self.table() as table:
                while True:
                    response = await table.scan(**params)
                    items.extend(response.get("Items", []))
                    last_key = response.get("LastEvaluatedKey")
                    if not last_key:
                        break
                    params["ExclusiveStartKey"] = last_key
        except (ClientError, BotoCoreError) as e:
            raise self._unavailable(e) from e
        return items
