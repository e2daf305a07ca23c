"""Script to create DynamoDB tables for LocalStack or AWS."""

import asyncio
from typing import Any

import aioboto3
from botocore.exceptions import ClientError

_THROUGHPUT = {"ReadCapacityUnits": 5, "WriteCapacityUnits": 5}


async def _create_table(dynamodb: Any, table_name: str, **kwargs: Any) -> bool:
    """
    Create one table, tolerating an existing one.

    Returns:
        True if the table was created, False if it already existed
    """
    try:
        table = await dynamodb.create_table(
            TableName=table_name,
            BillingMode="PROVISIONED",
            ProvisionedThroughput=_THROUGHPUT,
            **kwargs,
        )
        await table.wait_until_exists()
        print(f"✓ Created table: {table_name}")
        return True
    except ClientError as e:
        if e.response["Error"]["Code"] == "ResourceInUseException":
            print(f"→ Table already exists: {table_name}")
            return False
        raise


async def enable_ttl(client: Any, table_name: str, attribute: str = "ttl") -> None:
    """Turn on native expiry so stale counters and locks are reclaimed."""
    try:
        await client.update_time_to_live(
            TableName=table_name,
            TimeToLiveSpecification={"Enabled": True, "AttributeName": attribute},
        )
        print(f"✓ TTL enabled on {table_name}.{attribute}")
    except ClientError as e:
        # Raised when TTL is already enabled
        if e.response["Error"]["Code"] == "ValidationException":
            print(f"→ TTL already enabled: {table_name}")
        else:
            raise


async def create_keyvalue_table(dynamodb: Any, table_name: str) -> bool:
    """
    Create the shared keyed store for rate-limit counters and locks.

    Args:
        dynamodb: DynamoDB resource
        table_name: Name of the key-value table
    """
    return await _create_table(
        dynamodb,
        table_name,
        KeySchema=[{"AttributeName": "store_key", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "store_key", "AttributeType": "S"}],
    )


async def create_api_keys_table(dynamodb: Any, table_name: str) -> bool:
    """
    Create API Keys table with prefix and owner lookups.

    Args:
        dynamodb: DynamoDB resource
        table_name: Name of the API keys table
    """
    return await _create_table(
        dynamodb,
        table_name,
        KeySchema=[{"AttributeName": "key_id", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "key_id", "AttributeType": "S"},
            {"AttributeName": "key_prefix", "AttributeType": "S"},
            {"AttributeName": "user_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "PrefixIndex",
                "KeySchema": [{"AttributeName": "key_prefix", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
                "ProvisionedThroughput": _THROUGHPUT,
            },
            {
                "IndexName": "UserIndex",
                "KeySchema": [{"AttributeName": "user_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
                "ProvisionedThroughput": _THROUGHPUT,
            },
        ],
    )


async def create_audit_table(dynamodb: Any, table_name: str) -> bool:
    """
    Create the append-only audit table.

    Args:
        dynamodb: DynamoDB resource
        table_name: Name of the audit table
    """
    return await _create_table(
        dynamodb,
        table_name,
        KeySchema=[{"AttributeName": "event_id", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "event_id", "AttributeType": "S"}],
    )


async def main() -> None:
    """Create all required DynamoDB tables."""
    from trustcore.repositories.base import get_dynamodb_config
    from trustcore.config import settings

    print("Creating DynamoDB tables...")
    print(f"Region: {settings.aws_region}")
    print(f"Endpoint: {settings.dynamodb_endpoint_url or 'AWS'}")
    print()

    session = aioboto3.Session()
    config = get_dynamodb_config()
    async with session.resource("dynamodb", **config) as dynamodb:
        await create_keyvalue_table(dynamodb, settings.dynamodb_table_store)
        await create_api_keys_table(dynamodb, settings.dynamodb_table_api_keys)
        await create_audit_table(dynamodb, settings.dynamodb_table_audit)

    async with session.client("dynamodb", **config) as client:
        await enable_ttl(client, settings.dynamodb_table_store)

    print()
    print("✓ All tables created successfully!")


if __name__ == "__main__":
    asyncio.run(main())
