"""Repository layer for DynamoDB operations."""

from trustcore.repositories.api_key_repository import (
    ApiKeyRepository,
    InMemoryApiKeyRepository,
)
from trustcore.repositories.audit_repository import (
    AuditRepository,
    InMemoryAuditRepository,
)

__all__ = [
    "ApiKeyRepository",
    "AuditRepository",
    "InMemoryApiKeyRepository",
    "InMemoryAuditRepository",
]
