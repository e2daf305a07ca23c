"""API key models."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class Permission(str, Enum):
    """Scopes an API key may carry."""

    READ_PORTFOLIO = "read:portfolio"
    READ_ORDERS = "read:orders"
    READ_MARKET = "read:market"
    WRITE_ORDERS = "write:orders"
    WRITE_TRANSFER = "write:transfer"
    ADMIN_ACCOUNT = "admin:account"


ALL_ACCESS_SCOPE = Permission.ADMIN_ACCOUNT.value

PERMISSION_DESCRIPTIONS: Dict[str, str] = {
    Permission.READ_PORTFOLIO.value: "View portfolio balances and positions",
    Permission.READ_ORDERS.value: "View order history and status",
    Permission.READ_MARKET.value: "Access market data",
    Permission.WRITE_ORDERS.value: "Place and cancel orders",
    Permission.WRITE_TRANSFER.value: "Initiate deposits and withdrawals",
    Permission.ADMIN_ACCOUNT.value: "Full account access",
}

PERMISSION_PRESETS: Dict[str, List[str]] = {
    "read_only": [
        Permission.READ_PORTFOLIO.value,
        Permission.READ_ORDERS.value,
        Permission.READ_MARKET.value,
    ],
    "trading": [
        Permission.READ_PORTFOLIO.value,
        Permission.READ_ORDERS.value,
        Permission.READ_MARKET.value,
        Permission.WRITE_ORDERS.value,
    ],
    "full": [p.value for p in Permission],
}


class ApiKeyMetadata(BaseModel):
    """Operator-facing annotations on a key."""

    description: Optional[str] = None
    environment: str = Field(default="production", description="production, sandbox or development")
    created_by: Optional[str] = None


class ApiKey(BaseModel):
    """
    Stored API key record.

    Attributes:
        key_id: Unique identifier (UUID v4)
        user_id: Owning user
        name: Human-readable label
        key_prefix: Non-secret lookup fragment of the plaintext key
        key_hash: Bcrypt hash of the plaintext key
        secret_hash: Bcrypt hash of the plaintext secret
        permissions: Granted scopes
        ip_whitelist: Exact IPs or CIDR blocks; empty means unrestricted
        created_at: Creation time (UTC)
        expires_at: Expiry time (UTC)
        is_active: False once revoked
        usage_count: Successful validations
        last_used_at: Time of the last successful validation
        last_used_ip: Caller IP of the last successful validation
        rate_limit_per_minute: Per-key request budget
        metadata: Operator annotations
    """

    key_id: str = Field(..., description="Unique key identifier (UUID)")
    user_id: str
    name: str
    key_prefix: str
    key_hash: str = Field(..., description="Bcrypt hash of API key")
    secret_hash: str = Field(..., description="Bcrypt hash of API secret")
    permissions: List[str] = Field(default_factory=list)
    ip_whitelist: List[str] = Field(default_factory=list)
    created_at: datetime
    expires_at: datetime
    is_active: bool = True
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    last_used_ip: Optional[str] = None
    rate_limit_per_minute: int = 60
    metadata: ApiKeyMetadata = Field(default_factory=ApiKeyMetadata)

    def to_public(self) -> "ApiKeyPublic":
        """Strip both hashes."""
        return ApiKeyPublic(**self.model_dump(exclude={"key_hash", "secret_hash"}))


class ApiKeyPublic(BaseModel):
    """API key record as returned to callers; never carries hashes."""

    key_id: str
    user_id: str
    name: str
    key_prefix: str
    permissions: List[str]
    ip_whitelist: List[str]
    created_at: datetime
    expires_at: datetime
    is_active: bool
    usage_count: int
    last_used_at: Optional[datetime] = None
    last_used_ip: Optional[str] = None
    rate_limit_per_minute: int
    metadata: ApiKeyMetadata


class ApiKeyCreateResult(BaseModel):
    """Plaintext credentials, returned exactly once at creation."""

    key: ApiKeyPublic
    api_key: str
    api_secret: str


class ApiKeyValidation(BaseModel):
    """Outcome of validating a presented key/secret pair."""

    valid: bool
    key: Optional[ApiKeyPublic] = None
    error: Optional[str] = None
    retry_after: Optional[int] = None


class ApiKeyStats(BaseModel):
    """Aggregate usage across a user's keys."""

    total_keys: int
    active_keys: int
    total_usage: int
    last_used_at: Optional[datetime] = None
