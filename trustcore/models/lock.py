"""Distributed lock record."""

from pydantic import BaseModel, Field


class LockRecord(BaseModel):
    """Holder of a resource lock until `expires_at` (epoch ms)."""

    key: str = Field(..., description="Resource identifier")
    owner: str = Field(..., description="Opaque holder token")
    expires_at: int = Field(..., description="Expiry as epoch milliseconds")
