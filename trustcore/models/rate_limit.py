"""Rate limiting models."""

from typing import Optional

from pydantic import BaseModel, Field

from trustcore.config import RateLimitProfile


class RateLimitCounter(BaseModel):
    """Counter for one (scope, subject) pair within its current window."""

    count: int = Field(..., ge=0)
    expires_at: int = Field(..., description="Window reset as epoch milliseconds")


class RateLimitResult(BaseModel):
    """
    Outcome of a single rate-limit check.

    Attributes:
        allowed: Whether the request fits within the window
        limit: Maximum requests per window
        remaining: Requests left in the current window
        reset_at: Window reset as epoch milliseconds
        retry_after: Seconds until the window resets, set only when denied
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: Optional[int] = None


__all__ = ["RateLimitCounter", "RateLimitProfile", "RateLimitResult"]
