"""MFA credential models."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class MFAState(str, Enum):
    """Lifecycle of a user's second factor."""

    UNINITIALIZED = "uninitialized"
    PENDING = "pending"
    ENABLED = "enabled"
    DISABLED = "disabled"


class RecoveryCode(BaseModel):
    """Single-use backup code, formatted XXXX-XXXX."""

    code: str = Field(..., description="Recovery code in XXXX-XXXX form")
    used: bool = Field(default=False, description="Whether the code was consumed")
    used_at: Optional[datetime] = Field(None, description="When the code was consumed")


class MFACredential(BaseModel):
    """
    Per-user TOTP credential.

    Attributes:
        user_id: Owning user
        secret: Base32 shared secret (None once disabled)
        state: Current lifecycle state
        recovery_codes: Ordered backup codes
        enabled_at: When the credential was confirmed
    """

    user_id: str = Field(..., description="Owning user identifier")
    secret: Optional[str] = Field(None, description="Base32 TOTP secret")
    state: MFAState = Field(default=MFAState.UNINITIALIZED)
    recovery_codes: List[RecoveryCode] = Field(default_factory=list)
    enabled_at: Optional[datetime] = None

    @property
    def enabled(self) -> bool:
        return self.state == MFAState.ENABLED


class MFASetup(BaseModel):
    """Result of starting enrollment."""

    credential: MFACredential
    secret: str
    uri: str


class MFAEnableResult(BaseModel):
    """Result of confirming enrollment with a first token."""

    success: bool
    credential: MFACredential
    recovery_codes: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class RecoveryCodeResult(BaseModel):
    """Outcome of consuming a recovery code."""

    valid: bool
    updated_codes: List[RecoveryCode]
    remaining: int


class MFAStatusSummary(BaseModel):
    """Non-secret view of a credential."""

    enabled: bool
    state: MFAState
    recovery_codes_remaining: int
