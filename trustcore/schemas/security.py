"""Pydantic schemas for the security API."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from trustcore.models.api_key import PERMISSION_PRESETS, ApiKeyPublic
from trustcore.models.mfa import MFAState, RecoveryCode


class MFASetupRequest(BaseModel):
    email: str = Field(
        ..., min_length=3, max_length=254, description="Account label shown in the authenticator app"
    )


class MFASetupResponse(BaseModel):
    secret: str
    uri: str
    state: MFAState


class MFAEnableRequest(BaseModel):
    """
    Request schema for confirming MFA enrollment.

    Attributes:
        secret: Secret returned by the setup call
        token: Current 6-digit code from the authenticator app
    """

    secret: str = Field(..., min_length=16, max_length=128)
    token: str = Field(..., min_length=1, max_length=16)

    class Config:
        """Pydantic configuration."""

        json_schema_extra = {
            "example": {"secret": "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP", "token": "123456"}
        }


class MFAEnableResponse(BaseModel):
    enabled: bool
    recovery_codes: List[str]


class MFAVerifyRequest(BaseModel):
    secret: str = Field(..., min_length=16, max_length=128)
    token: str = Field(..., min_length=1, max_length=16)


class MFAVerifyResponse(BaseModel):
    valid: bool


class RecoveryCodeRequest(BaseModel):
    """Stored codes travel with the request; the user store lives upstream."""

    codes: List[RecoveryCode] = Field(..., min_length=1)
    code: str = Field(..., min_length=1, max_length=32)


class RecoveryCodeResponse(BaseModel):
    valid: bool
    remaining: int
    updated_codes: List[RecoveryCode]


class CreateApiKeyRequest(BaseModel):
    """
    Request schema for creating an API key.

    Either `permissions` or a `preset` must be given.

    Attributes:
        name: Human-readable label
        permissions: Explicit scopes
        preset: Named scope bundle (read_only, trading, full)
        ip_whitelist: Exact IPs or CIDR blocks
        expiry_days: Lifetime in days
        rate_limit_per_minute: Per-key request budget
        description: Optional note
        environment: production, sandbox or development
    """

    name: str = Field(..., min_length=1, max_length=100)
    permissions: Optional[List[str]] = None
    preset: Optional[str] = None
    ip_whitelist: List[str] = Field(default_factory=list)
    expiry_days: Optional[int] = Field(None, gt=0, le=3650)
    rate_limit_per_minute: Optional[int] = Field(None, gt=0, le=10_000)
    description: Optional[str] = Field(None, max_length=500)
    environment: str = "production"

    @model_validator(mode="after")
    def resolve_preset(self) -> "CreateApiKeyRequest":
        """Expand a preset into its scopes when no explicit list is given."""
        if self.preset is not None:
            if self.preset not in PERMISSION_PRESETS:
                raise ValueError(f"Unknown permission preset: {self.preset}")
            if not self.permissions:
                self.permissions = list(PERMISSION_PRESETS[self.preset])
        if not self.permissions:
            raise ValueError("Either permissions or preset is required")
        return self

    class Config:
        """Pydantic configuration."""

        json_schema_extra = {
            "example": {
                "name": "Trading bot",
                "preset": "trading",
                "ip_whitelist": ["10.0.0.0/24"],
                "expiry_days": 90,
            }
        }


class CreateApiKeyResponse(BaseModel):
    """Plaintext credentials appear here once and never again."""

    key: ApiKeyPublic
    api_key: str
    api_secret: str


class RotateApiKeyResponse(BaseModel):
    key_id: str
    api_secret: str


class RevokeApiKeyResponse(BaseModel):
    key_id: str
    status: str = "revoked"


class PermissionsResponse(BaseModel):
    permissions: Dict[str, str]
    presets: Dict[str, List[str]]
