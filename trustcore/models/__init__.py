"""Data models for the trust core."""

from trustcore.models.api_key import ApiKey, ApiKeyPublic
from trustcore.models.audit import ActorType, AuditDetails, AuditEvent
from trustcore.models.lock import LockRecord
from trustcore.models.mfa import MFACredential, MFAState, RecoveryCode
from trustcore.models.rate_limit import RateLimitResult

__all__ = [
    "ActorType",
    "ApiKey",
    "ApiKeyPublic",
    "AuditDetails",
    "AuditEvent",
    "LockRecord",
    "MFACredential",
    "MFAState",
    "RateLimitResult",
    "RecoveryCode",
]
