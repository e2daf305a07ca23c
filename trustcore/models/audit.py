"""Audit event models."""

from datetime import UTC, datetime
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ActorType(str, Enum):
    """Who performed an audited action."""

    USER = "USER"
    AI = "AI"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"
    BOT = "BOT"


class AuditCategory(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    ACCOUNT = "account"
    TRADING = "trading"
    TRANSFER = "transfer"
    SECURITY = "security"
    ADMIN = "admin"
    SYSTEM = "system"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


# Scalar values only, so digests are stable across serializers
MetadataValue = Union[str, int, bool, None]


class AuditDetails(BaseModel):
    """
    Structured payload of an audit event.

    The schema is closed: unknown fields are rejected, and metadata values
    are limited to scalars.
    """

    model_config = ConfigDict(extra="forbid")

    user_id: Optional[str] = None
    category: AuditCategory = AuditCategory.SYSTEM
    severity: AuditSeverity = AuditSeverity.INFO
    result: AuditResult = AuditResult.SUCCESS
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    client_ip: Optional[str] = None
    api_key_id: Optional[str] = None
    correlation_id: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, MetadataValue] = Field(default_factory=dict)


class AuditEvent(BaseModel):
    """
    Append-only audit record.

    Attributes:
        id: Unique event identifier
        type: Event type (the category of the action)
        action: Action name, e.g. "mfa_enabled"
        actor: Kind of principal that acted
        details: Structured payload
        timestamp: UTC time with millisecond precision
        digest: SHA-256 hex over the other fields
    """

    id: str
    type: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    actor: ActorType
    details: AuditDetails
    timestamp: datetime
    digest: str


class AuditActionTemplate(BaseModel):
    """Predefined action name with its category and severity."""

    action: str
    category: AuditCategory
    severity: AuditSeverity


def _template(action: str, category: AuditCategory, severity: AuditSeverity) -> AuditActionTemplate:
    return AuditActionTemplate(action=action, category=category, severity=severity)


_AUTH = AuditCategory.AUTHENTICATION
_SEC = AuditCategory.SECURITY
_INFO = AuditSeverity.INFO
_WARN = AuditSeverity.WARNING
_CRIT = AuditSeverity.CRITICAL

AUDIT_ACTIONS: Dict[str, AuditActionTemplate] = {
    # Authentication
    "login_success": _template("login_success", _AUTH, _INFO),
    "login_failed": _template("login_failed", _AUTH, _WARN),
    "logout": _template("logout", _AUTH, _INFO),
    "mfa_setup": _template("mfa_setup", _SEC, _INFO),
    "mfa_enabled": _template("mfa_enabled", _SEC, _INFO),
    "mfa_disabled": _template("mfa_disabled", _SEC, _WARN),
    "mfa_failed": _template("mfa_failed", _SEC, _WARN),
    "mfa_recovery_used": _template("mfa_recovery_used", _SEC, _WARN),
    "mfa_recovery_regenerated": _template("mfa_recovery_regenerated", _SEC, _INFO),
    # Account
    "password_changed": _template("password_changed", _SEC, _INFO),
    "password_reset": _template("password_reset", _SEC, _WARN),
    "email_changed": _template("email_changed", AuditCategory.ACCOUNT, _WARN),
    # Trading
    "order_placed": _template("order_placed", AuditCategory.TRADING, _INFO),
    "order_cancelled": _template("order_cancelled", AuditCategory.TRADING, _INFO),
    "order_rejected": _template("order_rejected", AuditCategory.TRADING, _WARN),
    # Transfers
    "deposit_initiated": _template("deposit_initiated", AuditCategory.TRANSFER, _INFO),
    "withdrawal_requested": _template("withdrawal_requested", AuditCategory.TRANSFER, _WARN),
    "withdrawal_completed": _template("withdrawal_completed", AuditCategory.TRANSFER, _CRIT),
    # Security
    "api_key_created": _template("api_key_created", _SEC, _INFO),
    "api_key_updated": _template("api_key_updated", _SEC, _INFO),
    "api_key_revoked": _template("api_key_revoked", _SEC, _INFO),
    "api_key_rotated": _template("api_key_rotated", _SEC, _INFO),
    "api_key_deleted": _template("api_key_deleted", _SEC, _WARN),
    "rate_limit_exceeded": _template("rate_limit_exceeded", _SEC, _WARN),
    "lock_contention": _template("lock_contention", _SEC, _WARN),
    "suspicious_activity": _template("suspicious_activity", _SEC, _CRIT),
    "unauthorized_access": _template(
        "unauthorized_access", AuditCategory.AUTHORIZATION, _CRIT
    ),
    # Admin
    "admin_login": _template("admin_login", AuditCategory.ADMIN, _WARN),
    "user_suspended": _template("user_suspended", AuditCategory.ADMIN, _CRIT),
}


class AuditSearchFilters(BaseModel):
    """Filters for searching the audit trail."""

    user_id: Optional[str] = None
    category: Optional[AuditCategory] = None
    action: Optional[str] = None
    severity: Optional[AuditSeverity] = None
    result: Optional[AuditResult] = None
    resource: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    @field_validator("start_time", "end_time")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive bounds are read as UTC so they compare with stored timestamps."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class AuditPage(BaseModel):
    events: List[AuditEvent]
    total: int
    limit: int
    offset: int


class IntegrityReport(BaseModel):
    """Outcome of recomputing every stored digest."""

    valid: bool
    invalid_record_ids: List[str] = Field(default_factory=list)
    checked: int = 0


class AuditStatistics(BaseModel):
    total_events: int
    by_category: Dict[str, int]
    by_severity: Dict[str, int]
    by_result: Dict[str, int]
    top_actions: List[Dict[str, Union[str, int]]]
