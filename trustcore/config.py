"""Configuration management using Pydantic Settings."""

import ipaddress
import os

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from trustcore.exceptions import ConfigurationError

# Values that must never be accepted as a session signing secret
_PLACEHOLDER_SECRETS = {
    "changeme",
    "change-me",
    "secret",
    "default",
    "password",
    "your-secret-key",
    "development-secret",
}

MIN_SESSION_SECRET_LENGTH = 32


class RateLimitProfile(BaseModel):
    """Fixed-window limit for one class of operation."""

    window_ms: int = Field(..., gt=0, description="Window length in milliseconds")
    max_requests: int = Field(..., gt=0, description="Requests allowed per window")


DEFAULT_RATE_LIMIT_PROFILES: dict[str, RateLimitProfile] = {
    "general": RateLimitProfile(window_ms=60_000, max_requests=100),
    "auth": RateLimitProfile(window_ms=900_000, max_requests=5),
    "login": RateLimitProfile(window_ms=900_000, max_requests=5),
    "register": RateLimitProfile(window_ms=3_600_000, max_requests=3),
    "password_reset": RateLimitProfile(window_ms=3_600_000, max_requests=3),
    "withdrawal": RateLimitProfile(window_ms=60_000, max_requests=3),
    "trade": RateLimitProfile(window_ms=1_000, max_requests=10),
    "transfer": RateLimitProfile(window_ms=3_600_000, max_requests=5),
    "admin": RateLimitProfile(window_ms=60_000, max_requests=50),
    "sms": RateLimitProfile(window_ms=3_600_000, max_requests=5),
    "public_api": RateLimitProfile(window_ms=60_000, max_requests=60),
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        # Only load .env file in development (not Lambda/production)
        env_file=".env" if os.getenv("AWS_EXECUTION_ENV") is None else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # AWS Configuration
    aws_region: str = "us-east-2"
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    aws_session_token: str | None = None

    @field_validator(
        "aws_access_key_id", "aws_secret_access_key", "aws_session_token", mode="before"
    )
    @classmethod
    def convert_empty_string_to_none(cls, v):
        """Convert empty strings to None so boto3 can use the default credential chain."""
        if v is None:
            return None
        if isinstance(v, str) and v.strip() == "":
            return None
        return v

    # Storage Configuration
    store_backend: str = "dynamodb"  # "dynamodb" or "memory"
    dynamodb_endpoint_url: str | None = None
    dynamodb_table_store: str = "trustcore-keyvalue"
    dynamodb_table_api_keys: str = "trustcore-api-keys"
    dynamodb_table_audit: str = "trustcore-audit"
    fallback_sweep_interval_seconds: float = 60.0

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        """Only the durable DynamoDB backend and the process-local map exist."""
        backend = v.strip().lower()
        if backend not in ("dynamodb", "memory"):
            raise ValueError(f"Unsupported store backend: {v}")
        return backend

    # Application Configuration
    log_level: str = "INFO"
    api_title: str = "Trust Core API"
    api_version: str = "1.0.0"

    # MFA
    mfa_issuer: str = "TIME Trading"
    mfa_recovery_code_count: int = 10

    # API Keys
    api_key_prefix: str = "tck_"
    api_key_bcrypt_rounds: int = 12
    max_keys_per_user: int = 10
    api_key_default_expiry_days: int = 365
    default_rate_limit_per_minute: int = 60

    # Distributed locks
    lock_default_ttl_ms: int = 5_000

    # Rate Limiting
    rate_limit_profiles: dict[str, RateLimitProfile] = Field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMIT_PROFILES)
    )

    # Redirect protection (comma-separated host names)
    allowed_redirect_hosts: str = "localhost,127.0.0.1"

    # Reverse proxies whose X-Forwarded-For header is honored (comma-separated IPs or CIDRs)
    trusted_proxies: str = ""

    @field_validator("trusted_proxies")
    @classmethod
    def validate_trusted_proxies(cls, v: str) -> str:
        """Every entry must parse as an address or network."""
        for entry in v.split(","):
            if entry.strip():
                ipaddress.ip_network(entry.strip(), strict=False)
        return v

    # Signing secret for session components outside this service
    session_secret: SecretStr | None = None

    @field_validator("session_secret", mode="before")
    @classmethod
    def reject_placeholder_secret(cls, v):
        """Refuse well-known placeholder values and short secrets."""
        if v is None:
            return None
        raw = v.get_secret_value() if isinstance(v, SecretStr) else str(v)
        if raw.strip() == "":
            return None
        if raw.strip().lower() in _PLACEHOLDER_SECRETS:
            raise ValueError("session_secret must not be a placeholder value")
        if len(raw) < MIN_SESSION_SECRET_LENGTH:
            raise ValueError(
                f"session_secret must be at least {MIN_SESSION_SECRET_LENGTH} characters"
            )
        return raw

    @property
    def redirect_hosts(self) -> frozenset[str]:
        """Host names accepted as absolute redirect targets."""
        return frozenset(
            host.strip().lower()
            for host in self.allowed_redirect_hosts.split(",")
            if host.strip()
        )

    @property
    def trusted_proxy_networks(
        self,
    ) -> tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...]:
        """Trusted proxy networks; bare addresses become single-host networks."""
        return tuple(
            ipaddress.ip_network(entry.strip(), strict=False)
            for entry in self.trusted_proxies.split(",")
            if entry.strip()
        )

    def require_session_secret(self) -> SecretStr:
        """
        Return the session secret or fail fast.

        Raises:
            ConfigurationError: If SESSION_SECRET is not configured
        """
        if self.session_secret is None:
            raise ConfigurationError(
                "SESSION_SECRET must be set to a non-default value",
                setting="session_secret",
            )
        return self.session_secret


# Global settings instance
settings = Settings()
