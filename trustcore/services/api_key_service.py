"""API key issuance, validation and lifecycle."""

import asyncio
import re
import time
import uuid
from datetime import UTC, datetime, timedelta
from typing import Callable, Iterable

from trustcore.auth.credentials import (
    generate_api_key,
    generate_api_secret,
    hash_credential_async,
    lookup_prefix,
    verify_credential_async,
)
from trustcore.config import settings
from trustcore.exceptions import (
    GENERIC_AUTH_MESSAGE,
    LimitExceededError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from trustcore.logging.config import get_logger
from trustcore.models.api_key import (
    ALL_ACCESS_SCOPE,
    ApiKey,
    ApiKeyCreateResult,
    ApiKeyMetadata,
    ApiKeyPublic,
    ApiKeyStats,
    ApiKeyValidation,
    Permission,
)
from trustcore.services.lock_service import LockManager
from trustcore.store.memory import MemoryStore
from trustcore.utils.network import ip_in_whitelist, validate_whitelist

logger = get_logger(__name__)

KEY_RATE_LIMIT_SCOPE = "api_key"
KEY_RATE_LIMIT_WINDOW_MS = 60_000
MAX_NAME_LENGTH = 100
_KEY_BODY = re.compile(r"^[0-9a-f]{64}$")
_VALID_SCOPES = frozenset(p.value for p in Permission)
_ENVIRONMENTS = ("production", "sandbox", "development")


def create_lock_key(user_id: str) -> str:
    """Lock guarding the per-user key cap."""
    return f"api_keys:user:{user_id}"


def _validate_permissions(permissions: Iterable[str]) -> list[str]:
    scopes = list(dict.fromkeys(permissions or []))
    if not scopes:
        raise ValidationError("At least one permission is required", field="permissions")
    unknown = [s for s in scopes if s not in _VALID_SCOPES]
    if unknown:
        raise ValidationError(
            f"Unknown permission scope(s): {', '.join(unknown)}", field="permissions"
        )
    return scopes


def _validate_name(name: str) -> str:
    name = (name or "").strip()
    if not name or len(name) > MAX_NAME_LENGTH:
        raise ValidationError(
            f"Key name must be 1-{MAX_NAME_LENGTH} characters", field="name"
        )
    return name


def _validate_positive(value: int | None, field: str) -> None:
    if value is not None and value <= 0:
        raise ValidationError(f"{field} must be positive", field=field)


class ApiKeyManager:
    """
    API key lifecycle: create, validate, rotate, revoke.

    Plaintext keys and secrets exist only in the create and rotate
    responses; the repository stores bcrypt hashes. Validation failures all
    look the same to the caller and are audited with their real reason.
    """

    def __init__(
        self,
        repository,
        rate_limiter,
        audit_log=None,
        clock: Callable[[], float] = time.time,
        *,
        key_prefix: str | None = None,
        bcrypt_rounds: int | None = None,
        max_keys_per_user: int | None = None,
        default_expiry_days: int | None = None,
        default_rate_limit_per_minute: int | None = None,
        lock_manager: LockManager | None = None,
    ) -> None:
        """
        Initialize ApiKeyManager.

        Args:
            repository: ApiKeyRepository or InMemoryApiKeyRepository
            rate_limiter: RateLimiter for the per-key budget
            audit_log: Optional AuditLog for security events
            clock: Returns the current time as epoch seconds
            key_prefix: Literal prefix of issued keys
            bcrypt_rounds: bcrypt cost factor
            max_keys_per_user: Per-user key cap
            default_expiry_days: Lifetime when create_key gets none
            default_rate_limit_per_minute: Budget when create_key gets none
            lock_manager: Serializes key creation per user; pass one over the
                durable store when several instances share the repository.
                Defaults to a process-local lock store.
        """
        self.repository = repository
        self.rate_limiter = rate_limiter
        self.audit_log = audit_log
        self._clock = clock
        self.key_prefix = key_prefix if key_prefix is not None else settings.api_key_prefix
        self.bcrypt_rounds = bcrypt_rounds or settings.api_key_bcrypt_rounds
        self.max_keys_per_user = max_keys_per_user or settings.max_keys_per_user
        self.default_expiry_days = default_expiry_days or settings.api_key_default_expiry_days
        self.default_rate_limit_per_minute = (
            default_rate_limit_per_minute or settings.default_rate_limit_per_minute
        )
        self.lock_manager = lock_manager or LockManager(MemoryStore(clock=clock))

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), UTC)

    async def _audit(self, action: str, **details) -> None:
        if self.audit_log is not None:
            await self.audit_log.try_record_action(action, resource="api_key", **details)

    async def _reject(
        self,
        reason: str,
        client_ip: str,
        key: ApiKey | None = None,
        error: str = GENERIC_AUTH_MESSAGE,
        retry_after: int | None = None,
    ) -> ApiKeyValidation:
        logger.info(
            "API key rejected",
            extra={
                "context": {
                    "reason": reason,
                    "client_ip": client_ip,
                    "key_id": key.key_id if key else None,
                }
            },
        )
        await self._audit(
            "unauthorized_access",
            user_id=key.user_id if key else None,
            resource_id=key.key_id if key else None,
            api_key_id=key.key_id if key else None,
            client_ip=client_ip,
            result="failure",
            error_message=reason,
        )
        return ApiKeyValidation(valid=False, error=error, retry_after=retry_after)

    async def _owned_key(self, key_id: str, user_id: str) -> ApiKey:
        key = await self.repository.get_by_id(key_id)
        if key is None:
            raise NotFoundError("API key not found", resource_id=key_id)
        if key.user_id != user_id:
            logger.warning(
                "API key ownership mismatch",
                extra={"context": {"key_id": key_id, "user_id": user_id}},
            )
            raise UnauthorizedError("Not authorized to manage this API key")
        return key

    def _is_well_formed(self, api_key: str) -> bool:
        if not isinstance(api_key, str) or not api_key.startswith(self.key_prefix):
            return False
        return bool(_KEY_BODY.match(api_key[len(self.key_prefix) :]))

    async def create_key(
        self,
        user_id: str,
        *,
        name: str,
        permissions: Iterable[str],
        ip_whitelist: Iterable[str] | None = None,
        expiry_days: int | None = None,
        rate_limit_per_minute: int | None = None,
        description: str | None = None,
        environment: str = "production",
    ) -> ApiKeyCreateResult:
        """
        Issue a new key/secret pair.

        Args:
            user_id: Owning user
            name: Human-readable label
            permissions: Scopes to grant
            ip_whitelist: Exact IPs or CIDR blocks; empty means unrestricted
            expiry_days: Lifetime in days
            rate_limit_per_minute: Per-key request budget
            description: Optional note
            environment: "production", "sandbox" or "development"

        Returns:
            The public record plus the plaintext key and secret, shown once

        Raises:
            ValidationError: For a bad name, scope, whitelist entry or number
            LimitExceededError: If the user already owns the maximum
            ConflictError: If another create for the same user is in flight
        """
        if not user_id:
            raise ValidationError("user_id is required", field="user_id")
        name = _validate_name(name)
        scopes = _validate_permissions(permissions)
        whitelist = validate_whitelist(ip_whitelist)
        _validate_positive(expiry_days, "expiry_days")
        _validate_positive(rate_limit_per_minute, "rate_limit_per_minute")
        if environment not in _ENVIRONMENTS:
            raise ValidationError(
                f"environment must be one of {', '.join(_ENVIRONMENTS)}", field="environment"
            )

        # Count, hash and write under one lock so the cap holds across instances
        async with self.lock_manager.hold(create_lock_key(user_id), uuid.uuid4().hex):
            existing = await self.repository.count_by_user(user_id)
            if existing >= self.max_keys_per_user:
                raise LimitExceededError(
                    f"Maximum of {self.max_keys_per_user} API keys per user",
                    limit=self.max_keys_per_user,
                )

            api_key = generate_api_key(self.key_prefix)
            api_secret = generate_api_secret()
            key_hash, secret_hash = await asyncio.gather(
                hash_credential_async(api_key, self.bcrypt_rounds),
                hash_credential_async(api_secret, self.bcrypt_rounds),
            )

            now = self._now()
            record = ApiKey(
                key_id=str(uuid.uuid4()),
                user_id=user_id,
                name=name,
                key_prefix=lookup_prefix(api_key, self.key_prefix),
                key_hash=key_hash,
                secret_hash=secret_hash,
                permissions=scopes,
                ip_whitelist=whitelist,
                created_at=now,
                expires_at=now + timedelta(days=expiry_days or self.default_expiry_days),
                rate_limit_per_minute=rate_limit_per_minute or self.default_rate_limit_per_minute,
                metadata=ApiKeyMetadata(
                    description=description, environment=environment, created_by=user_id
                ),
            )
            await self.repository.create(record)

        logger.info(
            "API key created",
            extra={
                "context": {
                    "key_id": record.key_id,
                    "user_id": user_id,
                    "permissions": scopes,
                }
            },
        )
        await self._audit(
            "api_key_created",
            user_id=user_id,
            resource_id=record.key_id,
            api_key_id=record.key_id,
            metadata={"name": name, "permissions": ",".join(scopes)},
        )
        return ApiKeyCreateResult(key=record.to_public(), api_key=api_key, api_secret=api_secret)

    async def validate_key(
        self, api_key: str, api_secret: str, client_ip: str
    ) -> ApiKeyValidation:
        """
        Authenticate a key/secret pair for one request.

        Checks run in order: format, prefix lookup, active and unexpired,
        key hash, secret hash, IP whitelist, per-key rate limit. A passing
        request updates usage counters.

        Args:
            api_key: Plaintext key
            api_secret: Plaintext secret
            client_ip: Caller address

        Returns:
            valid=True with the public record, or valid=False with an error
        """
        if not self._is_well_formed(api_key) or not api_secret:
            return await self._reject("malformed_credentials", client_ip)

        candidates = await self.repository.get_by_prefix(lookup_prefix(api_key, self.key_prefix))
        if not candidates:
            return await self._reject("key_not_found", client_ip)

        now = self._now()
        live = [k for k in candidates if k.is_active and k.expires_at > now]
        if not live:
            reason = "key_revoked" if not any(k.is_active for k in candidates) else "key_expired"
            return await self._reject(reason, client_ip, key=candidates[0])

        match: ApiKey | None = None
        for candidate in live:
            if await verify_credential_async(api_key, candidate.key_hash):
                match = candidate
                break
        if match is None:
            return await self._reject("key_mismatch", client_ip)

        if not await verify_credential_async(api_secret, match.secret_hash):
            return await self._reject("secret_mismatch", client_ip, key=match)

        if match.ip_whitelist and not ip_in_whitelist(client_ip, match.ip_whitelist):
            return await self._reject(
                "ip_not_whitelisted",
                client_ip,
                key=match,
                error="Access denied from this IP address",
            )

        limit = await self.rate_limiter.check_and_increment(
            KEY_RATE_LIMIT_SCOPE,
            match.key_id,
            KEY_RATE_LIMIT_WINDOW_MS,
            match.rate_limit_per_minute,
        )
        if not limit.allowed:
            return await self._reject(
                "key_rate_limited",
                client_ip,
                key=match,
                error="Rate limit exceeded",
                retry_after=limit.retry_after,
            )

        await self.repository.record_usage(match.key_id, client_ip, now)
        match.usage_count += 1
        match.last_used_at = now
        match.last_used_ip = client_ip
        return ApiKeyValidation(valid=True, key=match.to_public())

    @staticmethod
    def has_permission(key: ApiKey | ApiKeyPublic, scope: str) -> bool:
        return ALL_ACCESS_SCOPE in key.permissions or scope in key.permissions

    async def rotate_key(self, key_id: str, user_id: str) -> str:
        """
        Replace a key's secret. The old secret stops working immediately.

        Args:
            key_id: Key to rotate
            user_id: Caller, who must own the key

        Returns:
            The new plaintext secret

        Raises:
            NotFoundError: If the key does not exist
            UnauthorizedError: If the caller does not own the key
            ValidationError: If the key is revoked
        """
        key = await self._owned_key(key_id, user_id)
        if not key.is_active:
            raise ValidationError("Cannot rotate a revoked API key")

        new_secret = generate_api_secret()
        key.secret_hash = await hash_credential_async(new_secret, self.bcrypt_rounds)
        await self.repository.save(key)

        logger.info("API key rotated", extra={"context": {"key_id": key_id, "user_id": user_id}})
        await self._audit(
            "api_key_rotated", user_id=user_id, resource_id=key_id, api_key_id=key_id
        )
        return new_secret

    async def revoke_key(self, key_id: str, user_id: str) -> None:
        """
        Permanently deactivate a key.

        Raises:
            NotFoundError: If the key does not exist
            UnauthorizedError: If the caller does not own the key
        """
        key = await self._owned_key(key_id, user_id)
        if not key.is_active:
            return
        key.is_active = False
        await self.repository.save(key)

        logger.info("API key revoked", extra={"context": {"key_id": key_id, "user_id": user_id}})
        await self._audit(
            "api_key_revoked", user_id=user_id, resource_id=key_id, api_key_id=key_id
        )

    async def list_keys(self, user_id: str) -> list[ApiKeyPublic]:
        return [k.to_public() for k in await self.repository.list_by_user(user_id)]

    async def update_key(
        self,
        key_id: str,
        user_id: str,
        *,
        name: str | None = None,
        permissions: Iterable[str] | None = None,
        ip_whitelist: Iterable[str] | None = None,
        rate_limit_per_minute: int | None = None,
    ) -> ApiKeyPublic:
        """
        Change a key's name, scopes, whitelist or budget.

        Revoked keys cannot be updated, so this never re-activates a key.
        """
        key = await self._owned_key(key_id, user_id)
        if not key.is_active:
            raise ValidationError("Cannot update a revoked API key")

        if name is not None:
            key.name = _validate_name(name)
        if permissions is not None:
            key.permissions = _validate_permissions(permissions)
        if ip_whitelist is not None:
            key.ip_whitelist = validate_whitelist(ip_whitelist)
        if rate_limit_per_minute is not None:
            _validate_positive(rate_limit_per_minute, "rate_limit_per_minute")
            key.rate_limit_per_minute = rate_limit_per_minute

        await self.repository.save(key)
        await self._audit(
            "api_key_updated", user_id=user_id, resource_id=key_id, api_key_id=key_id
        )
        return key.to_public()

    async def delete_key(self, key_id: str, user_id: str) -> None:
        await self._owned_key(key_id, user_id)
        await self.repository.delete(key_id)
        logger.info("API key deleted", extra={"context": {"key_id": key_id, "user_id": user_id}})
        await self._audit(
            "api_key_deleted", user_id=user_id, resource_id=key_id, api_key_id=key_id
        )

    async def get_key_stats(self, user_id: str) -> ApiKeyStats:
        keys = await self.repository.list_by_user(user_id)
        used = [k.last_used_at for k in keys if k.last_used_at]
        return ApiKeyStats(
            total_keys=len(keys),
            active_keys=sum(1 for k in keys if k.is_active),
            total_usage=sum(k.usage_count for k in keys),
            last_used_at=max(used) if used else None,
        )
