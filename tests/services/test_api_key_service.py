"""Tests for ApiKeyManager issuance, validation and lifecycle."""

import asyncio
import base64
import re
from unittest.mock import AsyncMock

import pytest

from trustcore.exceptions import (
    GENERIC_AUTH_MESSAGE,
    ConflictError,
    LimitExceededError,
    NotFoundError,
    StoreUnavailableError,
    UnauthorizedError,
    ValidationError,
)
from trustcore.models.api_key import PERMISSION_PRESETS, ApiKeyPublic
from trustcore.models.audit import AuditSeverity
from trustcore.repositories.api_key_repository import InMemoryApiKeyRepository
from trustcore.repositories.audit_repository import InMemoryAuditRepository
from trustcore.services.api_key_service import ApiKeyManager, create_lock_key
from trustcore.services.audit_service import AuditLog
from trustcore.services.lock_service import LockManager
from trustcore.services.rate_limiter import RateLimiter
from trustcore.store.memory import MemoryStore

CLIENT_IP = "203.0.113.7"


@pytest.fixture
def repository() -> InMemoryApiKeyRepository:
    return InMemoryApiKeyRepository()


@pytest.fixture
def audit_log(clock) -> AuditLog:
    return AuditLog(InMemoryAuditRepository(), clock=clock)


@pytest.fixture
def manager(repository, audit_log, clock) -> ApiKeyManager:
    return ApiKeyManager(
        repository,
        RateLimiter(MemoryStore(clock=clock), clock=clock),
        audit_log,
        clock=clock,
        key_prefix="tck_",
        bcrypt_rounds=4,
        max_keys_per_user=3,
        default_expiry_days=30,
        default_rate_limit_per_minute=60,
    )


async def _create(manager: ApiKeyManager, **overrides):
    params = {"name": "Trading bot", "permissions": PERMISSION_PRESETS["trading"]}
    params.update(overrides)
    return await manager.create_key("user-1", **params)


async def _rejection_reasons(audit_log: AuditLog) -> list[str]:
    page = await audit_log.search(action="unauthorized_access")
    return [e.details.error_message for e in page.events]


class TestCreateKey:
    @pytest.mark.asyncio
    async def test_key_and_secret_format(self, manager: ApiKeyManager) -> None:
        result = await _create(manager)

        assert re.fullmatch(r"tck_[0-9a-f]{64}", result.api_key)
        padded = result.api_secret + "=" * (-len(result.api_secret) % 4)
        assert len(base64.urlsafe_b64decode(padded)) == 64
        assert result.key.key_prefix == result.api_key[:12]

    @pytest.mark.asyncio
    async def test_stored_record_holds_hashes_only(
        self, manager: ApiKeyManager, repository: InMemoryApiKeyRepository
    ) -> None:
        result = await _create(manager)
        stored = await repository.get_by_id(result.key.key_id)

        assert stored.key_hash.startswith("$2b$04$")
        assert stored.secret_hash.startswith("$2b$04$")
        assert result.api_key not in stored.model_dump_json()
        assert result.api_secret not in stored.model_dump_json()
        assert "key_hash" not in result.key.model_dump()

    @pytest.mark.asyncio
    async def test_defaults_applied(self, manager: ApiKeyManager) -> None:
        result = await _create(manager)

        assert result.key.rate_limit_per_minute == 60
        assert (result.key.expires_at - result.key.created_at).days == 30
        assert result.key.is_active is True
        assert result.key.metadata.environment == "production"

    @pytest.mark.asyncio
    async def test_created_event_audited(self, manager: ApiKeyManager, audit_log: AuditLog) -> None:
        result = await _create(manager)
        page = await audit_log.search(action="api_key_created")

        assert page.total == 1
        assert page.events[0].details.resource_id == result.key.key_id

    @pytest.mark.asyncio
    async def test_per_user_cap(self, manager: ApiKeyManager) -> None:
        for i in range(3):
            await _create(manager, name=f"key {i}")

        with pytest.raises(LimitExceededError):
            await _create(manager, name="one too many")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"name": ""},
            {"name": "x" * 101},
            {"permissions": []},
            {"permissions": ["read:everything"]},
            {"ip_whitelist": ["10.0.0.0/33"]},
            {"ip_whitelist": ["not-an-ip"]},
            {"expiry_days": 0},
            {"rate_limit_per_minute": -1},
            {"environment": "staging"},
        ],
    )
    async def test_invalid_input(self, manager: ApiKeyManager, overrides: dict) -> None:
        with pytest.raises(ValidationError):
            await _create(manager, **overrides)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("environment", ["production", "sandbox", "development"])
    async def test_environments(self, manager: ApiKeyManager, environment: str) -> None:
        result = await _create(manager, environment=environment)

        assert result.key.metadata.environment == environment


class TestCreateKeyConcurrency:
    """The per-user cap holds for instances sharing a repository and lock store."""

    @staticmethod
    def _instance(repository, lock_manager: LockManager, clock) -> ApiKeyManager:
        return ApiKeyManager(
            repository,
            RateLimiter(MemoryStore(clock=clock), clock=clock),
            clock=clock,
            bcrypt_rounds=4,
            max_keys_per_user=10,
            lock_manager=lock_manager,
        )

    @pytest.mark.asyncio
    async def test_concurrent_creates_across_instances(
        self, repository: InMemoryApiKeyRepository, clock
    ) -> None:
        lock_manager = LockManager(MemoryStore(clock=clock))
        first = self._instance(repository, lock_manager, clock)
        second = self._instance(repository, lock_manager, clock)

        results = await asyncio.gather(
            *(_create(m, name=f"key {i}") for i, m in enumerate([first, second] * 10)),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert all(isinstance(f, (ConflictError, LimitExceededError)) for f in failures)
        assert await repository.count_by_user("user-1") == len(results) - len(failures)
        assert await repository.count_by_user("user-1") <= 10

    @pytest.mark.asyncio
    async def test_cap_enforced_through_retries(
        self, repository: InMemoryApiKeyRepository, clock
    ) -> None:
        lock_manager = LockManager(MemoryStore(clock=clock))
        instances = [self._instance(repository, lock_manager, clock) for _ in range(2)]

        for i in range(12):
            try:
                await _create(instances[i % 2], name=f"key {i}")
            except LimitExceededError:
                pass

        assert await repository.count_by_user("user-1") == 10

    @pytest.mark.asyncio
    async def test_create_rejected_while_locked(self, manager: ApiKeyManager) -> None:
        assert await manager.lock_manager.acquire(create_lock_key("user-1"), "other-instance")

        with pytest.raises(ConflictError):
            await _create(manager)

    @pytest.mark.asyncio
    async def test_lock_released_after_create(self, manager: ApiKeyManager) -> None:
        for i in range(3):
            await _create(manager, name=f"key {i}")
        with pytest.raises(LimitExceededError):
            await _create(manager, name="one too many")

        assert await manager.lock_manager.get_holder(create_lock_key("user-1")) is None
        assert len(manager.lock_manager.store) == 0


class TestValidateKey:
    @pytest.mark.asyncio
    async def test_valid_credentials(self, manager: ApiKeyManager) -> None:
        created = await _create(manager)

        result = await manager.validate_key(created.api_key, created.api_secret, CLIENT_IP)

        assert result.valid is True
        assert result.key.key_id == created.key.key_id
        assert result.key.usage_count == 1
        assert result.key.last_used_ip == CLIENT_IP

    @pytest.mark.asyncio
    async def test_wrong_secret(self, manager: ApiKeyManager, audit_log: AuditLog) -> None:
        created = await _create(manager)
        other = await _create(manager, name="other")

        result = await manager.validate_key(created.api_key, other.api_secret, CLIENT_IP)

        assert result.valid is False
        assert result.error == GENERIC_AUTH_MESSAGE
        assert await _rejection_reasons(audit_log) == ["secret_mismatch"]

    @pytest.mark.asyncio
    async def test_unknown_key(self, manager: ApiKeyManager, audit_log: AuditLog) -> None:
        result = await manager.validate_key("tck_" + "0" * 64, "secret", CLIENT_IP)

        assert result.valid is False
        assert result.error == GENERIC_AUTH_MESSAGE
        assert await _rejection_reasons(audit_log) == ["key_not_found"]

    @pytest.mark.asyncio
    async def test_key_mismatch_on_shared_prefix(
        self, manager: ApiKeyManager, audit_log: AuditLog
    ) -> None:
        created = await _create(manager)
        forged = created.api_key[:12] + "f" * 52

        result = await manager.validate_key(forged, created.api_secret, CLIENT_IP)

        assert result.valid is False
        assert await _rejection_reasons(audit_log) == ["key_mismatch"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("api_key", ["", "tck_short", "xyz_" + "a" * 64, "tck_" + "G" * 64])
    async def test_malformed_key(
        self, manager: ApiKeyManager, audit_log: AuditLog, api_key: str
    ) -> None:
        result = await manager.validate_key(api_key, "secret", CLIENT_IP)

        assert result.valid is False
        assert await _rejection_reasons(audit_log) == ["malformed_credentials"]

    @pytest.mark.asyncio
    async def test_rejections_are_critical_audit_events(
        self, manager: ApiKeyManager, audit_log: AuditLog
    ) -> None:
        await manager.validate_key("tck_" + "0" * 64, "secret", CLIENT_IP)
        page = await audit_log.search(action="unauthorized_access")

        assert page.events[0].details.severity == AuditSeverity.CRITICAL
        assert page.events[0].details.client_ip == CLIENT_IP

    @pytest.mark.asyncio
    async def test_revoked_key_never_validates(
        self, manager: ApiKeyManager, audit_log: AuditLog
    ) -> None:
        created = await _create(manager)
        await manager.revoke_key(created.key.key_id, "user-1")

        result = await manager.validate_key(created.api_key, created.api_secret, CLIENT_IP)

        assert result.valid is False
        assert await _rejection_reasons(audit_log) == ["key_revoked"]

    @pytest.mark.asyncio
    async def test_expired_key(self, manager: ApiKeyManager, audit_log: AuditLog, clock) -> None:
        created = await _create(manager, expiry_days=1)
        clock.advance(86_400)

        result = await manager.validate_key(created.api_key, created.api_secret, CLIENT_IP)

        assert result.valid is False
        assert await _rejection_reasons(audit_log) == ["key_expired"]

    @pytest.mark.asyncio
    async def test_cidr_whitelist(self, manager: ApiKeyManager, audit_log: AuditLog) -> None:
        created = await _create(manager, ip_whitelist=["10.0.0.0/24"])

        inside = await manager.validate_key(created.api_key, created.api_secret, "10.0.0.5")
        outside = await manager.validate_key(created.api_key, created.api_secret, "10.0.1.5")

        assert inside.valid is True
        assert outside.valid is False
        assert outside.error == "Access denied from this IP address"
        assert await _rejection_reasons(audit_log) == ["ip_not_whitelisted"]

    @pytest.mark.asyncio
    async def test_exact_ip_whitelist(self, manager: ApiKeyManager) -> None:
        created = await _create(manager, ip_whitelist=["192.0.2.10"])

        assert (await manager.validate_key(created.api_key, created.api_secret, "192.0.2.10")).valid
        assert not (
            await manager.validate_key(created.api_key, created.api_secret, "192.0.2.11")
        ).valid

    @pytest.mark.asyncio
    async def test_per_key_rate_limit(self, manager: ApiKeyManager, clock) -> None:
        created = await _create(manager, rate_limit_per_minute=2)

        for _ in range(2):
            assert (
                await manager.validate_key(created.api_key, created.api_secret, CLIENT_IP)
            ).valid
        limited = await manager.validate_key(created.api_key, created.api_secret, CLIENT_IP)

        assert limited.valid is False
        assert limited.error == "Rate limit exceeded"
        assert limited.retry_after == 60

        clock.advance(60)
        assert (await manager.validate_key(created.api_key, created.api_secret, CLIENT_IP)).valid

    @pytest.mark.asyncio
    async def test_rate_limiter_outage_fails_open(self, manager: ApiKeyManager) -> None:
        created = await _create(manager)
        manager.rate_limiter.store.increment = AsyncMock(
            side_effect=StoreUnavailableError(store="test")
        )

        result = await manager.validate_key(created.api_key, created.api_secret, CLIENT_IP)

        assert result.valid is True


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_rotate_invalidates_old_secret(self, manager: ApiKeyManager) -> None:
        created = await _create(manager)

        new_secret = await manager.rotate_key(created.key.key_id, "user-1")

        assert new_secret != created.api_secret
        old = await manager.validate_key(created.api_key, created.api_secret, CLIENT_IP)
        new = await manager.validate_key(created.api_key, new_secret, CLIENT_IP)
        assert old.valid is False
        assert new.valid is True

    @pytest.mark.asyncio
    async def test_rotate_revoked_key(self, manager: ApiKeyManager) -> None:
        created = await _create(manager)
        await manager.revoke_key(created.key.key_id, "user-1")

        with pytest.raises(ValidationError):
            await manager.rotate_key(created.key.key_id, "user-1")

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, manager: ApiKeyManager, audit_log: AuditLog) -> None:
        created = await _create(manager)

        await manager.revoke_key(created.key.key_id, "user-1")
        await manager.revoke_key(created.key.key_id, "user-1")

        page = await audit_log.search(action="api_key_revoked")
        assert page.total == 1

    @pytest.mark.asyncio
    async def test_ownership_enforced(self, manager: ApiKeyManager) -> None:
        created = await _create(manager)

        with pytest.raises(UnauthorizedError):
            await manager.revoke_key(created.key.key_id, "user-2")
        with pytest.raises(UnauthorizedError):
            await manager.rotate_key(created.key.key_id, "user-2")

    @pytest.mark.asyncio
    async def test_unknown_key_id(self, manager: ApiKeyManager) -> None:
        with pytest.raises(NotFoundError):
            await manager.revoke_key("missing", "user-1")

    @pytest.mark.asyncio
    async def test_update_key(self, manager: ApiKeyManager) -> None:
        created = await _create(manager)

        updated = await manager.update_key(
            created.key.key_id,
            "user-1",
            name="Renamed",
            permissions=["read:market"],
            ip_whitelist=["10.1.0.0/16"],
            rate_limit_per_minute=10,
        )

        assert updated.name == "Renamed"
        assert updated.permissions == ["read:market"]
        assert updated.ip_whitelist == ["10.1.0.0/16"]
        assert updated.rate_limit_per_minute == 10

    @pytest.mark.asyncio
    async def test_update_never_reactivates(self, manager: ApiKeyManager) -> None:
        created = await _create(manager)
        await manager.revoke_key(created.key.key_id, "user-1")

        with pytest.raises(ValidationError):
            await manager.update_key(created.key.key_id, "user-1", name="Back")

    @pytest.mark.asyncio
    async def test_list_delete_and_stats(self, manager: ApiKeyManager) -> None:
        first = await _create(manager, name="first")
        second = await _create(manager, name="second")
        await manager.validate_key(first.api_key, first.api_secret, CLIENT_IP)
        await manager.revoke_key(second.key.key_id, "user-1")

        keys = await manager.list_keys("user-1")
        stats = await manager.get_key_stats("user-1")

        assert [k.name for k in keys] == ["first", "second"]
        assert stats.total_keys == 2
        assert stats.active_keys == 1
        assert stats.total_usage == 1
        assert stats.last_used_at is not None

        await manager.delete_key(second.key.key_id, "user-1")
        assert len(await manager.list_keys("user-1")) == 1

    def test_has_permission(self) -> None:
        key = ApiKeyPublic.model_construct(permissions=["read:orders"])
        admin = ApiKeyPublic.model_construct(permissions=["admin:account"])

        assert ApiKeyManager.has_permission(key, "read:orders") is True
        assert ApiKeyManager.has_permission(key, "write:orders") is False
        assert ApiKeyManager.has_permission(admin, "write:transfer") is True
