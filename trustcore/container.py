"""Explicit construction of the trust core's services."""

import time
from dataclasses import dataclass
from typing import Callable

from trustcore.config import Settings, settings as default_settings
from trustcore.logging.config import get_logger
from trustcore.repositories.api_key_repository import ApiKeyRepository, InMemoryApiKeyRepository
from trustcore.repositories.audit_repository import AuditRepository, InMemoryAuditRepository
from trustcore.services.api_key_service import ApiKeyManager
from trustcore.services.audit_service import AuditLog
from trustcore.services.lock_service import LockManager
from trustcore.services.mfa_service import MFAService
from trustcore.services.rate_limiter import RateLimiter
from trustcore.store.base import KeyedStore
from trustcore.store.dynamodb import DynamoDBStore
from trustcore.store.fallback import FallbackStore
from trustcore.store.memory import ExpirySweeper, MemoryStore

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """
    Every service, built once per process and passed to callers.

    `durable_store` backs the lock manager directly; the rate limiter sees
    it through a FallbackStore over `fallback_store`.
    """

    settings: Settings
    durable_store: KeyedStore
    fallback_store: MemoryStore
    limiter_store: KeyedStore
    sweeper: ExpirySweeper
    audit_log: AuditLog
    rate_limiter: RateLimiter
    lock_manager: LockManager
    api_keys: ApiKeyManager
    mfa: MFAService

    async def start(self) -> None:
        self.sweeper.start()
        logger.info(
            "Services started",
            extra={"context": {"store": self.durable_store.name}},
        )

    async def stop(self) -> None:
        await self.sweeper.stop()
        logger.info("Services stopped")


def build_services(
    config: Settings | None = None,
    *,
    clock: Callable[[], float] = time.time,
    durable_store: KeyedStore | None = None,
    api_key_repository=None,
    audit_repository=None,
) -> ServiceContainer:
    """
    Build the service graph.

    Args:
        config: Settings to build from (defaults to the global settings)
        clock: Returns the current time as epoch seconds
        durable_store: Override for the shared keyed store
        api_key_repository: Override for API key storage
        audit_repository: Override for audit storage

    Returns:
        Unstarted container; call `start()` to run background tasks
    """
    config = config or default_settings

    if config.store_backend == "memory":
        durable_store = durable_store or MemoryStore(clock=clock)
        api_key_repository = api_key_repository or InMemoryApiKeyRepository()
        audit_repository = audit_repository or InMemoryAuditRepository()
    else:
        durable_store = durable_store or DynamoDBStore(config.dynamodb_table_store, clock=clock)
        api_key_repository = api_key_repository or ApiKeyRepository(
            config.dynamodb_table_api_keys
        )
        audit_repository = audit_repository or AuditRepository(config.dynamodb_table_audit)

    fallback_store = MemoryStore(clock=clock)
    limiter_store = FallbackStore(durable_store, fallback_store)

    audit_log = AuditLog(audit_repository, clock=clock)
    rate_limiter = RateLimiter(limiter_store, profiles=config.rate_limit_profiles, clock=clock)
    lock_manager = LockManager(durable_store, default_ttl_ms=config.lock_default_ttl_ms)
    api_keys = ApiKeyManager(
        api_key_repository,
        rate_limiter,
        audit_log,
        clock=clock,
        key_prefix=config.api_key_prefix,
        bcrypt_rounds=config.api_key_bcrypt_rounds,
        max_keys_per_user=config.max_keys_per_user,
        default_expiry_days=config.api_key_default_expiry_days,
        default_rate_limit_per_minute=config.default_rate_limit_per_minute,
        lock_manager=lock_manager,
    )
    mfa = MFAService(
        audit_log,
        issuer=config.mfa_issuer,
        recovery_code_count=config.mfa_recovery_code_count,
        clock=clock,
    )

    return ServiceContainer(
        settings=config,
        durable_store=durable_store,
        fallback_store=fallback_store,
        limiter_store=limiter_store,
        sweeper=ExpirySweeper(fallback_store, config.fallback_sweep_interval_seconds),
        audit_log=audit_log,
        rate_limiter=rate_limiter,
        lock_manager=lock_manager,
        api_keys=api_keys,
        mfa=mfa,
    )
