"""Tests for the fixed-window RateLimiter."""

import logging
from unittest.mock import AsyncMock

import pytest

from trustcore.config import RateLimitProfile
from trustcore.exceptions import RateLimitError, StoreUnavailableError, ValidationError
from trustcore.services.rate_limiter import RateLimiter
from trustcore.store.fallback import FallbackStore
from trustcore.store.memory import MemoryStore


@pytest.fixture
def store(clock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def limiter(store: MemoryStore, clock) -> RateLimiter:
    return RateLimiter(
        store,
        profiles={"login": RateLimitProfile(window_ms=60_000, max_requests=5)},
        clock=clock,
    )


@pytest.mark.asyncio
async def test_threshold_and_window_reset(limiter: RateLimiter, clock) -> None:
    """Five allowed with a shrinking budget, sixth denied, fresh window after."""
    results = [
        await limiter.check_and_increment("login", "ip:1.2.3.4", 60_000, 5) for _ in range(5)
    ]
    assert all(r.allowed for r in results)
    assert [r.remaining for r in results] == [4, 3, 2, 1, 0]

    denied = await limiter.check_and_increment("login", "ip:1.2.3.4", 60_000, 5)
    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.reset_at > 0
    assert denied.retry_after == 60

    clock.advance(60)
    after = await limiter.check_and_increment("login", "ip:1.2.3.4", 60_000, 5)
    assert after.allowed is True
    assert after.remaining == 4


@pytest.mark.asyncio
async def test_reset_at_fixed_by_first_request(limiter: RateLimiter, clock) -> None:
    first = await limiter.check_and_increment("login", "ip:1.2.3.4", 60_000, 5)
    clock.advance(30)
    second = await limiter.check_and_increment("login", "ip:1.2.3.4", 60_000, 5)

    assert second.reset_at == first.reset_at


@pytest.mark.asyncio
async def test_retry_after_rounds_up(limiter: RateLimiter, clock) -> None:
    await limiter.check_and_increment("trade", "user:1", 1_000, 1)
    clock.advance(0.5)

    denied = await limiter.check_and_increment("trade", "user:1", 1_000, 1)

    assert denied.retry_after == 1


@pytest.mark.asyncio
async def test_subjects_and_scopes_are_independent(limiter: RateLimiter) -> None:
    await limiter.check_and_increment("login", "ip:1.1.1.1", 60_000, 1)

    other_subject = await limiter.check_and_increment("login", "ip:2.2.2.2", 60_000, 1)
    other_scope = await limiter.check_and_increment("sms", "ip:1.1.1.1", 60_000, 1)

    assert other_subject.allowed is True
    assert other_scope.allowed is True


@pytest.mark.asyncio
async def test_counter_key_layout(limiter: RateLimiter, store: MemoryStore) -> None:
    store.increment = AsyncMock(wraps=store.increment)

    await limiter.check_and_increment("login", "ip:1.1.1.1", 60_000, 5)

    store.increment.assert_awaited_once_with("rl:login:ip:1.1.1.1", 60_000)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "scope,subject,window_ms,max_requests",
    [("", "s", 1000, 1), ("x", "", 1000, 1), ("x", "s", 0, 1), ("x", "s", 1000, 0)],
)
async def test_invalid_arguments(
    limiter: RateLimiter, scope: str, subject: str, window_ms: int, max_requests: int
) -> None:
    with pytest.raises(ValidationError):
        await limiter.check_and_increment(scope, subject, window_ms, max_requests)


@pytest.mark.asyncio
async def test_fails_open_when_store_unavailable(
    limiter: RateLimiter, store: MemoryStore, caplog
) -> None:
    store.increment = AsyncMock(side_effect=StoreUnavailableError(store="test"))

    with caplog.at_level(logging.ERROR, logger="trustcore.services.rate_limiter"):
        result = await limiter.check_and_increment("login", "ip:1.1.1.1", 60_000, 5)

    assert result.allowed is True
    assert result.remaining == 5
    assert any(r.levelno == logging.ERROR for r in caplog.records)


@pytest.mark.asyncio
async def test_keeps_counting_on_fallback(clock) -> None:
    """During an outage the process-local fallback still enforces the limit."""
    primary = MemoryStore(clock=clock)
    primary.increment = AsyncMock(side_effect=StoreUnavailableError(store="test"))
    limiter = RateLimiter(FallbackStore(primary, MemoryStore(clock=clock)), clock=clock)

    results = [await limiter.check_and_increment("login", "ip:1", 60_000, 2) for _ in range(3)]

    assert [r.allowed for r in results] == [True, True, False]


@pytest.mark.asyncio
async def test_profiles(limiter: RateLimiter) -> None:
    result = await limiter.check_profile("login", "ip:1.1.1.1")
    assert result.limit == 5

    with pytest.raises(ValidationError):
        limiter.get_profile("unknown")


@pytest.mark.asyncio
async def test_enforce_raises_when_exhausted(limiter: RateLimiter) -> None:
    for _ in range(5):
        await limiter.enforce("login", "ip:1.1.1.1")

    with pytest.raises(RateLimitError) as exc_info:
        await limiter.enforce("login", "ip:1.1.1.1")

    assert exc_info.value.retry_after == 60
    assert exc_info.value.status_code == 429


def test_default_profiles_loaded(store: MemoryStore) -> None:
    limiter = RateLimiter(store)

    assert limiter.get_profile("login").max_requests == 5
    assert limiter.get_profile("trade").window_ms == 1_000


def test_client_key() -> None:
    assert RateLimiter.client_key("10.0.0.1", "user-1") == "user:user-1"
    assert RateLimiter.client_key("10.0.0.1") == "ip:10.0.0.1"
    assert RateLimiter.client_key("") == "ip:unknown"
