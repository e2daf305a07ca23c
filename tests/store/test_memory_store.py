"""Tests for the process-local keyed store and its sweeper."""

import asyncio

import pytest

from trustcore.store.memory import ExpirySweeper, MemoryStore


@pytest.fixture
def store(clock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.mark.asyncio
async def test_increment_starts_window(store: MemoryStore, clock) -> None:
    """First increment creates the counter with the window expiry."""
    counter = await store.increment("rl:login:ip:1.2.3.4", 60_000)

    assert counter.count == 1
    assert counter.expires_at == int(clock() * 1000) + 60_000


@pytest.mark.asyncio
async def test_increment_keeps_expiry_within_window(store: MemoryStore, clock) -> None:
    """Later increments never extend the window."""
    first = await store.increment("k", 60_000)
    clock.advance(10)
    second = await store.increment("k", 60_000)

    assert second.count == 2
    assert second.expires_at == first.expires_at


@pytest.mark.asyncio
async def test_increment_resets_after_expiry(store: MemoryStore, clock) -> None:
    """Once the window passes, counting restarts at one."""
    await store.increment("k", 1_000)
    await store.increment("k", 1_000)
    clock.advance(1)

    counter = await store.increment("k", 1_000)

    assert counter.count == 1


@pytest.mark.asyncio
async def test_concurrent_increments_are_counted_once_each(store: MemoryStore) -> None:
    """No increment is lost under concurrent callers."""
    results = await asyncio.gather(*(store.increment("k", 60_000) for _ in range(50)))

    assert sorted(r.count for r in results) == list(range(1, 51))


@pytest.mark.asyncio
async def test_claim_is_exclusive(store: MemoryStore) -> None:
    assert await store.claim("lock:a", "owner-1", 5_000) is True
    assert await store.claim("lock:a", "owner-2", 5_000) is False


@pytest.mark.asyncio
async def test_claim_by_same_owner_refreshes(store: MemoryStore, clock) -> None:
    await store.claim("lock:a", "owner-1", 5_000)
    clock.advance(4)

    assert await store.claim("lock:a", "owner-1", 5_000) is True
    record = await store.get_owner("lock:a")
    assert record.expires_at == int(clock() * 1000) + 5_000


@pytest.mark.asyncio
async def test_claim_after_expiry(store: MemoryStore, clock) -> None:
    await store.claim("lock:a", "owner-1", 5_000)
    clock.advance(5)

    assert await store.claim("lock:a", "owner-2", 5_000) is True


@pytest.mark.asyncio
async def test_delete_if_owner(store: MemoryStore) -> None:
    await store.claim("lock:a", "owner-1", 5_000)

    assert await store.delete_if_owner("lock:a", "owner-2") is False
    assert await store.delete_if_owner("lock:a", "owner-1") is True
    assert await store.get_owner("lock:a") is None


@pytest.mark.asyncio
async def test_delete_if_owner_expired(store: MemoryStore, clock) -> None:
    """An expired claim cannot be released."""
    await store.claim("lock:a", "owner-1", 1_000)
    clock.advance(2)

    assert await store.delete_if_owner("lock:a", "owner-1") is False


@pytest.mark.asyncio
async def test_get_owner_ignores_counters(store: MemoryStore) -> None:
    await store.increment("rl:x:y", 60_000)

    assert await store.get_owner("rl:x:y") is None


@pytest.mark.asyncio
async def test_purge_expired(store: MemoryStore, clock) -> None:
    await store.increment("short", 1_000)
    await store.increment("long", 60_000)
    clock.advance(2)

    removed = await store.purge_expired()

    assert removed == 1
    assert len(store) == 1


@pytest.mark.asyncio
async def test_sweeper_run_once_after_clock_advance(store: MemoryStore, clock) -> None:
    """Sweeping is driven by the injected clock, not wall time."""
    sweeper = ExpirySweeper(store, interval_seconds=60)
    await store.claim("lock:a", "owner", 5_000)

    assert await sweeper.run_once() == 0
    clock.advance(6)
    assert await sweeper.run_once() == 1
    assert len(store) == 0


@pytest.mark.asyncio
async def test_sweeper_start_and_stop(store: MemoryStore) -> None:
    sweeper = ExpirySweeper(store, interval_seconds=0.01)

    sweeper.start()
    sweeper.start()
    assert sweeper.running is True

    await sweeper.stop()
    assert sweeper.running is False


@pytest.mark.asyncio
async def test_sweeper_loop_purges(store: MemoryStore, clock) -> None:
    sweeper = ExpirySweeper(store, interval_seconds=0.01)
    await store.increment("k", 1_000)
    clock.advance(2)

    sweeper.start()
    try:
        for _ in range(100):
            if len(store) == 0:
                break
            await asyncio.sleep(0.01)
    finally:
        await sweeper.stop()

    assert len(store) == 0


def test_sweeper_rejects_bad_interval(store: MemoryStore) -> None:
    with pytest.raises(ValueError):
        ExpirySweeper(store, interval_seconds=0)
