import asyncio
from datetime import timedelta

import pytest

from stepwright.config import LeaseConfig
from stepwright.contracts import utcnow
from stepwright.leases import LeaseBusy, LeaseGranted, LeaseManager, ReleaseOutcome
from stepwright.persistence import InMemoryStore, SQLiteStore


@pytest.fixture(params=["memory", "sqlite"])
def lease_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryStore()
    return SQLiteStore(tmp_path / "leases.db")


class _Clock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += timedelta(milliseconds=ms)


@pytest.mark.asyncio
async def test_acquire_is_exclusive(lease_store):
    leases = LeaseManager(lease_store)

    first = await leases.acquire("src/app.py", "run-1/a", ttl_ms=10_000)
    second = await leases.acquire("src/app.py", "run-1/b", ttl_ms=10_000)

    assert isinstance(first, LeaseGranted)
    assert isinstance(second, LeaseBusy)
    assert second.holder == "run-1/a"
    assert second.expires_at == first.expires_at


@pytest.mark.asyncio
async def test_concurrent_acquires_grant_exactly_one(lease_store):
    leases = LeaseManager(lease_store)
    outcomes = await asyncio.gather(
        *(leases.acquire("shared.txt", f"holder-{i}", ttl_ms=10_000) for i in range(8))
    )
    granted = [o for o in outcomes if isinstance(o, LeaseGranted)]
    assert len(granted) == 1
    assert all(o.holder == granted[0].holder for o in outcomes if isinstance(o, LeaseBusy))


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_by_another_holder(lease_store):
    clock = _Clock()
    leases = LeaseManager(lease_store, clock=clock)

    assert isinstance(await leases.acquire("a.md", "old", ttl_ms=1_000), LeaseGranted)
    clock.advance(1_001)
    taken = await leases.acquire("a.md", "new", ttl_ms=1_000)

    assert isinstance(taken, LeaseGranted)
    assert (await leases.current("a.md")).holder == "new"
    assert await leases.release("a.md", "old") is ReleaseOutcome.NOT_HOLDER


@pytest.mark.asyncio
async def test_release_requires_holder(lease_store):
    leases = LeaseManager(lease_store)
    await leases.acquire("a.md", "me", ttl_ms=5_000)

    assert await leases.release("a.md", "someone-else") is ReleaseOutcome.NOT_HOLDER
    assert await leases.release("a.md", "me") is ReleaseOutcome.OK
    assert await leases.release("a.md", "me") is ReleaseOutcome.NOT_HOLDER
    assert isinstance(await leases.acquire("a.md", "someone-else", ttl_ms=5_000), LeaseGranted)


@pytest.mark.asyncio
async def test_sweep_only_removes_expired(lease_store):
    clock = _Clock()
    leases = LeaseManager(lease_store, clock=clock)
    await leases.acquire("short", "h", ttl_ms=100)
    await leases.acquire("long", "h", ttl_ms=60_000)
    clock.advance(500)

    swept = await leases.sweep_expired()

    assert [lease.file_path for lease in swept] == ["short"]
    assert [lease.file_path for lease in await leases.list_leases()] == ["long"]


@pytest.mark.asyncio
async def test_renew_extends_only_for_holder(lease_store):
    clock = _Clock()
    leases = LeaseManager(lease_store, clock=clock)
    await leases.acquire("f", "me", ttl_ms=1_000)
    clock.advance(800)

    assert await leases.renew("f", "me", ttl_ms=1_000)
    assert not await leases.renew("f", "other", ttl_ms=1_000)
    clock.advance(800)
    assert isinstance(await leases.acquire("f", "other", ttl_ms=1_000), LeaseBusy)


@pytest.mark.asyncio
async def test_acquire_all_is_all_or_nothing(lease_store):
    leases = LeaseManager(lease_store)
    await leases.acquire("b.py", "other", ttl_ms=5_000)

    outcome = await leases.acquire_all(["c.py", "a.py", "b.py"], "me", ttl_ms=5_000)

    assert isinstance(outcome, LeaseBusy)
    assert outcome.file_path == "b.py"
    assert await leases.current("a.py") is None

    await leases.release("b.py", "other")
    granted = await leases.acquire_all(["c.py", "a.py", "b.py"], "me", ttl_ms=5_000)
    assert [lease.file_path for lease in granted] == ["a.py", "b.py", "c.py"]


@pytest.mark.asyncio
async def test_release_holder_prefix(lease_store):
    leases = LeaseManager(lease_store)
    await leases.acquire("x", "trace-1/a", ttl_ms=5_000)
    await leases.acquire("y", "trace-1/b", ttl_ms=5_000)
    await leases.acquire("z", "trace-10/a", ttl_ms=5_000)

    dropped = await leases.release_holder_prefix("trace-1/")

    assert sorted(lease.file_path for lease in dropped) == ["x", "y"]
    assert [lease.file_path for lease in await leases.list_leases()] == ["z"]


def test_non_positive_ttl_rejected():
    leases = LeaseManager(InMemoryStore(), LeaseConfig(default_ttl_ms=0))
    with pytest.raises(ValueError):
        asyncio.run(leases.acquire("p", "h"))
