from __future__ import annotations

import asyncio

import pytest

from taxrouter.core.errors import ConnectFailed, CredentialUnavailable, TenantInactive, TenantNotFound
from taxrouter.services.tenants.cache import TenantConnectionCache
from taxrouter.tests.utils.fakes import FakeClock, FakeConnector, FakeHandle, FakeRegistry, make_record


def _cache(registry: FakeRegistry, connector: FakeConnector, clock: FakeClock | None = None) -> TenantConnectionCache:
    return TenantConnectionCache(
        registry=registry,
        connector=connector,
        idle_timeout_s=300.0,
        eviction_interval_s=60.0,
        clock=clock or FakeClock(),
    )


@pytest.mark.asyncio
async def test_miss_connects_once_then_hits() -> None:
    registry = FakeRegistry([make_record("acme")])
    connector = FakeConnector()
    cache = _cache(registry, connector)

    handle, record = await cache.obtain("acme")
    again, _ = await cache.obtain("acme")

    assert handle is again
    assert record.tenant_id == "acme"
    assert connector.calls == ["acme"]
    assert "acme" in cache
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_hit_rereads_registry_and_reports_deactivation() -> None:
    registry = FakeRegistry([make_record("acme")])
    connector = FakeConnector()
    cache = _cache(registry, connector)
    await cache.obtain("acme")

    registry.deactivate("acme")
    with pytest.raises(TenantInactive):
        await cache.obtain("acme")

    # The handle stays cached until it idles out.
    assert "acme" in cache
    assert registry.reads == 2


@pytest.mark.asyncio
async def test_unknown_tenant_never_connects() -> None:
    connector = FakeConnector()
    cache = _cache(FakeRegistry(), connector)

    with pytest.raises(TenantNotFound):
        await cache.obtain("ghost")

    assert connector.calls == []
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_connect() -> None:
    registry = FakeRegistry([make_record("acme")])
    connector = FakeConnector(gated=True)
    cache = _cache(registry, connector)

    callers = [asyncio.create_task(cache.obtain("acme")) for _ in range(10)]
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    connector.gate.set()
    results = await asyncio.gather(*callers)

    assert connector.calls == ["acme"]
    assert len({id(handle) for handle, _ in results}) == 1


@pytest.mark.asyncio
async def test_different_tenants_connect_independently() -> None:
    registry = FakeRegistry([make_record("acme"), make_record("globex")])
    connector = FakeConnector()
    cache = _cache(registry, connector)

    first, _ = await cache.obtain("acme")
    second, _ = await cache.obtain("globex")

    assert first is not second
    assert sorted(connector.calls) == ["acme", "globex"]
    assert cache.cached_tenants() == ["acme", "globex"]


@pytest.mark.asyncio
async def test_connector_failure_is_wrapped_and_not_cached() -> None:
    registry = FakeRegistry([make_record("acme")])
    connector = FakeConnector(error=OSError("connection refused"))
    cache = _cache(registry, connector)

    with pytest.raises(ConnectFailed):
        await cache.obtain("acme")
    assert "acme" not in cache

    connector.error = None
    handle, _ = await cache.obtain("acme")
    assert isinstance(handle, FakeHandle)
    assert connector.calls == ["acme", "acme"]


@pytest.mark.asyncio
async def test_domain_errors_from_connector_propagate_unchanged() -> None:
    registry = FakeRegistry([make_record("acme")])
    connector = FakeConnector(error=CredentialUnavailable("stored credential unusable: acme"))
    cache = _cache(registry, connector)

    with pytest.raises(CredentialUnavailable):
        await cache.obtain("acme")


@pytest.mark.asyncio
async def test_evict_idle_disposes_only_stale_handles() -> None:
    clock = FakeClock()
    registry = FakeRegistry([make_record("acme"), make_record("globex")])
    connector = FakeConnector()
    cache = _cache(registry, connector, clock)

    acme, _ = await cache.obtain("acme")
    clock.advance(200)
    globex, _ = await cache.obtain("globex")
    clock.advance(150)

    evicted = await cache.evict_idle()

    assert evicted == ["acme"]
    assert acme.disposed == 1
    assert globex.disposed == 0
    assert cache.cached_tenants() == ["globex"]


@pytest.mark.asyncio
async def test_touch_refreshes_last_access() -> None:
    clock = FakeClock()
    cache = _cache(FakeRegistry([make_record("acme")]), FakeConnector(), clock)

    await cache.obtain("acme")
    clock.advance(250)
    await cache.obtain("acme")
    clock.advance(250)

    assert cache.last_access("acme") == clock.now - 250
    assert await cache.evict_idle() == []


@pytest.mark.asyncio
async def test_evicted_tenant_reconnects_on_next_request() -> None:
    clock = FakeClock()
    connector = FakeConnector()
    cache = _cache(FakeRegistry([make_record("acme")]), connector, clock)

    first, _ = await cache.obtain("acme")
    clock.advance(301)
    await cache.evict_idle()
    second, _ = await cache.obtain("acme")

    assert first is not second
    assert first.disposed == 1
    assert connector.calls == ["acme", "acme"]


@pytest.mark.asyncio
async def test_close_all_disposes_handles_and_refuses_new_work() -> None:
    registry = FakeRegistry([make_record("acme"), make_record("globex")])
    cache = _cache(registry, FakeConnector())
    acme, _ = await cache.obtain("acme")
    globex, _ = await cache.obtain("globex")

    await cache.close_all()

    assert acme.disposed == 1
    assert globex.disposed == 1
    assert len(cache) == 0
    with pytest.raises(ConnectFailed):
        await cache.obtain("acme")


@pytest.mark.asyncio
async def test_close_all_continues_past_a_failing_dispose() -> None:
    registry = FakeRegistry([make_record("acme"), make_record("globex")])
    handles = {"acme": FakeHandle("acme", fail_dispose=True), "globex": FakeHandle("globex")}

    async def connector(record):
        return handles[record.tenant_id]

    cache = TenantConnectionCache(registry=registry, connector=connector, clock=FakeClock())
    await cache.obtain("acme")
    await cache.obtain("globex")

    await cache.close_all()

    assert handles["acme"].disposed == 1
    assert handles["globex"].disposed == 1


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_abort_shared_connect() -> None:
    registry = FakeRegistry([make_record("acme")])
    connector = FakeConnector(gated=True)
    cache = _cache(registry, connector)

    impatient = asyncio.create_task(cache.obtain("acme"))
    patient = asyncio.create_task(cache.obtain("acme"))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    impatient.cancel()
    connector.gate.set()

    handle, _ = await patient
    with pytest.raises(asyncio.CancelledError):
        await impatient
    assert connector.calls == ["acme"]
    assert "acme" in cache
    assert handle.disposed == 0


@pytest.mark.asyncio
async def test_eviction_loop_starts_and_stops() -> None:
    cache = TenantConnectionCache(
        registry=FakeRegistry([make_record("acme")]),
        connector=FakeConnector(),
        idle_timeout_s=0.0,
        eviction_interval_s=0.01,
    )
    handle, _ = await cache.obtain("acme")

    cache.start_eviction()
    for _ in range(50):
        if "acme" not in cache:
            break
        await asyncio.sleep(0.01)
    await cache.stop_eviction()

    assert "acme" not in cache
    assert handle.disposed == 1


@pytest.mark.asyncio
async def test_invalidate_closes_handle_and_next_obtain_reconnects() -> None:
    registry = FakeRegistry([make_record("acme")])
    connector = FakeConnector()
    cache = _cache(registry, connector)
    old, _ = await cache.obtain("acme")

    assert await cache.invalidate("acme") is True
    assert old.disposed == 1
    assert "acme" not in cache

    new, _ = await cache.obtain("acme")
    assert new is not old
    assert connector.calls == ["acme", "acme"]
    assert await cache.invalidate("ghost") is False
