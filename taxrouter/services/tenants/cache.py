"""Process-wide cache of open tenant database handles.

One slot per tenant moves through Absent -> Connecting -> Live -> Evicted. The
map lock guards touches, insertions and evictions and is never held across a
network round-trip: a miss starts a single connect task per tenant, and every
concurrent caller for that tenant awaits the same task.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Any, Awaitable, Callable, Protocol

from taxrouter.core.errors import ConnectFailed, TaxRouterError
from taxrouter.domain.records import TenantConnectionRecord


logger = logging.getLogger(__name__)

Connector = Callable[[TenantConnectionRecord], Awaitable[Any]]


class RecordSource(Protocol):
    async def get(self, tenant_id: str) -> TenantConnectionRecord:
        ...


@dataclass
class CachedHandle:
    handle: Any
    last_access: float


class TenantConnectionCache:
    def __init__(
        self,
        *,
        registry: RecordSource,
        connector: Connector,
        idle_timeout_s: float = 300.0,
        eviction_interval_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._connector = connector
        self._idle_timeout_s = idle_timeout_s
        self._eviction_interval_s = eviction_interval_s
        self._clock = clock
        self._entries: dict[str, CachedHandle] = {}
        self._pending: dict[str, asyncio.Task[Any]] = {}
        self._lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._eviction_task: asyncio.Task[None] | None = None
        self._closed = False

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def cached_tenants(self) -> list[str]:
        return sorted(self._entries)

    def last_access(self, tenant_id: str) -> float | None:
        entry = self._entries.get(tenant_id)
        return entry.last_access if entry is not None else None

    async def obtain(self, tenant_id: str) -> tuple[Any, TenantConnectionRecord]:
        """Return the open handle for a tenant plus a fresh record snapshot.

        The record is always re-read from the registry. A tenant deactivated
        after its handle was opened fails here, while the handle itself stays
        cached until idle eviction.
        """
        if tenant_id in self._entries:
            handle = await self._touch(tenant_id)
            if handle is not None:
                record = await self._registry.get(tenant_id)
                return handle, record

        record = await self._registry.get(tenant_id)
        handle = await self._populate(tenant_id, record)
        return handle, record

    async def _touch(self, tenant_id: str) -> Any | None:
        async with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is None:
                return None
            entry.last_access = self._clock()
            return entry.handle

    async def _populate(self, tenant_id: str, record: TenantConnectionRecord) -> Any:
        async with self._lock:
            if self._closed:
                raise ConnectFailed("tenant connection cache is closed")
            # Double-check: another caller may have finished while we were unlocked.
            entry = self._entries.get(tenant_id)
            if entry is not None:
                entry.last_access = self._clock()
                return entry.handle
            task = self._pending.get(tenant_id)
            if task is None:
                task = asyncio.create_task(
                    self._connect(tenant_id, record), name=f"tenant-connect:{tenant_id}"
                )
                task.add_done_callback(_consume_task_result)
                self._pending[tenant_id] = task
        # Shield so one cancelled caller does not abort the connect the others wait on.
        return await asyncio.shield(task)

    async def _connect(self, tenant_id: str, record: TenantConnectionRecord) -> Any:
        try:
            handle = await self._connector(record)
        except BaseException as exc:
            async with self._lock:
                if self._pending.get(tenant_id) is asyncio.current_task():
                    del self._pending[tenant_id]
            if isinstance(exc, TaxRouterError) or not isinstance(exc, Exception):
                raise
            logger.error("tenant_connect_failed tenant_id=%s error=%s", tenant_id, type(exc).__name__)
            raise ConnectFailed(f"could not connect to tenant database: {tenant_id}") from exc

        async with self._lock:
            if self._pending.get(tenant_id) is asyncio.current_task():
                del self._pending[tenant_id]
            closed = self._closed
            if not closed:
                self._entries[tenant_id] = CachedHandle(handle=handle, last_access=self._clock())
        if closed:
            await self._dispose(tenant_id, handle)
            raise ConnectFailed("tenant connection cache is closed")
        logger.info("tenant_handle_opened tenant_id=%s", tenant_id)
        return handle

    async def evict_idle(self) -> list[str]:
        """Close handles idle past the threshold; returns the evicted tenant ids."""
        async with self._lock:
            # last_access is re-read under the lock so a concurrent touch wins.
            now = self._clock()
            victims = [
                (tenant_id, entry)
                for tenant_id, entry in self._entries.items()
                if now - entry.last_access > self._idle_timeout_s
            ]
            for tenant_id, _ in victims:
                del self._entries[tenant_id]
        for tenant_id, entry in victims:
            await self._dispose(tenant_id, entry.handle)
            logger.info("tenant_handle_evicted tenant_id=%s", tenant_id)
        return [tenant_id for tenant_id, _ in victims]

    async def invalidate(self, tenant_id: str) -> bool:
        """Drop and close a tenant's cached handle so the next obtain reconnects.

        A connect already in flight keeps the record it started with.
        """
        async with self._lock:
            entry = self._entries.pop(tenant_id, None)
        if entry is None:
            return False
        await self._dispose(tenant_id, entry.handle)
        logger.info("tenant_handle_invalidated tenant_id=%s", tenant_id)
        return True

    def start_eviction(self) -> None:
        if self._eviction_task is not None and not self._eviction_task.done():
            return
        self._stop.clear()
        self._eviction_task = asyncio.create_task(self._eviction_loop(), name="tenant-cache-eviction")

    async def _eviction_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._eviction_interval_s)
            except asyncio.TimeoutError:
                await self.evict_idle()
        logger.info("tenant_cache_eviction_stopped")

    async def stop_eviction(self) -> None:
        self._stop.set()
        task, self._eviction_task = self._eviction_task, None
        if task is not None:
            await task

    async def close_all(self) -> None:
        await self.stop_eviction()
        async with self._lock:
            self._closed = True
            entries, self._entries = self._entries, {}
            pending = list(self._pending.values())
            self._pending.clear()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for tenant_id, entry in entries.items():
            await self._dispose(tenant_id, entry.handle)
        logger.info("tenant_cache_closed handles=%s", len(entries))

    async def _dispose(self, tenant_id: str, handle: Any) -> None:
        try:
            await handle.dispose()
        except Exception as exc:  # noqa: BLE001
            logger.warning("tenant_handle_close_failed tenant_id=%s", tenant_id, exc_info=exc)


def _consume_task_result(task: asyncio.Task[Any]) -> None:
    # Retrieve the outcome so a connect nobody awaited anymore does not warn at GC.
    if not task.cancelled():
        task.exception()
