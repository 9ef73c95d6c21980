from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncIterator

from sqlalchemy.exc import SQLAlchemyError

from taxrouter.core.errors import TenantInactive, TenantNotFound
from taxrouter.domain.records import TenantConnectionRecord


def make_record(tenant_id: str = "acme", **overrides: Any) -> TenantConnectionRecord:
    # Minimal decrypted registry snapshot for routing tests.
    values: dict[str, Any] = {
        "tenant_id": tenant_id,
        "tenant_name": f"{tenant_id.title()} Tax",
        "db_host": "db.internal",
        "db_port": 5432,
        "db_user": "svc",
        "db_password": "s3cret",
        "db_name": f"{tenant_id}_db",
        "db_sslmode": "disable",
        "schema_prefix": "taxes",
        "adapter_type": "mywelltax",
    }
    values.update(overrides)
    return TenantConnectionRecord(**values)


class FakeMappings:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self._rows = rows

    def all(self) -> list[dict[str, Any]]:
        return list(self._rows)

    def first(self) -> dict[str, Any] | None:
        return self._rows[0] if self._rows else None


class FakeScalars:
    def __init__(self, values: list[Any]) -> None:
        self._values = values

    def all(self) -> list[Any]:
        return list(self._values)


class FakeResult:
    def __init__(self, rows: list[dict[str, Any]] | None = None, *, rowcount: int | None = None) -> None:
        self._rows = rows or []
        self.rowcount = len(self._rows) if rowcount is None else rowcount

    def mappings(self) -> FakeMappings:
        return FakeMappings(self._rows)

    def scalars(self) -> FakeScalars:
        return FakeScalars([next(iter(row.values())) for row in self._rows])

    def scalar_one_or_none(self) -> Any:
        return next(iter(self._rows[0].values())) if self._rows else None


class FakeConnection:
    def __init__(self, engine: "FakeEngine") -> None:
        self._engine = engine

    async def execute(self, statement: Any, params: dict[str, Any] | None = None) -> FakeResult:
        self._engine.statements.append((str(statement), dict(params or {})))
        if not self._engine.results:
            return FakeResult()
        return self._engine.results.pop(0)


class FakeEngine:
    """Stand-in for an AsyncEngine: records SQL and replays queued results in order."""

    def __init__(self, results: list[FakeResult] | None = None) -> None:
        self.results = list(results or [])
        self.statements: list[tuple[str, dict[str, Any]]] = []
        self.begins = 0
        self.disposed = False

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[FakeConnection]:
        yield FakeConnection(self)

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[FakeConnection]:
        self.begins += 1
        yield FakeConnection(self)

    async def dispose(self) -> None:
        self.disposed = True


class FakeHandle:
    def __init__(self, tenant_id: str, *, fail_dispose: bool = False) -> None:
        self.tenant_id = tenant_id
        self.disposed = 0
        self._fail_dispose = fail_dispose

    async def dispose(self) -> None:
        self.disposed += 1
        if self._fail_dispose:
            raise RuntimeError("dispose failed")


class FakeRegistry:
    def __init__(self, records: list[TenantConnectionRecord] | None = None) -> None:
        self.records = {record.tenant_id: record for record in records or []}
        self.reads = 0

    async def get(self, tenant_id: str) -> TenantConnectionRecord:
        self.reads += 1
        record = self.records.get(tenant_id)
        if record is None:
            raise TenantNotFound(tenant_id)
        if not record.is_active:
            raise TenantInactive(tenant_id)
        return record

    def deactivate(self, tenant_id: str) -> None:
        self.records[tenant_id] = replace(self.records[tenant_id], is_active=False)

    async def update(self, tenant_id: str, *, changes: dict[str, Any]) -> TenantConnectionRecord:
        if tenant_id not in self.records:
            raise TenantNotFound(tenant_id)
        self.records[tenant_id] = replace(self.records[tenant_id], **changes)
        return self.records[tenant_id]


class FakeConnector:
    """Counts connects; an optional gate holds every connect open until released."""

    def __init__(self, *, error: BaseException | None = None, gated: bool = False) -> None:
        self.calls: list[str] = []
        self.handles: list[FakeHandle] = []
        self.error = error
        self.gate = asyncio.Event()
        if not gated:
            self.gate.set()

    async def __call__(self, record: TenantConnectionRecord) -> FakeHandle:
        self.calls.append(record.tenant_id)
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        handle = FakeHandle(record.tenant_id)
        self.handles.append(handle)
        return handle


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSession:
    def __init__(self, factory: "FakeSessionFactory") -> None:
        self._factory = factory

    def add(self, row: Any) -> None:
        self._factory.added.append(row)

    async def commit(self) -> None:
        if self._factory.fail_commit:
            raise SQLAlchemyError("control plane unavailable")
        self._factory.commits += 1

    async def rollback(self) -> None:
        self._factory.rollbacks += 1

    async def execute(self, statement: Any) -> FakeResult:
        self._factory.statements.append(statement)
        if not self._factory.results:
            return FakeResult()
        return self._factory.results.pop(0)


class FakeSessionFactory:
    """Callable like an async_sessionmaker; every session shares this recorder."""

    def __init__(self, *, fail_commit: bool = False, results: list[FakeResult] | None = None) -> None:
        self.fail_commit = fail_commit
        self.results = list(results or [])
        self.added: list[Any] = []
        self.statements: list[Any] = []
        self.commits = 0
        self.rollbacks = 0

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[FakeSession]:
        yield FakeSession(self)

    def __call__(self) -> Any:
        return self._session()
