from __future__ import annotations

from typing import AsyncIterator
from uuid import uuid4

import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from taxrouter.tests.utils.database import TENANT_TABLES, TEST_DATABASE_URL


@pytest_asyncio.fixture
async def tenant_engine() -> AsyncIterator[AsyncEngine]:
    # NullPool keeps asyncpg connections from outliving the per-test event loop.
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=NullPool)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def tenant_schema(tenant_engine: AsyncEngine) -> AsyncIterator[str]:
    # A throwaway schema per test plays the role of one tenant's schema prefix.
    schema = f"it_{uuid4().hex[:12]}"
    async with tenant_engine.begin() as conn:
        await conn.execute(text(f"CREATE SCHEMA {schema}"))
        for ddl in TENANT_TABLES:
            await conn.execute(text(ddl.format(schema=schema)))
    yield schema
    async with tenant_engine.begin() as conn:
        await conn.execute(text(f"DROP SCHEMA IF EXISTS {schema} CASCADE"))
