from __future__ import annotations

import asyncio
import logging

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from taxrouter.core.config import Settings
from taxrouter.core.errors import ConnectFailed
from taxrouter.domain.records import TenantConnectionRecord
from taxrouter.persistence.db import asyncpg_ssl_arg


logger = logging.getLogger(__name__)

# Record fields an open engine is built from; changing any of them needs a new engine.
CONNECTION_FIELDS = frozenset({"db_host", "db_port", "db_user", "db_password", "db_name", "db_sslmode"})


def tenant_database_url(record: TenantConnectionRecord) -> URL:
    # URL.create escapes credentials, so passwords with reserved characters stay intact.
    return URL.create(
        "postgresql+asyncpg",
        username=record.db_user,
        password=record.db_password or None,
        host=record.db_host,
        port=record.db_port,
        database=record.db_name,
    )


def tenant_pool_kwargs(settings: Settings) -> dict[str, int]:
    # Pool keeps max-idle connections and overflows up to max-open.
    max_open = max(1, int(settings.tenant_db_max_open))
    max_idle = max(1, min(int(settings.tenant_db_max_idle), max_open))
    return {
        "pool_size": max_idle,
        "max_overflow": max_open - max_idle,
        "pool_recycle": max(1, int(settings.tenant_db_max_lifetime_s)),
    }


class TenantEngineConnector:
    """Open one pooled engine per tenant record and probe it before handing it out."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def build(self, record: TenantConnectionRecord) -> AsyncEngine:
        return create_async_engine(
            tenant_database_url(record),
            pool_pre_ping=True,
            pool_timeout=30,
            connect_args={
                "ssl": asyncpg_ssl_arg(record.db_sslmode),
                "timeout": self._settings.tenant_db_connect_timeout_s,
            },
            **tenant_pool_kwargs(self._settings),
        )

    async def __call__(self, record: TenantConnectionRecord) -> AsyncEngine:
        engine = self.build(record)
        try:
            await asyncio.wait_for(
                probe(engine), timeout=self._settings.tenant_db_connect_timeout_s
            )
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            await engine.dispose()
            logger.error(
                "tenant_connect_failed tenant_id=%s host=%s db=%s error=%s",
                record.tenant_id,
                record.db_host,
                record.db_name,
                type(exc).__name__,
            )
            raise ConnectFailed(f"could not connect to tenant database: {record.tenant_id}") from exc
        except BaseException:
            await engine.dispose()
            raise
        return engine


async def probe(engine: AsyncEngine) -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
