from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from taxrouter.core.config import FileConfig, Settings, control_plane_url


def asyncpg_ssl_arg(sslmode: str | None) -> str | bool:
    # asyncpg accepts libpq sslmode names directly; "disable" maps to no TLS.
    if not sslmode or sslmode == "disable":
        return False
    return sslmode


def build_control_engine(settings: Settings, file_config: FileConfig) -> AsyncEngine:
    url = control_plane_url(settings, file_config)
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Bounded control-plane pool: pool_size idle slots plus overflow up to the open cap.
    if not str(url).startswith("sqlite"):
        engine_kwargs["pool_size"] = max(1, int(settings.control_db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.control_db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = max(1, int(settings.control_db_pool_recycle_s))
        if not settings.database_url:
            engine_kwargs["connect_args"] = {"ssl": asyncpg_ssl_arg(file_config.database.sslmode)}
    return create_async_engine(url, **engine_kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def pool_stats(engine: AsyncEngine) -> dict[str, int | None]:
    # Expose pool counters for the health endpoint without querying Postgres internals.
    pool = engine.sync_engine.pool
    checked_out_fn = getattr(pool, "checkedout", None)
    checked_in_fn = getattr(pool, "checkedin", None)
    overflow_fn = getattr(pool, "overflow", None)
    size_fn = getattr(pool, "size", None)
    return {
        "size": int(size_fn()) if callable(size_fn) else None,
        "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
        "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
        "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
    }
