"""Plain-SQL migration runner for the control-plane database.

Migration files are named ``V<version>__<description>.sql`` and applied in
filename order. The file name is the migration id; ``schema_migrations``
records each applied id together with a description and a SHA-256 checksum
of the name, so renaming a file re-applies it.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import re

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from taxrouter.core.config import DatabaseConfig
from taxrouter.core.errors import ConfigError
from taxrouter.persistence.db import asyncpg_ssl_arg
from taxrouter.services.crypto.utils import sha256_hex


logger = logging.getLogger(__name__)

_DATABASE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]{0,62}$")

CREATE_MIGRATION_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    id VARCHAR(255) PRIMARY KEY,
    description TEXT NOT NULL,
    checksum VARCHAR(64) NOT NULL,
    applied_at TIMESTAMPTZ DEFAULT NOW()
)
"""


@dataclass(frozen=True)
class MigrationFile:
    id: str
    description: str
    checksum: str
    path: Path

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")


def is_migration_name(name: str) -> bool:
    return name.startswith("V") and name.endswith(".sql")


def migration_description(name: str) -> str:
    return name.replace("_", " ").removesuffix(".sql")


def migration_checksum(name: str) -> str:
    return sha256_hex(name)


def discover_migrations(directory: str | Path) -> list[MigrationFile]:
    root = Path(directory)
    if not root.is_dir():
        raise ConfigError(f"migrations directory not found: {root}")
    migrations: list[MigrationFile] = []
    for path in sorted(root.iterdir(), key=lambda item: item.name):
        if path.is_dir():
            continue
        if not is_migration_name(path.name):
            logger.error("migration_file_invalid_name file=%s", path.name)
            continue
        migrations.append(
            MigrationFile(
                id=path.name,
                description=migration_description(path.name),
                checksum=migration_checksum(path.name),
                path=path,
            )
        )
    return migrations


def require_database_name(name: str) -> str:
    if not _DATABASE_NAME_RE.fullmatch(name or ""):
        raise ConfigError(f"invalid database name: {name!r}")
    return name


def database_url(database: DatabaseConfig, *, dbname: str) -> URL:
    return URL.create(
        "postgresql+asyncpg",
        username=database.user,
        password=database.password or None,
        host=database.host,
        port=database.port,
        database=dbname,
    )


def _engine_for(database: DatabaseConfig, *, dbname: str, autocommit: bool = False) -> AsyncEngine:
    kwargs: dict = {"connect_args": {"ssl": asyncpg_ssl_arg(database.sslmode)}}
    if autocommit:
        kwargs["isolation_level"] = "AUTOCOMMIT"
    return create_async_engine(database_url(database, dbname=dbname), **kwargs)


async def ensure_database(database: DatabaseConfig) -> bool:
    """Create the target database from the maintenance database; return True when created."""
    target = require_database_name(database.dbname)
    # CREATE DATABASE cannot run inside a transaction block.
    engine = _engine_for(database, dbname=database.init_db_name, autocommit=True)
    try:
        async with engine.connect() as conn:
            exists = (
                await conn.execute(text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": target})
            ).scalar_one_or_none()
            if exists is not None:
                logger.info("provision_database_exists dbname=%s", target)
                return False
            await conn.execute(text(f'CREATE DATABASE "{target}"'))
            logger.info("provision_database_created dbname=%s", target)
            return True
    finally:
        await engine.dispose()


async def _execute_script(conn: AsyncConnection, sql: str) -> None:
    # asyncpg runs multi-statement scripts only through the simple query protocol.
    raw = await conn.get_raw_connection()
    await raw.driver_connection.execute(sql)


async def apply_migrations(database: DatabaseConfig, migrations: list[MigrationFile]) -> list[str]:
    """Apply pending migrations in one transaction; return the ids applied."""
    engine = _engine_for(database, dbname=require_database_name(database.dbname))
    applied_now: list[str] = []
    try:
        async with engine.begin() as conn:
            await conn.execute(text(CREATE_MIGRATION_TABLE_SQL))
            applied = set((await conn.execute(text("SELECT id FROM schema_migrations"))).scalars().all())
            for migration in migrations:
                if migration.id in applied:
                    logger.info("provision_migration_skipped id=%s", migration.id)
                    continue
                logger.info("provision_migration_applying id=%s", migration.id)
                await _execute_script(conn, migration.read())
                await conn.execute(
                    text(
                        "INSERT INTO schema_migrations (id, description, checksum, applied_at) "
                        "VALUES (:id, :description, :checksum, NOW())"
                    ),
                    {"id": migration.id, "description": migration.description, "checksum": migration.checksum},
                )
                applied_now.append(migration.id)
    finally:
        await engine.dispose()
    logger.info("provision_migrations_complete applied=%s", len(applied_now))
    return applied_now
