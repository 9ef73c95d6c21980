from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from taxrouter.core.config import load_file_config
from taxrouter.core.errors import TaxRouterError
from taxrouter.core.logging import configure_logging
from taxrouter.persistence.migrations import apply_migrations, discover_migrations, ensure_database


logger = logging.getLogger("taxrouter.provision")

_DEFAULT_MIGRATIONS = Path(__file__).resolve().parent.parent / "migrations"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create the control-plane database and apply migrations")
    parser.add_argument("--config", required=True, help="path to the YAML configuration file")
    parser.add_argument("--migrations", default=str(_DEFAULT_MIGRATIONS), help="directory of V*.sql files")
    return parser


async def _provision(config_path: str, migrations_dir: str) -> None:
    file_config = load_file_config(config_path)
    migrations = discover_migrations(migrations_dir)
    await ensure_database(file_config.database)
    applied = await apply_migrations(file_config.database, migrations)
    print(f"applied_migrations={len(applied)}")


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging()
    if not Path(args.config).exists():
        logger.error("provision_config_missing path=%s", args.config)
        return 1
    try:
        asyncio.run(_provision(args.config, args.migrations))
    except (TaxRouterError, SQLAlchemyError, OSError) as exc:
        logger.error("provision_failed error=%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
