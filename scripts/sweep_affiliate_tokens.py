from __future__ import annotations

import argparse
import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError

from taxrouter.core.config import get_file_config, get_settings
from taxrouter.core.errors import TaxRouterError
from taxrouter.core.logging import configure_logging
from taxrouter.services.bootstrap import build_core_services


logger = logging.getLogger("taxrouter.sweep")


async def _sweep(tenant_id: str | None) -> int:
    core = build_core_services(get_settings(), get_file_config())
    failed = 0
    try:
        tenant_ids = [tenant_id] if tenant_id else await core.registry.list_active_ids()
        for current in tenant_ids:
            try:
                handle, record = await core.cache.obtain(current)
                swept = await core.affiliate_tokens.sweep_expired(handle, record.schema_prefix)
            except (TaxRouterError, SQLAlchemyError) as exc:
                # One unreachable tenant does not stop the sweep of the others.
                failed += 1
                logger.error("affiliate_token_sweep_failed tenant_id=%s error=%s", current, exc)
                continue
            print(f"tenant_id={current} swept={swept}")
    finally:
        await core.close()
    return failed


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Delete expired affiliate dashboard tokens")
    parser.add_argument("--tenant", default=None, help="sweep one tenant; default is every active tenant")
    args = parser.parse_args(argv)
    configure_logging()
    failed = asyncio.run(_sweep(args.tenant))
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
