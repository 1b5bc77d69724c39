#!/usr/bin/env python3
# herodispatch/infra/migrate.py
"""
Standalone migration runner.

    python -m herodispatch.infra.migrate           # apply pending files
    python -m herodispatch.infra.migrate --check   # list pending files, exit 1 if any

Run it before starting the service (CI/CD step, init container, or by
hand). The service validates the schema at startup but never migrates.
"""
import argparse
import asyncio
import sys

from herodispatch.config import settings
from herodispatch.infra.db_async import close_pool, init_pool
from herodispatch.infra.logging_config import get_logger, setup_logging
from herodispatch.infra.migrations_async import apply_migrations, pending_migrations

logger = get_logger(__name__)


async def main(check_only: bool = False) -> int:
    logger.info(f"Migrations for env={settings.app_env}, database={settings.pghost}:{settings.pgport}/{settings.pgdatabase}")

    try:
        await init_pool()

        if check_only:
            pending = await pending_migrations()
            for name in pending:
                logger.info(f"pending: {name}")
            logger.info(f"{len(pending)} migration(s) pending")
            return 1 if pending else 0

        result = await apply_migrations()
        for name in result["applied"]:
            logger.info(f"applied: {name}")
        logger.info(f"{result['count']} migration(s) applied" if result["count"] else "Schema already up to date")
        return 0 if result["ok"] else 1

    except Exception as exc:
        logger.critical(f"Migration failed: {exc}", exc_info=True)
        return 1

    finally:
        await close_pool()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Apply or check herodispatch SQL migrations")
    parser.add_argument("--check", action="store_true", help="only report pending migrations")
    args = parser.parse_args()

    setup_logging(level="INFO", use_json=settings.is_production)
    sys.exit(asyncio.run(main(check_only=args.check)))
