# herodispatch/infra/migrations_async.py
"""
Async database migrations runner (asyncpg).

The service never migrates on startup; it only checks that every file in
``sql/`` has been applied (``python -m herodispatch.infra.migrate``).
"""
from __future__ import annotations
from pathlib import Path

from herodispatch.infra.db_async import db_conn
from herodispatch.infra.logging_config import get_logger

logger = get_logger(__name__)


def _sql_dir() -> Path:
    """SQL migrations directory (next to this file)."""
    return Path(__file__).resolve().parent / "sql"


def migration_files() -> list[Path]:
    return sorted(p for p in _sql_dir().glob("*.sql") if p.is_file())


async def apply_migrations() -> dict:
    """
    Apply SQL migrations in filename order (001_..., 002_...).

    Already applied files are tracked in ``schema_migrations``. All pending
    files run in one transaction.

    Returns:
        dict with keys:
            - ok: bool
            - applied: list[str] (filenames applied in this run)
            - count: int
    """
    files = migration_files()

    async with db_conn(autocommit=False) as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )

        rows = await conn.fetch("SELECT version FROM schema_migrations")
        applied = {row['version'] for row in rows}

        applied_now = []
        for p in files:
            version = p.name
            if version in applied:
                logger.debug(f"Migration {version} already applied, skipping")
                continue

            logger.info(f"Applying migration: {version}")
            await conn.execute(p.read_text(encoding="utf-8"))
            await conn.execute(
                "INSERT INTO schema_migrations(version) VALUES ($1)",
                version
            )

            applied_now.append(version)
            logger.info(f"Migration {version} applied successfully")

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}


async def pending_migrations() -> list[str]:
    """Filenames in ``sql/`` not yet recorded in ``schema_migrations``."""
    async with db_conn() as conn:
        table_exists = await conn.fetchval(
            """
            SELECT EXISTS (
                SELECT FROM information_schema.tables
                WHERE table_schema = 'public'
                AND table_name = 'schema_migrations'
            )
            """
        )
        applied: set[str] = set()
        if table_exists:
            rows = await conn.fetch("SELECT version FROM schema_migrations")
            applied = {row['version'] for row in rows}

    return [p.name for p in migration_files() if p.name not in applied]


async def validate_schema() -> None:
    """
    Raise if the database is behind the code.

    Raises:
        RuntimeError: with the list of pending migration files
    """
    pending = await pending_migrations()
    if pending:
        error = (
            f"Database schema is behind: {', '.join(pending)} not applied. "
            "Run migrations first: python -m herodispatch.infra.migrate"
        )
        logger.critical(error)
        raise RuntimeError(error)
