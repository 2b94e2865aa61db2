from __future__ import annotations

import logging

import asyncpg

from pgsub.domain.errors import MigrationError
from pgsub.repositories.sql_loader import load_migration, migration_versions

logger = logging.getLogger("pgsub.runtime")

# Serializes concurrent `migrate` runs against the same database.
MIGRATION_LOCK_KEY = 7_340_021

SQL_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS pgsub_schema_migrations
(
    version    TEXT PRIMARY KEY,
    applied_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP
)
"""
SQL_APPLIED_VERSIONS = "SELECT version FROM pgsub_schema_migrations"
SQL_RECORD_VERSION = "INSERT INTO pgsub_schema_migrations (version) VALUES ($1)"
SQL_FORGET_VERSION = "DELETE FROM pgsub_schema_migrations WHERE version = $1"


async def run_migrations(*, dsn: str) -> list[str]:
    """Apply pending migrations in order and return the versions applied.

    Every migration runs in its own transaction together with its ledger row,
    so a failed migration leaves the schema at the previous version.
    """
    try:
        conn = await asyncpg.connect(dsn=dsn)
    except Exception as exc:
        raise MigrationError(f"cannot connect to database: {exc}") from exc

    applied_now: list[str] = []
    try:
        await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_KEY)
        try:
            await conn.execute(SQL_CREATE_LEDGER)
            applied = {row["version"] for row in await conn.fetch(SQL_APPLIED_VERSIONS)}
            for version in migration_versions():
                if version in applied:
                    continue
                try:
                    async with conn.transaction():
                        await conn.execute(load_migration(version))
                        await conn.execute(SQL_RECORD_VERSION, version)
                except Exception as exc:
                    raise MigrationError(f"migration {version} failed: {exc}") from exc
                applied_now.append(version)
                logger.info("migration applied", extra={"migration": version})
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)
    finally:
        await conn.close()
    return applied_now


async def rollback_migrations(*, dsn: str, steps: int = 1) -> list[str]:
    try:
        conn = await asyncpg.connect(dsn=dsn)
    except Exception as exc:
        raise MigrationError(f"cannot connect to database: {exc}") from exc

    rolled_back: list[str] = []
    try:
        await conn.execute(SQL_CREATE_LEDGER)
        applied = {row["version"] for row in await conn.fetch(SQL_APPLIED_VERSIONS)}
        for version in sorted(applied, reverse=True)[:steps]:
            try:
                async with conn.transaction():
                    await conn.execute(load_migration(version, direction="down"))
                    await conn.execute(SQL_FORGET_VERSION, version)
            except Exception as exc:
                raise MigrationError(f"rollback of {version} failed: {exc}") from exc
            rolled_back.append(version)
            logger.info("migration rolled back", extra={"migration": version})
    finally:
        await conn.close()
    return rolled_back
