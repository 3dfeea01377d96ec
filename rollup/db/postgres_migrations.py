"""PostgreSQL schema creation and versioning."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("rollup.db")

SCHEMA_VERSION = 1

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS documents (
    collection  TEXT NOT NULL,
    id          TEXT NOT NULL,
    tenant_id   TEXT NOT NULL DEFAULT '',
    data        JSONB NOT NULL,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL,
    PRIMARY KEY (collection, id)
);

CREATE INDEX IF NOT EXISTS idx_documents_tenant ON documents(collection, tenant_id);
CREATE INDEX IF NOT EXISTS idx_documents_data ON documents USING GIN (data jsonb_path_ops);
"""


async def run_migrations(pool: asyncpg.Pool) -> None:
    """Create the document tables. Idempotent."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(_TABLES)
            current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
            if current_version >= SCHEMA_VERSION:
                logger.info("Schema is up to date (version %s)", current_version)
                return
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
    logger.info("Migrations complete, schema version %s", SCHEMA_VERSION)
