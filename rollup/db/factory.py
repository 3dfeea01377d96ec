"""Store factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any

import aiosqlite

from rollup.db.repositories.base import DocumentStore
from rollup.db.repositories.documents import SqliteDocumentStore


def get_document_store(db: Any, in_query_limit: int | None = None) -> DocumentStore:
    if isinstance(db, aiosqlite.Connection):
        return SqliteDocumentStore(db, in_query_limit=in_query_limit)
    from rollup.db.repositories.postgres.documents import PostgresDocumentStore
    return PostgresDocumentStore(db, in_query_limit=in_query_limit)
