"""PostgreSQL implementation of DocumentStore (JSONB documents)."""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, Sequence

import asyncpg

from rollup import config
from rollup.db.repositories.base import (
    BatchUpdate,
    ChangeEmitterMixin,
    check_field,
    merge_patch,
    strip_id,
    with_id,
)
from rollup.errors import DocumentNotFoundError, QueryLimitExceededError, StoreError
from rollup.models import ChangeRecord


@asynccontextmanager
async def _store_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        raise StoreError(f"{operation} failed: {exc}") from exc


def _decode(row: asyncpg.Record) -> dict[str, Any]:
    data = row["data"]
    if isinstance(data, str):
        data = json.loads(data)
    return with_id(row["id"], data)


class PostgresDocumentStore(ChangeEmitterMixin):
    """PostgreSQL-backed document storage."""

    def __init__(self, db: asyncpg.Pool, in_query_limit: int | None = None):
        self.db = db
        self.in_query_limit = in_query_limit or config.IN_QUERY_LIMIT
        self._listeners = []

    async def get_by_id(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        async with _store_errors(f"get {collection}/{doc_id}"):
            row = await self.db.fetchrow(
                "SELECT id, data FROM documents WHERE collection = $1 AND id = $2",
                collection, doc_id,
            )
        return _decode(row) if row else None

    async def query_equals(
        self, collection: str, field: str, value: Any, tenant_id: str
    ) -> list[dict[str, Any]]:
        # Exact JSONB equality; an array holding ``value`` does not match.
        async with _store_errors(f"query {collection}.{field} =="):
            rows = await self.db.fetch(
                """SELECT id, data FROM documents
                   WHERE collection = $1 AND tenant_id = $2 AND data -> $3 = $4::jsonb
                   ORDER BY id""",
                collection, tenant_id, check_field(field), json.dumps(value),
            )
        return [_decode(r) for r in rows]

    async def query_in(
        self, collection: str, field: str, values: Sequence[str], tenant_id: str
    ) -> list[dict[str, Any]]:
        values = [str(v) for v in values]
        if len(values) > self.in_query_limit:
            raise QueryLimitExceededError(field, len(values), self.in_query_limit)
        if not values:
            return []
        async with _store_errors(f"query {collection}.{field} in"):
            rows = await self.db.fetch(
                """SELECT id, data FROM documents
                   WHERE collection = $1 AND tenant_id = $2
                     AND jsonb_typeof(data -> $3) = 'string'
                     AND data ->> $3 = ANY($4::text[])
                   ORDER BY id""",
                collection, tenant_id, check_field(field), values,
            )
        return [_decode(r) for r in rows]

    async def query_array_contains(
        self, collection: str, field: str, value: str, tenant_id: str
    ) -> list[dict[str, Any]]:
        containment = json.dumps({check_field(field): [value]})
        async with _store_errors(f"query {collection}.{field} array-contains"):
            rows = await self.db.fetch(
                """SELECT id, data FROM documents
                   WHERE collection = $1 AND tenant_id = $2 AND data @> $3::jsonb
                   ORDER BY id""",
                collection, tenant_id, containment,
            )
        return [_decode(r) for r in rows]

    async def list_by_tenant(self, collection: str, tenant_id: str) -> list[dict[str, Any]]:
        async with _store_errors(f"list {collection}"):
            rows = await self.db.fetch(
                "SELECT id, data FROM documents WHERE collection = $1 AND tenant_id = $2 ORDER BY id",
                collection, tenant_id,
            )
        return [_decode(r) for r in rows]

    # ── Writes ─────────────────────────────────────────────────────

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                yield conn

    @staticmethod
    async def _locked_row(
        conn: asyncpg.Connection, collection: str, doc_id: str
    ) -> Optional[dict[str, Any]]:
        row = await conn.fetchrow(
            "SELECT id, data FROM documents WHERE collection = $1 AND id = $2 FOR UPDATE",
            collection, doc_id,
        )
        return _decode(row) if row else None

    @staticmethod
    async def _write_row(
        conn: asyncpg.Connection, collection: str, doc_id: str, data: dict[str, Any]
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await conn.execute(
            """INSERT INTO documents (collection, id, tenant_id, data, created_at, updated_at)
               VALUES ($1, $2, $3, $4::jsonb, $5, $5)
               ON CONFLICT(collection, id) DO UPDATE SET
                   tenant_id=EXCLUDED.tenant_id,
                   data=EXCLUDED.data,
                   updated_at=EXCLUDED.updated_at
            """,
            collection, doc_id, str(data.get("tenant_id") or ""), json.dumps(data), now,
        )

    async def _patch(self, conn: asyncpg.Connection, update: BatchUpdate) -> ChangeRecord:
        before = await self._locked_row(conn, update.collection, update.doc_id)
        if before is None:
            raise DocumentNotFoundError(update.collection, update.doc_id)
        merged = merge_patch(before, update)
        await self._write_row(conn, update.collection, update.doc_id, merged)
        return ChangeRecord(
            update.collection, update.doc_id, before, with_id(update.doc_id, merged)
        )

    async def atomic_batch_update(self, updates: Sequence[BatchUpdate]) -> None:
        if not updates:
            return
        records: list[ChangeRecord] = []
        async with _store_errors("batch update"):
            async with self._transaction() as conn:
                for update in updates:
                    records.append(await self._patch(conn, update))
        self._emit(records)

    async def update(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None:
        async with _store_errors(f"update {collection}/{doc_id}"):
            async with self._transaction() as conn:
                record = await self._patch(conn, BatchUpdate(collection, doc_id, patch))
        self._emit([record])

    async def set(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> Optional[dict[str, Any]]:
        payload = strip_id(data)
        async with _store_errors(f"set {collection}/{doc_id}"):
            async with self._transaction() as conn:
                before = await self._locked_row(conn, collection, doc_id)
                await self._write_row(conn, collection, doc_id, payload)
        self._emit([ChangeRecord(collection, doc_id, before, with_id(doc_id, payload))])
        return before

    async def delete(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        async with _store_errors(f"delete {collection}/{doc_id}"):
            async with self._transaction() as conn:
                before = await self._locked_row(conn, collection, doc_id)
                if before is not None:
                    await conn.execute(
                        "DELETE FROM documents WHERE collection = $1 AND id = $2",
                        collection, doc_id,
                    )
        if before is not None:
            self._emit([ChangeRecord(collection, doc_id, before, None)])
        return before
