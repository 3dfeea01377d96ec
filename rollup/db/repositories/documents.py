"""SQLite implementation of DocumentStore.

Documents live in a single ``documents`` table as JSON; field queries go
through ``json_extract``/``json_each``.
"""
from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, Sequence

import aiosqlite

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


def _json_path(field: str) -> str:
    return f"$.{check_field(field)}"


@asynccontextmanager
async def _store_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except aiosqlite.Error as exc:
        raise StoreError(f"{operation} failed: {exc}") from exc


class SqliteDocumentStore(ChangeEmitterMixin):
    """SQLite-backed document storage with tenant-scoped field queries."""

    def __init__(self, db: aiosqlite.Connection, in_query_limit: int | None = None):
        self.db = db
        self.in_query_limit = in_query_limit or config.IN_QUERY_LIMIT
        self._write_lock = asyncio.Lock()
        self._listeners = []

    # ── Reads ──────────────────────────────────────────────────────

    async def _fetch_one(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        async with self.db.execute(
            "SELECT id, data_json FROM documents WHERE collection = ? AND id = ?",
            (collection, doc_id),
        ) as cur:
            row = await cur.fetchone()
        return with_id(row[0], json.loads(row[1])) if row else None

    async def _fetch_many(self, where: str, params: Sequence[Any]) -> list[dict[str, Any]]:
        async with self.db.execute(
            f"SELECT id, data_json FROM documents WHERE {where} ORDER BY id",
            tuple(params),
        ) as cur:
            rows = await cur.fetchall()
        return [with_id(row[0], json.loads(row[1])) for row in rows]

    async def get_by_id(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        async with _store_errors(f"get {collection}/{doc_id}"):
            return await self._fetch_one(collection, doc_id)

    async def query_equals(
        self, collection: str, field: str, value: Any, tenant_id: str
    ) -> list[dict[str, Any]]:
        async with _store_errors(f"query {collection}.{field} =="):
            return await self._fetch_many(
                "collection = ? AND tenant_id = ? AND json_extract(data_json, ?) = ?",
                (collection, tenant_id, _json_path(field), value),
            )

    async def query_in(
        self, collection: str, field: str, values: Sequence[str], tenant_id: str
    ) -> list[dict[str, Any]]:
        values = list(values)
        if len(values) > self.in_query_limit:
            raise QueryLimitExceededError(field, len(values), self.in_query_limit)
        if not values:
            return []
        placeholders = ", ".join("?" for _ in values)
        async with _store_errors(f"query {collection}.{field} in"):
            return await self._fetch_many(
                f"collection = ? AND tenant_id = ? AND json_extract(data_json, ?) IN ({placeholders})",
                (collection, tenant_id, _json_path(field), *values),
            )

    async def query_array_contains(
        self, collection: str, field: str, value: str, tenant_id: str
    ) -> list[dict[str, Any]]:
        path = _json_path(field)
        async with _store_errors(f"query {collection}.{field} array-contains"):
            return await self._fetch_many(
                """collection = ? AND tenant_id = ?
                   AND json_type(data_json, ?) = 'array'
                   AND EXISTS (
                       SELECT 1 FROM json_each(documents.data_json, ?) AS item
                       WHERE item.value = ?
                   )""",
                (collection, tenant_id, path, path, value),
            )

    async def list_by_tenant(self, collection: str, tenant_id: str) -> list[dict[str, Any]]:
        async with _store_errors(f"list {collection}"):
            return await self._fetch_many(
                "collection = ? AND tenant_id = ?", (collection, tenant_id)
            )

    # ── Writes ─────────────────────────────────────────────────────

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[None]:
        async with self._write_lock:
            try:
                yield
                await self.db.commit()
            except BaseException:
                await self.db.rollback()
                raise

    async def _write_row(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
    ) -> None:
        # Conflicting rows keep their first created_at.
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO documents (collection, id, tenant_id, data_json, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(collection, id) DO UPDATE SET
                   tenant_id=excluded.tenant_id,
                   data_json=excluded.data_json,
                   updated_at=excluded.updated_at
            """,
            (
                collection,
                doc_id,
                str(data.get("tenant_id") or ""),
                json.dumps(data),
                now,
                now,
            ),
        )

    async def _patch(self, update: BatchUpdate) -> ChangeRecord:
        before = await self._fetch_one(update.collection, update.doc_id)
        if before is None:
            raise DocumentNotFoundError(update.collection, update.doc_id)
        merged = merge_patch(before, update)
        await self._write_row(update.collection, update.doc_id, merged)
        return ChangeRecord(
            update.collection, update.doc_id, before, with_id(update.doc_id, merged)
        )

    async def atomic_batch_update(self, updates: Sequence[BatchUpdate]) -> None:
        """Apply every patch or none of them."""
        if not updates:
            return
        records: list[ChangeRecord] = []
        async with _store_errors("batch update"):
            async with self._transaction():
                for update in updates:
                    records.append(await self._patch(update))
        self._emit(records)

    async def update(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None:
        async with _store_errors(f"update {collection}/{doc_id}"):
            async with self._transaction():
                record = await self._patch(BatchUpdate(collection, doc_id, patch))
        self._emit([record])

    async def set(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> Optional[dict[str, Any]]:
        """Create or replace a document; returns the previous snapshot."""
        payload = strip_id(data)
        async with _store_errors(f"set {collection}/{doc_id}"):
            async with self._transaction():
                before = await self._fetch_one(collection, doc_id)
                await self._write_row(collection, doc_id, payload)
        self._emit([ChangeRecord(collection, doc_id, before, with_id(doc_id, payload))])
        return before

    async def delete(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        """Delete a document; returns the deleted snapshot (None if absent)."""
        async with _store_errors(f"delete {collection}/{doc_id}"):
            async with self._transaction():
                before = await self._fetch_one(collection, doc_id)
                if before is not None:
                    await self.db.execute(
                        "DELETE FROM documents WHERE collection = ? AND id = ?",
                        (collection, doc_id),
                    )
        if before is not None:
            self._emit([ChangeRecord(collection, doc_id, before, None)])
        return before
