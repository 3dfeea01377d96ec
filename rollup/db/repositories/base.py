"""Document store contract shared by the SQLite and Postgres backends."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Sequence, runtime_checkable

from rollup.models import ChangeRecord

logger = logging.getLogger("rollup.db")

ChangeListener = Callable[[ChangeRecord], None]

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class ArrayRemove:
    """Drop every occurrence of ``value`` from the list at ``field``.

    Evaluated against the row read inside the write transaction, so concurrent
    removals and additions to the same list are both kept. ``count_field``, when
    set, is rewritten to the new list length.
    """

    field: str
    value: Any
    count_field: str = ""


@dataclass(frozen=True)
class BatchUpdate:
    collection: str
    doc_id: str
    patch: dict[str, Any]
    array_remove: Optional[ArrayRemove] = None


@runtime_checkable
class DocumentStore(Protocol):
    in_query_limit: int

    def add_change_listener(self, listener: ChangeListener) -> None: ...

    async def get_by_id(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]: ...

    async def query_equals(
        self, collection: str, field: str, value: Any, tenant_id: str
    ) -> list[dict[str, Any]]: ...

    async def query_in(
        self, collection: str, field: str, values: Sequence[str], tenant_id: str
    ) -> list[dict[str, Any]]: ...

    async def query_array_contains(
        self, collection: str, field: str, value: str, tenant_id: str
    ) -> list[dict[str, Any]]: ...

    async def list_by_tenant(self, collection: str, tenant_id: str) -> list[dict[str, Any]]: ...

    async def atomic_batch_update(self, updates: Sequence[BatchUpdate]) -> None: ...

    async def update(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None: ...

    async def set(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> Optional[dict[str, Any]]: ...

    async def delete(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]: ...


def check_field(field: str) -> str:
    """Reject field names that cannot be used as a top-level JSON key path."""
    if not _FIELD_RE.match(field or ""):
        raise ValueError(f"Invalid document field name: {field!r}")
    return field


def strip_id(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if key != "id"}


def with_id(doc_id: str, data: dict[str, Any]) -> dict[str, Any]:
    return {**data, "id": doc_id}


class ChangeEmitterMixin:
    """Fan committed writes out to registered change listeners."""

    _listeners: list[ChangeListener]

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _emit(self, records: Sequence[ChangeRecord]) -> None:
        for record in records:
            for listener in self._listeners:
                try:
                    listener(record)
                except Exception:
                    # Writes are committed before listeners run.
                    logger.exception(
                        "Change listener failed for %s/%s", record.collection, record.document_id
                    )


def merge_patch(current: dict[str, Any], update: BatchUpdate) -> dict[str, Any]:
    """Shallow-merge ``update.patch`` onto a freshly read row, then apply its removal."""
    merged = {**strip_id(current), **strip_id(update.patch)}
    removal = update.array_remove
    if removal is not None:
        items = merged.get(check_field(removal.field))
        if isinstance(items, list):
            remaining = [item for item in items if item != removal.value]
            merged[removal.field] = remaining
            if removal.count_field:
                merged[check_field(removal.count_field)] = len(remaining)
    return merged
