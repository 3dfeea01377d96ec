"""Exceptions raised at the document store boundary."""
from __future__ import annotations


class StoreError(Exception):
    """A store operation (query or write) was rejected."""


class DocumentNotFoundError(StoreError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


class QueryLimitExceededError(StoreError):
    def __init__(self, field: str, count: int, limit: int):
        super().__init__(
            f"'in' query on {field} received {count} values (limit {limit})"
        )
        self.field = field
        self.count = count
        self.limit = limit
