"""Repository package for document store access."""

from .base import ArrayRemove, BatchUpdate, DocumentStore
from .documents import SqliteDocumentStore

__all__ = [
    "ArrayRemove",
    "BatchUpdate",
    "DocumentStore",
    "SqliteDocumentStore",
]
