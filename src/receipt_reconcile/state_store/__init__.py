"""
Document store.

Flat JSON documents grouped in collections, with:
- Atomic write batches (bounded size)
- Field transforms (array union/remove, increment, delete)
- Optimistic concurrency via per-document versions

Backends: SqliteDocumentStore (persistent), InMemoryDocumentStore (tests).
"""

from .base import (
    DELETE_FIELD,
    ArrayRemove,
    ArrayUnion,
    BatchTooLargeError,
    ConcurrentModificationError,
    DocumentNotFoundError,
    DocumentStore,
    Increment,
    StoreError,
    WriteBatch,
    WriteOp,
)
from .memory_store import InMemoryDocumentStore
from .sqlite_store import SqliteDocumentStore

__all__ = [
    "DELETE_FIELD",
    "ArrayRemove",
    "ArrayUnion",
    "BatchTooLargeError",
    "ConcurrentModificationError",
    "DocumentNotFoundError",
    "DocumentStore",
    "Increment",
    "InMemoryDocumentStore",
    "SqliteDocumentStore",
    "StoreError",
    "WriteBatch",
    "WriteOp",
]
