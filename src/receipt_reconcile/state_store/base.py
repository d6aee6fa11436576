"""
Document store interface.

Entities are flat documents (dicts) grouped in collections. Arrays are the
only nested structure, which keeps write semantics simple:

- A write batch (bounded, default 500 operations) is the only atomic unit
- Field transforms (ArrayUnion, ArrayRemove, Increment, DELETE_FIELD) are
  resolved against the stored document at commit time
- Read-modify-write of array fields goes through compare-and-swap
  (update_with_retry) using a per-document version counter

Two implementations exist: SqliteDocumentStore (persistent) and
InMemoryDocumentStore (tests).
"""

from __future__ import annotations

import copy
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 500


class StoreError(Exception):
    """Base exception for document store errors."""

    pass


class DocumentNotFoundError(StoreError):
    """Update targeted a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document {collection}/{doc_id} not found")


class BatchTooLargeError(StoreError):
    """Write batch exceeded the maximum number of operations."""

    pass


class ConcurrentModificationError(StoreError):
    """Compare-and-swap retries were exhausted."""

    def __init__(self, collection: str, doc_id: str, attempts: int):
        self.collection = collection
        self.doc_id = doc_id
        self.attempts = attempts
        super().__init__(
            f"Document {collection}/{doc_id} changed concurrently ({attempts} attempts)"
        )


# === Field transforms ===


class _DeleteField:
    """Sentinel removing a field on update."""

    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()


class ArrayUnion:
    """Append values not already present."""

    def __init__(self, *values: Any):
        self.values = tuple(values)

    def __repr__(self) -> str:
        return f"ArrayUnion{self.values!r}"


class ArrayRemove:
    """Remove every occurrence of the given values."""

    def __init__(self, *values: Any):
        self.values = tuple(values)

    def __repr__(self) -> str:
        return f"ArrayRemove{self.values!r}"


class Increment:
    """Add to a numeric field (missing counts as 0)."""

    def __init__(self, amount: int = 1):
        self.amount = amount

    def __repr__(self) -> str:
        return f"Increment({self.amount})"


def apply_fields(existing: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
    """Apply an update (plain values and transforms) to a document copy."""
    result = copy.deepcopy(existing)
    for key, value in fields.items():
        if value is DELETE_FIELD:
            result.pop(key, None)
        elif isinstance(value, ArrayUnion):
            current = list(result.get(key) or [])
            for item in value.values:
                if item not in current:
                    current.append(item)
            result[key] = current
        elif isinstance(value, ArrayRemove):
            result[key] = [item for item in (result.get(key) or []) if item not in value.values]
        elif isinstance(value, Increment):
            result[key] = (result.get(key) or 0) + value.amount
        else:
            result[key] = copy.deepcopy(value)
    return result


# === Filters ===

Filter = tuple[str, str, Any]


def _compare(actual: Any, op: str, expected: Any) -> bool:
    if op == "==":
        return actual == expected
    if op == "!=":
        return actual != expected
    if op == "in":
        return actual in expected
    if op == "array_contains":
        return isinstance(actual, list) and expected in actual
    if actual is None:
        return False
    if op == "<":
        return actual < expected
    if op == "<=":
        return actual <= expected
    if op == ">":
        return actual > expected
    if op == ">=":
        return actual >= expected
    raise ValueError(f"Unsupported filter operator: {op}")


def matches_filters(doc: dict[str, Any], filters: Iterable[Filter]) -> bool:
    """Check a document against (field, op, value) filters."""
    return all(_compare(doc.get(name), op, value) for name, op, value in filters)


def sort_documents(
    docs: list[dict[str, Any]], order_by: str | None, descending: bool = False
) -> list[dict[str, Any]]:
    """Sort documents by a field; documents missing the field sort last."""
    if not order_by:
        return docs
    present = [d for d in docs if d.get(order_by) is not None]
    missing = [d for d in docs if d.get(order_by) is None]
    present.sort(key=lambda d: d[order_by], reverse=descending)
    return present + missing


def new_document_id() -> str:
    """Generate a random document id."""
    return uuid.uuid4().hex[:20]


# === Write batches ===


@dataclass
class WriteOp:
    """A single pending write."""

    kind: str  # set, merge, update, delete
    collection: str
    doc_id: str
    data: dict[str, Any] | None = None
    # Commit fails with ConcurrentModificationError unless the stored version matches
    expected_version: int | None = None


def check_expected_version(op: WriteOp, stored_version: int) -> None:
    """Raise when an op carries a version precondition the store no longer meets."""
    if op.expected_version is not None and op.expected_version != stored_version:
        raise ConcurrentModificationError(op.collection, op.doc_id, 1)


def resolve_write(existing: dict[str, Any] | None, op: WriteOp) -> dict[str, Any] | None:
    """Compute the new document state for a write (None = deleted)."""
    if op.kind == "delete":
        return None
    if op.kind == "set":
        return apply_fields({}, op.data or {})
    if op.kind == "merge":
        return apply_fields(existing or {}, op.data or {})
    if op.kind == "update":
        if existing is None:
            raise DocumentNotFoundError(op.collection, op.doc_id)
        return apply_fields(existing, op.data or {})
    raise ValueError(f"Unknown write kind: {op.kind}")


class WriteBatch:
    """
    Atomic group of writes.

    Usable as a context manager; commits on clean exit:

        with store.batch() as batch:
            batch.set("file_connections", conn_id, {...})
            batch.update("files", file_id, {"transaction_ids": ArrayUnion(tx_id)})
    """

    def __init__(self, store: DocumentStore, max_size: int = MAX_BATCH_SIZE):
        self.store = store
        self.max_size = max_size
        self.ops: list[WriteOp] = []
        self.committed = False

    def __len__(self) -> int:
        return len(self.ops)

    def __enter__(self) -> WriteBatch:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None and not self.committed:
            self.commit()

    def _add(self, op: WriteOp) -> WriteBatch:
        if self.committed:
            raise StoreError("Batch already committed")
        if len(self.ops) >= self.max_size:
            raise BatchTooLargeError(f"Batch exceeds {self.max_size} operations")
        self.ops.append(op)
        return self

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> WriteBatch:
        data = {k: v for k, v in data.items() if k != "id"}
        return self._add(WriteOp("merge" if merge else "set", collection, doc_id, data))

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        expected_version: int | None = None,
    ) -> WriteBatch:
        return self._add(
            WriteOp("update", collection, doc_id, dict(fields), expected_version=expected_version)
        )

    def delete(self, collection: str, doc_id: str) -> WriteBatch:
        return self._add(WriteOp("delete", collection, doc_id))

    def commit(self) -> None:
        """Apply all writes atomically."""
        if self.committed:
            raise StoreError("Batch already committed")
        if self.ops:
            self.store._commit(self.ops)
        self.committed = True


# === Store interface ===


class DocumentStore(ABC):
    """Abstract document store shared by the SQLite backend and the in-memory fake."""

    max_batch_size: int = MAX_BATCH_SIZE
    cas_max_attempts: int = 5

    @abstractmethod
    def get_versioned(
        self, collection: str, doc_id: str
    ) -> tuple[dict[str, Any] | None, int]:
        """Get a document with its version (0 when missing)."""

    @abstractmethod
    def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Find documents matching all filters. Results include an "id" key."""

    @abstractmethod
    def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected_version: int,
        data: dict[str, Any] | None,
    ) -> bool:
        """Replace a document only if its version still equals expected_version.

        expected_version 0 means "must not exist"; data None deletes.
        """

    @abstractmethod
    def _commit(self, ops: list[WriteOp]) -> None:
        """Apply a list of writes atomically."""

    # --- Convenience API built on the primitives above ---

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Get a document (with "id") or None."""
        doc, _ = self.get_versioned(collection, doc_id)
        return doc

    def batch(self) -> WriteBatch:
        """Start a new atomic write batch."""
        return WriteBatch(self, self.max_batch_size)

    def add(self, collection: str, data: dict[str, Any]) -> str:
        """Create a document with a generated id."""
        doc_id = new_document_id()
        self.batch().set(collection, doc_id, data).commit()
        return doc_id

    def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        self.batch().set(collection, doc_id, data, merge=merge).commit()

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """Update fields of an existing document (raises DocumentNotFoundError)."""
        self.batch().update(collection, doc_id, fields).commit()

    def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document; deleting a missing document is a no-op."""
        self.batch().delete(collection, doc_id).commit()

    def count(self, collection: str, filters: Iterable[Filter] = ()) -> int:
        return len(self.query(collection, filters))

    def update_with_retry(
        self,
        collection: str,
        doc_id: str,
        mutate: Callable[[dict[str, Any]], dict[str, Any] | None],
        max_attempts: int | None = None,
    ) -> dict[str, Any] | None:
        """
        Optimistic read-modify-write.

        mutate receives a private copy of the document and returns the new
        document, or None to leave it unchanged. On a version conflict the
        document is re-read and mutate is called again.

        Returns:
            The written document, or the unchanged one when mutate returned None

        Raises:
            DocumentNotFoundError: Document does not exist
            ConcurrentModificationError: Conflicts persisted for max_attempts tries
        """
        attempts = max_attempts or self.cas_max_attempts
        for attempt in range(1, attempts + 1):
            doc, version = self.get_versioned(collection, doc_id)
            if doc is None:
                raise DocumentNotFoundError(collection, doc_id)

            updated = mutate(copy.deepcopy(doc))
            if updated is None:
                return doc

            if self.compare_and_set(collection, doc_id, version, updated):
                updated["id"] = doc_id
                return updated

            logger.debug(
                f"Version conflict on {collection}/{doc_id} (attempt {attempt}/{attempts})"
            )

        raise ConcurrentModificationError(collection, doc_id, attempts)

    def retry_on_conflict(
        self, operation: Callable[[], Any], max_attempts: int | None = None
    ) -> Any:
        """
        Re-run a read-build-commit operation whose batch carries
        expected_version preconditions until it commits.
        """
        attempts = max_attempts or self.cas_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except ConcurrentModificationError as e:
                if attempt == attempts:
                    raise
                logger.debug(f"Retrying after conflict on {e.collection}/{e.doc_id}")
        return None

    def commit_in_chunks(self, ops: list[WriteOp], chunk_size: int | None = None) -> int:
        """
        Commit writes in consecutive batches of at most chunk_size
        (max_batch_size by default).

        Not atomic as a whole: a failure leaves earlier chunks applied.

        Returns:
            Number of chunks committed
        """
        size = min(chunk_size or self.max_batch_size, self.max_batch_size)
        chunks = 0
        for start in range(0, len(ops), size):
            self._commit(ops[start : start + size])
            chunks += 1
        return chunks
