"""
In-memory document store.

Same semantics as the SQLite backend (atomic batches, versions, CAS) with
no persistence. Used by tests and for dry runs; inject it through the
OperationsContext like any other store.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Iterable
from typing import Any

from .base import (
    DocumentStore,
    Filter,
    WriteOp,
    check_expected_version,
    matches_filters,
    resolve_write,
    sort_documents,
)


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed DocumentStore guarded by a single lock."""

    def __init__(self, max_batch_size: int = 500, cas_max_attempts: int = 5):
        self.max_batch_size = max_batch_size
        self.cas_max_attempts = cas_max_attempts
        # collection -> doc_id -> (data, version)
        self._collections: dict[str, dict[str, tuple[dict[str, Any], int]]] = {}
        self._lock = threading.RLock()
        self.commit_count = 0

    def get_versioned(
        self, collection: str, doc_id: str
    ) -> tuple[dict[str, Any] | None, int]:
        with self._lock:
            entry = self._collections.get(collection, {}).get(doc_id)
            if entry is None:
                return None, 0
            data, version = entry
            doc = copy.deepcopy(data)
            doc["id"] = doc_id
            return doc, version

    def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        filters = list(filters)
        with self._lock:
            docs = []
            for doc_id, (data, _) in self._collections.get(collection, {}).items():
                if matches_filters(data, filters):
                    doc = copy.deepcopy(data)
                    doc["id"] = doc_id
                    docs.append(doc)

        docs = sort_documents(docs, order_by, descending)
        if limit is not None:
            docs = docs[:limit]
        return docs

    def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected_version: int,
        data: dict[str, Any] | None,
    ) -> bool:
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            current = docs.get(doc_id)
            current_version = current[1] if current else 0
            if current_version != expected_version:
                return False
            if data is None:
                docs.pop(doc_id, None)
            else:
                clean = {k: copy.deepcopy(v) for k, v in data.items() if k != "id"}
                docs[doc_id] = (clean, current_version + 1)
            return True

    def _commit(self, ops: list[WriteOp]) -> None:
        with self._lock:
            # Stage every write first so a failing op leaves nothing applied
            staged: dict[tuple[str, str], tuple[dict[str, Any] | None, int]] = {}
            for op in ops:
                key = (op.collection, op.doc_id)
                if key in staged:
                    existing, version = staged[key]
                else:
                    entry = self._collections.get(op.collection, {}).get(op.doc_id)
                    existing, version = (entry[0], entry[1]) if entry else (None, 0)
                check_expected_version(op, version)
                staged[key] = (resolve_write(existing, op), version)

            for (collection, doc_id), (data, version) in staged.items():
                docs = self._collections.setdefault(collection, {})
                if data is None:
                    docs.pop(doc_id, None)
                else:
                    docs[doc_id] = (data, version + 1)
            self.commit_count += 1

    def clear(self) -> None:
        """Drop every document."""
        with self._lock:
            self._collections.clear()
