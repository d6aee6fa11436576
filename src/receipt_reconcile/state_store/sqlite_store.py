"""
SQLite-based document store implementation.

Tables:
- documents: one row per (collection, id) holding the JSON document,
  its owning user and an optimistic-concurrency version counter
- migrations: applied schema migrations (see migrations/runner.py)
"""

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .base import (
    DocumentStore,
    Filter,
    StoreError,
    WriteOp,
    check_expected_version,
    matches_filters,
    resolve_write,
    sort_documents,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class SqliteDocumentStore(DocumentStore):
    """
    SQLite-backed document store.

    Every write batch runs inside one SQLite transaction, so a batch is
    applied entirely or not at all. Equality filters on user_id are pushed
    down to SQL; all other filters are evaluated on the decoded documents.

    Thread-safe for single-writer scenarios.
    """

    def __init__(
        self,
        db_path: Path | str,
        run_migrations: bool = True,
        max_batch_size: int = 500,
        cas_max_attempts: int = 5,
    ):
        """
        Initialize document store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
            max_batch_size: Maximum writes per atomic batch
            cas_max_attempts: Compare-and-swap retries in update_with_retry
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_batch_size = max_batch_size
        self.cas_max_attempts = cas_max_attempts
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _run_migrations(self) -> None:
        """Run pending schema migrations."""
        from .migrations.runner import MigrationRunner

        conn = self._get_connection()
        try:
            MigrationRunner(conn).run_pending()
        finally:
            conn.close()

    @staticmethod
    def _decode(row: sqlite3.Row) -> dict[str, Any]:
        doc = json.loads(row["data"])
        doc["id"] = row["id"]
        return doc

    def get_versioned(
        self, collection: str, doc_id: str
    ) -> tuple[dict[str, Any] | None, int]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id, data, version FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
        if row is None:
            return None, 0
        return self._decode(row), row["version"]

    def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        filters = list(filters)
        sql = "SELECT id, data FROM documents WHERE collection = ?"
        params: list[Any] = [collection]
        for name, op, value in filters:
            if name == "user_id" and op == "==":
                sql += " AND user_id = ?"
                params.append(value)

        with self._transaction() as conn:
            rows = conn.execute(sql, params).fetchall()

        docs = []
        for row in rows:
            doc = self._decode(row)
            if matches_filters(doc, filters):
                docs.append(doc)

        docs = sort_documents(docs, order_by, descending)
        if limit is not None:
            docs = docs[:limit]
        return docs

    def _write(
        self,
        conn: sqlite3.Connection,
        collection: str,
        doc_id: str,
        data: dict[str, Any] | None,
        current_version: int,
    ) -> None:
        """Write (or delete) one row inside an open transaction."""
        if data is None:
            conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            )
            return

        payload = json.dumps({k: v for k, v in data.items() if k != "id"}, sort_keys=True)
        now = _now()
        if current_version == 0:
            conn.execute(
                """
                INSERT INTO documents
                    (collection, id, user_id, data, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, 1, ?, ?)
                """,
                (collection, doc_id, data.get("user_id"), payload, now, now),
            )
        else:
            conn.execute(
                """
                UPDATE documents
                SET data = ?, user_id = ?, version = version + 1, updated_at = ?
                WHERE collection = ? AND id = ?
                """,
                (payload, data.get("user_id"), now, collection, doc_id),
            )

    def _read_for_update(
        self, conn: sqlite3.Connection, collection: str, doc_id: str
    ) -> tuple[dict[str, Any] | None, int]:
        row = conn.execute(
            "SELECT id, data, version FROM documents WHERE collection = ? AND id = ?",
            (collection, doc_id),
        ).fetchone()
        if row is None:
            return None, 0
        data = json.loads(row["data"])
        return data, row["version"]

    def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected_version: int,
        data: dict[str, Any] | None,
    ) -> bool:
        with self._transaction() as conn:
            # BEGIN IMMEDIATE takes the write lock before the version check
            conn.execute("BEGIN IMMEDIATE")
            _, version = self._read_for_update(conn, collection, doc_id)
            if version != expected_version:
                return False
            self._write(conn, collection, doc_id, data, version)
            return True

    def _commit(self, ops: list[WriteOp]) -> None:
        try:
            with self._transaction() as conn:
                conn.execute("BEGIN IMMEDIATE")
                staged: dict[tuple[str, str], dict[str, Any] | None] = {}
                versions: dict[tuple[str, str], int] = {}
                for op in ops:
                    key = (op.collection, op.doc_id)
                    if key in staged:
                        existing = staged[key]
                    else:
                        existing, versions[key] = self._read_for_update(
                            conn, op.collection, op.doc_id
                        )
                    check_expected_version(op, versions[key])
                    staged[key] = resolve_write(existing, op)

                for (collection, doc_id), data in staged.items():
                    self._write(conn, collection, doc_id, data, versions[(collection, doc_id)])
        except sqlite3.Error as e:
            logger.error(f"Batch commit of {len(ops)} writes failed: {e}")
            raise StoreError(f"Batch commit failed: {e}") from e

    def get_stats(self) -> dict[str, int]:
        """Get document counts per collection."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT collection, COUNT(*) AS n FROM documents GROUP BY collection"
            ).fetchall()
        return {row["collection"]: row["n"] for row in rows}
