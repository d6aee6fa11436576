"""
Migration runner for versioned document-store schema changes.

Migrations are named with format: {version}_{name}.py
E.g., 001_documents.py, 002_document_indexes.py

Each migration must define:
- VERSION: int
- NAME: str
- upgrade(conn: Connection) -> None
- downgrade(conn: Connection) -> None  # Optional
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

MIGRATIONS_PACKAGE = "receipt_reconcile.state_store.migrations"


@dataclass
class Migration:
    """A single schema migration module."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None


@dataclass
class AppliedMigration:
    """Row of the migrations tracking table."""

    version: int
    name: str
    applied_at: str


def get_all_migrations() -> list[Migration]:
    """
    Load all migration modules next to this file.

    Raises ImportError/AttributeError for a malformed migration: a schema
    with a silently skipped step is worse than a failed start.
    """
    migrations = []
    for py_file in sorted(Path(__file__).parent.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"{MIGRATIONS_PACKAGE}.{py_file.stem}")
        migrations.append(
            Migration(
                version=module.VERSION,
                name=module.NAME,
                upgrade=module.upgrade,
                downgrade=getattr(module, "downgrade", None),
            )
        )

    versions = [m.version for m in migrations]
    if len(versions) != len(set(versions)):
        raise ValueError(f"Duplicate migration versions: {versions}")

    return sorted(migrations, key=lambda m: m.version)


class MigrationRunner:
    """
    Applies pending migrations in version order.

    Each migration and its bookkeeping row are committed together.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def applied(self) -> list[AppliedMigration]:
        """List applied migrations, oldest first."""
        rows = self.conn.execute(
            "SELECT version, name, applied_at FROM migrations ORDER BY version"
        ).fetchall()
        return [AppliedMigration(version=r[0], name=r[1], applied_at=r[2]) for r in rows]

    def current_version(self) -> int:
        applied = self.applied()
        return applied[-1].version if applied else 0

    def pending(self) -> list[Migration]:
        """Migrations not yet applied."""
        done = {m.version for m in self.applied()}
        return [m for m in get_all_migrations() if m.version not in done]

    def _apply(self, migration: Migration) -> None:
        logger.info("Applying migration %03d_%s", migration.version, migration.name)
        try:
            migration.upgrade(self.conn)
            self.conn.execute(
                "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (
                    migration.version,
                    migration.name,
                    datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                ),
            )
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error(f"Migration {migration.version} failed: {e}")
            raise

    def run_pending(self) -> list[int]:
        """
        Run all pending migrations.

        Returns:
            Versions applied by this call
        """
        applied_versions = []
        for migration in self.pending():
            self._apply(migration)
            applied_versions.append(migration.version)

        if applied_versions:
            logger.info(f"Applied {len(applied_versions)} migrations: {applied_versions}")
        else:
            logger.debug("No pending migrations")

        return applied_versions

    def rollback_last(self) -> int | None:
        """
        Roll back the most recently applied migration.

        Returns:
            Version rolled back, or None when nothing is applied

        Raises:
            NotImplementedError: The migration has no downgrade step
        """
        current = self.current_version()
        if current == 0:
            return None

        migration = {m.version: m for m in get_all_migrations()}[current]
        if migration.downgrade is None:
            raise NotImplementedError(
                f"Migration {migration.version} ({migration.name}) does not support rollback"
            )

        logger.info("Rolling back migration %03d_%s", migration.version, migration.name)
        try:
            migration.downgrade(self.conn)
            self.conn.execute("DELETE FROM migrations WHERE version = ?", (current,))
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return current
