"""
Document store migrations.

Versioned, ordered schema changes for the SQLite backend, tracked in a
migrations table.
"""

from .runner import MigrationRunner, get_all_migrations

__all__ = ["MigrationRunner", "get_all_migrations"]
