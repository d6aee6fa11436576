"""
Migration 002: Index documents by owner.

Almost every query is scoped to one user within one collection.
"""

import sqlite3

VERSION = 2
NAME = "document_indexes"


def upgrade(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_documents_collection_user "
        "ON documents (collection, user_id)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    conn.execute("DROP INDEX IF EXISTS idx_documents_collection_user")
