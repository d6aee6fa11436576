"""
Migration 001: Create the documents table.

Every entity (transactions, files, file connections, partners, categories,
worker records, queue items) is stored as one JSON document per row.

Features:
- (collection, id) primary key
- user_id copied out of the document for ownership queries
- version counter for compare-and-swap updates
"""

import sqlite3

VERSION = 1
NAME = "documents"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the documents table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS documents (
            collection TEXT NOT NULL,
            id TEXT NOT NULL,
            user_id TEXT,
            data TEXT NOT NULL,  -- JSON object
            version INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (collection, id)
        )
    """
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the documents table."""
    conn.execute("DROP TABLE IF EXISTS documents")
