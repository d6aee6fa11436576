"""Test fixtures and utilities."""

from pathlib import Path
from typing import Any

import pytest

from receipt_reconcile.config import Config
from receipt_reconcile.context import OperationsContext
from receipt_reconcile.schemas.records import (
    CATEGORIES,
    FILES,
    GLOBAL_PARTNERS,
    PARTNERS,
    TRANSACTIONS,
)
from receipt_reconcile.state_store import InMemoryDocumentStore, SqliteDocumentStore

USER_ID = "user-1"
OTHER_USER_ID = "user-2"

TIMESTAMP = "2024-11-20T10:00:00Z"


@pytest.fixture
def temp_db(tmp_path: Path) -> Path:
    """Temporary database path."""
    return tmp_path / "state.db"


@pytest.fixture
def store() -> InMemoryDocumentStore:
    """Fresh in-memory document store."""
    return InMemoryDocumentStore()


@pytest.fixture
def sqlite_store(temp_db: Path) -> SqliteDocumentStore:
    """Fresh SQLite document store."""
    return SqliteDocumentStore(temp_db)


@pytest.fixture
def config() -> Config:
    return Config()


@pytest.fixture
def ctx(store, config) -> OperationsContext:
    """Operations context for USER_ID without a worker endpoint."""
    return OperationsContext(user_id=USER_ID, store=store, config=config)


@pytest.fixture
def add_transaction(store):
    """Factory creating a transaction document."""

    def _add(tx_id: str = "tx-1", user_id: str = USER_ID, **fields: Any) -> dict[str, Any]:
        data = {
            "user_id": user_id,
            "name": "Card payment",
            "partner": "SPAR Oesterreich",
            "reference": None,
            "amount": -1148,
            "currency": "EUR",
            "date": "2024-11-18",
            "file_ids": [],
            "is_complete": False,
            "partner_id": None,
            "partner_type": None,
            "partner_matched_by": None,
            "partner_match_confidence": None,
            "no_receipt_category_id": None,
            "created_at": TIMESTAMP,
            "updated_at": TIMESTAMP,
        }
        data.update(fields)
        store.set(TRANSACTIONS, tx_id, data)
        return store.get(TRANSACTIONS, tx_id)

    return _add


@pytest.fixture
def add_file(store):
    """Factory creating a file document."""

    def _add(file_id: str = "file-1", user_id: str = USER_ID, **fields: Any) -> dict[str, Any]:
        data = {
            "user_id": user_id,
            "file_name": "receipt.pdf",
            "extraction_complete": True,
            "transaction_ids": [],
            "transaction_suggestions": [],
            "partner_id": None,
            "partner_type": None,
            "partner_matched_by": None,
            "partner_match_confidence": None,
            "is_not_invoice": False,
            "created_at": TIMESTAMP,
            "updated_at": TIMESTAMP,
        }
        data.update(fields)
        store.set(FILES, file_id, data)
        return store.get(FILES, file_id)

    return _add


@pytest.fixture
def add_partner(store):
    """Factory creating a user (or global) partner."""

    def _add(
        partner_id: str = "partner-1",
        user_id: str | None = USER_ID,
        is_global: bool = False,
        **fields: Any,
    ) -> dict[str, Any]:
        data = {
            "name": "SPAR",
            "aliases": [],
            "ibans": [],
            "website": None,
            "learned_patterns": [],
            "file_source_patterns": [],
            "manual_removals": [],
            "manual_file_removals": [],
            "is_active": True,
            "created_at": TIMESTAMP,
            "updated_at": TIMESTAMP,
        }
        if not is_global:
            data["user_id"] = user_id
        data.update(fields)
        collection = GLOBAL_PARTNERS if is_global else PARTNERS
        store.set(collection, partner_id, data)
        return store.get(collection, partner_id)

    return _add


@pytest.fixture
def add_category(store):
    """Factory creating a no-receipt category."""

    def _add(
        category_id: str = "cat-1", user_id: str = USER_ID, **fields: Any
    ) -> dict[str, Any]:
        data = {
            "user_id": user_id,
            "template_id": "bank-fees",
            "name": "Bank & Payment Fees",
            "matched_partner_ids": [],
            "learned_patterns": [],
            "manual_removals": [],
            "transaction_count": 0,
            "is_active": True,
            "created_at": TIMESTAMP,
            "updated_at": TIMESTAMP,
        }
        data.update(fields)
        store.set(CATEGORIES, category_id, data)
        return store.get(CATEGORIES, category_id)

    return _add
