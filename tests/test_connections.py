"""Tests for file ↔ transaction connections."""

import pytest

from receipt_reconcile.errors import (
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from receipt_reconcile.schemas.records import (
    CATEGORIES,
    FILE_CONNECTIONS,
    FILES,
    PARTNER_FIELDS,
    PARTNERS,
    TRANSACTIONS,
    SourceInfo,
)
from receipt_reconcile.services.categories import CategoryReconciler
from receipt_reconcile.services.connections import ConnectionManager, connection_id_for

OTHER_USER_ID = "user-2"


@pytest.fixture
def manager(ctx):
    return ConnectionManager(ctx)


class TestConnect:
    """Tests for connect_file_to_transaction()."""

    def test_connect_links_both_sides(self, manager, store, add_file, add_transaction):
        add_file("file-1")
        add_transaction("tx-1")

        result = manager.connect_file_to_transaction("file-1", "tx-1")

        assert result.success
        assert result.connection_id == "file-1_tx-1"
        assert not result.already_connected

        junction = store.get(FILE_CONNECTIONS, "file-1_tx-1")
        assert junction["connection_type"] == "manual"
        assert junction["user_id"] == "user-1"
        assert store.get(FILES, "file-1")["transaction_ids"] == ["tx-1"]
        tx = store.get(TRANSACTIONS, "tx-1")
        assert tx["file_ids"] == ["file-1"]
        assert tx["is_complete"] is True

    def test_connect_is_idempotent(self, manager, store, add_file, add_transaction):
        add_file("file-1")
        add_transaction("tx-1")
        manager.connect_file_to_transaction("file-1", "tx-1")
        _, version = store.get_versioned(TRANSACTIONS, "tx-1")

        result = manager.connect_file_to_transaction("file-1", "tx-1")

        assert result.already_connected
        assert result.connection_id == "file-1_tx-1"
        assert store.get_versioned(TRANSACTIONS, "tx-1")[1] == version
        assert store.count(FILE_CONNECTIONS) == 1

    def test_manual_connect_queues_worker_cancellation(
        self, manager, ctx, add_file, add_transaction
    ):
        add_file("file-1")
        add_transaction("tx-1")

        manager.connect_file_to_transaction("file-1", "tx-1")

        assert ctx.tasks.pending_names == ["cancel_file_workers"]
        assert ctx.tasks.drain().success

    def test_auto_match_stores_provenance(self, manager, ctx, store, add_file, add_transaction):
        add_file("file-1")
        add_transaction("tx-1")
        source = SourceInfo(source_type="gmail", gmail_message_id="msg-1")

        manager.connect_file_to_transaction(
            "file-1", "tx-1", "auto_matched", match_confidence=87, source_info=source
        )

        junction = store.get(FILE_CONNECTIONS, "file-1_tx-1")
        assert junction["connection_type"] == "auto_matched"
        assert junction["match_confidence"] == 87
        assert junction["source_type"] == "gmail"
        assert junction["gmail_message_id"] == "msg-1"
        assert "search_pattern" not in junction
        assert len(ctx.tasks) == 0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"connection_type": "magic"},
            {"match_confidence": 101},
            {"match_confidence": -1},
        ],
    )
    def test_invalid_arguments(self, manager, add_file, add_transaction, kwargs):
        add_file("file-1")
        add_transaction("tx-1")

        with pytest.raises(InvalidArgumentError):
            manager.connect_file_to_transaction("file-1", "tx-1", **kwargs)

    def test_empty_ids(self, manager):
        with pytest.raises(InvalidArgumentError):
            manager.connect_file_to_transaction("", "tx-1")

    def test_foreign_entities_reported_missing(self, manager, add_file, add_transaction):
        add_file("file-1", user_id=OTHER_USER_ID)
        add_file("file-2")
        add_transaction("tx-1", user_id=OTHER_USER_ID)
        add_transaction("tx-2")

        with pytest.raises(NotFoundError):
            manager.connect_file_to_transaction("file-1", "tx-2")
        with pytest.raises(NotFoundError):
            manager.connect_file_to_transaction("file-2", "tx-1")

    def test_soft_deleted_file_cannot_connect(self, manager, add_file, add_transaction):
        add_file("file-1", deleted_at="2024-11-19T10:00:00Z")
        add_transaction("tx-1")

        with pytest.raises(NotFoundError):
            manager.connect_file_to_transaction("file-1", "tx-1")


class TestPartnerSync:
    """Partner sync between connected entities."""

    def test_file_partner_copied_to_transaction(self, manager, store, add_file, add_transaction):
        add_file(
            "file-1",
            partner_id="p1",
            partner_type="user",
            partner_matched_by="manual",
            partner_match_confidence=100,
        )
        add_transaction("tx-1")

        result = manager.connect_file_to_transaction("file-1", "tx-1")

        assert result.partner_sync.source == "file"
        tx = store.get(TRANSACTIONS, "tx-1")
        assert tx["partner_id"] == "p1"
        assert tx["partner_matched_by"] == "manual"
        assert "bank_partner_id" not in tx

    def test_overwritten_bank_partner_is_kept(self, manager, store, add_file, add_transaction):
        add_file(
            "file-1",
            partner_id="p1",
            partner_type="user",
            partner_matched_by="auto",
            partner_match_confidence=90,
        )
        add_transaction(
            "tx-1",
            partner_id="p2",
            partner_type="global",
            partner_matched_by="auto",
            partner_match_confidence=70,
        )

        manager.connect_file_to_transaction("file-1", "tx-1")

        tx = store.get(TRANSACTIONS, "tx-1")
        assert tx["partner_id"] == "p1"
        assert tx["partner_matched_by"] == "auto"
        assert tx["partner_match_confidence"] == 90
        assert tx["bank_partner_id"] == "p2"
        assert tx["bank_partner_type"] == "global"

    def test_transaction_partner_copied_to_file(self, manager, store, add_file, add_transaction):
        add_file("file-1")
        add_transaction(
            "tx-1",
            partner_id="p2",
            partner_type="user",
            partner_matched_by="suggestion",
            partner_match_confidence=80,
        )

        manager.connect_file_to_transaction("file-1", "tx-1")

        file_doc = store.get(FILES, "file-1")
        assert file_doc["partner_id"] == "p2"
        assert file_doc["partner_matched_by"] == "auto"

    def test_both_manual_left_alone(self, manager, store, add_file, add_transaction):
        add_file("file-1", partner_id="p1", partner_matched_by="manual")
        add_transaction("tx-1", partner_id="p2", partner_matched_by="manual")

        result = manager.connect_file_to_transaction("file-1", "tx-1")

        assert result.partner_sync.should_sync is False
        assert store.get(TRANSACTIONS, "tx-1")["partner_id"] == "p2"
        assert store.get(FILES, "file-1")["partner_id"] == "p1"

    def test_sync_waits_for_extraction(self, manager, store, add_file, add_transaction):
        add_file("file-1", extraction_complete=False, partner_id="p1", partner_matched_by="manual")
        add_transaction("tx-1")

        result = manager.connect_file_to_transaction("file-1", "tx-1")

        assert result.partner_sync is None
        assert store.get(TRANSACTIONS, "tx-1")["partner_id"] is None


class TestDisconnect:
    """Tests for disconnect_file_from_transaction()."""

    @pytest.fixture
    def connected(self, manager, ctx, add_file, add_transaction):
        add_file("file-1")
        add_transaction("tx-1")
        manager.connect_file_to_transaction("file-1", "tx-1")
        ctx.tasks.clear()
        return manager

    def test_disconnect_clears_completeness(self, connected, store):
        result = connected.disconnect_file_from_transaction("file-1", "tx-1")

        assert result.removed_connections == 1
        assert result.is_complete is False
        assert store.get(FILE_CONNECTIONS, "file-1_tx-1") is None
        assert store.get(FILES, "file-1")["transaction_ids"] == []
        tx = store.get(TRANSACTIONS, "tx-1")
        assert tx["file_ids"] == []
        assert tx["is_complete"] is False

    def test_category_keeps_transaction_complete(self, connected, store):
        store.update(TRANSACTIONS, "tx-1", {"no_receipt_category_id": "cat-1"})

        result = connected.disconnect_file_from_transaction("file-1", "tx-1")

        assert result.is_complete is True
        assert store.get(TRANSACTIONS, "tx-1")["is_complete"] is True

    def test_other_files_keep_transaction_complete(
        self, connected, store, add_file
    ):
        add_file("file-2")
        connected.connect_file_to_transaction("file-2", "tx-1")

        result = connected.disconnect_file_from_transaction("file-1", "tx-1")

        assert result.is_complete is True
        assert store.get(TRANSACTIONS, "tx-1")["file_ids"] == ["file-2"]

    def test_disconnect_unconnected_pair_is_noop(self, manager, store, add_file, add_transaction):
        add_file("file-1")
        add_transaction("tx-1")
        _, version = store.get_versioned(TRANSACTIONS, "tx-1")

        result = manager.disconnect_file_from_transaction("file-1", "tx-1")

        assert result.success
        assert result.removed_connections == 0
        assert store.get_versioned(TRANSACTIONS, "tx-1")[1] == version

    def test_legacy_link_without_junction(self, manager, store, add_file, add_transaction):
        add_file("file-1", transaction_ids=["tx-1"])
        add_transaction("tx-1", file_ids=["file-1"], is_complete=True)

        result = manager.disconnect_file_from_transaction("file-1", "tx-1")

        assert result.removed_connections == 0
        assert store.get(TRANSACTIONS, "tx-1")["is_complete"] is False
        assert store.get(FILES, "file-1")["transaction_ids"] == []

    def test_foreign_transaction_reported_missing(self, manager, add_file, add_transaction):
        add_file("file-1")
        add_transaction("tx-1", user_id=OTHER_USER_ID)

        with pytest.raises(NotFoundError):
            manager.disconnect_file_from_transaction("file-1", "tx-1")


class TestDeleteFile:
    """Tests for delete_file()."""

    @pytest.fixture
    def linked(self, manager, ctx, add_file, add_transaction):
        add_file("file-1")
        add_transaction("tx-1")
        add_transaction("tx-2", no_receipt_category_id="cat-1", is_complete=True)
        manager.connect_file_to_transaction("file-1", "tx-1")
        manager.connect_file_to_transaction("file-1", "tx-2")
        ctx.tasks.clear()
        return manager

    def test_soft_delete(self, linked, ctx, store):
        result = linked.delete_file("file-1")

        assert result.deleted_connections == 2
        assert store.count(FILE_CONNECTIONS) == 0
        file_doc = store.get(FILES, "file-1")
        assert file_doc["deleted_at"]
        assert file_doc["transaction_ids"] == []
        assert store.get(TRANSACTIONS, "tx-1")["is_complete"] is False
        assert store.get(TRANSACTIONS, "tx-2")["is_complete"] is True
        assert ctx.tasks.pending_names == ["cancel_transaction_workers"]

    def test_hard_delete(self, linked, store):
        linked.delete_file("file-1", hard_delete=True)

        assert store.get(FILES, "file-1") is None
        assert store.get(TRANSACTIONS, "tx-1")["file_ids"] == []

    def test_soft_deleted_file_hidden(self, linked):
        linked.delete_file("file-1")

        with pytest.raises(NotFoundError):
            linked.get_connections_for_file("file-1")

    def test_foreign_file(self, manager, add_file):
        add_file("file-1", user_id=OTHER_USER_ID)

        with pytest.raises(PermissionDeniedError):
            manager.delete_file("file-1")

    def test_delete_connections_for_transaction(self, linked, store, add_file):
        add_file("file-2")
        linked.connect_file_to_transaction("file-2", "tx-1")

        deleted = linked.delete_connections_for_transaction("tx-1")

        assert deleted == 2
        assert store.get(TRANSACTIONS, "tx-1")["file_ids"] == []
        assert store.get(TRANSACTIONS, "tx-1")["is_complete"] is False
        assert store.get(FILES, "file-1")["transaction_ids"] == ["tx-2"]
        assert store.get(FILES, "file-2")["transaction_ids"] == []

    def test_connection_listing(self, linked):
        assert {c["transaction_id"] for c in linked.get_connections_for_file("file-1")} == {
            "tx-1",
            "tx-2",
        }
        assert [c["id"] for c in linked.get_connections_for_transaction("tx-1")] == [
            connection_id_for("file-1", "tx-1")
        ]


class TestNotInvoice:
    """Tests for the not-invoice override."""

    def test_mark_clears_extraction_and_auto_partner(self, manager, store, add_file):
        add_file(
            "file-1",
            extracted_amount=1148,
            extracted_partner="SPAR",
            transaction_suggestions=[{"transaction_id": "tx-1"}],
            partner_id="p1",
            partner_matched_by="auto",
        )

        manager.mark_file_as_not_invoice("file-1", "  Delivery note ")

        file_doc = store.get(FILES, "file-1")
        assert file_doc["is_not_invoice"] is True
        assert file_doc["not_invoice_reason"] == "Delivery note"
        assert file_doc["extracted_amount"] is None
        assert file_doc["extracted_partner"] is None
        assert file_doc["transaction_suggestions"] == []
        assert file_doc["partner_id"] is None

    def test_mark_keeps_manual_partner(self, manager, store, add_file):
        add_file("file-1", partner_id="p1", partner_matched_by="manual")

        manager.mark_file_as_not_invoice("file-1")

        file_doc = store.get(FILES, "file-1")
        assert file_doc["partner_id"] == "p1"
        assert file_doc["not_invoice_reason"] is None

    def test_unmark(self, manager, store, add_file):
        add_file("file-1")
        manager.mark_file_as_not_invoice("file-1", "Contract")

        manager.unmark_file_as_not_invoice("file-1")

        file_doc = store.get(FILES, "file-1")
        assert file_doc["is_not_invoice"] is False
        assert file_doc["not_invoice_reason"] is None


class TestBulkUpdate:
    """Tests for bulk_update_transactions()."""

    def test_partial_failure(self, manager, store, add_transaction):
        add_transaction("tx-1")
        add_transaction("tx-2", user_id=OTHER_USER_ID)

        result = manager.bulk_update_transactions(
            ["tx-1", "tx-2", "missing"], {"note": "checked"}
        )

        assert result.success == 1
        assert result.failed == 2
        assert {"id": "tx-2", "error": "Access denied"} in result.errors
        assert {"id": "missing", "error": "Not found"} in result.errors
        assert store.get(TRANSACTIONS, "tx-1")["note"] == "checked"
        assert "note" not in store.get(TRANSACTIONS, "tx-2")

    def test_chunks_larger_than_a_batch(self, ctx, add_transaction):
        ctx.store.max_batch_size = 2
        for i in range(5):
            add_transaction(f"tx-{i}")

        result = ConnectionManager(ctx).bulk_update_transactions(
            [f"tx-{i}" for i in range(5)], {"note": "x"}
        )

        assert result.success == 5

    @pytest.mark.parametrize(
        "ids,data",
        [
            ([], {"note": "x"}),
            (["tx-1"], {}),
            (["tx-1"], {"is_complete": True}),
            (["tx-1"], {"file_ids": []}),
            ("tx-1", {"note": "x"}),
        ],
    )
    def test_invalid_requests(self, manager, ids, data):
        with pytest.raises(InvalidArgumentError):
            manager.bulk_update_transactions(ids, data)

    def test_too_many_items(self, ctx):
        ctx.config.bulk.max_bulk_items = 2

        with pytest.raises(InvalidArgumentError):
            ConnectionManager(ctx).bulk_update_transactions(["a", "b", "c"], {"note": "x"})

    def test_category_assignment_completes_and_counts(
        self, manager, store, add_category, add_transaction
    ):
        add_category("cat-1")
        add_category("cat-2", template_id="interest", name="Interest", transaction_count=1)
        add_transaction("tx-1")
        add_transaction("tx-2", no_receipt_category_id="cat-2", is_complete=True)

        result = manager.bulk_update_transactions(
            ["tx-1", "tx-2"], {"no_receipt_category_id": "cat-1"}
        )

        assert result.success == 2
        for tx_id in ("tx-1", "tx-2"):
            tx = store.get(TRANSACTIONS, tx_id)
            assert tx["is_complete"] is True
            assert tx["no_receipt_category_template_id"] == "bank-fees"
            assert tx["no_receipt_category_matched_by"] == "manual"
            assert tx["no_receipt_category_confidence"] == 100
        assert store.get(CATEGORIES, "cat-1")["transaction_count"] == 2
        assert store.get(CATEGORIES, "cat-2")["transaction_count"] == 0

    def test_category_clear_recomputes_completeness(
        self, manager, store, add_category, add_transaction
    ):
        add_category("cat-1", transaction_count=2)
        add_transaction("tx-1", no_receipt_category_id="cat-1", is_complete=True)
        add_transaction(
            "tx-2", no_receipt_category_id="cat-1", file_ids=["file-1"], is_complete=True
        )

        manager.bulk_update_transactions(["tx-1", "tx-2"], {"no_receipt_category_id": None})

        assert store.get(TRANSACTIONS, "tx-1")["is_complete"] is False
        assert store.get(TRANSACTIONS, "tx-2")["is_complete"] is True
        assert store.get(TRANSACTIONS, "tx-2")["no_receipt_category_matched_by"] is None
        assert store.get(CATEGORIES, "cat-1")["transaction_count"] == 0

    def test_category_counts_across_chunks(self, ctx, store, add_category, add_transaction):
        ctx.store.max_batch_size = 2
        add_category("cat-1")
        for i in range(5):
            add_transaction(f"tx-{i}")

        result = ConnectionManager(ctx).bulk_update_transactions(
            [f"tx-{i}" for i in range(5)], {"no_receipt_category_id": "cat-1"}
        )

        assert result.success == 5
        assert store.get(CATEGORIES, "cat-1")["transaction_count"] == 5

    def test_partner_group_written_together(self, manager, store, add_partner, add_transaction):
        add_partner("p1")
        add_transaction("tx-1")

        manager.bulk_update_transactions(["tx-1"], {"partner_id": "p1"})

        tx = store.get(TRANSACTIONS, "tx-1")
        assert tx["partner_type"] == "user"
        assert tx["partner_matched_by"] == "manual"
        assert tx["partner_match_confidence"] == 100

    def test_partner_clear_clears_all_fields(self, manager, store, add_transaction):
        add_transaction(
            "tx-1",
            partner_id="p1",
            partner_type="user",
            partner_matched_by="auto",
            partner_match_confidence=91,
        )

        manager.bulk_update_transactions(["tx-1"], {"partner_id": None})

        tx = store.get(TRANSACTIONS, "tx-1")
        assert [tx[name] for name in PARTNER_FIELDS] == [None, None, None, None]

    @pytest.mark.parametrize(
        "data",
        [
            {"partner_matched_by": "manual"},
            {"partner_id": None, "partner_type": "user"},
            {"partner_id": "p1", "partner_type": "shared"},
            {"partner_id": "p1", "partner_match_confidence": 120},
            {"no_receipt_category_matched_by": "manual"},
            {"no_receipt_category_id": None, "no_receipt_category_confidence": 50},
            {"no_receipt_category_id": "cat-1", "receipt_lost_reason": "Lost"},
        ],
    )
    def test_inconsistent_group_rejected(
        self, manager, store, add_partner, add_category, add_transaction, data
    ):
        add_partner("p1")
        add_category("cat-1")
        add_transaction("tx-1")

        with pytest.raises(InvalidArgumentError):
            manager.bulk_update_transactions(["tx-1"], data)
        assert store.get(TRANSACTIONS, "tx-1")["partner_id"] is None

    def test_receipt_lost_category_rejected(self, manager, add_category, add_transaction):
        add_category("lost", template_id="receipt-lost")
        add_transaction("tx-1")

        with pytest.raises(InvalidArgumentError):
            manager.bulk_update_transactions(["tx-1"], {"no_receipt_category_id": "lost"})

    def test_foreign_category_rejected(self, manager, add_category, add_transaction):
        add_category("cat-1", user_id=OTHER_USER_ID)
        add_transaction("tx-1")

        with pytest.raises(PermissionDeniedError):
            manager.bulk_update_transactions(["tx-1"], {"no_receipt_category_id": "cat-1"})


class TestCompletenessSequences:
    """is_complete after interleaved connect, categorize and disconnect calls."""

    @pytest.fixture
    def reconciler(self, ctx):
        return CategoryReconciler(ctx)

    @pytest.fixture(autouse=True)
    def entities(self, add_file, add_category, add_transaction):
        add_file("file-1")
        add_category("cat-1")
        add_transaction("tx-1")

    def is_complete(self, store):
        return store.get(TRANSACTIONS, "tx-1")["is_complete"]

    def test_connect_categorize_disconnect_uncategorize(self, manager, reconciler, store):
        manager.connect_file_to_transaction("file-1", "tx-1")
        reconciler.assign_category("tx-1", "cat-1")
        manager.disconnect_file_from_transaction("file-1", "tx-1")
        assert self.is_complete(store) is True

        reconciler.remove_category("tx-1")
        assert self.is_complete(store) is False

    def test_categorize_connect_uncategorize_disconnect(self, manager, reconciler, store):
        reconciler.assign_category("tx-1", "cat-1")
        manager.connect_file_to_transaction("file-1", "tx-1")
        reconciler.remove_category("tx-1")
        assert self.is_complete(store) is True

        manager.disconnect_file_from_transaction("file-1", "tx-1")
        assert self.is_complete(store) is False

    def test_bulk_category_then_disconnect(self, manager, store):
        manager.connect_file_to_transaction("file-1", "tx-1")
        manager.bulk_update_transactions(["tx-1"], {"no_receipt_category_id": "cat-1"})
        manager.disconnect_file_from_transaction("file-1", "tx-1")
        assert self.is_complete(store) is True

        manager.bulk_update_transactions(["tx-1"], {"no_receipt_category_id": None})
        assert self.is_complete(store) is False


class TestConnectionSourceLearning:
    """A manual connection found by a search teaches the partner that search."""

    def test_learns_file_source_pattern(
        self, manager, ctx, store, add_partner, add_file, add_transaction
    ):
        add_partner("p1")
        add_file("file-1")
        add_transaction("tx-1", partner_id="p1", partner_type="user")
        source = SourceInfo(
            source_type="gmail", search_pattern="from:spar.at", gmail_integration_id="int-1"
        )

        manager.connect_file_to_transaction("file-1", "tx-1", source_info=source)

        assert "learn_file_source_pattern" in ctx.tasks.pending_names
        ctx.tasks.drain()
        partner = store.get(PARTNERS, "p1")
        learned = partner["file_source_patterns"][0]
        assert learned["source_type"] == "gmail"
        assert learned["pattern"] == "from:spar.at"
        assert learned["integration_id"] == "int-1"
        assert learned["source_transaction_ids"] == ["tx-1"]
        assert partner["email_search_patterns"][0]["integration_ids"] == ["int-1"]

    def test_auto_match_does_not_learn(self, manager, ctx, add_file, add_transaction):
        add_file("file-1")
        add_transaction("tx-1", partner_id="p1", partner_type="user")
        source = SourceInfo(source_type="local", search_pattern="spar")

        manager.connect_file_to_transaction(
            "file-1", "tx-1", connection_type="auto_matched", source_info=source
        )

        assert "learn_file_source_pattern" not in ctx.tasks.pending_names

    def test_transaction_without_partner_skipped(
        self, manager, ctx, store, add_file, add_transaction
    ):
        add_file("file-1")
        add_transaction("tx-1")
        source = SourceInfo(source_type="local", search_pattern="spar")

        manager.connect_file_to_transaction("file-1", "tx-1", source_info=source)

        assert ctx.tasks.drain().success
        assert store.query(PARTNERS) == []
