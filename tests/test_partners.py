"""Tests for partner assignment."""

import pytest

from receipt_reconcile.errors import (
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from receipt_reconcile.schemas.records import (
    FILES,
    PARTNERS,
    TRANSACTIONS,
    WORKER_REQUESTS,
)
from receipt_reconcile.services.partners import PartnerService

OTHER_USER_ID = "user-2"


@pytest.fixture
def service(ctx):
    return PartnerService(ctx)


class TestAssignToTransaction:
    """Tests for assign_partner_to_transaction()."""

    def test_manual_assignment(self, service, ctx, store, add_partner, add_transaction):
        add_partner("p1")
        add_transaction("tx-1")

        assert service.assign_partner_to_transaction("tx-1", "p1") == {"success": True}

        tx = store.get(TRANSACTIONS, "tx-1")
        assert tx["partner_id"] == "p1"
        assert tx["partner_type"] == "user"
        assert tx["partner_matched_by"] == "manual"
        assert tx["partner_match_confidence"] == 100
        assert ctx.tasks.pending_names == [
            "cancel_partner_workers",
            "learn_partner_pattern",
            "receipt_search",
        ]

    def test_side_effects_run_on_drain(self, service, ctx, store, add_partner, add_transaction):
        add_partner("p1")
        add_transaction("tx-1")
        service.assign_partner_to_transaction("tx-1", "p1")

        summary = ctx.tasks.drain()

        assert summary.success
        patterns = store.get(PARTNERS, "p1")["learned_patterns"]
        assert patterns[0]["pattern"] == "*spar*oesterreich*card*"
        # No worker endpoint configured: the search is queued durably
        requests = store.query(WORKER_REQUESTS)
        assert len(requests) == 1
        assert requests[0]["trigger_context"] == {"transaction_id": "tx-1", "partner_id": "p1"}

    def test_auto_assignment_is_not_learned(
        self, service, ctx, add_partner, add_transaction
    ):
        add_partner("p1")
        add_transaction("tx-1", file_ids=["file-1"], is_complete=True)

        service.assign_partner_to_transaction("tx-1", "p1", matched_by="auto", confidence=91)

        assert ctx.tasks.pending_names == []

    def test_suggestion_assignment(self, service, ctx, store, add_partner, add_transaction):
        add_partner("p1")
        add_transaction("tx-1")

        service.assign_partner_to_transaction(
            "tx-1", "p1", matched_by="suggestion", confidence=85
        )

        assert store.get(TRANSACTIONS, "tx-1")["partner_match_confidence"] == 85
        assert "learn_partner_pattern" in ctx.tasks.pending_names

    @pytest.mark.parametrize("matched_by", ["suggestion", "auto", "ai"])
    def test_system_assignment_without_confidence(
        self, service, store, add_partner, add_transaction, matched_by
    ):
        add_partner("p1")
        add_transaction("tx-1", file_ids=["file-1"])

        service.assign_partner_to_transaction("tx-1", "p1", matched_by=matched_by)

        tx = store.get(TRANSACTIONS, "tx-1")
        assert tx["partner_matched_by"] == matched_by
        assert tx["partner_match_confidence"] is None

    def test_file_assignment_without_confidence(self, service, store, add_partner, add_file):
        add_partner("p1")
        add_file("file-1")

        service.assign_partner_to_file("file-1", "p1", matched_by="suggestion")

        assert store.get(FILES, "file-1")["partner_match_confidence"] is None

    def test_global_partner(self, service, ctx, store, add_partner, add_transaction):
        add_partner("g1", is_global=True)
        add_transaction("tx-1", file_ids=["file-1"])

        service.assign_partner_to_transaction("tx-1", "g1", partner_type="global")

        assert store.get(TRANSACTIONS, "tx-1")["partner_type"] == "global"
        assert ctx.tasks.pending_names == ["cancel_partner_workers"]

    def test_same_partner_does_not_search_again(
        self, service, ctx, add_partner, add_transaction
    ):
        add_partner("p1")
        add_transaction("tx-1", partner_id="p1", partner_matched_by="auto")

        service.assign_partner_to_transaction("tx-1", "p1")

        assert "receipt_search" not in ctx.tasks.pending_names

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"matched_by": "robot", "confidence": 90},
            {"partner_type": "shared"},
            {"confidence": 150},
        ],
    )
    def test_invalid_arguments(self, service, add_partner, add_transaction, kwargs):
        add_partner("p1")
        add_transaction("tx-1")

        with pytest.raises(InvalidArgumentError):
            service.assign_partner_to_transaction("tx-1", "p1", **kwargs)

    def test_foreign_partner(self, service, add_partner, add_transaction):
        add_partner("p1", user_id=OTHER_USER_ID)
        add_transaction("tx-1")

        with pytest.raises(PermissionDeniedError):
            service.assign_partner_to_transaction("tx-1", "p1")

    def test_foreign_transaction(self, service, add_partner, add_transaction):
        add_partner("p1")
        add_transaction("tx-1", user_id=OTHER_USER_ID)

        with pytest.raises(PermissionDeniedError):
            service.assign_partner_to_transaction("tx-1", "p1")

    def test_missing_global_partner(self, service, add_transaction):
        add_transaction("tx-1")

        with pytest.raises(NotFoundError):
            service.assign_partner_to_transaction("tx-1", "nope", partner_type="global")

    def test_auto_assignment_blocked_after_removal(
        self, service, store, add_partner, add_transaction
    ):
        add_partner("p1", manual_removals=[{"transaction_id": "tx-1", "removed_at": "x"}])
        add_transaction("tx-1")

        with pytest.raises(FailedPreconditionError):
            service.assign_partner_to_transaction("tx-1", "p1", matched_by="ai", confidence=95)

        # A manual assignment is still allowed
        service.assign_partner_to_transaction("tx-1", "p1")
        assert store.get(TRANSACTIONS, "tx-1")["partner_id"] == "p1"


class TestRemoveFromTransaction:
    """Tests for remove_partner_from_transaction()."""

    def test_removing_system_assignment_logs_false_positive(
        self, service, ctx, store, add_partner, add_transaction
    ):
        add_partner(
            "p1",
            learned_patterns=[
                {"pattern": "*spar*", "confidence": 60, "source_ids": ["tx-9"], "usage_count": 1}
            ],
        )
        add_transaction(
            "tx-1",
            partner_id="p1",
            partner_type="user",
            partner_matched_by="auto",
            partner_match_confidence=92,
        )

        service.remove_partner_from_transaction("tx-1")

        tx = store.get(TRANSACTIONS, "tx-1")
        assert tx["partner_id"] is None
        assert tx["partner_matched_by"] is None
        assert ctx.tasks.pending_names == ["record_partner_removal", "unlearn_partner_pattern"]

        ctx.tasks.drain()
        partner = store.get(PARTNERS, "p1")
        assert partner["manual_removals"][0]["transaction_id"] == "tx-1"
        assert partner["manual_removals"][0]["name"] == "Card payment"
        assert partner["manual_removals"][0]["partner"] == "SPAR Oesterreich"
        # 60 - 15 falls below the partner floor
        assert partner["learned_patterns"] == []

    def test_removing_manual_assignment(self, service, ctx, add_partner, add_transaction):
        add_partner("p1")
        add_transaction("tx-1", partner_id="p1", partner_matched_by="manual")

        service.remove_partner_from_transaction("tx-1")

        assert ctx.tasks.pending_names == ["forget_partner_source"]

    def test_manual_assign_then_remove_forgets_pattern(
        self, service, ctx, store, add_partner, add_transaction
    ):
        add_partner("p1")
        add_transaction("tx-1")
        service.assign_partner_to_transaction("tx-1", "p1")
        ctx.tasks.drain()
        assert store.get(PARTNERS, "p1")["learned_patterns"][0]["source_ids"] == ["tx-1"]

        service.remove_partner_from_transaction("tx-1")
        ctx.tasks.drain()

        partner = store.get(PARTNERS, "p1")
        assert partner["learned_patterns"] == []
        assert partner["manual_removals"] == []

    def test_nothing_to_remove(self, service, ctx, add_transaction):
        add_transaction("tx-1")

        assert service.remove_partner_from_transaction("tx-1") == {"success": True}
        assert len(ctx.tasks) == 0

    def test_clear_manual_removal(self, service, store, add_partner, add_transaction):
        add_partner("p1", manual_removals=[{"transaction_id": "tx-1", "removed_at": "x"}])
        add_transaction("tx-1")

        assert service.clear_partner_manual_removal("p1", "tx-1") is True
        assert service.clear_partner_manual_removal("p1", "tx-1") is False
        assert store.get(PARTNERS, "p1")["manual_removals"] == []

    def test_clear_manual_removal_invalid_type(self, service):
        with pytest.raises(InvalidArgumentError):
            service.clear_partner_manual_removal("p1", "tx-1", partner_type="shared")


class TestSuggestPartners:
    """Tests for suggest_partners_for_transaction()."""

    def test_high_confidence_is_auto_applied(self, service, store, add_partner, add_transaction):
        add_partner("p1", learned_patterns=[{"pattern": "*spar*", "confidence": 92}])
        add_transaction("tx-1")

        matches = service.suggest_partners_for_transaction("tx-1")

        assert [m.partner_id for m in matches] == ["p1"]
        tx = store.get(TRANSACTIONS, "tx-1")
        assert tx["partner_suggestions"][0]["partner_id"] == "p1"
        assert tx["partner_id"] == "p1"
        assert tx["partner_matched_by"] == "auto"
        assert tx["partner_match_confidence"] == 92

    def test_low_confidence_only_suggested(self, service, store, add_partner, add_transaction):
        add_partner("p1", learned_patterns=[{"pattern": "*spar*", "confidence": 75}])
        add_transaction("tx-1")

        service.suggest_partners_for_transaction("tx-1")

        tx = store.get(TRANSACTIONS, "tx-1")
        assert len(tx["partner_suggestions"]) == 1
        assert tx["partner_id"] is None

    def test_existing_partner_not_replaced(self, service, store, add_partner, add_transaction):
        add_partner("p1", learned_patterns=[{"pattern": "*spar*", "confidence": 95}])
        add_transaction("tx-1", partner_id="p2", partner_matched_by="manual")

        service.suggest_partners_for_transaction("tx-1")

        assert store.get(TRANSACTIONS, "tx-1")["partner_id"] == "p2"

    def test_inactive_and_foreign_partners_ignored(
        self, service, add_partner, add_transaction
    ):
        add_partner(
            "p1", is_active=False, learned_patterns=[{"pattern": "*spar*", "confidence": 95}]
        )
        add_partner(
            "p2", user_id=OTHER_USER_ID, learned_patterns=[{"pattern": "*spar*", "confidence": 95}]
        )
        add_transaction("tx-1")

        assert service.suggest_partners_for_transaction("tx-1") == []


class TestFilePartners:
    """Tests for partner assignment on files."""

    def test_assign_syncs_to_connected_transactions(
        self, service, ctx, store, add_partner, add_file, add_transaction
    ):
        add_partner("p1")
        add_file("file-1", transaction_ids=["tx-1"])
        add_transaction("tx-1", file_ids=["file-1"], is_complete=True)

        service.assign_partner_to_file("file-1", "p1")

        assert store.get(FILES, "file-1")["partner_id"] == "p1"
        assert ctx.tasks.pending_names == [
            "cancel_file_partner_workers",
            "sync_partner_to_transactions",
        ]
        ctx.tasks.drain()
        tx = store.get(TRANSACTIONS, "tx-1")
        assert tx["partner_id"] == "p1"
        assert tx["partner_matched_by"] == "manual"

    def test_no_sync_before_extraction(self, service, ctx, add_partner, add_file):
        add_partner("p1")
        add_file("file-1", transaction_ids=["tx-1"], extraction_complete=False)

        service.assign_partner_to_file("file-1", "p1")

        assert ctx.tasks.pending_names == ["cancel_file_partner_workers"]

    def test_remove_auto_partner_blocks_reassignment(
        self, service, ctx, store, add_partner, add_file
    ):
        add_partner("p1")
        add_file("file-1", file_name="invoice.pdf")
        service.assign_partner_to_file("file-1", "p1", matched_by="auto", confidence=90)

        service.remove_partner_from_file("file-1")
        ctx.tasks.drain()

        assert store.get(FILES, "file-1")["partner_id"] is None
        removals = store.get(PARTNERS, "p1")["manual_file_removals"]
        assert removals[0]["file_id"] == "file-1"
        assert removals[0]["name"] == "invoice.pdf"
        with pytest.raises(FailedPreconditionError):
            service.assign_partner_to_file("file-1", "p1", matched_by="auto", confidence=90)

    def test_remove_manual_partner_not_logged(self, service, ctx, store, add_partner, add_file):
        add_partner("p1")
        add_file("file-1", partner_id="p1", partner_type="user", partner_matched_by="manual")

        service.remove_partner_from_file("file-1")

        assert len(ctx.tasks) == 0
        assert store.get(FILES, "file-1")["partner_id"] is None
