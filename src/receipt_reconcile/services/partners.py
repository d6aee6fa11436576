"""
Partner assignment service.

Assigns and removes partners on transactions and files, keeps the
false-positive logs in sync with removals of system assignments and feeds
the learning engine. Side effects (worker cancellation, learning, receipt
search, file/transaction sync) go through the background task queue and
never fail the assignment itself.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..errors import (
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
)
from ..matching.partner_matcher import PartnerMatch, match_transaction_to_partners
from ..schemas.records import (
    FILES,
    GLOBAL_PARTNERS,
    PARTNERS,
    TRANSACTIONS,
    MatchedBy,
    PartnerType,
    clamp_confidence,
    removal_key,
    utc_now,
)
from ..state_store.base import StoreError
from .automation import AutomationSupervisor
from .connections import ConnectionManager
from .learning import PatternLearningEngine, partner_collection

if TYPE_CHECKING:
    from ..context import OperationsContext

logger = logging.getLogger(__name__)

# Assignments that express the user's intent and are learned from
LEARNING_SOURCES = (MatchedBy.MANUAL, MatchedBy.SUGGESTION, MatchedBy.AI)
# Assignments that supersede background partner matching
OVERRIDE_SOURCES = (MatchedBy.MANUAL, MatchedBy.SUGGESTION)
# Automatic assignments blocked by an earlier removal
AUTOMATIC_SOURCES = (MatchedBy.AUTO, MatchedBy.AI)


def _parse_assignment(
    partner_type: str, matched_by: str, confidence: int | None
) -> tuple[PartnerType, MatchedBy, int | None]:
    """
    Validate assignment arguments before any read or write.

    Manual assignments default to confidence 100; other sources without a
    confidence keep it unset.
    """
    try:
        ptype = PartnerType(partner_type)
    except ValueError:
        raise InvalidArgumentError(f"Invalid partner type: {partner_type}") from None
    try:
        source = MatchedBy.parse(matched_by)
    except ValueError:
        source = None
    if source is None:
        raise InvalidArgumentError(f"Invalid matched_by: {matched_by}")

    if confidence is None:
        return ptype, source, 100 if source == MatchedBy.MANUAL else None
    if not 0 <= confidence <= 100:
        raise InvalidArgumentError("confidence must be between 0 and 100")

    return ptype, source, clamp_confidence(confidence)


def _removed(partner: dict[str, Any], entity_id: str, log_field: str) -> bool:
    key = removal_key(log_field)
    return any(r.get(key) == entity_id for r in partner.get(log_field) or [])


class PartnerService:
    """Partner assignment operations for one user."""

    def __init__(self, ctx: OperationsContext):
        self.ctx = ctx
        self.store = ctx.store
        self.automation = AutomationSupervisor(ctx)
        self.learning = PatternLearningEngine(ctx)
        self.connections = ConnectionManager(ctx)

    def _require_partner(self, partner_id: str, partner_type: PartnerType) -> dict[str, Any]:
        """User partners must be owned by the caller; global partners only exist."""
        if partner_type == PartnerType.USER:
            return self.ctx.require_owned(PARTNERS, partner_id, "Partner")
        if not partner_id:
            raise InvalidArgumentError("Partner id is required")
        partner = self.store.get(GLOBAL_PARTNERS, partner_id)
        if partner is None:
            raise NotFoundError(f"Partner {partner_id} not found")
        return partner

    @staticmethod
    def _assignment_fields(
        partner_id: str | None,
        partner_type: str | None,
        matched_by: str | None,
        confidence: int | None,
    ) -> dict[str, Any]:
        return {
            "partner_id": partner_id,
            "partner_type": partner_type,
            "partner_matched_by": matched_by,
            "partner_match_confidence": confidence,
            "updated_at": utc_now(),
        }

    def _sync_connected(self, file_id: str, transaction_ids: list[str]) -> None:
        for transaction_id in transaction_ids:
            self.connections.sync_partner(file_id, transaction_id)

    # === Transactions ===

    def assign_partner_to_transaction(
        self,
        transaction_id: str,
        partner_id: str,
        partner_type: str = PartnerType.USER.value,
        matched_by: str = MatchedBy.MANUAL.value,
        confidence: int | None = None,
    ) -> dict[str, Any]:
        """
        Assign a partner to a transaction.

        Raises:
            InvalidArgumentError: Bad partner type, matched_by or confidence
            NotFoundError: Transaction or partner missing
            PermissionDeniedError: Transaction or user partner not owned
            FailedPreconditionError: Automatic assignment of a partner the
                user already removed from this transaction
        """
        ptype, source, confidence = _parse_assignment(partner_type, matched_by, confidence)
        tx = self.ctx.require_owned(TRANSACTIONS, transaction_id, "Transaction")
        partner = self._require_partner(partner_id, ptype)

        if source in AUTOMATIC_SOURCES and _removed(partner, transaction_id, "manual_removals"):
            raise FailedPreconditionError(
                f"Partner {partner_id} was removed from transaction {transaction_id} before"
            )

        previous_partner_id = tx.get("partner_id")
        try:
            self.store.update(
                TRANSACTIONS,
                transaction_id,
                self._assignment_fields(partner_id, ptype.value, source.value, confidence),
            )
        except StoreError as e:
            raise InternalError(f"Failed to assign partner: {e}") from e

        logger.info(
            f"Assigned partner {partner_id} ({ptype.value}) to transaction {transaction_id} "
            f"by {source.value} ({confidence})"
        )

        if source in OVERRIDE_SOURCES:
            self.ctx.tasks.enqueue(
                "cancel_partner_workers",
                self.automation.cancel_partner_workers_for_transaction,
                transaction_id,
            )
        if source in LEARNING_SOURCES and ptype == PartnerType.USER:
            self.ctx.tasks.enqueue(
                "learn_partner_pattern",
                self.learning.learn_partner_pattern,
                partner_id,
                ptype.value,
                transaction_id,
            )
        if previous_partner_id != partner_id and not tx.get("file_ids"):
            self.ctx.tasks.enqueue(
                "receipt_search",
                self.automation.queue_receipt_search_for_transaction,
                transaction_id,
                partner_id,
            )

        self.ctx.finish()
        return {"success": True}

    def remove_partner_from_transaction(self, transaction_id: str) -> dict[str, Any]:
        """
        Clear a transaction's partner.

        Removing a system assignment (anything but manual) records a false
        positive on the partner and unlearns its patterns for this text.
        Removing a manual assignment only drops the transaction from the
        partner's pattern sources.
        """
        tx = self.ctx.require_owned(TRANSACTIONS, transaction_id, "Transaction")
        partner_id = tx.get("partner_id")
        if not partner_id:
            return {"success": True}

        partner_type = tx.get("partner_type") or PartnerType.USER.value
        matched_by = tx.get("partner_matched_by")

        try:
            self.store.update(
                TRANSACTIONS, transaction_id, self._assignment_fields(None, None, None, None)
            )
        except StoreError as e:
            raise InternalError(f"Failed to remove partner: {e}") from e

        logger.info(f"Removed partner {partner_id} from transaction {transaction_id}")

        if matched_by != MatchedBy.MANUAL.value:
            self.ctx.tasks.enqueue(
                "record_partner_removal",
                self.learning.append_manual_removal,
                partner_collection(partner_type),
                partner_id,
                transaction_id,
                name=tx.get("name"),
                partner=tx.get("partner"),
            )
            self.ctx.tasks.enqueue(
                "unlearn_partner_pattern",
                self.learning.unlearn_partner_pattern,
                partner_id,
                partner_type,
                transaction_id,
            )
        else:
            self.ctx.tasks.enqueue(
                "forget_partner_source",
                self.learning.forget_partner_source,
                partner_id,
                partner_type,
                transaction_id,
            )

        self.ctx.finish()
        return {"success": True}

    def clear_partner_manual_removal(
        self,
        partner_id: str,
        transaction_id: str,
        partner_type: str = PartnerType.USER.value,
    ) -> bool:
        """Allow a removed partner to be suggested for the transaction again."""
        try:
            ptype = PartnerType(partner_type)
        except ValueError:
            raise InvalidArgumentError(f"Invalid partner type: {partner_type}") from None
        self._require_partner(partner_id, ptype)
        self.ctx.require_owned(TRANSACTIONS, transaction_id, "Transaction")

        cleared = self.learning.clear_manual_removal(
            partner_collection(ptype.value), partner_id, transaction_id
        )
        if cleared:
            logger.info(f"Cleared manual removal of {transaction_id} on partner {partner_id}")
        return cleared

    def suggest_partners_for_transaction(self, transaction_id: str) -> list[PartnerMatch]:
        """
        Compute and store partner suggestions for a transaction.

        A transaction without a partner gets the top suggestion applied
        automatically when it reaches the auto-apply threshold.
        """
        tx = self.ctx.require_owned(TRANSACTIONS, transaction_id, "Transaction")
        user_partners = self.store.query(
            PARTNERS, [("user_id", "==", self.ctx.user_id), ("is_active", "!=", False)]
        )
        global_partners = self.store.query(GLOBAL_PARTNERS, [("is_active", "!=", False)])

        matches = match_transaction_to_partners(
            tx, user_partners, global_partners, self.ctx.config.matching
        )
        fields: dict[str, Any] = {
            "partner_suggestions": [m.to_dict() for m in matches],
            "updated_at": utc_now(),
        }

        top = matches[0] if matches else None
        auto_apply = (
            top is not None
            and not tx.get("partner_id")
            and top.confidence >= self.ctx.config.matching.auto_apply_threshold
        )
        if auto_apply:
            fields.update(
                self._assignment_fields(
                    top.partner_id, top.partner_type, MatchedBy.AUTO.value, top.confidence
                )
            )

        self.store.update(TRANSACTIONS, transaction_id, fields)
        if auto_apply:
            logger.info(
                f"Auto-applied partner {top.partner_id} to {transaction_id} "
                f"({top.source}, {top.confidence})"
            )
        return matches

    # === Files ===

    def assign_partner_to_file(
        self,
        file_id: str,
        partner_id: str,
        partner_type: str = PartnerType.USER.value,
        matched_by: str = MatchedBy.MANUAL.value,
        confidence: int | None = None,
    ) -> dict[str, Any]:
        """
        Assign a partner to a file and sync it to connected transactions.
        """
        ptype, source, confidence = _parse_assignment(partner_type, matched_by, confidence)
        file_doc = self.ctx.require_owned(FILES, file_id, "File")
        partner = self._require_partner(partner_id, ptype)

        if source in AUTOMATIC_SOURCES and _removed(partner, file_id, "manual_file_removals"):
            raise FailedPreconditionError(
                f"Partner {partner_id} was removed from file {file_id} before"
            )

        try:
            self.store.update(
                FILES,
                file_id,
                self._assignment_fields(partner_id, ptype.value, source.value, confidence),
            )
        except StoreError as e:
            raise InternalError(f"Failed to assign partner: {e}") from e

        logger.info(f"Assigned partner {partner_id} to file {file_id} by {source.value}")

        if source in OVERRIDE_SOURCES:
            self.ctx.tasks.enqueue(
                "cancel_file_partner_workers",
                self.automation.cancel_partner_workers_for_file,
                file_id,
            )
        transaction_ids = list(file_doc.get("transaction_ids") or [])
        if transaction_ids and file_doc.get("extraction_complete"):
            self.ctx.tasks.enqueue(
                "sync_partner_to_transactions", self._sync_connected, file_id, transaction_ids
            )

        self.ctx.finish()
        return {"success": True}

    def remove_partner_from_file(self, file_id: str) -> dict[str, Any]:
        """Clear a file's partner; system assignments are logged as false positives."""
        file_doc = self.ctx.require_owned(FILES, file_id, "File")
        partner_id = file_doc.get("partner_id")
        if not partner_id:
            return {"success": True}

        try:
            self.store.update(FILES, file_id, self._assignment_fields(None, None, None, None))
        except StoreError as e:
            raise InternalError(f"Failed to remove partner: {e}") from e

        logger.info(f"Removed partner {partner_id} from file {file_id}")

        if file_doc.get("partner_matched_by") != MatchedBy.MANUAL.value:
            self.ctx.tasks.enqueue(
                "record_file_partner_removal",
                self.learning.append_manual_removal,
                partner_collection(file_doc.get("partner_type") or PartnerType.USER.value),
                partner_id,
                file_id,
                name=file_doc.get("file_name"),
                log_field="manual_file_removals",
                partner=file_doc.get("extracted_partner"),
            )

        self.ctx.finish()
        return {"success": True}

