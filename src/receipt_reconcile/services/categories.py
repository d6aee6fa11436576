"""
Category Reconciler.

Handles the "no receipt, but legitimately categorized" path for
transactions:

- Category initialization from fixed templates
- Assign / remove with completeness derivation and transaction_count
  increments in the same batch
- Receipt-lost assignment with a mandatory reason and description
  (self-issued receipt substitute)
- Suggestions and auto-apply via the category matcher
- Repair of orphaned category references and recount from ground truth
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..errors import (
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
)
from ..matching.category_matcher import (
    RECEIPT_LOST_TEMPLATE,
    CategorySuggestion,
    is_eligible,
    match_transaction_to_categories,
    should_auto_apply,
)
from ..schemas.records import (
    CATEGORIES,
    CATEGORY_FIELDS,
    GLOBAL_PARTNERS,
    PARTNERS,
    TRANSACTIONS,
    MatchedBy,
    PartnerType,
    clamp_confidence,
    is_complete,
    removal_key,
    utc_now,
)
from ..state_store.base import ArrayUnion, Increment, StoreError, WriteOp
from .automation import AutomationSupervisor
from .learning import PatternLearningEngine

if TYPE_CHECKING:
    from ..context import OperationsContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategoryTemplate:
    template_id: str
    name: str
    description: str
    helper_text: str


TEMPLATES: tuple[CategoryTemplate, ...] = (
    CategoryTemplate(
        "bank-fees",
        "Bank & Payment Fees",
        "Fees charged by banks, payment processors, or financial services",
        "e.g., Account maintenance fees, transfer fees, card fees",
    ),
    CategoryTemplate(
        "interest",
        "Interest",
        "Interest charged or paid by banks and financial institutions",
        "e.g., Loan interest, overdraft interest, savings interest",
    ),
    CategoryTemplate(
        "internal-transfers",
        "Internal Transfers",
        "Money transfers between your own accounts",
        "e.g., Account-to-account transfers, wallet movements",
    ),
    CategoryTemplate(
        "payment-provider-settlements",
        "Payment Provider Settlements",
        "Automated payouts and fee settlements from payment providers",
        "e.g., Stripe payouts, PayPal withdrawals, Adyen settlements",
    ),
    CategoryTemplate(
        "taxes-government",
        "Taxes & Government Payments",
        "Tax payments and fees to public authorities",
        "e.g., VAT payments, corporate tax, payroll taxes",
    ),
    CategoryTemplate(
        "payroll",
        "Payroll Payments",
        "Salary payments and employment-related contributions",
        "e.g., Net salaries, employer contributions",
    ),
    CategoryTemplate(
        "private-personal",
        "Private or Personal Spending",
        "Personal expenses paid with the business account",
        "Not a business expense - will be settled privately",
    ),
    CategoryTemplate(
        "zero-value",
        "Zero-Value Transactions",
        "Transactions with no financial impact",
        "e.g., Authorizations, reversals, zero-amount entries",
    ),
    CategoryTemplate(
        RECEIPT_LOST_TEMPLATE,
        "Receipt Lost",
        "Receipt was lost or unavailable - requires documentation",
        "Creates a self-issued receipt entry",
    ),
)


@dataclass
class RepairResult:
    """Outcome of retrigger_user_categories()."""

    created: int = 0
    migrated: int = 0
    cleared: int = 0
    recalculated: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "migrated": self.migrated,
            "cleared": self.cleared,
            "recalculated": self.recalculated,
        }


def category_id_for(user_id: str, template_id: str) -> str:
    return f"{user_id}_{template_id}"


class CategoryReconciler:
    """No-receipt category operations for one user."""

    def __init__(self, ctx: OperationsContext):
        self.ctx = ctx
        self.store = ctx.store
        self.automation = AutomationSupervisor(ctx)
        self.learning = PatternLearningEngine(ctx)

    def list_categories(self) -> list[dict[str, Any]]:
        return self.store.query(
            CATEGORIES, [("user_id", "==", self.ctx.user_id)], order_by="created_at"
        )

    def get_category_by_template(self, template_id: str) -> dict[str, Any] | None:
        found = self.store.query(
            CATEGORIES,
            [("user_id", "==", self.ctx.user_id), ("template_id", "==", template_id)],
            limit=1,
        )
        return found[0] if found else None

    def initialize_categories(self) -> int:
        """
        Create the template categories the user does not have yet.

        Returns:
            Number of categories created
        """
        existing = {c.get("template_id") for c in self.list_categories()}
        now = utc_now()

        batch = self.store.batch()
        for template in TEMPLATES:
            if template.template_id in existing:
                continue
            batch.set(
                CATEGORIES,
                category_id_for(self.ctx.user_id, template.template_id),
                {
                    "user_id": self.ctx.user_id,
                    "template_id": template.template_id,
                    "name": template.name,
                    "description": template.description,
                    "helper_text": template.helper_text,
                    "matched_partner_ids": [],
                    "learned_patterns": [],
                    "manual_removals": [],
                    "transaction_count": 0,
                    "is_active": True,
                    "created_at": now,
                    "updated_at": now,
                },
            )

        created = len(batch)
        if created:
            batch.commit()
        logger.info(
            f"Initialized {created} categories for {self.ctx.user_id}, "
            f"{len(TEMPLATES) - created} already present"
        )
        return created

    # === Assignment ===

    def _write_assignment(
        self,
        transaction_id: str,
        category: dict[str, Any],
        matched_by: MatchedBy,
        confidence: int | None,
        extra: dict[str, Any] | None = None,
    ) -> bool:
        """
        Point a transaction at a category, moving the count from the
        previous one. Returns False when the category was already assigned.
        """

        def attempt() -> bool:
            tx, version = self.store.get_versioned(TRANSACTIONS, transaction_id)
            previous_id = tx.get("no_receipt_category_id")
            unchanged = (
                previous_id == category["id"]
                and tx.get("no_receipt_category_matched_by") == matched_by.value
            )
            if unchanged and not extra:
                return False

            now = utc_now()
            fields = {
                "no_receipt_category_id": category["id"],
                "no_receipt_category_template_id": category.get("template_id"),
                "no_receipt_category_matched_by": matched_by.value,
                "no_receipt_category_confidence": confidence,
                "category_suggestions": [],
                "is_complete": True,
                "updated_at": now,
            }
            fields.update(extra or {})

            category_fields: dict[str, Any] = {"updated_at": now}
            if previous_id != category["id"]:
                category_fields["transaction_count"] = Increment(1)
            if matched_by == MatchedBy.MANUAL and tx.get("partner_id"):
                category_fields["matched_partner_ids"] = ArrayUnion(tx["partner_id"])

            with self.store.batch() as batch:
                batch.update(TRANSACTIONS, transaction_id, fields, expected_version=version)
                batch.update(CATEGORIES, category["id"], category_fields)
                if previous_id and previous_id != category["id"]:
                    if self.store.get(CATEGORIES, previous_id) is not None:
                        batch.update(
                            CATEGORIES,
                            previous_id,
                            {"transaction_count": Increment(-1), "updated_at": now},
                        )
            return True

        try:
            return self.store.retry_on_conflict(attempt)
        except StoreError as e:
            raise InternalError(f"Failed to assign category: {e}") from e

    def assign_category(
        self,
        transaction_id: str,
        category_id: str,
        matched_by: str = MatchedBy.MANUAL.value,
        confidence: int | None = None,
    ) -> dict[str, Any]:
        """
        Assign a no-receipt category to a transaction (marks it complete).

        Raises:
            InvalidArgumentError: Bad matched_by or confidence
            NotFoundError / PermissionDeniedError: Transaction or category
            FailedPreconditionError: Inactive category, or automatic
                assignment of a category the user removed before
        """
        try:
            source = MatchedBy.parse(matched_by)
        except ValueError:
            source = None
        if source is None:
            raise InvalidArgumentError(f"Invalid matched_by: {matched_by}")
        if confidence is None:
            if source == MatchedBy.MANUAL:
                confidence = 100
        elif not 0 <= confidence <= 100:
            raise InvalidArgumentError("confidence must be between 0 and 100")
        else:
            confidence = clamp_confidence(confidence)

        self.ctx.require_owned(TRANSACTIONS, transaction_id, "Transaction")
        category = self.ctx.require_owned(CATEGORIES, category_id, "Category")

        if not category.get("is_active", True):
            raise FailedPreconditionError(f"Category {category_id} is inactive")
        if source in (MatchedBy.AUTO, MatchedBy.AI) and any(
            r.get(removal_key("manual_removals")) == transaction_id
            for r in category.get("manual_removals") or []
        ):
            raise FailedPreconditionError(
                f"Category {category_id} was removed from transaction {transaction_id} before"
            )

        changed = self._write_assignment(transaction_id, category, source, confidence)
        if changed:
            logger.info(
                f"Assigned category {category_id} to transaction {transaction_id} "
                f"by {source.value}"
            )
            self._after_assignment(transaction_id, category_id, source)

        self.ctx.finish()
        return {"success": True}

    def _after_assignment(self, transaction_id: str, category_id: str, source: MatchedBy) -> None:
        if source not in (MatchedBy.MANUAL, MatchedBy.SUGGESTION):
            return
        self.ctx.tasks.enqueue(
            "learn_category_pattern",
            self.learning.learn_category_pattern,
            category_id,
            transaction_id,
        )
        self.ctx.tasks.enqueue(
            "cancel_file_workers",
            self.automation.cancel_file_workers_for_transaction,
            transaction_id,
        )

    def assign_receipt_lost_category(
        self, transaction_id: str, reason: str, description: str
    ) -> dict[str, Any]:
        """
        Assign the receipt-lost category with a documented justification.

        Creates the template categories first when the user has none.
        """
        if not reason or not reason.strip():
            raise InvalidArgumentError("reason is required")
        if not description or not description.strip():
            raise InvalidArgumentError("description is required")

        self.ctx.require_owned(TRANSACTIONS, transaction_id, "Transaction")

        category = self.get_category_by_template(RECEIPT_LOST_TEMPLATE)
        if category is None:
            self.initialize_categories()
            category = self.get_category_by_template(RECEIPT_LOST_TEMPLATE)
            if category is None:
                raise InternalError("Failed to find or create receipt-lost category")

        self._write_assignment(
            transaction_id,
            category,
            MatchedBy.MANUAL,
            100,
            extra={
                "receipt_lost_reason": reason.strip(),
                "receipt_lost_description": description.strip(),
                "receipt_lost_created_at": utc_now(),
            },
        )
        logger.info(f"Assigned receipt-lost category to transaction {transaction_id}")

        self.ctx.tasks.enqueue(
            "cancel_file_workers",
            self.automation.cancel_file_workers_for_transaction,
            transaction_id,
        )
        self.ctx.finish()
        return {"success": True}

    def remove_category(self, transaction_id: str) -> dict[str, Any]:
        """
        Remove the category from a transaction.

        Completeness falls back to "has files". A system assignment is
        logged as a false positive and unlearned, a manual one only leaves
        the category's pattern sources. The transaction is then re-matched
        so it can receive fresh suggestions.
        """
        self.ctx.require_owned(TRANSACTIONS, transaction_id, "Transaction")
        removed: dict[str, Any] = {}

        def attempt() -> None:
            tx, version = self.store.get_versioned(TRANSACTIONS, transaction_id)
            removed.clear()
            category_id = tx.get("no_receipt_category_id")
            if not category_id:
                return
            removed.update(tx)

            now = utc_now()
            fields: dict[str, Any] = {name: None for name in CATEGORY_FIELDS}
            fields["is_complete"] = is_complete({**tx, "no_receipt_category_id": None})
            fields["updated_at"] = now

            with self.store.batch() as batch:
                batch.update(TRANSACTIONS, transaction_id, fields, expected_version=version)
                if self.store.get(CATEGORIES, category_id) is not None:
                    batch.update(
                        CATEGORIES,
                        category_id,
                        {"transaction_count": Increment(-1), "updated_at": now},
                    )

        try:
            self.store.retry_on_conflict(attempt)
        except StoreError as e:
            raise InternalError(f"Failed to remove category: {e}") from e

        if not removed:
            return {"success": True}

        category_id = removed["no_receipt_category_id"]
        logger.info(f"Removed category {category_id} from transaction {transaction_id}")

        category_exists = self.store.get(CATEGORIES, category_id) is not None
        manual = removed.get("no_receipt_category_matched_by") == MatchedBy.MANUAL.value
        if category_exists and not manual:
            self.ctx.tasks.enqueue(
                "record_category_removal",
                self.learning.append_manual_removal,
                CATEGORIES,
                category_id,
                transaction_id,
                name=removed.get("name"),
                partner=removed.get("partner"),
            )
            self.ctx.tasks.enqueue(
                "unlearn_category_pattern",
                self.learning.unlearn_category_pattern,
                category_id,
                transaction_id,
            )
        elif category_exists:
            self.ctx.tasks.enqueue(
                "forget_category_source",
                self.learning.forget_category_source,
                category_id,
                transaction_id,
            )
        self.ctx.tasks.enqueue(
            "rematch_categories", self.match_categories_for_transaction, transaction_id, False
        )

        self.ctx.finish()
        return {"success": True}

    def clear_category_manual_removal(self, category_id: str, transaction_id: str) -> bool:
        """Make the transaction eligible for this category again and re-match it."""
        self.ctx.require_owned(CATEGORIES, category_id, "Category")
        self.ctx.require_owned(TRANSACTIONS, transaction_id, "Transaction")

        cleared = self.learning.clear_manual_removal(CATEGORIES, category_id, transaction_id)
        if cleared:
            logger.info(f"Cleared manual removal of {transaction_id} on category {category_id}")
        self.ctx.tasks.enqueue("rematch_categories", self.rematch_transaction, transaction_id)
        self.ctx.finish()
        return cleared

    # === Matching ===

    def _file_pattern_counts(self, transaction: dict[str, Any]) -> dict[str, int] | None:
        partner_id = transaction.get("partner_id")
        if not partner_id:
            return None
        collection = (
            GLOBAL_PARTNERS
            if transaction.get("partner_type") == PartnerType.GLOBAL.value
            else PARTNERS
        )
        partner = self.store.get(collection, partner_id)
        if partner is None:
            return None
        return {partner_id: len(partner.get("file_source_patterns") or [])}

    def match_categories_for_transaction(
        self, transaction_id: str, auto_apply: bool = True
    ) -> list[CategorySuggestion]:
        """
        Compute and store category suggestions for a transaction.

        Only transactions without a category and without files are eligible.
        The top suggestion is applied (matched_by auto) when it reaches the
        auto-apply threshold and auto_apply is set.
        """
        tx = self.ctx.require_owned(TRANSACTIONS, transaction_id, "Transaction")
        if not is_eligible(tx):
            return []

        config = self.ctx.config.matching
        suggestions = match_transaction_to_categories(
            tx, self.list_categories(), config, self._file_pattern_counts(tx)
        )
        self.store.update(
            TRANSACTIONS,
            transaction_id,
            {
                "category_suggestions": [s.to_dict() for s in suggestions],
                "updated_at": utc_now(),
            },
        )

        if auto_apply and suggestions and should_auto_apply(suggestions[0].confidence, config):
            top = suggestions[0]
            category = self.store.get(CATEGORIES, top.category_id)
            if category is not None:
                self._write_assignment(transaction_id, category, MatchedBy.AUTO, top.confidence)
                logger.info(
                    f"Auto-applied category {top.category_id} to {transaction_id} "
                    f"({top.source}, {top.confidence})"
                )
        return suggestions

    def rematch_transaction(self, transaction_id: str) -> list[CategorySuggestion]:
        return self.match_categories_for_transaction(transaction_id)

    # === Repair ===

    def retrigger_user_categories(self) -> RepairResult:
        """
        Repair a user's category data.

        - Creates missing template categories
        - Migrates transactions whose category no longer exists, by template
          id first, then by template name; clears them when nothing matches
        - Recalculates every transaction_count from the transactions

        Writes are committed in chunks, so a failure part-way is repaired
        by running it again.
        """
        result = RepairResult(created=self.initialize_categories())

        categories = self.list_categories()
        by_id = {c["id"]: c for c in categories}
        by_template = {c.get("template_id"): c for c in categories if c.get("template_id")}
        by_name = {(c.get("name") or "").lower(): c for c in categories}
        template_names = {t.template_id: t.name.lower() for t in TEMPLATES}

        transactions = self.store.query(
            TRANSACTIONS,
            [("user_id", "==", self.ctx.user_id), ("no_receipt_category_id", "!=", None)],
        )

        now = utc_now()
        ops: list[WriteOp] = []
        counts: dict[str, int] = {c["id"]: 0 for c in categories}

        for tx in transactions:
            category_id = tx["no_receipt_category_id"]
            if category_id in by_id:
                counts[category_id] += 1
                continue

            template_id = tx.get("no_receipt_category_template_id")
            target = by_template.get(template_id)
            if target is None and template_id in template_names:
                target = by_name.get(template_names[template_id])

            if target is not None:
                ops.append(
                    WriteOp(
                        "update",
                        TRANSACTIONS,
                        tx["id"],
                        {
                            "no_receipt_category_id": target["id"],
                            "no_receipt_category_template_id": target.get("template_id"),
                            "updated_at": now,
                        },
                    )
                )
                counts[target["id"]] += 1
                result.migrated += 1
            else:
                fields: dict[str, Any] = {name: None for name in CATEGORY_FIELDS}
                fields["is_complete"] = bool(tx.get("file_ids"))
                fields["updated_at"] = now
                ops.append(WriteOp("update", TRANSACTIONS, tx["id"], fields))
                result.cleared += 1

        for category in categories:
            actual = counts[category["id"]]
            if category.get("transaction_count") != actual:
                ops.append(
                    WriteOp(
                        "update",
                        CATEGORIES,
                        category["id"],
                        {"transaction_count": actual, "updated_at": now},
                    )
                )
                result.recalculated += 1

        if ops:
            try:
                self.store.commit_in_chunks(ops, self.ctx.config.bulk.repair_batch_size)
            except StoreError as e:
                raise InternalError(f"Category repair failed: {e}") from e

        logger.info(
            f"Category repair for {self.ctx.user_id}: {result.created} created, "
            f"{result.migrated} migrated, {result.cleared} cleared, "
            f"{result.recalculated} recalculated"
        )
        return result

