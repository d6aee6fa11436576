"""
Connection Manager.

Owns the File ↔ Transaction junction (file_connections) and everything that
must stay consistent with it:

- Idempotent connect / no-op-tolerant disconnect
- Cross references (file.transaction_ids, transaction.file_ids)
- Transaction completeness: is_complete == has files or has no-receipt category
- Partner sync between connected file and transaction (after extraction)
- File deletion (soft/hard), not-invoice override, bulk transaction updates

Junction and endpoint writes of one operation share a batch. Derived
completeness is written with a version precondition on the transaction so
a concurrent change forces a re-read instead of a stale value.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..errors import FailedPreconditionError, InternalError, InvalidArgumentError, NotFoundError
from ..matching.category_matcher import RECEIPT_LOST_TEMPLATE
from ..matching.resolver import (
    FILE_SIDE,
    TRANSACTION_SIDE,
    Assignment,
    Resolution,
    resolve,
)
from ..schemas.records import (
    CATEGORIES,
    CATEGORY_FIELDS,
    FILE_CONNECTIONS,
    FILES,
    GLOBAL_PARTNERS,
    PARTNER_FIELDS,
    PARTNERS,
    RECEIPT_LOST_FIELDS,
    TRANSACTIONS,
    ConnectionType,
    MatchedBy,
    PartnerType,
    SourceInfo,
    clamp_confidence,
    is_complete,
    utc_now,
)
from ..state_store.base import ArrayRemove, ArrayUnion, Increment, StoreError, WriteOp
from .automation import AutomationSupervisor
from .partner_sources import PartnerSourceService

if TYPE_CHECKING:
    from ..context import OperationsContext

logger = logging.getLogger(__name__)

# Extraction output cleared when a file is marked as not being an invoice
EXTRACTED_FIELDS = (
    "extracted_date",
    "extracted_amount",
    "extracted_currency",
    "extracted_vat_percent",
    "extracted_partner",
    "extracted_vat_id",
    "extracted_iban",
    "extracted_address",
    "extracted_website",
)

# Fields bulk updates may never touch
PROTECTED_TRANSACTION_FIELDS = frozenset({"id", "user_id", "file_ids", "is_complete"})


def connection_id_for(file_id: str, transaction_id: str) -> str:
    """Deterministic junction id; concurrent connects of one pair write the same row."""
    return f"{file_id}_{transaction_id}"


@dataclass
class ConnectResult:
    success: bool
    connection_id: str
    already_connected: bool = False
    partner_sync: Resolution | None = None


@dataclass
class DisconnectResult:
    success: bool
    removed_connections: int = 0
    is_complete: bool = False


@dataclass
class DeleteFileResult:
    success: bool
    deleted_connections: int = 0


@dataclass
class BulkUpdateResult:
    """Per-item outcome of a bulk update."""

    success: int = 0
    failed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


class ConnectionManager:
    """
    File ↔ Transaction connection operations for one user.
    """

    def __init__(self, ctx: OperationsContext):
        self.ctx = ctx
        self.store = ctx.store
        self.automation = AutomationSupervisor(ctx)
        self.sources = PartnerSourceService(ctx)

    def _require_file(self, file_id: str, hide_foreign: bool = False) -> dict[str, Any]:
        file_doc = self.ctx.require_owned(FILES, file_id, "File", hide_foreign)
        if file_doc.get("deleted_at"):
            raise NotFoundError(f"File {file_id} not found")
        return file_doc

    def _connections(self, **criteria: str) -> list[dict[str, Any]]:
        filters = [("user_id", "==", self.ctx.user_id)]
        filters += [(key, "==", value) for key, value in criteria.items()]
        return self.store.query(FILE_CONNECTIONS, filters)

    def get_connections_for_file(self, file_id: str) -> list[dict[str, Any]]:
        self._require_file(file_id)
        return self._connections(file_id=file_id)

    def get_connections_for_transaction(self, transaction_id: str) -> list[dict[str, Any]]:
        self.ctx.require_owned(TRANSACTIONS, transaction_id, "Transaction")
        return self._connections(transaction_id=transaction_id)

    # === Connect ===

    def connect_file_to_transaction(
        self,
        file_id: str,
        transaction_id: str,
        connection_type: str = ConnectionType.MANUAL.value,
        match_confidence: int | None = None,
        source_info: SourceInfo | None = None,
    ) -> ConnectResult:
        """
        Connect a file to a transaction.

        Idempotent: an existing connection for the pair is returned as-is
        (already_connected=True) without touching either entity.

        Args:
            file_id: File to connect
            transaction_id: Transaction to connect
            connection_type: manual | auto_matched | suggestion_accepted
            match_confidence: Matcher confidence (0-100) for automatic links
            source_info: Optional provenance, only set fields are stored; a
                manual connection found by a search teaches the
                transaction's partner that search pattern

        Returns:
            ConnectResult with the connection id

        Raises:
            InvalidArgumentError: Bad ids, connection type or confidence
            NotFoundError: File or transaction missing or not owned
        """
        try:
            connection_type = ConnectionType(connection_type).value
        except ValueError:
            raise InvalidArgumentError(f"Invalid connection type: {connection_type}") from None
        if match_confidence is not None and not 0 <= match_confidence <= 100:
            raise InvalidArgumentError("match_confidence must be between 0 and 100")

        file_doc = self._require_file(file_id, hide_foreign=True)
        self.ctx.require_owned(
            TRANSACTIONS, transaction_id, "Transaction", foreign_as_not_found=True
        )

        existing = self._connections(file_id=file_id, transaction_id=transaction_id)
        if existing:
            logger.debug(f"File {file_id} already connected to {transaction_id}")
            return ConnectResult(
                success=True, connection_id=existing[0]["id"], already_connected=True
            )

        now = utc_now()
        connection_id = connection_id_for(file_id, transaction_id)
        connection = {
            "file_id": file_id,
            "transaction_id": transaction_id,
            "user_id": self.ctx.user_id,
            "connection_type": connection_type,
            "match_confidence": (
                clamp_confidence(match_confidence) if match_confidence is not None else None
            ),
            "created_at": now,
        }
        connection.update((source_info or SourceInfo()).to_fields())

        try:
            with self.store.batch() as batch:
                batch.set(FILE_CONNECTIONS, connection_id, connection)
                batch.update(
                    FILES,
                    file_id,
                    {"transaction_ids": ArrayUnion(transaction_id), "updated_at": now},
                )
                batch.update(
                    TRANSACTIONS,
                    transaction_id,
                    {"file_ids": ArrayUnion(file_id), "is_complete": True, "updated_at": now},
                )
        except StoreError as e:
            raise InternalError(f"Failed to connect file: {e}") from e

        logger.info(
            f"Connected file {file_id} to transaction {transaction_id} ({connection_type})"
        )

        resolution = None
        if file_doc.get("extraction_complete"):
            try:
                resolution = self.sync_partner(file_id, transaction_id)
            except Exception as e:
                logger.error(f"Partner sync after connect failed for {file_id}: {e}")
        else:
            logger.debug(f"Partner sync deferred, file {file_id} extraction incomplete")

        if connection_type in (
            ConnectionType.MANUAL.value,
            ConnectionType.SUGGESTION_ACCEPTED.value,
        ):
            self.ctx.tasks.enqueue(
                "cancel_file_workers",
                self.automation.cancel_file_workers_for_transaction,
                transaction_id,
            )
            if source_info is not None and source_info.search_pattern:
                self.ctx.tasks.enqueue(
                    "learn_file_source_pattern",
                    self.sources.learn_connection_source,
                    transaction_id,
                    source_info.source_type,
                    source_info.search_pattern,
                    source_info.gmail_integration_id,
                    source_info.result_type,
                )

        self.ctx.finish()
        return ConnectResult(success=True, connection_id=connection_id, partner_sync=resolution)

    # === Partner sync ===

    def sync_partner(self, file_id: str, transaction_id: str) -> Resolution:
        """
        Resolve and apply the partner between a connected file and transaction.

        The winning side's partner is copied to the other side with
        matched_by "manual" when the source was manual, "auto" otherwise.
        Overwriting a transaction's own automatic partner keeps the old
        value in bank_partner_* fields.
        """
        file_doc = self.store.get(FILES, file_id) or {}
        tx = self.store.get(TRANSACTIONS, transaction_id) or {}

        resolution = resolve(
            Assignment.from_document(file_doc),
            Assignment.from_document(tx),
            tie_break=self.ctx.config.resolver.tie_break,
        )
        if not resolution.should_sync:
            return resolution

        winner = resolution.winner
        target_doc = tx if resolution.target == TRANSACTION_SIDE else file_doc
        if target_doc.get("partner_id") == winner.partner_id:
            return resolution

        fields: dict[str, Any] = {
            "partner_id": winner.partner_id,
            "partner_type": winner.partner_type,
            "partner_matched_by": resolution.synced_matched_by().value,
            "partner_match_confidence": winner.confidence,
            "updated_at": utc_now(),
        }

        if resolution.target == TRANSACTION_SIDE:
            if tx.get("partner_id"):
                fields.update(
                    {
                        "bank_partner_id": tx.get("partner_id"),
                        "bank_partner_type": tx.get("partner_type"),
                        "bank_partner_matched_by": tx.get("partner_matched_by"),
                        "bank_partner_match_confidence": tx.get("partner_match_confidence"),
                    }
                )
            self.store.update(TRANSACTIONS, transaction_id, fields)
        else:
            self.store.update(FILES, file_id, fields)

        logger.info(
            f"Synced partner {winner.partner_id} from {resolution.source} to "
            f"{resolution.target} (rule {resolution.rule}, file={file_id}, tx={transaction_id})"
        )
        return resolution

    # === Disconnect ===

    def disconnect_file_from_transaction(
        self, file_id: str, transaction_id: str
    ) -> DisconnectResult:
        """
        Remove the connection between a file and a transaction.

        Legacy connections without a junction row are handled through the
        cross references. Disconnecting an unconnected pair is a no-op.
        """
        file_doc = self.ctx.require_owned(FILES, file_id, "File", foreign_as_not_found=True)
        self.ctx.require_owned(
            TRANSACTIONS, transaction_id, "Transaction", foreign_as_not_found=True
        )

        def attempt() -> DisconnectResult:
            tx, version = self.store.get_versioned(TRANSACTIONS, transaction_id)
            junctions = self._connections(file_id=file_id, transaction_id=transaction_id)
            linked = file_id in (tx.get("file_ids") or []) or transaction_id in (
                file_doc.get("transaction_ids") or []
            )
            if not junctions and not linked:
                return DisconnectResult(success=True, is_complete=bool(tx.get("is_complete")))

            remaining = [f for f in tx.get("file_ids") or [] if f != file_id]
            complete = is_complete({**tx, "file_ids": remaining})
            now = utc_now()

            with self.store.batch() as batch:
                for junction in junctions:
                    batch.delete(FILE_CONNECTIONS, junction["id"])
                batch.update(
                    FILES,
                    file_id,
                    {"transaction_ids": ArrayRemove(transaction_id), "updated_at": now},
                )
                batch.update(
                    TRANSACTIONS,
                    transaction_id,
                    {"file_ids": remaining, "is_complete": complete, "updated_at": now},
                    expected_version=version,
                )
            return DisconnectResult(
                success=True, removed_connections=len(junctions), is_complete=complete
            )

        try:
            result = self.store.retry_on_conflict(attempt)
        except StoreError as e:
            raise InternalError(f"Failed to disconnect file: {e}") from e

        if result.removed_connections or not result.is_complete:
            logger.info(
                f"Disconnected file {file_id} from transaction {transaction_id} "
                f"(complete={result.is_complete})"
            )
        self.ctx.finish()
        return result

    def _detach_file_from_transaction(self, transaction_id: str, file_id: str) -> None:
        """Remove a file reference from a transaction and re-derive completeness."""

        def mutate(tx: dict[str, Any]) -> dict[str, Any] | None:
            linked = file_id in (tx.get("file_ids") or [])
            if not linked and tx.get("is_complete") == is_complete(tx):
                return None
            tx["file_ids"] = [f for f in tx.get("file_ids") or [] if f != file_id]
            tx["is_complete"] = is_complete(tx)
            tx["updated_at"] = utc_now()
            return tx

        self.store.update_with_retry(TRANSACTIONS, transaction_id, mutate)

    # === Deletion ===

    def delete_file(self, file_id: str, hard_delete: bool = False) -> DeleteFileResult:
        """
        Delete a file and all of its connections.

        Connections are removed in bounded batches; each affected transaction
        is then updated on its own, so a failure part-way leaves a state that
        a retry completes. Soft delete keeps the document (deleted_at) for
        deduplication fingerprints.
        """
        file_doc = self.ctx.require_owned(FILES, file_id, "File")

        junctions = self._connections(file_id=file_id)
        transaction_ids = {j["transaction_id"] for j in junctions}
        # Legacy references without a junction row
        transaction_ids.update(file_doc.get("transaction_ids") or [])

        try:
            if junctions:
                self.store.commit_in_chunks(
                    [WriteOp("delete", FILE_CONNECTIONS, j["id"]) for j in junctions]
                )

            for transaction_id in sorted(transaction_ids):
                tx = self.store.get(TRANSACTIONS, transaction_id)
                if tx is None or tx.get("user_id") != self.ctx.user_id:
                    continue
                self._detach_file_from_transaction(transaction_id, file_id)

            if hard_delete:
                self.store.delete(FILES, file_id)
            else:
                now = utc_now()
                self.store.update(
                    FILES, file_id, {"deleted_at": now, "transaction_ids": [], "updated_at": now}
                )
        except StoreError as e:
            raise InternalError(f"Failed to delete file: {e}") from e

        logger.info(
            f"{'Hard' if hard_delete else 'Soft'} deleted file {file_id} "
            f"({len(junctions)} connections, {len(transaction_ids)} transactions)"
        )
        self.ctx.tasks.enqueue(
            "cancel_transaction_workers",
            self.automation.cancel_transaction_workers_for_file,
            file_id,
        )
        self.ctx.finish()
        return DeleteFileResult(success=True, deleted_connections=len(junctions))

    def delete_connections_for_transaction(self, transaction_id: str) -> int:
        """
        Remove every file connection of a transaction.

        Returns:
            Number of junction rows deleted
        """
        tx = self.ctx.require_owned(TRANSACTIONS, transaction_id, "Transaction")
        junctions = self._connections(transaction_id=transaction_id)
        file_ids = {j["file_id"] for j in junctions} | set(tx.get("file_ids") or [])

        now = utc_now()
        ops = [WriteOp("delete", FILE_CONNECTIONS, j["id"]) for j in junctions]
        for file_id in sorted(file_ids):
            file_doc = self.store.get(FILES, file_id)
            if file_doc is not None and file_doc.get("user_id") == self.ctx.user_id:
                ops.append(
                    WriteOp(
                        "update",
                        FILES,
                        file_id,
                        {"transaction_ids": ArrayRemove(transaction_id), "updated_at": now},
                    )
                )

        try:
            if ops:
                self.store.commit_in_chunks(ops)

            def mutate(doc: dict[str, Any]) -> dict[str, Any]:
                doc["file_ids"] = []
                doc["is_complete"] = is_complete(doc)
                doc["updated_at"] = now
                return doc

            self.store.update_with_retry(TRANSACTIONS, transaction_id, mutate)
        except StoreError as e:
            raise InternalError(f"Failed to delete connections: {e}") from e

        logger.info(f"Deleted {len(junctions)} connections of transaction {transaction_id}")
        self.ctx.finish()
        return len(junctions)

    # === File overrides ===

    def mark_file_as_not_invoice(self, file_id: str, reason: str | None = None) -> dict[str, Any]:
        """
        Mark a file as not being an invoice.

        Clears extracted fields and transaction suggestions. A manually set
        partner survives; any other partner assignment is cleared.
        """
        file_doc = self._require_file(file_id)
        now = utc_now()

        fields: dict[str, Any] = {
            "is_not_invoice": True,
            "not_invoice_reason": reason.strip() if reason and reason.strip() else None,
            "not_invoice_marked_at": now,
            "transaction_suggestions": [],
            "updated_at": now,
        }
        fields.update({name: None for name in EXTRACTED_FIELDS})
        if file_doc.get("partner_matched_by") != MatchedBy.MANUAL.value:
            fields.update({name: None for name in PARTNER_FIELDS})

        self.store.update(FILES, file_id, fields)
        logger.info(f"Marked file {file_id} as not an invoice")

        self.ctx.tasks.enqueue(
            "cancel_transaction_workers",
            self.automation.cancel_transaction_workers_for_file,
            file_id,
        )
        self.ctx.finish()
        return {"success": True}

    def unmark_file_as_not_invoice(self, file_id: str) -> dict[str, Any]:
        """Undo mark_file_as_not_invoice (extraction must be re-run separately)."""
        self._require_file(file_id)
        self.store.update(
            FILES,
            file_id,
            {
                "is_not_invoice": False,
                "not_invoice_reason": None,
                "not_invoice_marked_at": None,
                "updated_at": utc_now(),
            },
        )
        return {"success": True}

    # === Bulk ===

    def _bulk_partner_fields(self, data: dict[str, Any]) -> dict[str, Any]:
        """Validate a bulk partner change. The four partner fields move together."""
        if not any(name in data for name in PARTNER_FIELDS):
            return {}
        if "partner_id" not in data:
            raise InvalidArgumentError("partner_id is required when updating partner fields")

        partner_id = data["partner_id"]
        if partner_id is None:
            if any(data.get(name) is not None for name in PARTNER_FIELDS):
                raise InvalidArgumentError("Clearing the partner clears all partner fields")
            return {name: None for name in PARTNER_FIELDS}

        try:
            ptype = PartnerType(data.get("partner_type") or PartnerType.USER.value)
        except ValueError:
            raise InvalidArgumentError(f"Invalid partner type: {data['partner_type']}") from None
        source = _parse_source(data.get("partner_matched_by"))
        confidence = _parse_confidence(data.get("partner_match_confidence"), source)

        if ptype == PartnerType.USER:
            self.ctx.require_owned(PARTNERS, partner_id, "Partner")
        elif self.store.get(GLOBAL_PARTNERS, partner_id) is None:
            raise NotFoundError(f"Partner {partner_id} not found")

        return {
            "partner_id": partner_id,
            "partner_type": ptype.value,
            "partner_matched_by": source.value,
            "partner_match_confidence": confidence,
        }

    def _bulk_category_fields(self, data: dict[str, Any]) -> dict[str, Any] | None:
        """
        Validate a bulk category change. Returns None when data has no
        category fields.

        Receipt-lost assignments need a reason per transaction and are
        rejected here.
        """
        keys = [name for name in CATEGORY_FIELDS if name in data]
        if not keys:
            return None
        if any(name in data for name in RECEIPT_LOST_FIELDS):
            raise InvalidArgumentError("Receipt-lost details cannot be bulk updated")
        if "no_receipt_category_id" not in data:
            raise InvalidArgumentError(
                "no_receipt_category_id is required when updating category fields"
            )

        category_id = data["no_receipt_category_id"]
        if category_id is None:
            if any(data[name] is not None for name in keys):
                raise InvalidArgumentError("Clearing the category clears all category fields")
            return {name: None for name in CATEGORY_FIELDS}

        category = self.ctx.require_owned(CATEGORIES, category_id, "Category")
        if not category.get("is_active", True):
            raise FailedPreconditionError(f"Category {category_id} is inactive")
        if category.get("template_id") == RECEIPT_LOST_TEMPLATE:
            raise InvalidArgumentError("The receipt-lost category needs a reason and description")

        source = _parse_source(data.get("no_receipt_category_matched_by"))
        fields: dict[str, Any] = {name: None for name in RECEIPT_LOST_FIELDS}
        fields.update(
            {
                "no_receipt_category_id": category_id,
                "no_receipt_category_template_id": category.get("template_id"),
                "no_receipt_category_matched_by": source.value,
                "no_receipt_category_confidence": _parse_confidence(
                    data.get("no_receipt_category_confidence"), source
                ),
                "category_suggestions": [],
            }
        )
        return fields

    def bulk_update_transactions(
        self, transaction_ids: list[str], data: dict[str, Any]
    ) -> BulkUpdateResult:
        """
        Apply the same field update to many transactions.

        Partner fields are validated as a group. A category change is
        applied the way a single assignment is: is_complete is recomputed
        per transaction and transaction_count moves between categories in
        the same batch.

        Items are checked and written per batch; a missing or foreign
        transaction is reported in errors while the others are updated. A
        failed batch commit marks every item of that batch failed.

        Raises:
            InvalidArgumentError: No ids, too many ids, empty, protected or
                inconsistent data
            NotFoundError / PermissionDeniedError: Target partner or category
            FailedPreconditionError: Target category is inactive
        """
        if not transaction_ids or not isinstance(transaction_ids, list):
            raise InvalidArgumentError("transaction_ids must be a non-empty list")
        limit = self.ctx.config.bulk.max_bulk_items
        if len(transaction_ids) > limit:
            raise InvalidArgumentError(f"Cannot update more than {limit} transactions at once")
        if not data:
            raise InvalidArgumentError("data is required")
        protected = PROTECTED_TRANSACTION_FIELDS.intersection(data)
        if protected:
            names = ", ".join(sorted(protected))
            raise InvalidArgumentError(f"Fields cannot be bulk updated: {names}")

        fields = {
            name: value
            for name, value in data.items()
            if name not in PARTNER_FIELDS and name not in CATEGORY_FIELDS
        }
        fields.update(self._bulk_partner_fields(data))
        category_fields = self._bulk_category_fields(data)

        result = BulkUpdateResult()
        chunk_size = self.store.max_batch_size
        if category_fields is not None:
            # Room for one count update per transaction besides its own write
            chunk_size = max(1, chunk_size // 2)

        for start in range(0, len(transaction_ids), chunk_size):
            chunk = transaction_ids[start : start + chunk_size]
            batch = self.store.batch()
            queued: list[str] = []
            counts: Counter[str] = Counter()
            now = utc_now()

            for transaction_id in chunk:
                tx, version = self.store.get_versioned(TRANSACTIONS, transaction_id)
                if tx is None:
                    result.failed += 1
                    result.errors.append({"id": transaction_id, "error": "Not found"})
                    continue
                if tx.get("user_id") != self.ctx.user_id:
                    result.failed += 1
                    result.errors.append({"id": transaction_id, "error": "Access denied"})
                    continue

                update = {**fields, "updated_at": now}
                if category_fields is not None:
                    update.update(category_fields)
                    previous_id = tx.get("no_receipt_category_id")
                    new_id = category_fields["no_receipt_category_id"]
                    if previous_id != new_id:
                        if previous_id:
                            counts[previous_id] -= 1
                        if new_id:
                            counts[new_id] += 1
                    update["is_complete"] = is_complete({**tx, **update})
                batch.update(TRANSACTIONS, transaction_id, update, expected_version=version)
                queued.append(transaction_id)

            if not queued:
                continue
            for category_id, delta in counts.items():
                if delta and self.store.get(CATEGORIES, category_id) is not None:
                    batch.update(
                        CATEGORIES,
                        category_id,
                        {"transaction_count": Increment(delta), "updated_at": now},
                    )
            try:
                batch.commit()
                result.success += len(queued)
            except StoreError as e:
                logger.error(f"Bulk update batch failed: {e}")
                result.failed += len(queued)
                result.errors.extend({"id": tid, "error": str(e)} for tid in queued)

        logger.info(f"Bulk updated {result.success} transactions ({result.failed} failed)")
        return result


def _parse_source(value: str | None) -> MatchedBy:
    try:
        source = MatchedBy.parse(value or MatchedBy.MANUAL.value)
    except ValueError:
        source = None
    if source is None:
        raise InvalidArgumentError(f"Invalid matched_by: {value}")
    return source


def _parse_confidence(value: int | None, source: MatchedBy) -> int | None:
    if value is None:
        return 100 if source == MatchedBy.MANUAL else None
    if not 0 <= value <= 100:
        raise InvalidArgumentError("confidence must be between 0 and 100")
    return clamp_confidence(value)
