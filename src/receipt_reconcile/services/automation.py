"""
Automation Supervisor.

Supervises background automation workers (receipt search, partner and
file matching):

Features:
- Cooperative cancellation of pending requests and running runs when a user
  manually assigns or accepts a suggestion for the same entity
- Receipt search trigger for transactions without files, rate limited to
  one running worker per user
- Durable worker_requests fallback when the worker endpoint is busy,
  unreachable or does not start a run
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..schemas.records import (
    GLOBAL_PARTNERS,
    PARTNERS,
    TRANSACTIONS,
    WORKER_REQUESTS,
    WORKER_RUNS,
    utc_now,
)
from ..state_store.base import ArrayUnion, WriteOp, new_document_id
from ..worker_client import WorkerError

if TYPE_CHECKING:
    from ..context import OperationsContext

logger = logging.getLogger(__name__)

RECEIPT_SEARCH = "receipt_search"
FILE_MATCHING = "file_matching"
PARTNER_MATCHING = "partner_matching"
FILE_PARTNER_MATCHING = "file_partner_matching"

ENTITY_TRANSACTION = "transaction"
ENTITY_FILE = "file"

CANCEL_REASON_MANUAL_OVERRIDE = "manual_override"
CANCEL_SUMMARY = "Cancelled: User made manual assignment"


@dataclass
class CancelResult:
    """Outcome of cancel_workers_for_entity()."""

    cancelled_requests: int = 0
    cancelled_runs: int = 0

    @property
    def total(self) -> int:
        return self.cancelled_requests + self.cancelled_runs


@dataclass
class ReceiptSearchResult:
    """Outcome of a receipt search trigger.

    status: started | queued | skipped | failed
    """

    success: bool
    status: str
    reason: str | None = None
    run_id: str | None = None
    request_id: str | None = None


@dataclass
class DispatchResult:
    """Outcome of dispatch_pending_requests()."""

    dispatched: int = 0
    deferred: int = 0
    errors: list[str] = field(default_factory=list)


def format_amount(amount_minor: int | None, currency: str | None) -> str:
    """Format integer minor units as '12.34 EUR'."""
    value = abs(amount_minor or 0) / 100
    return f"{value:.2f} {currency or 'EUR'}"


def build_receipt_search_prompt(transaction: dict[str, Any], partner_name: str | None) -> str:
    """Instruction for the receipt search worker."""
    parts = [f"Find receipt for transaction {transaction['id']}."]
    if partner_name:
        parts.append(f"Partner: {partner_name}.")
    parts.append(
        f"Amount: {format_amount(transaction.get('amount'), transaction.get('currency'))}."
    )
    if transaction.get("date"):
        parts.append(f"Date: {str(transaction['date'])[:10]}")
    return " ".join(parts)


class AutomationSupervisor:
    """
    Cancels superseded background work and triggers receipt searches.
    """

    def __init__(self, ctx: OperationsContext):
        self.ctx = ctx
        self.store = ctx.store

    # === Cancellation ===

    def cancel_workers_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        worker_types: list[str] | None = None,
    ) -> CancelResult:
        """
        Cancel pending requests and running runs targeting one entity.

        Cancellation is cooperative: records are marked cancelled and a
        running worker is expected to observe the status and stop.

        Args:
            entity_type: "transaction" or "file"
            entity_id: Entity referenced in the worker trigger context
            worker_types: Restrict to these worker types (all when None)

        Returns:
            CancelResult with counts
        """
        if entity_type not in (ENTITY_TRANSACTION, ENTITY_FILE):
            raise ValueError(f"Unknown entity type: {entity_type}")

        context_key = f"{entity_type}_id"
        now = utc_now()

        def targets(doc: dict[str, Any]) -> bool:
            if (doc.get("trigger_context") or {}).get(context_key) != entity_id:
                return False
            return worker_types is None or doc.get("worker_type") in worker_types

        requests = [
            r
            for r in self.store.query(
                WORKER_REQUESTS,
                [("user_id", "==", self.ctx.user_id), ("status", "==", "pending")],
            )
            if targets(r)
        ]
        runs = [
            r
            for r in self.store.query(
                WORKER_RUNS,
                [("user_id", "==", self.ctx.user_id), ("status", "==", "running")],
            )
            if targets(r)
        ]

        ops = [
            WriteOp(
                "update",
                WORKER_REQUESTS,
                r["id"],
                {
                    "status": "cancelled",
                    "cancelled_at": now,
                    "cancel_reason": CANCEL_REASON_MANUAL_OVERRIDE,
                },
            )
            for r in requests
        ] + [
            WriteOp(
                "update",
                WORKER_RUNS,
                r["id"],
                {"status": "cancelled", "completed_at": now, "summary": CANCEL_SUMMARY},
            )
            for r in runs
        ]
        if ops:
            self.store.commit_in_chunks(ops)
            logger.info(
                f"Cancelled {len(requests)} request(s) and {len(runs)} run(s) "
                f"for {entity_type} {entity_id}"
            )

        return CancelResult(cancelled_requests=len(requests), cancelled_runs=len(runs))

    def cancel_file_workers_for_transaction(self, transaction_id: str) -> CancelResult:
        """Stop searches for a receipt the user just provided."""
        return self.cancel_workers_for_entity(
            ENTITY_TRANSACTION, transaction_id, [FILE_MATCHING, RECEIPT_SEARCH]
        )

    def cancel_partner_workers_for_transaction(self, transaction_id: str) -> CancelResult:
        return self.cancel_workers_for_entity(
            ENTITY_TRANSACTION, transaction_id, [PARTNER_MATCHING]
        )

    def cancel_partner_workers_for_file(self, file_id: str) -> CancelResult:
        return self.cancel_workers_for_entity(ENTITY_FILE, file_id, [FILE_PARTNER_MATCHING])

    def cancel_transaction_workers_for_file(self, file_id: str) -> CancelResult:
        return self.cancel_workers_for_entity(ENTITY_FILE, file_id, [FILE_MATCHING])

    # === Receipt search ===

    def has_running_worker(self, user_id: str | None = None) -> bool:
        """True while any worker run of the user is still running."""
        running = self.store.query(
            WORKER_RUNS,
            [("user_id", "==", user_id or self.ctx.user_id), ("status", "==", "running")],
            limit=1,
        )
        return bool(running)

    def _partner_name(self, transaction: dict[str, Any], partner_id: str | None) -> str | None:
        if partner_id:
            for collection in (PARTNERS, GLOBAL_PARTNERS):
                partner = self.store.get(collection, partner_id)
                if partner is not None:
                    return partner.get("name")
        return transaction.get("partner")

    def queue_receipt_search_for_transaction(
        self,
        transaction_id: str,
        partner_id: str | None = None,
        force: bool = False,
    ) -> ReceiptSearchResult:
        """
        Start (or queue) a receipt search for a transaction.

        Skips transactions that already have files (unless force) and
        partners for which a search completed or is still in flight. While
        another worker of the user is running, the request is queued
        instead of started.
        """
        transaction = self.store.get(TRANSACTIONS, transaction_id)
        if transaction is None:
            return ReceiptSearchResult(success=False, status="failed", reason="not_found")
        if transaction.get("user_id") != self.ctx.user_id:
            return ReceiptSearchResult(success=False, status="failed", reason="access_denied")

        if transaction.get("file_ids") and not force:
            return ReceiptSearchResult(success=True, status="skipped", reason="has_files")

        partner_id = partner_id or transaction.get("partner_id")
        history = transaction.get("automation_history") or []
        already_ran = any(
            entry.get("type") == RECEIPT_SEARCH
            and entry.get("for_partner_id") == partner_id
            and self._search_counts(entry)
            for entry in history
        )
        if already_ran and not force:
            return ReceiptSearchResult(success=True, status="skipped", reason="already_ran")

        prompt = build_receipt_search_prompt(
            transaction, self._partner_name(transaction, partner_id)
        )
        trigger_context = {"transaction_id": transaction_id, "partner_id": partner_id}

        if self.has_running_worker():
            logger.info(
                f"Worker already running for user, queueing receipt search {transaction_id}"
            )
            return self._queue_request(transaction_id, partner_id, prompt, trigger_context)

        run = None
        client = self.ctx.worker_client
        if client is not None:
            try:
                run = client.trigger(
                    RECEIPT_SEARCH,
                    prompt,
                    {"transactionId": transaction_id, "partnerId": partner_id},
                    triggered_by="auto",
                )
            except WorkerError as e:
                logger.warning(f"Receipt search trigger failed for {transaction_id}: {e}")

        if run is None:
            return self._queue_request(transaction_id, partner_id, prompt, trigger_context)

        now = utc_now()
        with self.store.batch() as batch:
            batch.set(
                WORKER_RUNS,
                run.run_id,
                {
                    "user_id": self.ctx.user_id,
                    "worker_type": RECEIPT_SEARCH,
                    "status": run.status,
                    "trigger_context": trigger_context,
                    "triggered_by": "auto",
                    "started_at": now,
                },
            )
            batch.update(
                TRANSACTIONS,
                transaction_id,
                {
                    "automation_history": ArrayUnion(
                        {
                            "type": RECEIPT_SEARCH,
                            "ran_at": now,
                            "for_partner_id": partner_id,
                            "worker_run_id": run.run_id,
                            "status": "started",
                        }
                    )
                },
            )

        logger.info(f"Receipt search run {run.run_id} started for {transaction_id}")
        return ReceiptSearchResult(success=True, status="started", run_id=run.run_id)

    def _search_counts(self, entry: dict[str, Any]) -> bool:
        """A completed search, or one whose run or request is still active."""
        status = entry.get("status")
        if status == "completed":
            return True
        if status in ("failed", "cancelled"):
            return False

        run_id = entry.get("worker_run_id")
        request_id = entry.get("worker_request_id")
        if not run_id and request_id:
            request = self.store.get(WORKER_REQUESTS, request_id)
            if request is None:
                return False
            if request.get("status") == "pending":
                return True
            run_id = request.get("worker_run_id")
        if not run_id:
            return False
        run = self.store.get(WORKER_RUNS, run_id)
        return run is not None and run.get("status") == "running"

    def _queue_request(
        self,
        transaction_id: str,
        partner_id: str | None,
        prompt: str,
        trigger_context: dict[str, Any],
    ) -> ReceiptSearchResult:
        """Durable fallback: a pending worker_requests document."""
        now = utc_now()
        request_id = new_document_id()
        with self.store.batch() as batch:
            batch.set(
                WORKER_REQUESTS,
                request_id,
                {
                    "user_id": self.ctx.user_id,
                    "worker_type": RECEIPT_SEARCH,
                    "initial_prompt": prompt,
                    "trigger_context": trigger_context,
                    "triggered_by": "auto",
                    "status": "pending",
                    "created_at": now,
                },
            )
            batch.update(
                TRANSACTIONS,
                transaction_id,
                {
                    "automation_history": ArrayUnion(
                        {
                            "type": RECEIPT_SEARCH,
                            "ran_at": now,
                            "for_partner_id": partner_id,
                            "worker_request_id": request_id,
                            "status": "queued",
                        }
                    )
                },
            )
        return ReceiptSearchResult(success=True, status="queued", request_id=request_id)

    # === Durable request dispatch ===

    def dispatch_pending_requests(self, limit: int = 20) -> DispatchResult:
        """
        Hand queued worker_requests to the worker endpoint, oldest first.

        Users with a running worker are skipped (rate limit). Runs for every
        user, so call it with a system context.
        """
        result = DispatchResult()
        client = self.ctx.worker_client
        if client is None:
            return result

        pending = self.store.query(
            WORKER_REQUESTS, [("status", "==", "pending")], order_by="created_at", limit=limit
        )
        busy: set[str] = set()
        for request in pending:
            user_id = request.get("user_id")
            if user_id in busy or self.has_running_worker(user_id):
                busy.add(user_id)
                result.deferred += 1
                continue

            context = request.get("trigger_context") or {}
            try:
                run = client.trigger(
                    request.get("worker_type"),
                    request.get("initial_prompt") or "",
                    {
                        "transactionId": context.get("transaction_id"),
                        "fileId": context.get("file_id"),
                        "partnerId": context.get("partner_id"),
                    },
                    triggered_by=request.get("triggered_by") or "auto",
                )
            except WorkerError as e:
                result.errors.append(f"{request['id']}: {e}")
                continue

            if run is None:
                result.deferred += 1
                continue

            now = utc_now()
            with self.store.batch() as batch:
                batch.update(
                    WORKER_REQUESTS,
                    request["id"],
                    {"status": "dispatched", "dispatched_at": now, "worker_run_id": run.run_id},
                )
                batch.set(
                    WORKER_RUNS,
                    run.run_id,
                    {
                        "user_id": user_id,
                        "worker_type": request.get("worker_type"),
                        "status": run.status,
                        "trigger_context": context,
                        "triggered_by": request.get("triggered_by") or "auto",
                        "started_at": now,
                    },
                )
            busy.add(user_id)
            result.dispatched += 1

        return result

    def finish_worker_run(self, run_id: str, status: str, summary: str | None = None) -> bool:
        """
        Record the end of a run reported by the worker.

        A run that was cancelled meanwhile keeps its cancelled status. The
        final status of a receipt search is copied into the transaction's
        automation_history.

        Returns:
            True if the run was updated
        """
        updated = False

        def mutate(doc: dict[str, Any]) -> dict[str, Any] | None:
            nonlocal updated
            updated = False
            if doc.get("status") != "running":
                return None
            doc["status"] = status
            doc["completed_at"] = utc_now()
            if summary is not None:
                doc["summary"] = summary
            updated = True
            return doc

        if self.store.get(WORKER_RUNS, run_id) is None:
            return False
        run = self.store.update_with_retry(WORKER_RUNS, run_id, mutate)
        if updated and run is not None and run.get("worker_type") == RECEIPT_SEARCH:
            self._record_search_outcome(run)
        return updated

    def _record_search_outcome(self, run: dict[str, Any]) -> None:
        transaction_id = (run.get("trigger_context") or {}).get("transaction_id")
        if not transaction_id:
            return
        request_ids = {
            r["id"]
            for r in self.store.query(WORKER_REQUESTS, [("worker_run_id", "==", run["id"])])
        }

        def mutate(doc: dict[str, Any]) -> dict[str, Any] | None:
            history = doc.get("automation_history") or []
            changed = False
            for entry in history:
                ours = entry.get("worker_run_id") == run["id"] or (
                    entry.get("worker_request_id") in request_ids
                )
                if ours and entry.get("status") != run["status"]:
                    entry["status"] = run["status"]
                    changed = True
            if not changed:
                return None
            doc["automation_history"] = history
            return doc

        if self.store.get(TRANSACTIONS, transaction_id) is not None:
            self.store.update_with_retry(TRANSACTIONS, transaction_id, mutate)
