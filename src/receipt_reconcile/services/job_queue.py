"""
Persistent job queues.

Two queues share one state machine:

    pending → processing → completed | failed | paused
    failed  → pending           (retry, while retry_count < max_retries)
    paused  → pending           (resume)

- precision_search_queue: receipt searches over one or all incomplete
  transactions of a user, one processing item per user at a time
- gmail_sync_queue: mailbox imports per integration, resumable through
  next_page_token and processed_message_ids

A processing item whose heartbeat (last_heartbeat_at, else started_at) is
older than automation.stale_minutes is swept to failed by sweep_stale()
and not retried.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from ..errors import FailedPreconditionError, InvalidArgumentError
from ..schemas.records import (
    GMAIL_SYNC_QUEUE,
    PRECISION_SEARCH_QUEUE,
    QueueStatus,
    parse_timestamp,
    utc_now,
)
from ..state_store.base import ArrayUnion, Increment, WriteOp, apply_fields, new_document_id

if TYPE_CHECKING:
    from ..context import OperationsContext

logger = logging.getLogger(__name__)

STALE_ERROR = "Sync timed out (stale queue item)"

ACTIVE_STATUSES = (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value)
FINISHED_STATUSES = (QueueStatus.COMPLETED.value, QueueStatus.FAILED.value)

SCOPE_ALL = "all_incomplete"
SCOPE_SINGLE = "single_transaction"

SYNC_TYPES = ("initial", "incremental", "manual")


@dataclass
class ProcessResult:
    """Outcome of process_next()."""

    item_id: str | None = None
    status: str | None = None
    error: str | None = None

    @property
    def processed(self) -> bool:
        return self.item_id is not None


@dataclass
class QueueStats:
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


def _isoformat(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class JobQueue:
    """
    Base queue over one collection.

    Subclasses set `collection` and `dedupe_fields`: an item is not enqueued
    while an active item of the same user with equal dedupe field values
    exists.
    """

    collection: str = ""
    dedupe_fields: tuple[str, ...] = ()

    def __init__(self, ctx: OperationsContext):
        self.ctx = ctx
        self.store = ctx.store
        self.max_retries = ctx.config.automation.max_retries
        self.stale_after = timedelta(minutes=ctx.config.automation.stale_minutes)

    # === Helpers ===

    def get(self, item_id: str) -> dict[str, Any] | None:
        return self.store.get(self.collection, item_id)

    def is_stale(self, item: dict[str, Any], now: datetime | None = None) -> bool:
        """Processing item without a heartbeat within the staleness window."""
        if item.get("status") != QueueStatus.PROCESSING.value:
            return False
        last_seen = parse_timestamp(
            item.get("last_heartbeat_at") or item.get("started_at") or item.get("created_at")
        )
        if last_seen is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now - last_seen > self.stale_after

    def _transition(
        self,
        item_id: str,
        allowed_from: tuple[str, ...],
        fields: dict[str, Any] | Callable[[dict[str, Any]], dict[str, Any]],
    ) -> dict[str, Any] | None:
        """
        Compare-and-swap state change. Returns the updated item, or None when
        the item is missing or not in one of the allowed states.
        """
        if self.get(item_id) is None:
            return None
        applied = False

        def mutate(doc: dict[str, Any]) -> dict[str, Any] | None:
            nonlocal applied
            applied = doc.get("status") in allowed_from
            if not applied:
                return None
            return apply_fields(doc, fields(doc) if callable(fields) else fields)

        doc = self.store.update_with_retry(self.collection, item_id, mutate)
        return doc if applied else None

    def _find_active(self, user_id: str, criteria: dict[str, Any]) -> dict[str, Any] | None:
        filters = [("user_id", "==", user_id), ("status", "in", ACTIVE_STATUSES)]
        filters += [(name, "==", value) for name, value in criteria.items()]
        for item in self.store.query(self.collection, filters, order_by="created_at"):
            if not self.is_stale(item):
                return item
        return None

    # === Producer side ===

    def enqueue(self, **data: Any) -> str | None:
        """
        Add a pending item for the context user.

        Returns:
            New item id, or None when an equivalent active item exists
        """
        criteria = {name: data.get(name) for name in self.dedupe_fields}
        existing = self._find_active(self.ctx.user_id, criteria)
        if existing is not None:
            logger.info(
                f"{self.collection}: active item {existing['id']} exists for "
                f"{self.ctx.user_id} {criteria}, not queueing"
            )
            return None

        item_id = new_document_id()
        item = {
            **data,
            "user_id": self.ctx.user_id,
            "status": QueueStatus.PENDING.value,
            "errors": [],
            "retry_count": 0,
            "max_retries": self.max_retries,
            "last_error": None,
            "created_at": utc_now(),
            "started_at": None,
            "completed_at": None,
        }
        self.store.set(self.collection, item_id, item)
        logger.info(f"{self.collection}: queued {item_id} for {self.ctx.user_id}")
        return item_id

    def has_pending(self, user_id: str | None = None, **criteria: Any) -> bool:
        """True while a non-stale pending/processing item exists."""
        return self._find_active(user_id or self.ctx.user_id, criteria) is not None

    # === Consumer side ===

    def claim_next(self, user_id: str | None = None) -> dict[str, Any] | None:
        """
        Move the oldest pending item to processing.

        Users that already have a (non-stale) processing item are skipped,
        so at most one item per user runs at a time. Pass user_id to
        restrict the claim to one user.
        """
        filters = [("status", "==", QueueStatus.PENDING.value)]
        if user_id:
            filters.append(("user_id", "==", user_id))
        pending = self.store.query(self.collection, filters, order_by="created_at")

        busy: set[str] = set()
        for item in pending:
            owner = item.get("user_id")
            if owner in busy:
                continue
            processing = [
                p
                for p in self.store.query(
                    self.collection,
                    [("user_id", "==", owner), ("status", "==", QueueStatus.PROCESSING.value)],
                )
                if not self.is_stale(p)
            ]
            if processing:
                busy.add(owner)
                continue

            claimed = self.start(item["id"])
            if claimed is not None:
                return claimed
        return None

    def start(self, item_id: str) -> dict[str, Any] | None:
        now = utc_now()
        return self._transition(
            item_id,
            (QueueStatus.PENDING.value,),
            {
                "status": QueueStatus.PROCESSING.value,
                "started_at": now,
                "last_heartbeat_at": now,
            },
        )

    def update_progress(self, item_id: str, **progress: Any) -> dict[str, Any] | None:
        """Store progress counters and refresh the heartbeat."""
        return self._transition(
            item_id,
            (QueueStatus.PROCESSING.value,),
            {**progress, "last_heartbeat_at": utc_now()},
        )

    def complete(self, item_id: str, **result: Any) -> dict[str, Any] | None:
        completed = self._transition(
            item_id,
            (QueueStatus.PROCESSING.value,),
            {**result, "status": QueueStatus.COMPLETED.value, "completed_at": utc_now()},
        )
        if completed is not None:
            logger.info(f"{self.collection}: completed {item_id}")
        return completed

    def fail(self, item_id: str, error: str) -> dict[str, Any] | None:
        """
        Record a failed attempt.

        Below max_retries the item goes back to pending with retry_count + 1;
        otherwise it ends as failed.
        """

        def fields(doc: dict[str, Any]) -> dict[str, Any]:
            retries = doc.get("retry_count") or 0
            errors = list(doc.get("errors") or []) + [error]
            if retries < doc.get("max_retries", self.max_retries):
                return {
                    "status": QueueStatus.PENDING.value,
                    "retry_count": retries + 1,
                    "last_error": error,
                    "errors": errors,
                }
            return {
                "status": QueueStatus.FAILED.value,
                "last_error": f"Max retries exceeded: {error}",
                "errors": errors,
                "completed_at": utc_now(),
            }

        doc = self._transition(item_id, (QueueStatus.PROCESSING.value,), fields)
        if doc is not None:
            logger.warning(
                f"{self.collection}: {item_id} failed ({error}), now {doc.get('status')}"
            )
        return doc

    def pause(self, item_id: str) -> dict[str, Any] | None:
        self.ctx.require_owned(self.collection, item_id, "Queue item")
        return self._transition(
            item_id,
            ACTIVE_STATUSES,
            {"status": QueueStatus.PAUSED.value, "paused_at": utc_now()},
        )

    def resume(self, item_id: str) -> dict[str, Any] | None:
        self.ctx.require_owned(self.collection, item_id, "Queue item")
        return self._transition(
            item_id,
            (QueueStatus.PAUSED.value,),
            {"status": QueueStatus.PENDING.value, "paused_at": None},
        )

    def process_next(
        self,
        handler: Callable[[dict[str, Any]], dict[str, Any] | None],
        user_id: str | None = None,
    ) -> ProcessResult:
        """
        Claim one item and run handler on it.

        The handler returns result fields stored on completion; an exception
        from the handler is recorded through fail() (retry or failed).
        """
        item = self.claim_next(user_id)
        if item is None:
            return ProcessResult()

        try:
            result = handler(item) or {}
        except Exception as e:
            logger.exception(f"{self.collection}: handler failed for {item['id']}")
            doc = self.fail(item["id"], str(e))
            return ProcessResult(item["id"], doc.get("status") if doc else None, str(e))

        doc = self.complete(item["id"], **result)
        return ProcessResult(item["id"], doc.get("status") if doc else None)

    # === Maintenance ===

    def sweep_stale(self, now: datetime | None = None) -> int:
        """
        Fail processing items that stopped reporting progress.

        Returns:
            Number of items swept
        """
        now = now or datetime.now(timezone.utc)
        processing = self.store.query(
            self.collection, [("status", "==", QueueStatus.PROCESSING.value)]
        )
        swept = 0
        for item in processing:
            if not self.is_stale(item, now):
                continue
            done = self._transition(
                item["id"],
                (QueueStatus.PROCESSING.value,),
                {
                    "status": QueueStatus.FAILED.value,
                    "last_error": STALE_ERROR,
                    "completed_at": _isoformat(now),
                },
            )
            if done is not None:
                swept += 1
                logger.warning(f"{self.collection}: swept stale item {item['id']}")
        return swept

    def stats(self, user_id: str | None = None) -> QueueStats:
        filters = [("user_id", "==", user_id)] if user_id else []
        counts = {status.value: 0 for status in QueueStatus}
        for item in self.store.query(self.collection, filters):
            status = item.get("status")
            counts[status] = counts.get(status, 0) + 1
        return QueueStats(counts)

    def cleanup_old(self, days: int = 7, now: datetime | None = None) -> int:
        """Delete completed/failed items finished more than `days` ago."""
        now = now or datetime.now(timezone.utc)
        cutoff = _isoformat(now - timedelta(days=days))
        old = self.store.query(
            self.collection,
            [("status", "in", FINISHED_STATUSES), ("completed_at", "<", cutoff)],
        )
        if old:
            self.store.commit_in_chunks(
                [WriteOp("delete", self.collection, item["id"]) for item in old]
            )
            logger.info(f"{self.collection}: deleted {len(old)} finished items")
        return len(old)


class PrecisionSearchQueue(JobQueue):
    """Receipt search jobs, one running item per user."""

    collection = PRECISION_SEARCH_QUEUE
    dedupe_fields = ("scope", "transaction_id")

    def enqueue_search(
        self,
        scope: str = SCOPE_ALL,
        transaction_id: str | None = None,
        triggered_by: str = "manual",
        strategies: list[str] | None = None,
        transactions_to_process: int = 0,
    ) -> str | None:
        if scope not in (SCOPE_ALL, SCOPE_SINGLE):
            raise InvalidArgumentError(f"Invalid scope: {scope}")
        if scope == SCOPE_SINGLE and not transaction_id:
            raise InvalidArgumentError("transaction_id is required for a single search")

        return self.enqueue(
            scope=scope,
            transaction_id=transaction_id if scope == SCOPE_SINGLE else None,
            triggered_by=triggered_by,
            strategies=list(strategies or self.ctx.config.automation.default_strategies),
            current_strategy_index=0,
            transactions_to_process=(
                1 if scope == SCOPE_SINGLE else transactions_to_process
            ),
            transactions_processed=0,
            transactions_with_matches=0,
            total_files_connected=0,
            last_processed_transaction_id=None,
        )

    def record_transaction(
        self, item_id: str, transaction_id: str, files_connected: int = 0
    ) -> dict[str, Any] | None:
        """Progress after one transaction was searched."""
        return self.update_progress(
            item_id,
            transactions_processed=Increment(1),
            transactions_with_matches=Increment(1 if files_connected else 0),
            total_files_connected=Increment(files_connected),
            last_processed_transaction_id=transaction_id,
        )

    def request_search(
        self,
        runner: Callable[[dict[str, Any]], dict[str, Any] | None],
        scope: str = SCOPE_SINGLE,
        transaction_id: str | None = None,
        triggered_by: str = "manual",
    ) -> dict[str, Any]:
        """
        Run a search now, or queue it.

        While the user has an active item the request is queued. Otherwise
        runner executes synchronously; if it raises, the request is queued
        as a durable item instead. A request equivalent to an active item
        reports that item with status "already_queued".
        """
        if self.has_pending():
            return self._queue_search(scope, transaction_id, triggered_by)

        params = {
            "scope": scope,
            "transaction_id": transaction_id,
            "triggered_by": triggered_by,
            "strategies": list(self.ctx.config.automation.default_strategies),
        }
        try:
            result = runner(params) or {}
        except Exception as e:
            logger.warning(f"Direct precision search failed, queueing: {e}")
            return {**self._queue_search(scope, transaction_id, triggered_by), "error": str(e)}

        return {"status": "completed", "result": result}

    def _queue_search(
        self, scope: str, transaction_id: str | None, triggered_by: str
    ) -> dict[str, Any]:
        item_id = self.enqueue_search(scope, transaction_id, triggered_by)
        if item_id is not None:
            return {"status": "queued", "queue_id": item_id}

        existing = self._find_active(
            self.ctx.user_id,
            {
                "scope": scope,
                "transaction_id": transaction_id if scope == SCOPE_SINGLE else None,
            },
        )
        return {
            "status": "already_queued",
            "queue_id": existing["id"] if existing is not None else None,
        }


class GmailSyncQueue(JobQueue):
    """Mailbox sync jobs, one active item per integration."""

    collection = GMAIL_SYNC_QUEUE
    dedupe_fields = ("integration_id",)

    def enqueue_sync(
        self,
        integration_id: str,
        sync_type: str = "incremental",
        date_from: str | None = None,
        date_to: str | None = None,
    ) -> str | None:
        if not integration_id:
            raise InvalidArgumentError("integration_id is required")
        if sync_type not in SYNC_TYPES:
            raise InvalidArgumentError(f"Invalid sync type: {sync_type}")
        if date_from and date_to and date_from > date_to:
            raise InvalidArgumentError("date_from must not be after date_to")

        return self.enqueue(
            integration_id=integration_id,
            type=sync_type,
            date_from=date_from,
            date_to=date_to,
            next_page_token=None,
            current_page=0,
            emails_processed=0,
            files_created=0,
            attachments_skipped=0,
            processed_message_ids=[],
        )

    def record_page(
        self,
        item_id: str,
        message_ids: list[str],
        next_page_token: str | None,
        files_created: int = 0,
        attachments_skipped: int = 0,
    ) -> dict[str, Any] | None:
        """Checkpoint after one mailbox page so a retry resumes from here."""
        item = self.get(item_id)
        if item is None:
            return None
        seen = set(item.get("processed_message_ids") or [])
        new_ids = [m for m in message_ids if m not in seen]

        return self.update_progress(
            item_id,
            processed_message_ids=ArrayUnion(*new_ids),
            next_page_token=next_page_token,
            current_page=Increment(1),
            emails_processed=Increment(len(new_ids)),
            files_created=Increment(files_created),
            attachments_skipped=Increment(attachments_skipped),
        )

    def pause_integration(self, integration_id: str) -> int:
        """Pause every active item of an integration."""
        active = self.store.query(
            self.collection,
            [
                ("user_id", "==", self.ctx.user_id),
                ("integration_id", "==", integration_id),
                ("status", "in", ACTIVE_STATUSES),
            ],
        )
        paused = sum(1 for item in active if self.pause(item["id"]) is not None)
        if not paused and not active:
            raise FailedPreconditionError(f"No active sync for integration {integration_id}")
        return paused
