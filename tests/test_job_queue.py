"""Tests for the persistent job queues."""

from datetime import datetime, timedelta, timezone

import pytest

from receipt_reconcile.errors import (
    FailedPreconditionError,
    InvalidArgumentError,
    PermissionDeniedError,
)
from receipt_reconcile.services.job_queue import (
    SCOPE_ALL,
    SCOPE_SINGLE,
    STALE_ERROR,
    GmailSyncQueue,
    PrecisionSearchQueue,
)

LONG_AGO = "2020-01-01T00:00:00Z"


@pytest.fixture
def queue(ctx):
    return PrecisionSearchQueue(ctx)


@pytest.fixture
def gmail_queue(ctx):
    return GmailSyncQueue(ctx)


class TestEnqueue:
    """Producer side of the precision search queue."""

    def test_enqueue_all_incomplete(self, queue):
        item_id = queue.enqueue_search(SCOPE_ALL, transactions_to_process=12)

        item = queue.get(item_id)
        assert item["status"] == "pending"
        assert item["user_id"] == "user-1"
        assert item["transaction_id"] is None
        assert item["transactions_to_process"] == 12
        assert item["retry_count"] == 0
        assert item["max_retries"] == 3
        assert item["strategies"] == [
            "partner_files",
            "amount_files",
            "email_invoice",
            "email_attachment",
        ]

    def test_single_transaction(self, queue):
        item = queue.get(queue.enqueue_search(SCOPE_SINGLE, "tx-1", strategies=["amount_files"]))

        assert item["transaction_id"] == "tx-1"
        assert item["transactions_to_process"] == 1
        assert item["strategies"] == ["amount_files"]

    def test_duplicate_active_item_not_queued(self, queue):
        first = queue.enqueue_search(SCOPE_ALL)

        assert queue.enqueue_search(SCOPE_ALL) is None
        assert queue.enqueue_search(SCOPE_SINGLE, "tx-1") not in (None, first)
        assert queue.has_pending()

    def test_stale_item_does_not_block(self, queue, store):
        first = queue.enqueue_search(SCOPE_ALL)
        queue.start(first)
        store.update(queue.collection, first, {"last_heartbeat_at": LONG_AGO})

        assert queue.enqueue_search(SCOPE_ALL) is not None

    @pytest.mark.parametrize(
        "scope,transaction_id", [("everything", None), (SCOPE_SINGLE, None)]
    )
    def test_invalid_requests(self, queue, scope, transaction_id):
        with pytest.raises(InvalidArgumentError):
            queue.enqueue_search(scope, transaction_id)


class TestLifecycle:
    """Consumer side: claim, progress, complete, fail."""

    def test_claim_oldest_and_one_per_user(self, ctx, queue):
        first = queue.enqueue_search(SCOPE_ALL)
        queue.enqueue_search(SCOPE_SINGLE, "tx-1")
        other = PrecisionSearchQueue(ctx.for_user("user-2")).enqueue_search(SCOPE_ALL)

        claimed = queue.claim_next()
        assert claimed["id"] == first
        assert claimed["status"] == "processing"
        assert claimed["started_at"]

        # user-1 is busy, so the next claim goes to user-2
        assert queue.claim_next()["id"] == other
        assert queue.claim_next() is None

    def test_claim_restricted_to_user(self, ctx, queue):
        PrecisionSearchQueue(ctx.for_user("user-2")).enqueue_search(SCOPE_ALL)

        assert queue.claim_next(user_id="user-1") is None

    def test_record_transaction_progress(self, queue):
        item_id = queue.enqueue_search(SCOPE_ALL, transactions_to_process=3)
        queue.start(item_id)

        queue.record_transaction(item_id, "tx-1", files_connected=2)
        item = queue.record_transaction(item_id, "tx-2")

        assert item["transactions_processed"] == 2
        assert item["transactions_with_matches"] == 1
        assert item["total_files_connected"] == 2
        assert item["last_processed_transaction_id"] == "tx-2"

    def test_progress_requires_processing(self, queue):
        item_id = queue.enqueue_search(SCOPE_ALL)

        assert queue.update_progress(item_id, transactions_processed=1) is None
        assert queue.complete(item_id) is None

    def test_complete(self, queue):
        item_id = queue.enqueue_search(SCOPE_ALL)
        queue.start(item_id)

        item = queue.complete(item_id, searches_started=4)

        assert item["status"] == "completed"
        assert item["completed_at"]
        assert item["searches_started"] == 4
        assert not queue.has_pending()

    def test_fail_retries_then_gives_up(self, ctx):
        ctx.config.automation.max_retries = 1
        queue = PrecisionSearchQueue(ctx)
        item_id = queue.enqueue_search(SCOPE_ALL)

        queue.start(item_id)
        retried = queue.fail(item_id, "boom")
        assert retried["status"] == "pending"
        assert retried["retry_count"] == 1
        assert retried["last_error"] == "boom"

        queue.start(item_id)
        failed = queue.fail(item_id, "boom again")
        assert failed["status"] == "failed"
        assert failed["last_error"] == "Max retries exceeded: boom again"
        assert failed["errors"] == ["boom", "boom again"]

    def test_missing_item(self, queue):
        assert queue.start("missing") is None
        assert queue.fail("missing", "x") is None


class TestProcessNext:
    def test_handler_result_stored(self, queue):
        item_id = queue.enqueue_search(SCOPE_ALL)

        result = queue.process_next(lambda item: {"searches_started": 2})

        assert result.processed
        assert result.item_id == item_id
        assert result.status == "completed"
        assert queue.get(item_id)["searches_started"] == 2

    def test_handler_failure_is_retried(self, queue):
        item_id = queue.enqueue_search(SCOPE_ALL)

        def handler(item):
            raise RuntimeError("worker unreachable")

        result = queue.process_next(handler)

        assert result.status == "pending"
        assert result.error == "worker unreachable"
        assert queue.get(item_id)["retry_count"] == 1

    def test_empty_queue(self, queue):
        assert not queue.process_next(lambda item: None).processed


class TestMaintenance:
    """Stale sweeping, pausing, stats and cleanup."""

    def test_sweep_stale(self, queue):
        stale = queue.enqueue_search(SCOPE_ALL)
        queue.start(stale)
        pending = queue.enqueue_search(SCOPE_SINGLE, "tx-1")
        later = datetime.now(timezone.utc) + timedelta(minutes=11)

        assert queue.sweep_stale(now=later) == 1

        item = queue.get(stale)
        assert item["status"] == "failed"
        assert item["last_error"] == STALE_ERROR
        assert item["retry_count"] == 0
        assert queue.get(pending)["status"] == "pending"

    def test_fresh_items_not_swept(self, queue):
        queue.start(queue.enqueue_search(SCOPE_ALL))

        assert queue.sweep_stale() == 0

    def test_heartbeat_keeps_item_alive(self, queue, store):
        item_id = queue.enqueue_search(SCOPE_ALL)
        queue.start(item_id)
        store.update(queue.collection, item_id, {"started_at": LONG_AGO})

        assert queue.is_stale(queue.get(item_id)) is False
        store.update(queue.collection, item_id, {"last_heartbeat_at": LONG_AGO})
        assert queue.is_stale(queue.get(item_id)) is True

    def test_pause_and_resume(self, queue):
        item_id = queue.enqueue_search(SCOPE_ALL)

        assert queue.pause(item_id)["status"] == "paused"
        assert not queue.has_pending()
        assert queue.resume(item_id)["status"] == "pending"
        assert queue.resume(item_id) is None

    def test_pause_foreign_item(self, ctx, queue):
        other = PrecisionSearchQueue(ctx.for_user("user-2")).enqueue_search(SCOPE_ALL)

        with pytest.raises(PermissionDeniedError):
            queue.pause(other)

    def test_stats(self, ctx, queue):
        queue.enqueue_search(SCOPE_ALL)
        done = queue.enqueue_search(SCOPE_SINGLE, "tx-1")
        queue.start(done)
        queue.complete(done)
        PrecisionSearchQueue(ctx.for_user("user-2")).enqueue_search(SCOPE_ALL)

        stats = queue.stats()
        assert stats.counts["pending"] == 2
        assert stats.counts["completed"] == 1
        assert stats.counts["failed"] == 0
        assert stats.total == 3
        assert queue.stats("user-2").total == 1

    def test_cleanup_old(self, queue, store):
        old = queue.enqueue_search(SCOPE_ALL)
        queue.start(old)
        queue.complete(old)
        store.update(queue.collection, old, {"completed_at": LONG_AGO})
        recent = queue.enqueue_search(SCOPE_SINGLE, "tx-1")
        queue.start(recent)
        queue.complete(recent)

        assert queue.cleanup_old(days=7) == 1
        assert queue.get(old) is None
        assert queue.get(recent) is not None


class TestRequestSearch:
    """Tests for run-now-or-queue precision searches."""

    def test_runs_directly(self, queue):
        calls = []

        def runner(params):
            calls.append(params)
            return {"files_connected": 1}

        result = queue.request_search(runner, SCOPE_SINGLE, "tx-1")

        assert result == {"status": "completed", "result": {"files_connected": 1}}
        assert calls[0]["transaction_id"] == "tx-1"
        assert queue.stats().total == 0

    def test_failure_is_queued(self, queue):
        def runner(params):
            raise RuntimeError("timeout")

        result = queue.request_search(runner, SCOPE_SINGLE, "tx-1")

        assert result["status"] == "queued"
        assert result["error"] == "timeout"
        assert queue.get(result["queue_id"])["transaction_id"] == "tx-1"

    def test_active_item_forces_queueing(self, queue):
        queue.enqueue_search(SCOPE_ALL)

        def runner(params):
            raise AssertionError("must not run")

        result = queue.request_search(runner, SCOPE_SINGLE, "tx-1")

        assert result["status"] == "queued"
        assert result["queue_id"] is not None

    def test_duplicate_request_reports_existing_item(self, queue):
        first = queue.enqueue_search(SCOPE_ALL)

        def runner(params):
            raise AssertionError("must not run")

        result = queue.request_search(runner, SCOPE_ALL)

        assert result == {"status": "already_queued", "queue_id": first}
        assert queue.stats().total == 1


class TestGmailSyncQueue:
    """Tests for the mailbox sync queue."""

    def test_one_active_item_per_integration(self, gmail_queue):
        first = gmail_queue.enqueue_sync("int-1", "initial", "2024-01-01", "2024-06-30")

        assert gmail_queue.enqueue_sync("int-1") is None
        assert gmail_queue.enqueue_sync("int-2") is not None
        item = gmail_queue.get(first)
        assert item["type"] == "initial"
        assert item["processed_message_ids"] == []

    @pytest.mark.parametrize(
        "args",
        [("", "incremental"), ("int-1", "weekly"), ("int-1", "manual", "2024-02-01", "2024-01-01")],
    )
    def test_invalid_requests(self, gmail_queue, args):
        with pytest.raises(InvalidArgumentError):
            gmail_queue.enqueue_sync(*args)

    def test_record_page_checkpoints(self, gmail_queue):
        item_id = gmail_queue.enqueue_sync("int-1")
        gmail_queue.start(item_id)

        gmail_queue.record_page(item_id, ["m1", "m2"], "page-2", files_created=1)
        item = gmail_queue.record_page(item_id, ["m2", "m3"], None, attachments_skipped=2)

        assert item["processed_message_ids"] == ["m1", "m2", "m3"]
        assert item["emails_processed"] == 3
        assert item["current_page"] == 2
        assert item["files_created"] == 1
        assert item["attachments_skipped"] == 2
        assert item["next_page_token"] is None

    def test_pause_integration(self, gmail_queue):
        item_id = gmail_queue.enqueue_sync("int-1")
        gmail_queue.start(item_id)

        assert gmail_queue.pause_integration("int-1") == 1
        assert gmail_queue.get(item_id)["status"] == "paused"
        with pytest.raises(FailedPreconditionError):
            gmail_queue.pause_integration("int-1")
