"""
CLI main entry point.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

from ..config import Config, create_default_config, load_config
from ..context import OperationsContext
from ..schemas.records import TRANSACTIONS
from ..services.automation import AutomationSupervisor
from ..services.categories import CategoryReconciler
from ..services.job_queue import SCOPE_SINGLE, GmailSyncQueue, JobQueue, PrecisionSearchQueue
from ..state_store import SqliteDocumentStore
from ..worker_client import WorkerClient

logger = logging.getLogger(__name__)

SYSTEM_USER = "system"
GMAIL_SYNC_WORKER = "gmail_sync"


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="receipt-reconcile",
        description="Reconcile receipts, partners and categories with bank transactions",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    init_parser = subparsers.add_parser("init-config", help="Write a default config file")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )

    # status command
    subparsers.add_parser("status", help="Show store and queue status")

    # process-queue command
    queue_parser = subparsers.add_parser("process-queue", help="Process queued jobs")
    queue_parser.add_argument(
        "--queue",
        choices=["precision", "gmail"],
        required=True,
        help="Queue to process",
    )
    queue_parser.add_argument(
        "--limit",
        type=int,
        default=10,
        help="Maximum items to process (default: 10)",
    )

    # sweep-stale command
    subparsers.add_parser("sweep-stale", help="Fail stale processing queue items")

    # repair-categories command
    repair_parser = subparsers.add_parser(
        "repair-categories", help="Migrate orphaned categories and recalculate counts"
    )
    repair_parser.add_argument(
        "--user",
        type=str,
        required=True,
        help="User id to repair",
    )

    return parser


def build_context(config: Config, user_id: str = SYSTEM_USER) -> OperationsContext:
    """Wire store, worker client and task queue from configuration."""
    store = SqliteDocumentStore(
        config.store.state_db_path,
        max_batch_size=config.store.max_batch_size,
        cas_max_attempts=config.store.cas_max_attempts,
    )
    worker_client = None
    if config.automation.worker_url:
        worker_client = WorkerClient(
            config.automation.worker_url,
            token=config.automation.worker_token,
            timeout=config.automation.timeout_seconds,
            max_retries=config.automation.http_retries,
        )
    return OperationsContext(
        user_id=user_id, store=store, config=config, worker_client=worker_client
    )


def _finish(ctx: OperationsContext) -> None:
    """Run queued side effects before exiting."""
    summary = ctx.tasks.drain()
    if summary.failed:
        print(f"  ⚠ {summary.failed} background task(s) failed")


def precision_search_handler(ctx: OperationsContext, queue: PrecisionSearchQueue):
    """Search receipts for the item's transaction(s) through the worker endpoint."""

    def handle(item: dict[str, Any]) -> dict[str, Any]:
        user_ctx = ctx.for_user(item["user_id"])
        supervisor = AutomationSupervisor(user_ctx)

        if item.get("scope") == SCOPE_SINGLE:
            transaction_ids = [item["transaction_id"]]
        else:
            incomplete = ctx.store.query(
                TRANSACTIONS,
                [("user_id", "==", item["user_id"]), ("is_complete", "!=", True)],
                order_by="date",
            )
            transaction_ids = [tx["id"] for tx in incomplete]

        started = 0
        for transaction_id in transaction_ids:
            result = supervisor.queue_receipt_search_for_transaction(transaction_id)
            if result.status in ("started", "queued"):
                started += 1
            queue.record_transaction(item["id"], transaction_id)

        return {"transactions_to_process": len(transaction_ids), "searches_started": started}

    return handle


def gmail_sync_handler(ctx: OperationsContext):
    """Hand the mailbox sync to the worker endpoint."""

    def handle(item: dict[str, Any]) -> dict[str, Any]:
        if ctx.worker_client is None:
            raise RuntimeError("No worker endpoint configured")
        run = ctx.worker_client.trigger(
            GMAIL_SYNC_WORKER,
            f"Sync mailbox {item['integration_id']} ({item.get('type')})",
            {"integrationId": item["integration_id"], "queueId": item["id"]},
            triggered_by="auto",
        )
        if run is None:
            raise RuntimeError("Worker endpoint did not start a run")
        return {"worker_run_id": run.run_id}

    return handle


def cmd_init_config(config_path: Path, force: bool) -> int:
    """Write a default configuration file."""
    if config_path.exists() and not force:
        print(f"❌ {config_path} already exists (use --force to overwrite)")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def cmd_status(config: Config) -> int:
    """Show store and queue status."""
    ctx = build_context(config)
    stats = ctx.store.get_stats()

    print("\n📊 Reconciliation Status")
    print("=" * 40)
    if not stats:
        print("  (empty store)")
    for collection, count in sorted(stats.items()):
        print(f"  {collection:<24}{count}")

    for queue in (PrecisionSearchQueue(ctx), GmailSyncQueue(ctx)):
        queue_stats = queue.stats()
        summary = ", ".join(f"{k}={v}" for k, v in queue_stats.counts.items())
        print(f"\n  {queue.collection}: {summary}")
    print()

    _finish(ctx)
    return 0


def cmd_process_queue(config: Config, queue_name: str, limit: int) -> int:
    """Process up to `limit` items from a job queue."""
    ctx = build_context(config)

    queue: JobQueue
    if queue_name == "precision":
        queue = PrecisionSearchQueue(ctx)
        handler = precision_search_handler(ctx, queue)
    else:
        queue = GmailSyncQueue(ctx)
        handler = gmail_sync_handler(ctx)

    print(f"⚙ Processing {queue.collection}...")
    processed = failed = 0
    for _ in range(limit):
        result = queue.process_next(handler)
        if not result.processed:
            break
        processed += 1
        if result.error:
            failed += 1
            print(f"  ❌ [{result.item_id}] {result.error} → {result.status}")
        else:
            print(f"  ✓ [{result.item_id}] {result.status}")

    _finish(ctx)
    print(f"\n✓ Processed: {processed}, Failed: {failed}")
    return 0 if failed == 0 else 1


def cmd_sweep_stale(config: Config) -> int:
    """Fail processing items without a recent heartbeat."""
    ctx = build_context(config)
    total = 0
    for queue in (PrecisionSearchQueue(ctx), GmailSyncQueue(ctx)):
        swept = queue.sweep_stale()
        total += swept
        print(f"  🧹 {queue.collection}: {swept} stale item(s)")

    _finish(ctx)
    print(f"\n✓ Swept {total} item(s)")
    return 0


def cmd_repair_categories(config: Config, user_id: str) -> int:
    """Repair a user's no-receipt categories."""
    ctx = build_context(config, user_id)
    print(f"🔧 Repairing categories for {user_id}...")

    result = CategoryReconciler(ctx).retrigger_user_categories()

    _finish(ctx)
    print(f"  Created:      {result.created}")
    print(f"  Migrated:     {result.migrated}")
    print(f"  Cleared:      {result.cleared}")
    print(f"  Recalculated: {result.recalculated}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config, parsed.force)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "status":
        return cmd_status(config)
    elif parsed.command == "process-queue":
        return cmd_process_queue(config, parsed.queue, parsed.limit)
    elif parsed.command == "sweep-stale":
        return cmd_sweep_stale(config)
    elif parsed.command == "repair-categories":
        return cmd_repair_categories(config, parsed.user)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
