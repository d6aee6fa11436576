"""
Operations context.

Every public operation runs against an explicit context instead of
module-level state: the calling user, the document store, configuration,
the background task queue and (optionally) the worker endpoint client.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .config import Config
from .errors import InvalidArgumentError, NotFoundError, PermissionDeniedError
from .services.tasks import BackgroundTaskQueue, TaskRunSummary
from .state_store.base import DocumentStore

if TYPE_CHECKING:
    from .worker_client import WorkerClient

logger = logging.getLogger(__name__)


@dataclass
class OperationsContext:
    """Per-request dependencies of the reconciliation services.

    auto_drain: run queued background tasks at the end of each public
    operation (finish()). Tests usually leave it off and drain explicitly.
    """

    user_id: str
    store: DocumentStore
    config: Config = field(default_factory=Config)
    tasks: BackgroundTaskQueue = field(default_factory=BackgroundTaskQueue)
    worker_client: WorkerClient | None = None
    auto_drain: bool = False

    def __post_init__(self) -> None:
        if not self.user_id:
            raise InvalidArgumentError("user_id is required")

    def for_user(self, user_id: str) -> OperationsContext:
        """Same dependencies, different caller."""
        return OperationsContext(
            user_id=user_id,
            store=self.store,
            config=self.config,
            tasks=self.tasks,
            worker_client=self.worker_client,
            auto_drain=self.auto_drain,
        )

    def finish(self) -> TaskRunSummary | None:
        """Called after a primary mutation committed."""
        if self.auto_drain and len(self.tasks):
            return self.tasks.drain()
        return None

    def require_owned(
        self,
        collection: str,
        doc_id: str,
        label: str,
        foreign_as_not_found: bool = False,
    ) -> dict[str, Any]:
        """
        Load a document owned by the caller.

        Args:
            collection: Store collection
            doc_id: Document id
            label: Entity name used in error messages
            foreign_as_not_found: Report another user's document as missing
                instead of permission-denied (connection endpoints)

        Raises:
            InvalidArgumentError: doc_id is empty
            NotFoundError: Document does not exist
            PermissionDeniedError: Document belongs to another user
        """
        if not doc_id or not isinstance(doc_id, str):
            raise InvalidArgumentError(f"{label} id is required")
        doc = self.store.get(collection, doc_id)
        if doc is None:
            raise NotFoundError(f"{label} {doc_id} not found")
        if doc.get("user_id") != self.user_id:
            if foreign_as_not_found:
                raise NotFoundError(f"{label} {doc_id} not found")
            raise PermissionDeniedError(f"{label} {doc_id} is not accessible")
        return doc
