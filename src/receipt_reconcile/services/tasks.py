"""
Background task queue.

Side effects that must never fail a primary operation (pattern learning,
worker cancellation, receipt-search triggers, re-matching) are enqueued
here by the producer and executed later by drain(). A failing task is
logged with its name and counted; the exception never reaches the caller
that enqueued it.
"""

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class BackgroundTask:
    """A queued side effect."""

    name: str
    func: Callable[..., Any]
    args: tuple = ()
    kwargs: dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskRunSummary:
    """Result of draining the queue."""

    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0


class BackgroundTaskQueue:
    """
    FIFO queue of fire-and-forget tasks.

    Tasks enqueued while draining (e.g. a re-match triggered by a learn
    task) run in the same drain call.
    """

    def __init__(self) -> None:
        self._pending: deque[BackgroundTask] = deque()
        self.history: list[tuple[str, bool]] = []

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending_names(self) -> list[str]:
        return [task.name for task in self._pending]

    def enqueue(self, name: str, func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> None:
        """Queue a task for later execution."""
        self._pending.append(BackgroundTask(name=name, func=func, args=args, kwargs=kwargs))
        logger.debug(f"Queued background task {name}")

    def drain(self) -> TaskRunSummary:
        """Run every queued task, isolating failures."""
        summary = TaskRunSummary()
        while self._pending:
            task = self._pending.popleft()
            try:
                task.func(*task.args, **task.kwargs)
            except Exception as e:
                summary.failed += 1
                summary.errors.append(f"{task.name}: {e}")
                self.history.append((task.name, False))
                logger.exception(f"Background task {task.name} failed: {e}")
            else:
                summary.succeeded += 1
                self.history.append((task.name, True))

        if summary.failed:
            logger.warning(
                f"Background tasks finished with {summary.failed} failure(s), "
                f"{summary.succeeded} succeeded"
            )
        return summary

    def clear(self) -> int:
        """Drop queued tasks without running them."""
        dropped = len(self._pending)
        self._pending.clear()
        return dropped
