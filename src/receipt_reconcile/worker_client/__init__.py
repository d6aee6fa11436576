"""
Automation worker endpoint client.

Provides:
- Trigger a background worker run (POST /api/worker)

Connection failures and API errors raise WorkerError subclasses; callers
decide whether to fall back to the durable worker_requests queue.
"""

from .client import (
    WorkerAPIError,
    WorkerClient,
    WorkerConnectionError,
    WorkerError,
    WorkerRun,
)

__all__ = [
    "WorkerClient",
    "WorkerError",
    "WorkerAPIError",
    "WorkerConnectionError",
    "WorkerRun",
]
