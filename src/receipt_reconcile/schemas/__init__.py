"""
SSOT schemas for reconciliation records.

These canonical shapes are the ONLY models used across all modules.
"""

from .records import (
    CATEGORIES,
    FILE_CONNECTIONS,
    FILES,
    GLOBAL_PARTNERS,
    GMAIL_SYNC_QUEUE,
    PARTNERS,
    PRECISION_SEARCH_QUEUE,
    TRANSACTIONS,
    WORKER_REQUESTS,
    WORKER_RUNS,
    ConnectionType,
    LearnedPattern,
    ManualRemoval,
    MatchedBy,
    PartnerType,
    QueueStatus,
    SourceInfo,
    WorkerStatus,
    clamp_confidence,
    is_complete,
    parse_timestamp,
    utc_now,
)

__all__ = [
    "CATEGORIES",
    "FILE_CONNECTIONS",
    "FILES",
    "GLOBAL_PARTNERS",
    "GMAIL_SYNC_QUEUE",
    "PARTNERS",
    "PRECISION_SEARCH_QUEUE",
    "TRANSACTIONS",
    "WORKER_REQUESTS",
    "WORKER_RUNS",
    "ConnectionType",
    "LearnedPattern",
    "ManualRemoval",
    "MatchedBy",
    "PartnerType",
    "QueueStatus",
    "SourceInfo",
    "WorkerStatus",
    "clamp_confidence",
    "is_complete",
    "parse_timestamp",
    "utc_now",
]
