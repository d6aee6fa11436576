"""
Canonical record shapes for persisted documents.

Documents in the store are plain dicts; the dataclasses here cover the
structured values nested inside them (learned patterns, removal logs,
connection provenance) and the enumerations shared by every service.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# === Collections ===

TRANSACTIONS = "transactions"
FILES = "files"
FILE_CONNECTIONS = "file_connections"
PARTNERS = "partners"
GLOBAL_PARTNERS = "global_partners"
CATEGORIES = "categories"
WORKER_REQUESTS = "worker_requests"
WORKER_RUNS = "worker_runs"
PRECISION_SEARCH_QUEUE = "precision_search_queue"
GMAIL_SYNC_QUEUE = "gmail_sync_queue"


def utc_now() -> str:
    """Current time as ISO-8601 UTC with a Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO timestamp written by utc_now()."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def clamp_confidence(value: float | int | None) -> int:
    """Round and clamp a confidence into [0, 100]."""
    if value is None:
        return 0
    return max(0, min(100, int(round(value))))


class MatchedBy(str, Enum):
    """Provenance of a partner or category assignment."""

    MANUAL = "manual"
    SUGGESTION = "suggestion"  # Accepted system suggestion
    AUTO = "auto"
    AI = "ai"

    @classmethod
    def parse(cls, value: str | MatchedBy | None) -> MatchedBy | None:
        if value is None or value == "":
            return None
        return cls(value)


class ConnectionType(str, Enum):
    """How a file got connected to a transaction."""

    MANUAL = "manual"
    AUTO_MATCHED = "auto_matched"
    SUGGESTION_ACCEPTED = "suggestion_accepted"


class PartnerType(str, Enum):
    """User-scoped or shared partner."""

    USER = "user"
    GLOBAL = "global"


class QueueStatus(str, Enum):
    """Job queue item lifecycle."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class WorkerStatus(str, Enum):
    """Lifecycle of worker requests and runs."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def is_complete(transaction: dict[str, Any]) -> bool:
    """A transaction is complete when it has a file or a no-receipt category."""
    return bool(transaction.get("file_ids")) or bool(transaction.get("no_receipt_category_id"))


# Written and cleared together on transactions and files
PARTNER_FIELDS = ("partner_id", "partner_type", "partner_matched_by", "partner_match_confidence")

RECEIPT_LOST_FIELDS = (
    "receipt_lost_reason",
    "receipt_lost_description",
    "receipt_lost_created_at",
)

# Cleared together whenever a category is removed from a transaction
CATEGORY_FIELDS = (
    "no_receipt_category_id",
    "no_receipt_category_template_id",
    "no_receipt_category_matched_by",
    "no_receipt_category_confidence",
    *RECEIPT_LOST_FIELDS,
)


@dataclass
class SourceInfo:
    """
    Optional provenance of a file connection.

    Only fields that are set end up on the connection document.
    """

    source_type: str | None = None
    search_pattern: str | None = None
    gmail_integration_id: str | None = None
    gmail_integration_email: str | None = None
    gmail_message_id: str | None = None
    gmail_message_from: str | None = None
    gmail_message_from_name: str | None = None
    result_type: str | None = None

    def to_fields(self) -> dict[str, str]:
        """Fields to persist (unset values omitted)."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SourceInfo:
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class LearnedPattern:
    """A glob pattern learned from user assignments."""

    pattern: str
    confidence: int
    created_at: str
    usage_count: int = 0
    source_ids: list[str] = field(default_factory=list)
    last_used_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "confidence": self.confidence,
            "created_at": self.created_at,
            "usage_count": self.usage_count,
            "source_ids": list(self.source_ids),
            "last_used_at": self.last_used_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LearnedPattern:
        return cls(
            pattern=data["pattern"],
            confidence=clamp_confidence(data.get("confidence")),
            created_at=data.get("created_at") or utc_now(),
            usage_count=data.get("usage_count", 0),
            source_ids=list(data.get("source_ids") or []),
            last_used_at=data.get("last_used_at"),
        )


# Which id a removal log is keyed by
REMOVAL_LOG_KEYS = {
    "manual_removals": "transaction_id",
    "manual_file_removals": "file_id",
}


def removal_key(log_field: str) -> str:
    return REMOVAL_LOG_KEYS.get(log_field, "transaction_id")


@dataclass
class ManualRemoval:
    """False-positive log entry: a system assignment the user undid.

    Transaction logs carry transaction_id, file logs carry file_id.
    """

    removed_at: str
    transaction_id: str | None = None
    file_id: str | None = None
    partner: str | None = None  # Counterparty text at removal time
    name: str | None = None  # Transaction/file display text at removal time

    @property
    def key(self) -> str:
        return "transaction_id" if self.transaction_id is not None else "file_id"

    @property
    def entity_id(self) -> str | None:
        return self.transaction_id if self.transaction_id is not None else self.file_id

    def to_dict(self) -> dict[str, Any]:
        return {
            self.key: self.entity_id,
            "removed_at": self.removed_at,
            "partner": self.partner,
            "name": self.name,
        }

    @classmethod
    def for_log(
        cls,
        log_field: str,
        entity_id: str,
        partner: str | None = None,
        name: str | None = None,
    ) -> ManualRemoval:
        entry = cls(removed_at=utc_now(), partner=partner, name=name)
        setattr(entry, removal_key(log_field), entity_id)
        return entry

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManualRemoval:
        return cls(
            removed_at=data.get("removed_at") or utc_now(),
            transaction_id=data.get("transaction_id"),
            file_id=data.get("file_id"),
            partner=data.get("partner"),
            name=data.get("name"),
        )
