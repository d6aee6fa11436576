"""
Partner source knowledge.

Where a user partner's receipts come from, kept on the partner document:

- file_source_patterns: searches that found a receipt for the partner
  (local, gmail or browser), reinforced when the same search works again
- email_search_patterns: mailbox search terms and the integrations they
  worked in
- invoice_sources: portal URLs receipts are fetched from, with fetch
  bookkeeping and an invoice frequency inferred from earlier files
"""

from __future__ import annotations

import logging
import statistics
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from ..errors import FailedPreconditionError, InvalidArgumentError, NotFoundError
from ..schemas.records import (
    FILES,
    PARTNERS,
    TRANSACTIONS,
    PartnerType,
    parse_timestamp,
    utc_now,
)
from ..state_store.base import new_document_id

if TYPE_CHECKING:
    from ..config import LearningConfig
    from ..context import OperationsContext

logger = logging.getLogger(__name__)

SOURCE_TYPES = ("local", "gmail", "browser")
INVOICE_SOURCE_STATUSES = ("active", "paused", "error", "needs_login")

# Standard invoice periods in days
FREQUENCY_PERIODS: tuple[tuple[int, str], ...] = (
    (7, "weekly"),
    (14, "bi-weekly"),
    (30, "monthly"),
    (90, "quarterly"),
    (180, "semi-annually"),
    (365, "yearly"),
)
MIN_FREQUENCY_FILES = 3
MIN_FREQUENCY_INTERVALS = 2
MAX_INTERVAL_DAYS = 730


@dataclass
class FrequencyEstimate:
    frequency_days: int
    data_points: int

    def to_dict(self) -> dict[str, int]:
        return {"frequency_days": self.frequency_days, "data_points": self.data_points}


def extract_domain(url: str) -> str:
    """Host of a URL without a leading "www."; the input when it has no host."""
    host = urlparse(url).hostname
    if not host:
        return url
    return host[4:] if host.startswith("www.") else host


def frequency_label(days: int) -> str:
    for period, label in FREQUENCY_PERIODS:
        if period == days:
            return label
    return f"every {days} days"


def round_to_standard_frequency(days: float) -> int:
    """Nearest standard period; ties go to the shorter one."""
    return min(FREQUENCY_PERIODS, key=lambda period: abs(days - period[0]))[0]


def infer_frequency(dates: list[datetime]) -> FrequencyEstimate | None:
    """
    Estimate how often invoices arrive.

    Intervals between consecutive dates outside 1..730 days are ignored.
    The median of the remaining intervals is rounded to a standard period.

    Returns:
        None with fewer than 3 dates or fewer than 2 usable intervals
    """
    ordered = sorted(dates)
    if len(ordered) < MIN_FREQUENCY_FILES:
        return None

    intervals = []
    for previous, current in zip(ordered, ordered[1:]):
        days = round((current - previous).total_seconds() / 86400)
        if 1 <= days <= MAX_INTERVAL_DAYS:
            intervals.append(days)
    if len(intervals) < MIN_FREQUENCY_INTERVALS:
        return None

    return FrequencyEstimate(
        frequency_days=round_to_standard_frequency(statistics.median(intervals)),
        data_points=len(ordered),
    )


def _domain_matches(file_domain: str | None, source_domain: str) -> bool:
    if not file_domain:
        return False
    return (
        file_domain == source_domain
        or file_domain.endswith(f".{source_domain}")
        or source_domain.endswith(f".{file_domain}")
    )


def _file_date(file_doc: dict[str, Any]) -> datetime | None:
    """Invoice date of a file: extracted date, else upload time (UTC)."""
    value = parse_timestamp(file_doc.get("extracted_date") or file_doc.get("created_at"))
    if value is not None and value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# === Pure pattern list operations ===


def learn_source_pattern(
    patterns: list[dict[str, Any]],
    source_type: str,
    pattern: str,
    transaction_id: str,
    config: LearningConfig,
    integration_id: str | None = None,
    result_type: str | None = None,
    now: str | None = None,
) -> tuple[list[dict[str, Any]], str]:
    """
    Add a file source pattern, or reinforce the equivalent one (same source
    type and integration, case-insensitive pattern).

    Returns:
        (patterns, action) with action created | reinforced | unchanged
    """
    now = now or utc_now()
    result = [dict(p) for p in patterns]

    for existing in result:
        same = (
            existing.get("source_type") == source_type
            and (existing.get("pattern") or "").lower() == pattern.lower()
            and existing.get("integration_id") == integration_id
        )
        if not same:
            continue
        sources = list(existing.get("source_transaction_ids") or [])
        if transaction_id in sources:
            return patterns, "unchanged"
        sources.append(transaction_id)
        existing["source_transaction_ids"] = sources
        existing["usage_count"] = existing.get("usage_count", 0) + 1
        existing["confidence"] = min(
            100, existing.get("confidence", 0) + config.source_pattern_boost
        )
        existing["last_used_at"] = now
        if result_type and not existing.get("result_type"):
            existing["result_type"] = result_type
        return result, "reinforced"

    created: dict[str, Any] = {
        "source_type": source_type,
        "pattern": pattern,
        "confidence": config.source_pattern_start_confidence,
        "usage_count": 1,
        "source_transaction_ids": [transaction_id],
        "created_at": now,
        "last_used_at": now,
    }
    if integration_id:
        created["integration_id"] = integration_id
    if result_type:
        created["result_type"] = result_type
    result.append(created)
    return result, "created"


def learn_email_pattern(
    patterns: list[dict[str, Any]],
    pattern: str,
    integration_id: str | None,
    transaction_id: str,
    config: LearningConfig,
    now: str | None = None,
) -> tuple[list[dict[str, Any]], str]:
    """Add a mailbox search pattern or merge it into the equivalent one."""
    now = now or utc_now()
    result = [dict(p) for p in patterns]

    for existing in result:
        if (existing.get("pattern") or "").lower() != pattern.lower():
            continue
        integration_ids = list(existing.get("integration_ids") or [])
        if integration_id and integration_id not in integration_ids:
            integration_ids.append(integration_id)
        existing["integration_ids"] = integration_ids
        existing["confidence"] = min(
            100, existing.get("confidence", 0) + config.source_pattern_boost
        )
        existing["usage_count"] = existing.get("usage_count", 0) + 1
        return result, "reinforced"

    result.append(
        {
            "pattern": pattern,
            "integration_ids": [integration_id] if integration_id else [],
            "confidence": config.source_pattern_start_confidence,
            "source_transaction_id": transaction_id,
            "created_at": now,
            "usage_count": 1,
        }
    )
    return result, "created"


class PartnerSourceService:
    """Receipt source learning and invoice source bookkeeping for one user."""

    def __init__(self, ctx: OperationsContext):
        self.ctx = ctx
        self.store = ctx.store
        self.config = ctx.config.learning

    def _require_partner(self, partner_id: str) -> dict[str, Any]:
        return self.ctx.require_owned(PARTNERS, partner_id, "Partner")

    # === Search pattern learning ===

    def learn_file_source_pattern(
        self,
        partner_id: str,
        transaction_id: str,
        source_type: str,
        search_pattern: str,
        integration_id: str | None = None,
        result_type: str | None = None,
    ) -> str:
        """
        Remember the search that found a receipt for the partner.

        Gmail searches also feed the partner's email_search_patterns.

        Returns:
            created | reinforced | unchanged | skipped (pattern too short)

        Raises:
            InvalidArgumentError: Unknown source type
            NotFoundError / PermissionDeniedError: Partner
        """
        if source_type not in SOURCE_TYPES:
            raise InvalidArgumentError(f"Invalid source type: {source_type}")
        pattern = (search_pattern or "").strip()
        if len(pattern) < self.config.source_pattern_min_length:
            return "skipped"
        self._require_partner(partner_id)

        action = "unchanged"

        def mutate(doc: dict[str, Any]) -> dict[str, Any] | None:
            nonlocal action
            patterns, action = learn_source_pattern(
                doc.get("file_source_patterns") or [],
                source_type,
                pattern,
                transaction_id,
                self.config,
                integration_id=integration_id,
                result_type=result_type,
            )
            if action == "unchanged":
                return None
            doc["file_source_patterns"] = patterns
            if source_type == "gmail":
                doc["email_search_patterns"], _ = learn_email_pattern(
                    doc.get("email_search_patterns") or [],
                    pattern,
                    integration_id,
                    transaction_id,
                    self.config,
                )
            doc["updated_at"] = utc_now()
            return doc

        self.store.update_with_retry(PARTNERS, partner_id, mutate)
        logger.info(
            f"Learned {source_type} source pattern {pattern!r} on partner {partner_id} ({action})"
        )
        return action

    def learn_connection_source(
        self,
        transaction_id: str,
        source_type: str | None,
        search_pattern: str | None,
        integration_id: str | None = None,
        result_type: str | None = None,
    ) -> str:
        """Learn from a file connection made through a search, for the
        transaction's current user partner."""
        tx = self.store.get(TRANSACTIONS, transaction_id)
        if tx is None or source_type not in SOURCE_TYPES or not search_pattern:
            return "skipped"
        partner_id = tx.get("partner_id")
        if not partner_id or tx.get("partner_type") == PartnerType.GLOBAL.value:
            return "skipped"
        return self.learn_file_source_pattern(
            partner_id, transaction_id, source_type, search_pattern, integration_id, result_type
        )

    # === Invoice sources ===

    def list_invoice_sources(self, partner_id: str) -> list[dict[str, Any]]:
        return list(self._require_partner(partner_id).get("invoice_sources") or [])

    def _write_sources(
        self,
        partner_id: str,
        change: Callable[[list[dict[str, Any]], str], list[dict[str, Any]]],
    ) -> list[dict[str, Any]]:
        """Replace invoice_sources with change(sources, now) in one CAS update."""
        self._require_partner(partner_id)

        def mutate(doc: dict[str, Any]) -> dict[str, Any]:
            now = utc_now()
            doc["invoice_sources"] = change(list(doc.get("invoice_sources") or []), now)
            doc["invoice_sources_updated_at"] = now
            doc["updated_at"] = now
            return doc

        doc = self.store.update_with_retry(PARTNERS, partner_id, mutate)
        return (doc or {}).get("invoice_sources") or []

    def _update_source(
        self,
        partner_id: str,
        source_id: str,
        change: Callable[[dict[str, Any], str], None],
    ) -> dict[str, Any]:
        updated: dict[str, Any] = {}

        def apply(sources: list[dict[str, Any]], now: str) -> list[dict[str, Any]]:
            for index, source in enumerate(sources):
                if source.get("id") == source_id:
                    source = dict(source)
                    change(source, now)
                    sources[index] = source
                    updated.clear()
                    updated.update(source)
                    return sources
            raise NotFoundError(f"Invoice source {source_id} not found")

        self._write_sources(partner_id, apply)
        return updated

    def add_invoice_source(
        self,
        partner_id: str,
        url: str,
        label: str | None = None,
        source_type: str = "manual",
        from_invoice_link_message_id: str | None = None,
    ) -> str:
        """
        Add a portal the partner's invoices can be fetched from.

        Raises:
            InvalidArgumentError: Empty URL
            FailedPreconditionError: A source with this URL or domain exists
        """
        if not url or not url.strip():
            raise InvalidArgumentError("url is required")
        url = url.strip()
        domain = extract_domain(url)
        source_id = f"src_{new_document_id()}"

        def add(sources: list[dict[str, Any]], now: str) -> list[dict[str, Any]]:
            if any(s.get("url") == url or s.get("domain") == domain for s in sources):
                raise FailedPreconditionError(
                    "Invoice source already exists for this URL or domain"
                )
            source: dict[str, Any] = {
                "id": source_id,
                "url": url,
                "domain": domain,
                "discovered_at": now,
                "source_type": source_type,
                "successful_fetches": 0,
                "failed_fetches": 0,
                "status": "active",
                "status_changed_at": now,
            }
            if label:
                source["label"] = label
            if from_invoice_link_message_id:
                source["from_invoice_link_message_id"] = from_invoice_link_message_id
            return [*sources, source]

        self._write_sources(partner_id, add)
        logger.info(f"Added invoice source {source_id} ({domain}) to partner {partner_id}")
        return source_id

    def update_invoice_source(
        self,
        partner_id: str,
        source_id: str,
        label: str | None = None,
        url: str | None = None,
        status: str | None = None,
    ) -> dict[str, Any]:
        if status is not None and status not in INVOICE_SOURCE_STATUSES:
            raise InvalidArgumentError(f"Invalid invoice source status: {status}")

        def change(source: dict[str, Any], now: str) -> None:
            if label is not None:
                source["label"] = label
            if url is not None:
                source["url"] = url
                source["domain"] = extract_domain(url)
            if status is not None:
                source["status"] = status
                source["status_changed_at"] = now

        return self._update_source(partner_id, source_id, change)

    def remove_invoice_source(self, partner_id: str, source_id: str) -> None:
        def remove(sources: list[dict[str, Any]], now: str) -> list[dict[str, Any]]:
            remaining = [s for s in sources if s.get("id") != source_id]
            if len(remaining) == len(sources):
                raise NotFoundError(f"Invoice source {source_id} not found")
            return remaining

        self._write_sources(partner_id, remove)
        logger.info(f"Removed invoice source {source_id} from partner {partner_id}")

    def infer_invoice_frequency(
        self, partner_id: str, source_id: str
    ) -> FrequencyEstimate | None:
        """
        Infer how often the source publishes invoices from the partner's
        browser-downloaded files of the same domain, and store it on the
        source (frequency_source "inferred").
        """
        partner = self._require_partner(partner_id)
        source = next(
            (s for s in partner.get("invoice_sources") or [] if s.get("id") == source_id), None
        )
        if source is None:
            raise NotFoundError(f"Invoice source {source_id} not found")

        files = self.store.query(
            FILES, [("user_id", "==", self.ctx.user_id), ("partner_id", "==", partner_id)]
        )
        dates = []
        for file_doc in files:
            if file_doc.get("source_type") != "browser":
                continue
            if not _domain_matches(file_doc.get("source_domain"), source.get("domain") or ""):
                continue
            date = _file_date(file_doc)
            if date is not None:
                dates.append(date)
        estimate = infer_frequency(dates)
        if estimate is None:
            logger.debug(f"Not enough files to infer frequency of source {source_id}")
            return None

        def change(updated: dict[str, Any], now: str) -> None:
            updated["inferred_frequency_days"] = estimate.frequency_days
            updated["frequency_source"] = "inferred"
            updated["frequency_data_points"] = estimate.data_points

        self._update_source(partner_id, source_id, change)
        logger.info(
            f"Invoice source {source_id} publishes {frequency_label(estimate.frequency_days)} "
            f"({estimate.data_points} files)"
        )
        return estimate

    def mark_source_fetch_success(self, partner_id: str, source_id: str) -> dict[str, Any]:
        """Count a successful fetch and schedule the next one."""

        def change(source: dict[str, Any], now: str) -> None:
            source["last_fetched_at"] = now
            source["successful_fetches"] = source.get("successful_fetches", 0) + 1
            source["status"] = "active"
            source["status_changed_at"] = now
            source.pop("last_error", None)
            frequency = source.get("inferred_frequency_days")
            if frequency:
                next_at = parse_timestamp(now) + timedelta(days=frequency)
                source["next_expected_at"] = next_at.isoformat().replace("+00:00", "Z")

        return self._update_source(partner_id, source_id, change)

    def mark_source_fetch_failure(
        self, partner_id: str, source_id: str, error: str, needs_login: bool = False
    ) -> dict[str, Any]:
        def change(source: dict[str, Any], now: str) -> None:
            source["failed_fetches"] = source.get("failed_fetches", 0) + 1
            source["status"] = "needs_login" if needs_login else "error"
            source["status_changed_at"] = now
            source["last_error"] = error

        return self._update_source(partner_id, source_id, change)

    def get_sources_due_for_fetch(self, now: str | None = None) -> list[dict[str, Any]]:
        """Active sources of active partners whose next_expected_at has passed."""
        cutoff = parse_timestamp(now or utc_now())
        partners = self.store.query(
            PARTNERS, [("user_id", "==", self.ctx.user_id), ("is_active", "!=", False)]
        )
        due = []
        for partner in partners:
            for source in partner.get("invoice_sources") or []:
                if source.get("status") != "active":
                    continue
                expected = parse_timestamp(source.get("next_expected_at"))
                if expected is not None and expected <= cutoff:
                    due.append(
                        {
                            "partner_id": partner["id"],
                            "partner_name": partner.get("name"),
                            "source": source,
                        }
                    )
        return due
