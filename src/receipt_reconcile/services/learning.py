"""
Pattern Learning Engine.

Learns and unlearns glob patterns for partners and no-receipt categories
from user corrections, and keeps the false-positive (manual removal) logs.

Features:
- Learn on manual or accepted-suggestion assignments: derive "*w1*w2*w3*"
  from the transaction text, reinforce an equivalent pattern or create one
- Unlearn on removal of a system-recommended assignment: penalize patterns
  the transaction was a source of, penalize harder patterns it matched
  without being a source, delete patterns that fall below the kind floor
- Capped, de-duplicated manual removal logs (most recent entries win)

All pattern and log mutations are compare-and-swap updates of the owning
partner/category document.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..config import LearningConfig
from ..matching.patterns import derive_pattern, match_pattern_flexible
from ..schemas.records import (
    CATEGORIES,
    GLOBAL_PARTNERS,
    PARTNERS,
    TRANSACTIONS,
    LearnedPattern,
    ManualRemoval,
    PartnerType,
    clamp_confidence,
    removal_key,
    utc_now,
)

if TYPE_CHECKING:
    from ..context import OperationsContext

logger = logging.getLogger(__name__)

KIND_PARTNER = "partner"
KIND_CATEGORY = "category"


@dataclass
class LearnResult:
    """Outcome of a learn call.

    action: created | reinforced | unchanged | skipped
    """

    action: str
    pattern: str | None = None
    confidence: int | None = None


@dataclass
class UnlearnResult:
    """Patterns touched by an unlearn call."""

    penalized: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.penalized or self.deleted)


# === Pure pattern list operations ===


def learn_into(
    patterns: list[dict[str, Any]],
    candidate: str,
    source_id: str,
    kind: str,
    config: LearningConfig,
    now: str | None = None,
) -> tuple[list[dict[str, Any]], LearnResult]:
    """
    Add a learned pattern to a pattern list.

    An equivalent pattern (case-insensitive) is reinforced: usage count
    +1, source id appended, confidence +learn_boost capped at 100. A
    source that is already recorded leaves the list unchanged.
    """
    now = now or utc_now()
    result = [LearnedPattern.from_dict(p) for p in patterns]

    for existing in result:
        if existing.pattern.lower() != candidate.lower():
            continue
        if source_id in existing.source_ids:
            return patterns, LearnResult("unchanged", existing.pattern, existing.confidence)
        existing.source_ids.append(source_id)
        existing.usage_count += 1
        existing.confidence = min(100, existing.confidence + config.learn_boost)
        existing.last_used_at = now
        return [p.to_dict() for p in result], LearnResult(
            "reinforced", existing.pattern, existing.confidence
        )

    created = LearnedPattern(
        pattern=candidate,
        confidence=clamp_confidence(config.start_confidence_for(kind)),
        created_at=now,
        usage_count=1,
        source_ids=[source_id],
        last_used_at=now,
    )
    result.append(created)
    return [p.to_dict() for p in result], LearnResult("created", candidate, created.confidence)


def unlearn_from(
    patterns: list[dict[str, Any]],
    source_id: str,
    name: str | None,
    partner: str | None,
    reference: str | None,
    kind: str,
    config: LearningConfig,
    sources_only: bool = False,
) -> tuple[list[dict[str, Any]], UnlearnResult]:
    """
    Penalize patterns after an assignment was removed.

    - Recorded source: drop the id and subtract source_removal_penalty,
      never pushing below source_removal_floor; no sources left deletes it
    - Not a source but its text matches: subtract false_positive_penalty
      (skipped with sources_only, for manual assignments the user undid)
    - Anything below the kind floor is deleted
    """
    floor = config.floor_for(kind)
    outcome = UnlearnResult()
    kept: list[dict[str, Any]] = []

    for raw in patterns:
        pattern = LearnedPattern.from_dict(raw)

        if source_id in pattern.source_ids:
            pattern.source_ids = [s for s in pattern.source_ids if s != source_id]
            if not pattern.source_ids:
                outcome.deleted.append(pattern.pattern)
                continue
            pattern.confidence = max(
                pattern.confidence - config.source_removal_penalty,
                min(pattern.confidence, config.source_removal_floor),
            )
        elif not sources_only and match_pattern_flexible(
            pattern.pattern, name, partner, reference
        ):
            pattern.confidence -= config.false_positive_penalty
        else:
            kept.append(raw)
            continue

        if pattern.confidence < floor:
            outcome.deleted.append(pattern.pattern)
            continue

        outcome.penalized.append(pattern.pattern)
        kept.append(pattern.to_dict())

    return kept, outcome


def append_removal(
    removals: list[dict[str, Any]],
    entry: ManualRemoval,
    cap: int,
) -> list[dict[str, Any]]:
    """Append to a removal log: one entry per entity, newest last, capped FIFO."""
    result = [r for r in removals if r.get(entry.key) != entry.entity_id]
    result.append(entry.to_dict())
    if len(result) > cap:
        result = result[-cap:]
    return result


class PatternLearningEngine:
    """
    Applies learn/unlearn events to partner and category documents.
    """

    def __init__(self, ctx: OperationsContext):
        self.ctx = ctx
        self.store = ctx.store
        self.config = ctx.config.learning

    def _transaction_text(self, transaction_id: str) -> dict[str, Any] | None:
        tx = self.store.get(TRANSACTIONS, transaction_id)
        if tx is None:
            logger.warning(f"Transaction {transaction_id} vanished before learning")
        return tx

    def _candidate(self, tx: dict[str, Any]) -> str | None:
        return derive_pattern(
            tx.get("partner"),
            tx.get("name"),
            min_length=self.config.min_word_length,
            max_words=self.config.max_pattern_words,
        )

    def _learn(
        self, collection: str, doc_id: str, transaction_id: str, kind: str
    ) -> LearnResult:
        tx = self._transaction_text(transaction_id)
        if tx is None:
            return LearnResult("skipped")

        candidate = self._candidate(tx)
        if candidate is None:
            logger.debug(f"No significant words in transaction {transaction_id}")
            return LearnResult("skipped")

        outcome: LearnResult = LearnResult("skipped")

        def mutate(doc: dict[str, Any]) -> dict[str, Any] | None:
            nonlocal outcome
            patterns, outcome = learn_into(
                doc.get("learned_patterns") or [], candidate, transaction_id, kind, self.config
            )
            if outcome.action == "unchanged":
                return None
            doc["learned_patterns"] = patterns
            doc["updated_at"] = utc_now()
            return doc

        self.store.update_with_retry(collection, doc_id, mutate)
        logger.info(
            f"Learned {kind} pattern {outcome.pattern!r} on {doc_id} "
            f"({outcome.action}, confidence {outcome.confidence})"
        )
        return outcome

    def _unlearn(
        self,
        collection: str,
        doc_id: str,
        transaction_id: str,
        kind: str,
        sources_only: bool = False,
    ) -> UnlearnResult:
        tx = self._transaction_text(transaction_id) or {}
        outcome = UnlearnResult()

        def mutate(doc: dict[str, Any]) -> dict[str, Any] | None:
            nonlocal outcome
            patterns, outcome = unlearn_from(
                doc.get("learned_patterns") or [],
                transaction_id,
                tx.get("name"),
                tx.get("partner"),
                tx.get("reference"),
                kind,
                self.config,
                sources_only=sources_only,
            )
            if not outcome.changed:
                return None
            doc["learned_patterns"] = patterns
            doc["updated_at"] = utc_now()
            return doc

        self.store.update_with_retry(collection, doc_id, mutate)
        if outcome.changed:
            logger.info(
                f"Unlearned {kind} patterns on {doc_id}: "
                f"penalized={outcome.penalized} deleted={outcome.deleted}"
            )
        return outcome

    # === Partners ===

    def learn_partner_pattern(
        self, partner_id: str, partner_type: str, transaction_id: str
    ) -> LearnResult:
        """Learn from a manual/accepted partner assignment (user partners only)."""
        if partner_type != PartnerType.USER.value:
            return LearnResult("skipped")
        return self._learn(PARTNERS, partner_id, transaction_id, KIND_PARTNER)

    def unlearn_partner_pattern(
        self, partner_id: str, partner_type: str, transaction_id: str
    ) -> UnlearnResult:
        if partner_type != PartnerType.USER.value:
            return UnlearnResult()
        return self._unlearn(PARTNERS, partner_id, transaction_id, KIND_PARTNER)

    def forget_partner_source(
        self, partner_id: str, partner_type: str, transaction_id: str
    ) -> UnlearnResult:
        """Drop a manually unassigned transaction from the partner's pattern sources."""
        if partner_type != PartnerType.USER.value:
            return UnlearnResult()
        return self._unlearn(
            PARTNERS, partner_id, transaction_id, KIND_PARTNER, sources_only=True
        )

    # === Categories ===

    def learn_category_pattern(self, category_id: str, transaction_id: str) -> LearnResult:
        return self._learn(CATEGORIES, category_id, transaction_id, KIND_CATEGORY)

    def unlearn_category_pattern(self, category_id: str, transaction_id: str) -> UnlearnResult:
        return self._unlearn(CATEGORIES, category_id, transaction_id, KIND_CATEGORY)

    def forget_category_source(self, category_id: str, transaction_id: str) -> UnlearnResult:
        return self._unlearn(
            CATEGORIES, category_id, transaction_id, KIND_CATEGORY, sources_only=True
        )

    # === False-positive logs ===

    def append_manual_removal(
        self,
        collection: str,
        doc_id: str,
        entity_id: str,
        name: str | None = None,
        log_field: str = "manual_removals",
        partner: str | None = None,
    ) -> list[dict[str, Any]]:
        """Record that the user undid a system assignment of doc_id to entity_id."""
        entry = ManualRemoval.for_log(log_field, entity_id, partner=partner, name=name)

        def mutate(doc: dict[str, Any]) -> dict[str, Any]:
            doc[log_field] = append_removal(
                doc.get(log_field) or [], entry, self.config.removal_log_cap
            )
            doc["updated_at"] = entry.removed_at
            return doc

        doc = self.store.update_with_retry(collection, doc_id, mutate)
        logger.info(f"Recorded manual removal of {entity_id} on {collection}/{doc_id}")
        return (doc or {}).get(log_field) or []

    def clear_manual_removal(
        self,
        collection: str,
        doc_id: str,
        entity_id: str,
        log_field: str = "manual_removals",
    ) -> bool:
        """Remove an entity from a removal log. Returns True if an entry was removed."""
        removed = False

        def mutate(doc: dict[str, Any]) -> dict[str, Any] | None:
            nonlocal removed
            current = doc.get(log_field) or []
            key = removal_key(log_field)
            remaining = [r for r in current if r.get(key) != entity_id]
            removed = len(remaining) != len(current)
            if not removed:
                return None
            doc[log_field] = remaining
            doc["updated_at"] = utc_now()
            return doc

        self.store.update_with_retry(collection, doc_id, mutate)
        return removed


def partner_collection(partner_type: str) -> str:
    """Collection holding partners of the given type."""
    return GLOBAL_PARTNERS if partner_type == PartnerType.GLOBAL.value else PARTNERS
