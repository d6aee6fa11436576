"""No-receipt category matching.

Scores a transaction against a user's categories using two signals:
- partner: the transaction's partner was manually assigned to this
  category before (category.matched_partner_ids)
- pattern: a learned glob pattern matches the transaction text (same
  field orders as pattern learning, see match_pattern_flexible)

Boosts:
- usage: min(log10(transaction_count + 1) * 5, usage_boost_max)
- no file patterns: partner has no file source patterns, so it most likely
  never produces receipts (partner matches only)
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .patterns import match_pattern_flexible

if TYPE_CHECKING:
    from ..config import MatchingConfig

RECEIPT_LOST_TEMPLATE = "receipt-lost"


@dataclass
class CategorySuggestion:
    """A category proposed for a transaction."""

    category_id: str
    template_id: str | None
    confidence: int
    source: str  # partner | pattern | partner+pattern

    def to_dict(self) -> dict[str, Any]:
        return {
            "category_id": self.category_id,
            "template_id": self.template_id,
            "confidence": self.confidence,
            "source": self.source,
        }


def usage_boost(transaction_count: int | None, maximum: int) -> float:
    """Logarithmic boost: 10 uses ~5 points, 100 ~10, capped at maximum."""
    if not transaction_count or transaction_count <= 0:
        return 0.0
    return min(math.log10(transaction_count + 1) * 5, maximum)


def is_eligible(transaction: Mapping[str, Any]) -> bool:
    """Only transactions without a category and without files get suggestions."""
    if transaction.get("no_receipt_category_id"):
        return False
    if transaction.get("file_ids"):
        return False
    return True


def _best_pattern_confidence(
    transaction: Mapping[str, Any], category: Mapping[str, Any]
) -> int | None:
    """Highest confidence among learned patterns matching the transaction text."""
    best = None
    for pattern in category.get("learned_patterns") or []:
        if not pattern.get("pattern"):
            continue
        if match_pattern_flexible(
            pattern["pattern"],
            transaction.get("name"),
            transaction.get("partner"),
            transaction.get("reference"),
        ):
            confidence = pattern.get("confidence", 0)
            if best is None or confidence > best:
                best = confidence
    return best


def match_single_category(
    transaction: Mapping[str, Any],
    category: Mapping[str, Any],
    config: MatchingConfig,
    partner_file_pattern_counts: Mapping[str, int] | None = None,
) -> CategorySuggestion | None:
    """Score one category; None when below the suggestion threshold."""
    partner_id = transaction.get("partner_id")
    partner_match = bool(partner_id) and partner_id in (category.get("matched_partner_ids") or [])

    pattern_confidence = _best_pattern_confidence(transaction, category)

    if partner_match and pattern_confidence is not None:
        confidence = float(pattern_confidence + config.combined_match_bonus)
        source = "partner+pattern"
    elif partner_match:
        confidence = float(config.partner_match_confidence)
        source = "partner"
    elif pattern_confidence is not None:
        confidence = float(pattern_confidence)
        source = "pattern"
    else:
        return None

    confidence += usage_boost(category.get("transaction_count"), config.usage_boost_max)

    if partner_match and partner_file_pattern_counts is not None:
        # Unknown partner (no entry) gets no boost
        if partner_file_pattern_counts.get(partner_id) == 0:
            confidence += config.no_file_patterns_boost

    confidence = min(100.0, confidence)
    if confidence < config.suggestion_threshold:
        return None

    return CategorySuggestion(
        category_id=category["id"],
        template_id=category.get("template_id"),
        confidence=int(round(confidence)),
        source=source,
    )


def match_transaction_to_categories(
    transaction: Mapping[str, Any],
    categories: Iterable[Mapping[str, Any]],
    config: MatchingConfig,
    partner_file_pattern_counts: Mapping[str, int] | None = None,
) -> list[CategorySuggestion]:
    """
    Match a transaction against all categories.

    Receipt-lost and inactive categories are never suggested, nor are
    categories the user removed this transaction from before.

    Returns:
        Up to max_suggestions suggestions, highest confidence first
    """
    suggestions: list[CategorySuggestion] = []
    tx_id = transaction.get("id")

    for category in categories:
        if category.get("template_id") == RECEIPT_LOST_TEMPLATE:
            continue
        if not category.get("is_active", True):
            continue
        removed = {r.get("transaction_id") for r in category.get("manual_removals") or []}
        if tx_id in removed:
            continue

        suggestion = match_single_category(
            transaction, category, config, partner_file_pattern_counts
        )
        if suggestion:
            suggestions.append(suggestion)

    suggestions.sort(key=lambda s: s.confidence, reverse=True)
    return suggestions[: config.max_suggestions]


def should_auto_apply(confidence: int, config: MatchingConfig) -> bool:
    return confidence >= config.auto_apply_threshold
