"""Partner matching for transactions.

Scores each candidate partner with several signals and keeps the best:
- IBAN: exact (normalized) IBAN match, definitive (100)
- Pattern: learned glob pattern via flexible multi-field matching
  (uses the pattern's own confidence)
- Website: partner domain appears in the transaction text (90)
- Name: partner name or alias appears in the transaction text (60-95)

Partners the user explicitly removed from this transaction (manual_removals)
are never suggested again until the entry is cleared.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..schemas.records import PartnerType
from .patterns import build_match_text, glob_match, match_pattern_flexible

if TYPE_CHECKING:
    from ..config import MatchingConfig

logger = logging.getLogger(__name__)

IBAN_CONFIDENCE = 100
WEBSITE_CONFIDENCE = 90

_LEGAL_SUFFIXES = re.compile(
    r"\b(gmbh|mbh|ag|kg|ohg|ug|se|e\.?v|inc|ltd|llc|plc|co|corp|sarl|s\.a\.r\.l|bv|nv)\b\.?"
)


def normalize_iban(iban: str) -> str:
    return re.sub(r"\s+", "", iban).upper()


def normalize_url(url: str) -> str:
    """Reduce a URL to its bare lower-case host."""
    host = re.sub(r"^[a-z]+://", "", url.strip().lower())
    host = host.split("/")[0]
    if host.startswith("www."):
        host = host[4:]
    return host


def normalize_company_name(name: str) -> str:
    """Lower-case, drop legal-form suffixes and punctuation."""
    result = _LEGAL_SUFFIXES.sub(" ", name.lower())
    result = re.sub(r"[^\w\s]", " ", result)
    return " ".join(result.split())


@dataclass
class PartnerMatch:
    """A partner proposed for a transaction."""

    partner_id: str
    partner_type: str
    partner_name: str
    confidence: int
    source: str  # iban | pattern | website | name

    def to_dict(self) -> dict[str, Any]:
        return {
            "partner_id": self.partner_id,
            "partner_type": self.partner_type,
            "partner_name": self.partner_name,
            "confidence": self.confidence,
            "source": self.source,
        }


def _name_similarity(transaction: Mapping[str, Any], candidate: str) -> int | None:
    """Similarity (0-100) of a partner name against the transaction text."""
    normalized = normalize_company_name(candidate)
    if len(normalized) < 3:
        return None

    combined = normalize_company_name(
        build_match_text(
            transaction.get("name"), transaction.get("partner"), transaction.get("reference")
        )
    )
    if normalized in combined:
        return 95

    counterparty = normalize_company_name(transaction.get("partner") or "")
    if counterparty:
        if counterparty in normalized:
            return 85
        # First significant word
        if counterparty.split()[0] == normalized.split()[0]:
            return 70
    return None


def _score_name(transaction: Mapping[str, Any], partner: Mapping[str, Any]) -> int | None:
    name_hit = _name_similarity(transaction, partner.get("name") or "")
    alias_hits = [
        s for s in (_name_similarity(transaction, a) for a in partner.get("aliases") or []) if s
    ]
    hits = ([name_hit] if name_hit else []) + alias_hits
    if not hits:
        return None

    best = max(hits)
    if name_hit and alias_hits:
        # Name and alias both present: strong signal
        return round(min(95, 92 + (best - 60) * 0.075))
    return round(min(90, 60 + (best - 60) * 30 / 40))


def match_single_partner(
    transaction: Mapping[str, Any],
    partner: Mapping[str, Any],
    partner_type: str,
) -> PartnerMatch | None:
    """Best-scoring signal for one partner, or None."""

    def result(confidence: int, source: str) -> PartnerMatch:
        return PartnerMatch(
            partner_id=partner["id"],
            partner_type=partner_type,
            partner_name=partner.get("name") or "",
            confidence=confidence,
            source=source,
        )

    tx_iban = transaction.get("partner_iban")
    if tx_iban:
        wanted = normalize_iban(tx_iban)
        if any(normalize_iban(i) == wanted for i in partner.get("ibans") or []):
            return result(IBAN_CONFIDENCE, "iban")

    candidates: list[PartnerMatch] = []

    name = transaction.get("name")
    counterparty = transaction.get("partner")
    reference = transaction.get("reference")
    exclusion_text = build_match_text(name, counterparty, reference)

    for pattern in partner.get("learned_patterns") or []:
        if not match_pattern_flexible(pattern.get("pattern", ""), name, counterparty, reference):
            continue
        if any(glob_match(excl, exclusion_text) for excl in pattern.get("exclude") or []):
            continue
        candidates.append(result(pattern.get("confidence", 0), "pattern"))

    website = partner.get("website")
    if website:
        host = normalize_url(website)
        if host and host in build_match_text(name, counterparty):
            candidates.append(result(WEBSITE_CONFIDENCE, "website"))

    name_confidence = _score_name(transaction, partner)
    if name_confidence is not None:
        candidates.append(result(name_confidence, "name"))

    if not candidates:
        return None
    return max(candidates, key=lambda m: m.confidence)


def _removed_for(partner: Mapping[str, Any], transaction_id: str | None) -> bool:
    if not transaction_id:
        return False
    return any(
        r.get("transaction_id") == transaction_id for r in partner.get("manual_removals") or []
    )


def match_transaction_to_partners(
    transaction: Mapping[str, Any],
    user_partners: Iterable[Mapping[str, Any]],
    global_partners: Iterable[Mapping[str, Any]],
    config: MatchingConfig,
) -> list[PartnerMatch]:
    """
    Rank partners for a transaction.

    Above the auto-apply threshold user partners always outrank global
    ones; below it confidence decides and user partners win ties.

    Returns:
        Up to max_suggestions matches, best first
    """
    tx_id = transaction.get("id")
    results: list[PartnerMatch] = []

    for partner in user_partners:
        if _removed_for(partner, tx_id):
            logger.debug(f"Partner {partner['id']} suppressed for {tx_id} (manual removal)")
            continue
        match = match_single_partner(transaction, partner, PartnerType.USER.value)
        if match and match.confidence >= config.suggestion_threshold:
            results.append(match)

    for partner in global_partners:
        if _removed_for(partner, tx_id):
            continue
        match = match_single_partner(transaction, partner, PartnerType.GLOBAL.value)
        if match is None or match.confidence < config.suggestion_threshold:
            continue
        if not any(r.partner_id == match.partner_id for r in results):
            results.append(match)

    threshold = config.auto_apply_threshold

    def rank(match: PartnerMatch) -> tuple:
        above = match.confidence >= threshold
        is_user = match.partner_type == PartnerType.USER.value
        if above:
            return (0, 0 if is_user else 1, -match.confidence)
        return (1, -match.confidence, 0 if is_user else 1)

    results.sort(key=rank)
    return results[: config.max_suggestions]
