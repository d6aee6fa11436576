"""
Partner conflict resolution between a file and a transaction.

When a file is connected to a transaction, both may carry a partner
assignment. resolve() decides which side's value (if any) is copied to the
other. It is a pure function: no store access, no logging side effects.

Decision table, first matching rule wins:
1. Neither side assigned              -> no sync
2. Exactly one side assigned          -> sync it to the other side
3. Both assigned, both manual         -> no sync (both intentional)
4. Both assigned, exactly one manual  -> manual side wins
5. Both assigned, neither manual      -> higher confidence wins,
                                         exact tie goes to tie_break side
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..schemas.records import MatchedBy

FILE_SIDE = "file"
TRANSACTION_SIDE = "transaction"


@dataclass(frozen=True)
class Assignment:
    """A partner assignment on one side of a connection."""

    partner_id: str | None = None
    matched_by: MatchedBy | None = None
    confidence: int = 0
    partner_type: str | None = None

    @property
    def is_assigned(self) -> bool:
        return bool(self.partner_id)

    @property
    def is_manual(self) -> bool:
        return self.matched_by == MatchedBy.MANUAL

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> Assignment:
        """Read the four partner fields from a file or transaction document."""
        return cls(
            partner_id=doc.get("partner_id"),
            matched_by=MatchedBy.parse(doc.get("partner_matched_by")),
            confidence=doc.get("partner_match_confidence") or 0,
            partner_type=doc.get("partner_type"),
        )


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolve().

    source is the winning side ("file" or "transaction") or None when
    nothing should be synced.
    """

    should_sync: bool
    source: str | None = None
    winner: Assignment | None = None
    rule: int = 0

    @property
    def winner_id(self) -> str | None:
        return self.winner.partner_id if self.winner else None

    @property
    def target(self) -> str | None:
        """Side that receives the synced value."""
        if self.source == FILE_SIDE:
            return TRANSACTION_SIDE
        if self.source == TRANSACTION_SIDE:
            return FILE_SIDE
        return None

    def synced_matched_by(self) -> MatchedBy:
        """matched_by written to the target: manual stays manual, all else is auto."""
        if self.winner is not None and self.winner.is_manual:
            return MatchedBy.MANUAL
        return MatchedBy.AUTO


def _win(side: str, assignment: Assignment, rule: int) -> Resolution:
    return Resolution(should_sync=True, source=side, winner=assignment, rule=rule)


def resolve(
    file_assignment: Assignment,
    transaction_assignment: Assignment,
    tie_break: str = TRANSACTION_SIDE,
) -> Resolution:
    """
    Decide which partner assignment wins between a file and a transaction.

    Args:
        file_assignment: Partner assignment on the file
        transaction_assignment: Partner assignment on the transaction
        tie_break: Side that wins equal-confidence automatic assignments

    Returns:
        Resolution describing whether and in which direction to sync
    """
    if tie_break not in (FILE_SIDE, TRANSACTION_SIDE):
        raise ValueError(f"tie_break must be 'file' or 'transaction', got {tie_break!r}")

    file_set = file_assignment.is_assigned
    tx_set = transaction_assignment.is_assigned

    # Rule 1
    if not file_set and not tx_set:
        return Resolution(should_sync=False, rule=1)

    # Rule 2
    if file_set and not tx_set:
        return _win(FILE_SIDE, file_assignment, 2)
    if tx_set and not file_set:
        return _win(TRANSACTION_SIDE, transaction_assignment, 2)

    file_manual = file_assignment.is_manual
    tx_manual = transaction_assignment.is_manual

    # Rule 3
    if file_manual and tx_manual:
        return Resolution(should_sync=False, rule=3)

    # Rule 4
    if file_manual:
        return _win(FILE_SIDE, file_assignment, 4)
    if tx_manual:
        return _win(TRANSACTION_SIDE, transaction_assignment, 4)

    # Rule 5
    if file_assignment.confidence > transaction_assignment.confidence:
        return _win(FILE_SIDE, file_assignment, 5)
    if transaction_assignment.confidence > file_assignment.confidence:
        return _win(TRANSACTION_SIDE, transaction_assignment, 5)
    if tie_break == FILE_SIDE:
        return _win(FILE_SIDE, file_assignment, 5)
    return _win(TRANSACTION_SIDE, transaction_assignment, 5)
