"""
Matching primitives.

- patterns: glob matching with umlaut normalization, flexible multi-field
  matching, pattern derivation
- resolver: partner conflict resolution between file and transaction
- partner_matcher: partner suggestions for transactions
- category_matcher: no-receipt category suggestions
"""

from .category_matcher import CategorySuggestion, match_transaction_to_categories
from .partner_matcher import PartnerMatch, match_transaction_to_partners
from .patterns import (
    derive_pattern,
    glob_match,
    match_pattern_flexible,
    normalize_umlauts,
)
from .resolver import Assignment, Resolution, resolve

__all__ = [
    "Assignment",
    "CategorySuggestion",
    "PartnerMatch",
    "Resolution",
    "derive_pattern",
    "glob_match",
    "match_pattern_flexible",
    "match_transaction_to_categories",
    "match_transaction_to_partners",
    "normalize_umlauts",
    "resolve",
]
