"""
Text pattern primitives.

Glob patterns use a single wildcard token: "*" matches zero or more
characters. Pattern and text are both lower-cased and transliterated
(ä→ae, ö→oe, ü→ue, ß→ss) before matching so that bank exports which
already transliterate umlauts still match patterns learned from the
original spelling, and vice versa.
"""

import re
from functools import lru_cache

UMLAUT_MAP = {
    "ä": "ae",
    "ö": "oe",
    "ü": "ue",
    "ß": "ss",
}

# Characters dropped when deriving a pattern from free text
_NON_WORD_RE = re.compile(r"[^a-z0-9äöüß\s]")


def normalize_umlauts(text: str) -> str:
    """Lower-case text and transliterate German umlauts."""
    result = text.lower()
    for char, replacement in UMLAUT_MAP.items():
        result = result.replace(char, replacement)
    return result


@lru_cache(maxsize=1024)
def _compile_glob(pattern: str) -> re.Pattern[str]:
    parts = [re.escape(part) for part in normalize_umlauts(pattern).split("*")]
    return re.compile(".*".join(parts), re.DOTALL)


def glob_match(pattern: str | None, text: str | None) -> bool:
    """
    Match a glob pattern against the whole text.

    Examples:
        glob_match("*amazon*", "AMAZON EU S.A.R.L.")  -> True
        glob_match("*müller*", "MUELLER GMBH")         -> True
        glob_match("amazon", "amazon prime")           -> False (anchored)
    """
    if not pattern or not text:
        return False
    return _compile_glob(pattern).fullmatch(normalize_umlauts(text)) is not None


def build_match_text(*parts: str | None) -> str:
    """Join non-empty fields with spaces, lower-cased."""
    return " ".join(p for p in parts if p).lower()


def match_pattern_flexible(
    pattern: str,
    name: str | None,
    partner: str | None,
    reference: str | None = None,
) -> bool:
    """
    Match a pattern against a transaction's text fields in several orders.

    Import sources disagree on which column holds the counterparty, so try:
    1. each field on its own
    2. name + partner, then partner + name
    3. name + partner + reference, then partner + name + reference

    Returns True on the first match.
    """
    tried: set[str] = set()

    def attempt(*parts: str | None) -> bool:
        text = build_match_text(*parts)
        if not text or text in tried:
            return False
        tried.add(text)
        return glob_match(pattern, text)

    for single in (name, partner, reference):
        if attempt(single):
            return True

    if name and partner:
        if attempt(name, partner) or attempt(partner, name):
            return True

    if reference and (name or partner):
        if attempt(name, partner, reference) or attempt(partner, name, reference):
            return True

    return False


def significant_words(text: str, min_length: int = 3, max_words: int = 3) -> list[str]:
    """
    Extract the leading significant words of a text.

    Punctuation becomes whitespace, umlauts are kept as-is, and words
    shorter than min_length are skipped.
    """
    cleaned = _NON_WORD_RE.sub(" ", text.lower())
    words = [w for w in cleaned.split() if len(w) >= min_length]
    return words[:max_words]


def derive_pattern(*parts: str | None, min_length: int = 3, max_words: int = 3) -> str | None:
    """
    Build a "*w1*w2*w3*" glob from the significant words of the given fields.

    Returns None when no significant word exists.
    """
    words = significant_words(build_match_text(*parts), min_length, max_words)
    if not words:
        return None
    return "*" + "*".join(words) + "*"
