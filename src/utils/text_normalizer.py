"""Text normalization utilities for artist, venue and song names.

Two concerns live here:

1. **Slugs** -- the identity fallback used by the reconciler when an
   external id is absent or unknown: lowercase ASCII, every run of
   non-alphanumeric characters collapsed into a single ``-``, no leading
   or trailing separator.  ``"Florence + The Machine"`` -> ``"florence-the-machine"``.

2. **Name similarity** -- rapidfuzz ``token_sort_ratio`` on normalized
   names, used when an event's performer name is matched against catalog
   search results ("The Black Keys" vs "Black Keys, The").
"""

import re
import unicodedata

from rapidfuzz import fuzz

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_LEADING_ARTICLE_RE = re.compile(r"^the\s+", re.IGNORECASE)
_TRAILING_ARTICLE_RE = re.compile(r",\s*the$", re.IGNORECASE)


def slugify(name: str) -> str:
    """Return the normalized slug for *name*.

    Accented characters are folded to ASCII first so ``"Beyoncé"`` and
    ``"Beyonce"`` share the slug ``"beyonce"``.  Returns an empty string
    when nothing alphanumeric survives.
    """
    folded = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    return _NON_ALNUM_RE.sub("-", folded.lower()).strip("-")


def suffixed_slug(base: str, attempt: int) -> str:
    """Return the slug tried on *attempt* (1-based): ``base``, ``base-2``, ``base-3`` ..."""
    if attempt <= 1:
        return base
    return f"{base}-{attempt}"


def normalize_artist_name(name: str) -> str:
    """Normalize an artist name for comparison.

    Collapses whitespace, strips a leading or trailing "The" and lowercases,
    so ``"The Black Keys"`` and ``"Black Keys, The"`` compare equal.
    """
    normalized = re.sub(r"\s+", " ", name.strip())
    normalized = _TRAILING_ARTICLE_RE.sub("", normalized)
    normalized = _LEADING_ARTICLE_RE.sub("", normalized)
    return normalized.lower()


def name_similarity(left: str, right: str) -> float:
    """Return a 0.0--1.0 similarity between two artist names."""
    if not left or not right:
        return 0.0
    score = fuzz.token_sort_ratio(normalize_artist_name(left), normalize_artist_name(right))
    return score / 100.0
