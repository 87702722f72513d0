"""Company name normalization for respondent matching.

Normalization rules:
- Lowercase, trim, collapse internal whitespace
- Strip one trailing legal-entity suffix (LLC, INC, CORP, CO, LTD and
  punctuated or spelled-out variants) when it is a separate word
"""

from __future__ import annotations

import re

_WHITESPACE = re.compile(r"\s+")

_SUFFIX_PATTERN = re.compile(
    r"[\s,]+(?:"
    r"l\.?\s?l\.?\s?c\.?"
    r"|i\.?n\.?c\.?|incorporated"
    r"|corp\.?|corporation"
    r"|co\.?|company"
    r"|ltd\.?|limited"
    r")$"
)


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def normalize_name(name: str | None) -> str:
    """Normalize a company or respondent name for matching.

    Args:
        name: Raw name (may be None)

    Returns:
        Normalized name, "" for empty input

    Examples:
        >>> normalize_name("  Cercone Exterior   Restoration Corp ")
        'cercone exterior restoration'
        >>> normalize_name("Acme, L.L.C.")
        'acme'
    """
    if not name:
        return ""

    text = collapse_whitespace(str(name).lower())
    text = _SUFFIX_PATTERN.sub("", text)
    return text.rstrip(" ,")


def no_space(name: str) -> str:
    return name.replace(" ", "")


def core_search_term(name: str | None) -> str:
    """Upper-cased core name used as a source dataset search term."""
    return normalize_name(name).upper()


def is_valid_name(name: object) -> bool:
    """Client names and akas must be non-empty strings."""
    return isinstance(name, str) and bool(name.strip())
