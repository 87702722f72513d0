"""Respondent name to client resolution.

Strategies, tried in order until one succeeds:
1. Exact match on the normalized full name or its no-space form
2. Suffix fragment: the first name is a short token or the remnant of a
   split legal suffix ("ORP" from "CORP"), so match the last name alone
3. Prefix containment against every registered key (floor: 10 chars)
4. Last-name fallback: exact, then prefix containment (floor: 5 chars)

Containment can hit several keys at once. The longest matching key wins,
ties broken by the lexicographically smallest key, so resolution does not
depend on store iteration order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from oathsync.canonical.names import collapse_whitespace, is_valid_name, no_space, normalize_name
from oathsync.config import MatchingConfig
from oathsync.models import Client

logger = logging.getLogger(__name__)

# Leftovers of LLC / INC / CORP / LTD when the source splits a company
# name across first and last name columns.
SUFFIX_FRAGMENTS = frozenset(
    {
        "llc", "inc", "corp", "co", "ltd",
        "orp", "rp", "p",
        "nc", "c",
        "lc", "l",
        "td", "d",
    }
)


class MatchStrategy(str, Enum):
    EXACT = "exact"
    SUFFIX_FRAGMENT = "suffix_fragment"
    PARTIAL = "partial"
    FALLBACK = "fallback"


@dataclass(slots=True)
class ResolverMatch:
    client: Client
    strategy: MatchStrategy
    key: str


def looks_like_suffix_fragment(token: str | None, short_token_max: int = 3) -> bool:
    """True for suffix remnants and any token of ``short_token_max`` chars or fewer."""
    if not token:
        return False
    lowered = token.strip().lower()
    if not lowered:
        return False
    return lowered in SUFFIX_FRAGMENTS or len(lowered) <= short_token_max


class EntityResolver:
    """Lookup from normalized client names and akas to clients.

    Built once per run. Clients are registered in the order given; when two
    clients normalize to the same key the first registration keeps it.
    """

    def __init__(self, clients: Iterable[Client], config: MatchingConfig | None = None):
        self.config = config or MatchingConfig()
        self.lookup: dict[str, Client] = {}
        self.skipped_names = 0

        for client in clients:
            for raw in client.all_names:
                if not is_valid_name(raw):
                    self.skipped_names += 1
                    continue
                self._register(normalize_name(raw), client)

        # Longest first, then alphabetical: deterministic containment order
        self._ordered_keys = sorted(self.lookup, key=lambda k: (-len(k), k))

        logger.debug(f"Resolver built with {len(self.lookup)} keys")

    def _register(self, key: str, client: Client) -> None:
        if not key:
            return
        for variant in (key, no_space(key)):
            existing = self.lookup.get(variant)
            if existing is None:
                self.lookup[variant] = client
            elif existing.id != client.id:
                logger.debug(
                    f"Key '{variant}' already registered to {existing.id}; ignoring {client.id}"
                )

    def __len__(self) -> int:
        return len(self.lookup)

    def resolve(self, first_name: str | None, last_name: str | None) -> Client | None:
        match = self.resolve_match(first_name, last_name)
        return match.client if match else None

    def resolve_match(
        self, first_name: str | None, last_name: str | None
    ) -> ResolverMatch | None:
        """Resolve a respondent (split into first/last name) to a client.

        Args:
            first_name: Respondent first name column (often a suffix remnant)
            last_name: Respondent last name column

        Returns:
            ResolverMatch or None when no strategy matches
        """
        first = (first_name or "").strip()
        last = (last_name or "").strip()
        full = collapse_whitespace(f"{first} {last}")
        if not full:
            return None

        normalized_full = normalize_name(full)

        # 1. Exact
        client, key = self._exact(normalized_full)
        if client:
            return ResolverMatch(client, MatchStrategy.EXACT, key)

        # 2. Suffix fragment in the first name column
        if first and last and looks_like_suffix_fragment(first, self.config.short_token_max):
            client, key = self._exact(normalize_name(last))
            if client:
                return ResolverMatch(client, MatchStrategy.SUFFIX_FRAGMENT, key)

        # 3. Prefix containment
        client, key = self._containment(normalized_full, self.config.partial_min_length)
        if client:
            return ResolverMatch(client, MatchStrategy.PARTIAL, key)

        # 4. Last name only, lower floor
        if len(last) >= self.config.fallback_min_length:
            normalized_last = normalize_name(last)
            client, key = self._exact(normalized_last)
            if not client:
                client, key = self._containment(
                    normalized_last, self.config.fallback_min_length
                )
            if client:
                return ResolverMatch(client, MatchStrategy.FALLBACK, key)

        return None

    def _exact(self, normalized: str) -> tuple[Client | None, str]:
        if not normalized:
            return None, ""
        for key in (normalized, no_space(normalized)):
            client = self.lookup.get(key)
            if client:
                return client, key
        return None, ""

    def _containment(self, normalized: str, floor: int) -> tuple[Client | None, str]:
        if not normalized:
            return None, ""
        for key in self._ordered_keys:
            if len(key) >= floor and normalized.startswith(key):
                return self.lookup[key], key
            if len(normalized) >= floor and key.startswith(normalized):
                return self.lookup[key], key
        return None, ""
