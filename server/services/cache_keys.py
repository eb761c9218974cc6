"""Cache key construction.

Keys are ``<namespace>-<identifier>`` and double as file names (plus
``.json``) for the file backend and the mock data tree.
"""

from dataclasses import dataclass

from constants import (
    CACHE_FILE_SUFFIX,
    NS_MATCH,
    NS_MATCH_PARSED,
    NS_PLAYER,
    NS_PLAYER_STATS,
    NS_TEAM,
    ttl_for,
)


@dataclass(frozen=True)
class CacheKey:
    namespace: str
    identifier: str

    @property
    def key(self) -> str:
        return f"{self.namespace}-{self.identifier}"

    @property
    def filename(self) -> str:
        return f"{self.key}{CACHE_FILE_SUFFIX}"

    def ttl(self, default: int) -> int:
        return ttl_for(self.namespace, default)

    def __str__(self) -> str:
        return self.key


def normalize_key(key: str) -> str:
    """Accept either the key or its file name form."""
    if key.endswith(CACHE_FILE_SUFFIX):
        return key[:-len(CACHE_FILE_SUFFIX)]
    return key


def match_key(match_id: str) -> CacheKey:
    return CacheKey(NS_MATCH, match_id)


def parsed_match_key(match_id: str) -> CacheKey:
    return CacheKey(NS_MATCH_PARSED, match_id)


def player_key(account_id: str) -> CacheKey:
    return CacheKey(NS_PLAYER, account_id)


def player_stats_key(account_id: str) -> CacheKey:
    return CacheKey(NS_PLAYER_STATS, account_id)


def team_key(team_id: str) -> CacheKey:
    return CacheKey(NS_TEAM, team_id)
