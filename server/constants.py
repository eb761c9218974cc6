"""Centralized constants for cache namespaces, TTLs and queue job endpoints.

Single source of truth for the strings that make up cache keys and job ids,
so routers, fetchers and queue handlers never spell them independently.
"""

from typing import Dict

# =============================================================================
# CACHE NAMESPACES
# =============================================================================

NS_MATCH = 'opendota-match'
NS_MATCH_PARSED = 'opendota-parsedmatch'
NS_PLAYER = 'opendota-player'
NS_PLAYER_STATS = 'opendota-playerstats'
NS_TEAM = 'opendota-team'

CACHE_FILE_SUFFIX = '.json'

# =============================================================================
# CACHE TTLS (seconds)
# =============================================================================

MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR

# Finished matches never change; profiles and rosters drift
NAMESPACE_TTLS: Dict[str, int] = {
    NS_MATCH: 14 * DAY,
    NS_MATCH_PARSED: 14 * DAY,
    NS_PLAYER: DAY,
    NS_PLAYER_STATS: HOUR,
    NS_TEAM: 2 * HOUR,
}

# =============================================================================
# QUEUE JOB ENDPOINTS
# =============================================================================

JOB_FETCH_MATCH = 'fetch-match'
JOB_FETCH_PLAYER = 'fetch-player'
JOB_FETCH_PLAYER_STATS = 'fetch-player-stats'
JOB_FETCH_TEAM = 'fetch-team'
JOB_PARSE_MATCH = 'parse-match'

# Job id prefix per endpoint: <resource>-<identifier>-<submission ms>
JOB_ID_PREFIXES: Dict[str, str] = {
    JOB_FETCH_MATCH: 'match',
    JOB_FETCH_PLAYER: 'player',
    JOB_FETCH_PLAYER_STATS: 'player-stats',
    JOB_FETCH_TEAM: 'team',
    JOB_PARSE_MATCH: 'parse',
}

# =============================================================================
# HELPERS
# =============================================================================


def ttl_for(namespace: str, default: int) -> int:
    """TTL for a namespace, or ``default`` for unknown namespaces."""
    return NAMESPACE_TTLS.get(namespace, default)
