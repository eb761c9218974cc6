"""Resource fetchers.

Each fetcher pulls one resource from upstream, checks it is the shape we
cache, writes it to the cache under its namespaced key and returns it. The
same coroutines back the synchronous endpoints and the queue job handlers.
"""

from typing import Any, Dict, List, Optional, TYPE_CHECKING

from constants import (
    JOB_FETCH_MATCH,
    JOB_FETCH_PLAYER,
    JOB_FETCH_PLAYER_STATS,
    JOB_FETCH_TEAM,
    JOB_PARSE_MATCH,
)
from core.cache import CacheService
from core.config import Settings
from core.errors import ServiceError, UpstreamDataError, ValidationError
from core.logging import get_logger
from services.cache_keys import (
    CacheKey,
    match_key,
    parsed_match_key,
    player_key,
    player_stats_key,
    team_key,
)
from services.upstream import OpenDotaClient

if TYPE_CHECKING:
    from services.cache_or_queue import CacheOrQueue
    from services.queue import RequestQueue

logger = get_logger(__name__)

# Player slots below this value are on Radiant
RADIANT_SLOT_LIMIT = 128


def validate_id(value: Any, label: str) -> str:
    """Identifiers are ASCII decimal strings."""
    text = str(value).strip() if value is not None else ""
    # isdigit alone accepts superscripts and other Unicode digits
    if not (text.isascii() and text.isdigit()):
        raise ValidationError(f"Invalid {label}: {value!r} must be a numeric string")
    return text


def _require_object(data: Any, resource: str, identifier: str) -> Dict[str, Any]:
    if not isinstance(data, dict) or not data:
        raise UpstreamDataError(f"Invalid {resource} data for {identifier}: expected a JSON object")
    return data


def team_account_ids(match: Dict[str, Any], team_id: str) -> List[int]:
    """Account ids of the players who played for ``team_id`` in a match."""
    players = match.get("players")
    if not isinstance(players, list):
        return []

    team = int(team_id)
    if match.get("radiant_team_id") == team:
        side = lambda slot: slot < RADIANT_SLOT_LIMIT
    elif match.get("dire_team_id") == team:
        side = lambda slot: slot >= RADIANT_SLOT_LIMIT
    else:
        return []

    return [
        p["account_id"] for p in players
        if isinstance(p, dict) and isinstance(p.get("player_slot"), int)
        and side(p["player_slot"]) and p.get("account_id")
    ]


class ResourceService:
    """Upstream fetch + cache write for every cached resource."""

    def __init__(self, settings: Settings, cache: CacheService, client: OpenDotaClient,
                 protocol: Optional["CacheOrQueue"] = None):
        self.settings = settings
        self.cache = cache
        self.client = client
        self.protocol = protocol

    async def _store(self, key: CacheKey, data: Any) -> Any:
        await self.cache.set(key.key, data, key.ttl(self.settings.cache_ttl))
        return data

    async def fetch_match(self, match_id: str, team_id: Optional[str] = None) -> Dict[str, Any]:
        key = match_key(match_id)
        data = _require_object(await self.client.get_match(match_id, key.key), "match", match_id)
        await self._store(key, data)
        if team_id:
            await self.queue_team_players(data, team_id)
        return data

    async def fetch_player(self, account_id: str) -> Dict[str, Any]:
        key = player_key(account_id)
        data = _require_object(await self.client.get_player(account_id, key.key), "player", account_id)
        return await self._store(key, data)

    async def fetch_player_stats(self, account_id: str) -> Dict[str, Any]:
        key = player_stats_key(account_id)
        data = _require_object(
            await self.client.get_player_stats(account_id, key.key), "player stats", account_id
        )
        return await self._store(key, data)

    async def fetch_team(self, team_id: str) -> Dict[str, Any]:
        key = team_key(team_id)
        data = _require_object(await self.client.get_team(team_id, key.key), "team", team_id)
        return await self._store(key, data)

    async def parse_match(self, match_id: str, timeout_ms: Optional[int] = None) -> Dict[str, Any]:
        """Ask upstream to parse the replay; cache the parsed match under both keys."""
        key = parsed_match_key(match_id)
        timeout_ms = timeout_ms or self.settings.parse_default_timeout_ms
        data = _require_object(
            await self.client.parse_match(match_id, key.key, timeout_ms), "parsed match", match_id
        )
        await self._store(key, data)
        await self._store(match_key(match_id), data)
        return data

    async def queue_team_players(self, match: Dict[str, Any], team_id: str) -> int:
        """Queue background fetches for one team's players. Returns how many were queued."""
        if self.protocol is None:
            return 0

        queued = 0
        for account_id in team_account_ids(match, team_id):
            ident = str(account_id)
            try:
                result = await self.protocol.get_or_queue(
                    player_key(ident), JOB_FETCH_PLAYER, {"account_id": ident}
                )
            except ServiceError as e:
                logger.warning("Failed to queue team player", team_id=team_id,
                               account_id=ident, error=e.details)
                continue
            if result.queued:
                queued += 1

        logger.info("Queued team players from match", team_id=team_id,
                    match_id=match.get("match_id"), queued=queued)
        return queued

    def register_handlers(self, queue: "RequestQueue") -> None:
        """Expose the fetchers as queue job endpoints."""

        async def _fetch_match(payload: Dict[str, Any]):
            team_id = payload.get("team_id")
            await self.fetch_match(validate_id(payload.get("match_id"), "match id"),
                                   validate_id(team_id, "team id") if team_id else None)
            return {"cached": match_key(str(payload["match_id"])).key}

        async def _fetch_player(payload: Dict[str, Any]):
            await self.fetch_player(validate_id(payload.get("account_id"), "player id"))
            return {"cached": player_key(str(payload["account_id"])).key}

        async def _fetch_player_stats(payload: Dict[str, Any]):
            await self.fetch_player_stats(validate_id(payload.get("account_id"), "player id"))
            return {"cached": player_stats_key(str(payload["account_id"])).key}

        async def _fetch_team(payload: Dict[str, Any]):
            await self.fetch_team(validate_id(payload.get("team_id"), "team id"))
            return {"cached": team_key(str(payload["team_id"])).key}

        async def _parse_match(payload: Dict[str, Any]):
            return await self.parse_match(validate_id(payload.get("match_id"), "match id"),
                                          payload.get("timeout_ms"))

        queue.register_handler(JOB_FETCH_MATCH, _fetch_match)
        queue.register_handler(JOB_FETCH_PLAYER, _fetch_player)
        queue.register_handler(JOB_FETCH_PLAYER_STATS, _fetch_player_stats)
        queue.register_handler(JOB_FETCH_TEAM, _fetch_team)
        queue.register_handler(JOB_PARSE_MATCH, _parse_match)
