"""Presence sources: where instantaneous activity snapshots come from."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Sequence

import httpx
import psutil

from .errors import PresenceError
from .models import RecentActivity, Snapshot
from .normalization import (
    normalize_activity_id,
    normalize_activity_name,
    normalize_process_name,
)

logger = logging.getLogger(__name__)

STEAM_API_BASE = "https://api.steampowered.com"


class PresenceSource(Protocol):
    async def fetch_snapshot(self) -> Snapshot: ...

    async def fetch_recent_activity(self) -> Sequence[RecentActivity]: ...


class SteamPresenceSource:
    """Reads presence for one Steam account through the Steam Web API."""

    def __init__(
        self,
        api_key: str,
        steam_id: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: timedelta = timedelta(seconds=10),
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.steam_id = steam_id
        self._api_key = api_key
        self._clock = clock
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=STEAM_API_BASE,
            timeout=httpx.Timeout(timeout.total_seconds()),
        )

    async def fetch_snapshot(self) -> Snapshot:
        data = await self._get(
            "/ISteamUser/GetPlayerSummaries/v2/",
            {"key": self._api_key, "steamids": self.steam_id},
        )
        players = (data.get("response") or {}).get("players") or []
        if not players:
            raise PresenceError("Invalid response from Steam API: no player summary")

        player = players[0]
        if not isinstance(player, dict):
            raise PresenceError("Invalid response from Steam API: malformed player summary")
        return Snapshot(
            activity_id=normalize_activity_id(player.get("gameid")),
            activity_name=normalize_activity_name(player.get("gameextrainfo")),
            observed_at=self._clock(),
        )

    async def fetch_recent_activity(self) -> list[RecentActivity]:
        data = await self._get(
            "/IPlayerService/GetRecentlyPlayedGames/v1/",
            {"key": self._api_key, "steamid": self.steam_id, "format": "json"},
        )
        games = (data.get("response") or {}).get("games") or []
        return list(_parse_recent_games(games))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, path: str, params: Mapping[str, str]) -> dict[str, Any]:
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise PresenceError(
                f"Steam API returned {exc.response.status_code} for {path}"
            ) from exc
        except httpx.HTTPError as exc:
            raise PresenceError(f"Steam API request failed: {exc}") from exc
        except ValueError as exc:
            raise PresenceError(f"Steam API returned invalid JSON for {path}") from exc
        if not isinstance(payload, dict):
            raise PresenceError(f"Unexpected Steam API payload for {path}")
        return payload


def _parse_recent_games(games: Iterable[Any]) -> Iterable[RecentActivity]:
    for game in games:
        if not isinstance(game, dict):
            continue
        activity_id = normalize_activity_id(game.get("appid"))
        name = normalize_activity_name(game.get("name"))
        last_played = game.get("last_played")
        if activity_id is None or name is None or not last_played:
            continue
        try:
            observed = datetime.fromtimestamp(int(last_played))
            minutes = int(game.get("playtime_2weeks") or 0)
        except (TypeError, ValueError, OverflowError, OSError):
            logger.debug("Skipping recent game with bad fields: %r", game)
            continue
        yield RecentActivity(
            activity_id=activity_id,
            activity_name=name,
            last_observed_at=observed,
            recent_minutes=minutes,
        )


class ProcessPresenceSource:
    """Treats a running local process from a watch list as the current activity."""

    def __init__(
        self,
        watch: Mapping[str, str],
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._watch = {
            key: name
            for key, name in (
                (normalize_process_name(process), activity)
                for process, activity in watch.items()
            )
            if key
        }
        self._clock = clock

    async def fetch_snapshot(self) -> Snapshot:
        now = self._clock()
        try:
            for proc in psutil.process_iter(["name"]):
                key = normalize_process_name(proc.info.get("name"))
                if key and key in self._watch:
                    return Snapshot(
                        activity_id=key,
                        activity_name=self._watch[key],
                        observed_at=now,
                    )
        except psutil.Error as exc:
            raise PresenceError(f"Failed to list processes: {exc}") from exc
        return Snapshot.idle(now)

    async def fetch_recent_activity(self) -> list[RecentActivity]:
        return []
