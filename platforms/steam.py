"""Steam library adapter built on the Steam Web API."""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Mapping

from helpers import coerce_datetime, coerce_int
from platforms.base import (
    AuthExpiredError,
    ExternalGameRecord,
    JsonHttpMixin,
    PlatformAdapter,
    PlatformCredentials,
    PlatformError,
)

logger = logging.getLogger(__name__)

_STEAM_ID_RE = re.compile(r"^\d{17}$")
_CLAIMED_ID_RE = re.compile(r"/id/(\d+)")


def extract_steam_id(value: str | None) -> str | None:
    """Return the SteamID64 from a raw id or an OpenID ``claimed_id`` URL."""

    text = (value or "").strip()
    if _STEAM_ID_RE.match(text):
        return text
    match = _CLAIMED_ID_RE.search(text)
    if match and _STEAM_ID_RE.match(match.group(1)):
        return match.group(1)
    return None


class SteamAdapter(JsonHttpMixin, PlatformAdapter):
    platform = "steam"

    BASE_URL = "https://api.steampowered.com"
    CDN_URL = "https://steamcdn-a.akamaihd.net/steam/apps"
    MEDIA_URL = "https://media.steampowered.com/steamcommunity/public/images/apps"

    def __init__(
        self,
        api_key: str,
        *,
        request_factory: Callable[..., Any] | None = None,
        opener: Callable[..., Any] | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self._init_transport(request_factory=request_factory, opener=opener, timeout=timeout)

    def connect(self, payload: Mapping[str, Any]) -> PlatformCredentials:
        raw = payload.get("steamId") or payload.get("steam_id") or payload.get("claimed_id")
        steam_id = extract_steam_id(str(raw) if raw is not None else None)
        if steam_id is None:
            raise PlatformError("a valid 17 digit steamId is required")
        return PlatformCredentials(
            platform_user_id=steam_id,
            platform_username=(payload.get("username") or None),
            access_token="steam_openid",
        )

    def fetch_library(self, credentials: PlatformCredentials) -> list[ExternalGameRecord]:
        if not self._api_key:
            raise AuthExpiredError("STEAM_API_KEY is not configured")
        payload = self._get_json(
            f"{self.BASE_URL}/IPlayerService/GetOwnedGames/v1/",
            params={
                "key": self._api_key,
                "steamid": credentials.platform_user_id,
                "include_appinfo": 1,
                "include_played_free_games": 1,
                "format": "json",
            },
            label="Steam",
        )
        response = payload.get("response") if isinstance(payload, Mapping) else None
        games = response.get("games") if isinstance(response, Mapping) else None
        if games is None:
            # Private profiles answer with an empty response object.
            logger.info("Steam returned no games for %s", credentials.platform_user_id)
            return []

        records: list[ExternalGameRecord] = []
        for game in games:
            record = self._to_record(game)
            if record is not None:
                records.append(record)
        logger.info(
            "Fetched %s Steam titles for %s", len(records), credentials.platform_user_id
        )
        return records

    def _to_record(self, game: Any) -> ExternalGameRecord | None:
        if not isinstance(game, Mapping):
            return None
        app_id = coerce_int(game.get("appid"))
        name = str(game.get("name") or "").strip()
        if app_id is None or not name:
            return None
        icon = game.get("img_icon_url")
        return ExternalGameRecord(
            external_id=str(app_id),
            name=name,
            platform=self.platform,
            playtime_minutes=max(coerce_int(game.get("playtime_forever")) or 0, 0),
            last_played_at=coerce_datetime(game.get("rtime_last_played")),
            metadata={
                "appId": app_id,
                "coverUrl": f"{self.CDN_URL}/{app_id}/library_600x900.jpg",
                "iconUrl": f"{self.MEDIA_URL}/{app_id}/{icon}.jpg" if icon else None,
            },
        )


__all__ = ["SteamAdapter", "extract_steam_id"]
