"""Xbox library adapter using the OpenXBL API under an hourly request budget."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping
from urllib.parse import quote

from helpers import coerce_datetime
from platforms.base import (
    AuthExpiredError,
    ExternalGameRecord,
    JsonHttpMixin,
    PlatformAdapter,
    PlatformCredentials,
    PlatformError,
)
from ratelimit.windowed import WindowedBudgetLimiter

logger = logging.getLogger(__name__)


class XboxAdapter(JsonHttpMixin, PlatformAdapter):
    """Every outbound call spends one unit of the shared hourly budget.

    When the budget is spent the call raises
    :class:`ratelimit.windowed.RateLimitExceededError` instead of waiting.
    """

    platform = "xbox"

    BASE_URL = "https://xbl.io/api/v2"

    def __init__(
        self,
        api_key: str,
        limiter: WindowedBudgetLimiter,
        *,
        request_factory: Callable[..., Any] | None = None,
        opener: Callable[..., Any] | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self._limiter = limiter
        self._init_transport(request_factory=request_factory, opener=opener, timeout=timeout)

    @property
    def limiter(self) -> WindowedBudgetLimiter:
        return self._limiter

    def connect(self, payload: Mapping[str, Any]) -> PlatformCredentials:
        gamertag = str(payload.get("gamertag") or "").strip()
        secret = str(payload.get("apiKey") or payload.get("api_key") or "").strip()
        if not gamertag:
            raise PlatformError("gamertag is required")
        profile = self._request(f"/account/{quote(gamertag)}", secret or self._api_key)
        xuid = ""
        if isinstance(profile, Mapping):
            xuid = str(profile.get("xuid") or profile.get("id") or "").strip()
            gamertag = str(profile.get("gamertag") or gamertag).strip()
        if not xuid:
            raise PlatformError(f"Xbox profile not found for {gamertag!r}")
        return PlatformCredentials(
            platform_user_id=xuid,
            platform_username=gamertag,
            access_token=secret or None,
        )

    def fetch_library(self, credentials: PlatformCredentials) -> list[ExternalGameRecord]:
        payload = self._request(
            f"/titlehub/titleHistory/{quote(credentials.platform_user_id)}",
            credentials.access_token or self._api_key,
        )
        titles = payload.get("titles") if isinstance(payload, Mapping) else None
        records: list[ExternalGameRecord] = []
        for title in titles or []:
            record = self._to_record(title)
            if record is not None:
                records.append(record)
        logger.info(
            "Fetched %s Xbox titles for %s; %s requests left this window",
            len(records),
            credentials.platform_user_id,
            self._limiter.remaining(),
        )
        return records

    def _request(self, path: str, api_key: str) -> Any:
        if not api_key:
            raise AuthExpiredError("OPENXBL_API_KEY is not configured")
        self._limiter.acquire_or_raise()
        return self._get_json(
            f"{self.BASE_URL}{path}",
            headers={"X-Authorization": api_key},
            label="Xbox",
        )

    def _to_record(self, title: Any) -> ExternalGameRecord | None:
        if not isinstance(title, Mapping):
            return None
        external_id = str(title.get("titleId") or title.get("pfn") or "").strip()
        name = str(title.get("name") or "").strip()
        if not external_id or not name:
            return None
        history = title.get("titleHistory")
        last_played = history.get("lastTimePlayed") if isinstance(history, Mapping) else None
        achievement = title.get("achievement")
        metadata: dict[str, Any] = {
            "titleId": external_id,
            "coverUrl": title.get("displayImage") or None,
            "devices": list(title.get("devices") or []),
        }
        if isinstance(achievement, Mapping):
            metadata["achievements"] = {
                "current": achievement.get("currentAchievements"),
                "total": achievement.get("totalAchievements"),
                "gamerscore": achievement.get("currentGamerscore"),
            }
        return ExternalGameRecord(
            external_id=external_id,
            name=name,
            platform=self.platform,
            playtime_minutes=0,
            last_played_at=coerce_datetime(last_played),
            metadata=metadata,
        )


__all__ = ["XboxAdapter"]
