"""IGDB client used as the canonical catalog source."""

from __future__ import annotations

import json
import logging
import numbers
import os
import time
from typing import Any, Callable, Iterable, Mapping, Sequence

from urllib.error import HTTPError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from helpers import _format_first_release_date, _parse_iterable, coerce_int

logger = logging.getLogger(__name__)


__all__ = [
    "GAME_FIELDS",
    "IGDBClient",
    "MAX_MULTIQUERY_SIZE",
    "cover_url_from_cover",
    "escape_query_text",
    "iter_title_chunks",
]


GAME_FIELDS = (
    "id,name,slug,cover.image_id,first_release_date,"
    "genres.name,platforms.name,aggregated_rating,total_rating"
)

# IGDB rejects multiquery payloads holding more than ten sub-queries.
MAX_MULTIQUERY_SIZE = 10

_TOKEN_EXPIRY_MARGIN_SECONDS = 300


def cover_url_from_cover(value: Any, size: str = "t_cover_big") -> str:
    """Return the IGDB image URL for a cover payload or identifier."""

    image_id: str | None = None
    if isinstance(value, Mapping):
        raw_id = value.get("image_id")
        if isinstance(raw_id, str):
            image_id = raw_id.strip()
        elif raw_id is not None:
            image_id = str(raw_id).strip()
    elif isinstance(value, str):
        image_id = value.strip()
    elif value is not None:
        image_id = str(value).strip()
    if not image_id:
        return ""
    size_key = str(size).strip() if size else "t_cover_big"
    if not size_key:
        size_key = "t_cover_big"
    return "https://images.igdb.com/igdb/image/upload/" f"{size_key}/{image_id}.jpg"


def escape_query_text(value: str) -> str:
    """Escape ``value`` for use inside an Apicalypse string literal."""

    return str(value).replace("\\", "\\\\").replace('"', '\\"')


class IGDBClient:
    """Authenticated IGDB access: title search, alias search and id lookup.

    The client performs no throttling of its own; callers share a
    :class:`ratelimit.queueing.QueueingRateLimiter` in front of it.
    """

    BASE_URL = "https://api.igdb.com/v4"
    TOKEN_URL = "https://id.twitch.tv/oauth2/token"

    def __init__(
        self,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        user_agent: str | None = None,
        results_per_title: int = 5,
        max_retries: int = 3,
        rate_limit_wait: float = 1.0,
        request_factory: Callable[..., Any] | None = None,
        opener: Callable[[Any], Any] | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._client_id = (client_id or "").strip()
        self._client_secret = (client_secret or "").strip()
        self._user_agent = (user_agent or "").strip()
        self._results_per_title = results_per_title if results_per_title > 0 else 5
        self._max_retries = max(1, int(max_retries)) if max_retries else 3
        self._rate_limit_wait = rate_limit_wait if rate_limit_wait and rate_limit_wait > 0 else 1.0
        self._request_factory = request_factory
        self._opener = opener
        self._sleep = sleep or time.sleep
        self._clock = clock or time.time
        self._env = os.environ if env is None else env
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    @property
    def user_agent(self) -> str:
        if self._user_agent:
            return self._user_agent
        env_agent = self._env.get("IGDB_USER_AGENT")
        if env_agent:
            return env_agent.strip()
        return "library-sync/1.0 (support@example.com)"

    @property
    def client_id(self) -> str:
        return (self._client_id or self._env.get("TWITCH_CLIENT_ID") or "").strip()

    def exchange_twitch_credentials(self) -> tuple[str, int]:
        """Return a fresh Twitch access token and its lifetime in seconds."""

        client_id = self.client_id
        client_secret = (
            self._client_secret or self._env.get("TWITCH_CLIENT_SECRET") or ""
        ).strip()
        if not client_id or not client_secret:
            raise RuntimeError("missing twitch client credentials")

        payload = urlencode(
            {
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "client_credentials",
            }
        ).encode("utf-8")

        request = self._resolve_request_factory()(
            self.TOKEN_URL,
            data=payload,
            method="POST",
        )
        request.add_header("Content-Type", "application/x-www-form-urlencoded")

        data = self._request_json(
            request,
            error_prefix="failed to obtain twitch token",
            generic_error="failed to obtain twitch token",
            allow_rate_limit=False,
        )

        token = data.get("access_token") if isinstance(data, Mapping) else None
        if not token:
            raise RuntimeError("missing access token in twitch response")
        expires_in = coerce_int(data.get("expires_in")) or 0
        return str(token), expires_in

    def access_token(self) -> str:
        """Return a cached access token, refreshing it shortly before expiry."""

        now = self._clock()
        if self._access_token and now < self._token_expires_at:
            return self._access_token
        token, expires_in = self.exchange_twitch_credentials()
        self._access_token = token
        self._token_expires_at = now + max(expires_in - _TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        logger.info("Obtained IGDB access token")
        return token

    def search(self, titles: Sequence[str]) -> dict[str, list[dict[str, Any]]]:
        """Search up to :data:`MAX_MULTIQUERY_SIZE` titles in one request.

        Returns a mapping of each input title to its normalized candidates in
        the order IGDB ranked them.
        """

        unique_titles = list(dict.fromkeys(t for t in titles if t))
        if not unique_titles:
            return {}
        if len(unique_titles) > MAX_MULTIQUERY_SIZE:
            raise ValueError(
                f"at most {MAX_MULTIQUERY_SIZE} titles may be searched per request"
            )

        blocks = []
        for index, title in enumerate(unique_titles):
            blocks.append(
                f'query games "{index}" {{ '
                f'search "{escape_query_text(title)}"; '
                f"fields {GAME_FIELDS}; "
                f"limit {self._results_per_title}; "
                "};"
            )
        payload = self._post(
            "multiquery",
            "\n".join(blocks),
            error_prefix="IGDB search failed",
            generic_error="failed to search IGDB",
        )

        results: dict[str, list[dict[str, Any]]] = {title: [] for title in unique_titles}
        for block in payload or []:
            if not isinstance(block, Mapping):
                continue
            index = coerce_int(block.get("name"))
            if index is None or not 0 <= index < len(unique_titles):
                continue
            results[unique_titles[index]] = self._normalize_many(block.get("result"))
        return results

    def search_with_aliases(self, title: str) -> list[dict[str, Any]]:
        """Return games whose name or an alternative name contains ``title``."""

        text = escape_query_text(title.strip())
        if not text:
            return []
        query = (
            f"fields {GAME_FIELDS}; "
            f'where name ~ *"{text}"* | alternative_names.name ~ *"{text}"*; '
            f"limit {self._results_per_title};"
        )
        payload = self._post(
            "games",
            query,
            error_prefix="IGDB alias search failed",
            generic_error="failed to search IGDB aliases",
        )
        return self._normalize_many(payload)

    def get_by_id(self, igdb_id: int) -> dict[str, Any] | None:
        """Return the normalized game for ``igdb_id`` or ``None``."""

        numeric = coerce_int(igdb_id)
        if numeric is None:
            return None
        query = f"fields {GAME_FIELDS}; where id = {numeric}; limit 1;"
        payload = self._post(
            "games",
            query,
            error_prefix="IGDB request failed",
            generic_error="failed to query IGDB",
        )
        games = self._normalize_many(payload)
        return games[0] if games else None

    def _normalize_many(self, items: Any) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        if not isinstance(items, list):
            return results
        for item in items:
            normalized_item = self.normalize_game(item)
            if normalized_item is not None:
                results.append(normalized_item)
        return results

    def normalize_game(self, item: Mapping[str, Any]) -> dict[str, Any] | None:
        """Return a normalized representation of an IGDB payload."""

        if not isinstance(item, Mapping):
            return None

        raw_id = item.get("id")
        try:
            igdb_id = int(str(raw_id).strip())
        except (TypeError, ValueError):
            logger.warning("Skipping IGDB entry with invalid id %s", raw_id)
            return None

        name_value = item.get("name")
        name = name_value.strip() if isinstance(name_value, str) else ""
        if not name:
            logger.warning("Skipping IGDB entry %s without a name", igdb_id)
            return None

        slug_value = item.get("slug")
        slug = slug_value.strip() if isinstance(slug_value, str) else ""

        return {
            "external_catalog_id": igdb_id,
            "name": name,
            "slug": slug or None,
            "cover_url": cover_url_from_cover(item.get("cover")) or None,
            "genres": _parse_iterable(item.get("genres")),
            "platforms": _parse_iterable(item.get("platforms")),
            "release_date": _format_first_release_date(item.get("first_release_date")) or None,
            "rating": self._coerce_rating(
                item.get("aggregated_rating"), item.get("total_rating")
            ),
        }

    @staticmethod
    def _coerce_rating(primary: Any, secondary: Any) -> float | None:
        for candidate in (primary, secondary):
            if candidate in (None, ""):
                continue
            if isinstance(candidate, bool):
                continue
            if isinstance(candidate, numbers.Real):
                return round(float(candidate), 2)
            try:
                return round(float(str(candidate).strip()), 2)
            except (TypeError, ValueError):
                continue
        return None

    def _post(
        self,
        endpoint: str,
        body: str,
        *,
        error_prefix: str,
        generic_error: str,
    ) -> Any:
        token = self.access_token()
        request = self._resolve_request_factory()(
            f"{self.BASE_URL}/{endpoint}",
            data=body.encode("utf-8"),
            method="POST",
        )
        self._apply_headers(request, self.client_id, token)
        return self._request_json(
            request,
            error_prefix=error_prefix,
            generic_error=generic_error,
        )

    def _apply_headers(self, request: Any, client_id: str, access_token: str) -> None:
        request.add_header("Client-ID", client_id)
        request.add_header("Authorization", f"Bearer {access_token}")
        request.add_header("Accept", "application/json")
        request.add_header("Content-Type", "text/plain")
        request.add_header("User-Agent", self.user_agent)

    def _resolve_request_factory(self) -> Callable[..., Any]:
        return self._request_factory or Request

    def _resolve_opener(self) -> Callable[[Any], Any]:
        return self._opener or urlopen

    def _request_json(
        self,
        request: Any,
        *,
        error_prefix: str,
        generic_error: str,
        allow_rate_limit: bool = True,
    ) -> Any:
        opener = self._resolve_opener()
        attempts = self._max_retries if allow_rate_limit else 1
        for attempt in range(attempts):
            try:
                with opener(request) as response:
                    body = response.read()
            except HTTPError as exc:
                if allow_rate_limit and exc.code == 429 and attempt + 1 < attempts:
                    delay = self._retry_delay(exc)
                    logger.warning("IGDB throttled the request; retrying in %.2fs", delay)
                    if delay > 0:
                        self._sleep(delay)
                    continue
                if exc.code == 401:
                    self._access_token = None
                message = _format_http_error(error_prefix, exc)
                raise RuntimeError(message) from exc
            except Exception as exc:  # pragma: no cover - network failures surfaced
                raise RuntimeError(f"{generic_error}: {exc}") from exc
            try:
                text = body.decode("utf-8") if body else ""
            except Exception:  # pragma: no cover - unexpected decoding failures
                text = ""
            try:
                return json.loads(text) if text else []
            except Exception as exc:
                raise RuntimeError("invalid JSON response from IGDB") from exc
        return []

    def _retry_delay(self, error: HTTPError) -> float:
        headers = getattr(error, "headers", None)
        if headers is not None:
            for key in ("Retry-After", "retry-after"):
                value = headers.get(key)
                if value:
                    try:
                        delay = float(value)
                        if delay > 0:
                            return delay
                    except (TypeError, ValueError):
                        continue
            for key in ("X-RateLimit-Reset", "x-ratelimit-reset"):
                value = headers.get(key)
                if value:
                    try:
                        reset_timestamp = float(value)
                        delay = reset_timestamp - time.time()
                        if delay > 0:
                            return delay
                    except (TypeError, ValueError):
                        continue
        return self._rate_limit_wait


def _format_http_error(prefix: str, error: HTTPError) -> str:
    message = f"{prefix}: {error.code}"
    error_message = ""
    try:
        error_body = error.read()
    except Exception:  # pragma: no cover - best effort to capture error body
        error_body = b""
    if error_body:
        try:
            error_message = error_body.decode("utf-8", errors="replace").strip()
        except Exception:  # pragma: no cover - unexpected decoding failures
            error_message = ""
    if not error_message and error.reason:
        error_message = str(error.reason)
    if error_message:
        message = f"{message} {error_message}"
    return message


def iter_title_chunks(titles: Iterable[str], size: int = MAX_MULTIQUERY_SIZE) -> Iterable[list[str]]:
    """Yield ``titles`` in order as lists of at most ``size`` entries."""

    size = max(1, min(int(size), MAX_MULTIQUERY_SIZE))
    chunk: list[str] = []
    for title in titles:
        chunk.append(title)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk
