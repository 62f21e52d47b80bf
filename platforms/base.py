"""Contracts shared by every platform library adapter."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping

from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)


class PlatformError(RuntimeError):
    """Base class for failures raised by platform adapters."""


class AuthExpiredError(PlatformError):
    """Raised when the platform rejects the stored credentials."""


class UpstreamUnavailableError(PlatformError):
    """Raised when the platform API cannot be reached or misbehaves."""


class UnsupportedPlatformError(PlatformError):
    """Raised for platforms without a registered adapter."""


@dataclass(frozen=True)
class ExternalGameRecord:
    """One title as reported by a platform, produced fresh on every sync."""

    external_id: str
    name: str
    platform: str
    playtime_minutes: int = 0
    last_played_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.playtime_minutes < 0:
            object.__setattr__(self, "playtime_minutes", 0)


@dataclass(frozen=True)
class PlatformCredentials:
    """Identity and secrets needed to read one user's platform library."""

    platform_user_id: str
    platform_username: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None


class PlatformAdapter(ABC):
    """Reads a user's owned games from one external platform."""

    platform: str = ""

    @abstractmethod
    def connect(self, payload: Mapping[str, Any]) -> PlatformCredentials:
        """Validate connection input and return the credentials to store."""

    @abstractmethod
    def fetch_library(self, credentials: PlatformCredentials) -> list[ExternalGameRecord]:
        """Return every owned title; the adapter owns pagination."""


class JsonHttpMixin:
    """urllib based JSON GET helper with injectable transport."""

    def _init_transport(
        self,
        *,
        request_factory: Callable[..., Any] | None = None,
        opener: Callable[..., Any] | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._request_factory = request_factory or Request
        self._opener = opener or urlopen
        self._timeout = timeout

    def _get_json(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        label: str,
    ) -> Any:
        if params:
            url = f"{url}?{urlencode(params)}"
        request = self._request_factory(url, method="GET")
        request.add_header("Accept", "application/json")
        for key, value in (headers or {}).items():
            request.add_header(key, value)
        try:
            with self._opener(request, timeout=self._timeout) as response:
                body = response.read()
        except HTTPError as exc:
            if exc.code in (401, 403):
                raise AuthExpiredError(
                    f"{label} rejected the stored credentials ({exc.code})"
                ) from exc
            raise UpstreamUnavailableError(f"{label} request failed: {exc.code}") from exc
        except (URLError, TimeoutError, OSError) as exc:
            raise UpstreamUnavailableError(f"{label} is unreachable: {exc}") from exc
        try:
            return json.loads(body.decode("utf-8")) if body else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise UpstreamUnavailableError(f"invalid JSON response from {label}") from exc


__all__ = [
    "AuthExpiredError",
    "ExternalGameRecord",
    "JsonHttpMixin",
    "PlatformAdapter",
    "PlatformCredentials",
    "PlatformError",
    "UnsupportedPlatformError",
    "UpstreamUnavailableError",
]
