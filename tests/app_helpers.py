"""Shared testing helpers: app loading plus in-memory fakes for outbound services."""

from __future__ import annotations

import importlib.util
import io
import json
import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import insert

import config
from db import schema
from db.utils import DatabaseEngine
from platforms.base import ExternalGameRecord, PlatformAdapter, PlatformCredentials

APP_PATH = Path(__file__).resolve().parents[1] / "app.py"

USER_HEADERS = {"X-User-Id": "user-1"}


def load_app(tmp_path: Path) -> object:
    """Import the application module against a database under ``tmp_path``."""

    os.chdir(tmp_path)
    module_name = f"app_{uuid.uuid4().hex}"
    spec = importlib.util.spec_from_file_location(module_name, APP_PATH)
    if spec is None or spec.loader is None:
        raise RuntimeError("Unable to load app module specification")
    module = importlib.util.module_from_spec(spec)

    overrides = {
        "DB_DSN": f"sqlite:///{(tmp_path / 'library.db').as_posix()}",
        "LOG_FILE": os.fspath(tmp_path / "logs" / "app.log"),
    }
    saved = {key: getattr(config, key) for key in overrides}
    for key, value in overrides.items():
        setattr(config, key, value)

    env_vars = {
        key: os.environ.get(key)
        for key in ("TWITCH_CLIENT_ID", "TWITCH_CLIENT_SECRET")
    }
    for key in env_vars:
        os.environ.pop(key, None)

    try:
        spec.loader.exec_module(module)
    finally:
        for key, value in saved.items():
            setattr(config, key, value)
        for key, value in env_vars.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    module.app.config['TESTING'] = True
    module.app.testing = True
    return module


def install_fakes(
    module: Any,
    *,
    catalog_source: Any = None,
    adapters: Iterable[PlatformAdapter] = (),
    job_manager: Any = None,
) -> dict[str, Any]:
    """Rebuild the app's services around fakes and return them."""

    services = module.build_services(
        module.db,
        catalog_source=catalog_source or FakeCatalogSource(),
        adapters=list(adapters),
        job_manager=job_manager,
    )
    module.install_services(services)
    return module.services


def insert_game(database: DatabaseEngine, catalog_id: int, name: str) -> int:
    """Store a catalog game directly and return its local id."""

    with database.begin() as conn:
        result = conn.execute(
            insert(schema.games).values(
                external_catalog_id=catalog_id,
                name=name,
                genres="[]",
                platforms="[]",
                created_at=datetime.now(timezone.utc),
            )
        )
    return int(result.inserted_primary_key[0])


class FakeClock:
    """Manually advanced clock usable as both ``clock`` and ``sleep``."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


def catalog_game(catalog_id: int, name: str, **extra: Any) -> dict[str, Any]:
    payload = {
        "external_catalog_id": catalog_id,
        "name": name,
        "slug": name.lower().replace(" ", "-"),
        "cover_url": None,
        "genres": [],
        "platforms": [],
        "release_date": None,
        "rating": None,
    }
    payload.update(extra)
    return payload


class FakeCatalogSource:
    """Catalog source answering substring searches from a fixed game list."""

    def __init__(
        self,
        games: Iterable[Mapping[str, Any]] = (),
        *,
        aliases: Mapping[str, Sequence[Mapping[str, Any]]] | None = None,
    ) -> None:
        self.games = [dict(game) for game in games]
        self.aliases = {key.casefold(): list(value) for key, value in (aliases or {}).items()}
        self.search_calls: list[list[str]] = []
        self.alias_calls: list[str] = []
        self.id_calls: list[int] = []
        self.fail_titles: set[str] = set()
        self.fail_everything = False

    def search(self, titles: Sequence[str]) -> dict[str, list[dict[str, Any]]]:
        self.search_calls.append(list(titles))
        if self.fail_everything or any(title in self.fail_titles for title in titles):
            raise RuntimeError("IGDB search failed: 503")
        return {
            title: [
                dict(game)
                for game in self.games
                if title.casefold() in game["name"].casefold()
            ]
            for title in titles
        }

    def search_with_aliases(self, title: str) -> list[dict[str, Any]]:
        self.alias_calls.append(title)
        return [dict(game) for game in self.aliases.get(title.casefold(), [])]

    def get_by_id(self, igdb_id: int) -> dict[str, Any] | None:
        self.id_calls.append(igdb_id)
        for game in self.games:
            if game["external_catalog_id"] == igdb_id:
                return dict(game)
        return None


class FakeAdapter(PlatformAdapter):
    """Platform adapter returning canned records or raising a canned error."""

    def __init__(
        self,
        platform: str = "steam",
        records: Iterable[ExternalGameRecord] = (),
        *,
        error: Exception | None = None,
    ) -> None:
        self.platform = platform
        self.records = list(records)
        self.error = error
        self.fetch_calls = 0

    def connect(self, payload: Mapping[str, Any]) -> PlatformCredentials:
        return PlatformCredentials(
            platform_user_id=str(payload.get("accountId") or "account-1"),
            platform_username=payload.get("username"),
            access_token="token",
        )

    def fetch_library(self, credentials: PlatformCredentials) -> list[ExternalGameRecord]:
        self.fetch_calls += 1
        if self.error is not None:
            raise self.error
        return list(self.records)


def record(name: str, playtime: int = 0, *, platform: str = "steam", **extra: Any) -> ExternalGameRecord:
    return ExternalGameRecord(
        external_id=extra.pop("external_id", name.lower().replace(" ", "-")),
        name=name,
        platform=platform,
        playtime_minutes=playtime,
        last_played_at=extra.pop("last_played_at", None),
        metadata=extra,
    )


class FakeResponse:
    def __init__(self, payload: Any = None, *, body: bytes | None = None) -> None:
        if body is None:
            body = json.dumps(payload).encode("utf-8")
        self._stream = io.BytesIO(body)

    def read(self) -> bytes:
        return self._stream.read()

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        return None


class FakeOpener:
    """Replays queued responses (or raises queued exceptions) per request."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.requests: list[Any] = []
        self.timeouts: list[float | None] = []

    def __call__(self, request: Any, timeout: float | None = None) -> Any:
        self.requests.append(request)
        self.timeouts.append(timeout)
        if not self.responses:
            raise AssertionError(f"unexpected request to {request.full_url}")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, FakeResponse):
            return item
        return FakeResponse(item)


class FakeRedis:
    """The subset of redis-py used by the background job manager."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._sorted: dict[str, dict[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> bool:
        with self._lock:
            self._values[key] = value
        return True

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._values.pop(key, None) is not None:
                    removed += 1
        return removed

    def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        with self._lock:
            members = self._sorted.setdefault(key, {})
            added = sum(1 for member in mapping if member not in members)
            members.update(mapping)
        return added

    def zrange(self, key: str, start: int, end: int) -> list[str]:
        with self._lock:
            members = sorted(self._sorted.get(key, {}).items(), key=lambda item: item[1])
        names = [name for name, _score in members]
        stop = None if end == -1 else end + 1
        return names[start:stop]

    def zcard(self, key: str) -> int:
        with self._lock:
            return len(self._sorted.get(key, {}))

    def zrem(self, key: str, *members: str) -> int:
        with self._lock:
            bucket = self._sorted.get(key, {})
            return sum(1 for member in members if bucket.pop(member, None) is not None)

    def pipeline(self) -> "FakePipeline":
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._commands: list[tuple[str, tuple[Any, ...]]] = []

    def set(self, *args: Any) -> "FakePipeline":
        self._commands.append(("set", args))
        return self

    def zadd(self, *args: Any) -> "FakePipeline":
        self._commands.append(("zadd", args))
        return self

    def execute(self) -> list[Any]:
        results = [getattr(self._redis, name)(*args) for name, args in self._commands]
        self._commands = []
        return results

    def __enter__(self) -> "FakePipeline":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._commands = []


class FakeTask:
    """Stands in for the Celery task so enqueueing never touches a broker."""

    def __init__(self) -> None:
        self.signatures: list[dict[str, Any]] = []

    def s(self, **kwargs: Any) -> "FakeTask._Signature":
        self.signatures.append(kwargs)
        return FakeTask._Signature()

    class _Signature:
        def apply_async(self, *, task_id: str) -> Any:
            return type("AsyncResult", (), {"id": task_id})()


def parse_sse(body: str) -> list[dict[str, Any]]:
    events = []
    for chunk in body.split("\n\n"):
        chunk = chunk.strip()
        if chunk.startswith("data: "):
            events.append(json.loads(chunk[len("data: "):]))
    return events
