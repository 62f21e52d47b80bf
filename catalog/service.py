"""Canonical catalog lookup backed by the local games table and IGDB."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Protocol, Sequence

from sqlalchemy import func, insert, select
from sqlalchemy.exc import IntegrityError

from db import schema
from db.utils import DatabaseEngine
from helpers import (
    _dedupe_preserve_order,
    coerce_int,
    decode_name_list,
    encode_name_list,
    now_utc,
)
from igdb.client import MAX_MULTIQUERY_SIZE, iter_title_chunks
from ratelimit.queueing import QueueingRateLimiter

logger = logging.getLogger(__name__)


class CatalogError(RuntimeError):
    """Base class for catalog lookup failures."""


class CatalogUnavailableError(CatalogError):
    """Raised when the catalog source could not answer any request."""


class CatalogGameNotFoundError(CatalogError):
    """Raised when a catalog id does not resolve to a game."""


class CatalogSource(Protocol):
    def search(self, titles: Sequence[str]) -> Mapping[str, list[Mapping[str, Any]]]: ...

    def search_with_aliases(self, title: str) -> list[Mapping[str, Any]]: ...

    def get_by_id(self, igdb_id: int) -> Mapping[str, Any] | None: ...


@dataclass(frozen=True)
class CanonicalGame:
    """A catalog entry; ``id`` is ``None`` until the game is stored locally."""

    external_catalog_id: int
    name: str
    id: int | None = None
    slug: str | None = None
    cover_url: str | None = None
    genres: frozenset[str] = field(default_factory=frozenset)
    platforms: frozenset[str] = field(default_factory=frozenset)
    release_date: str | None = None
    rating: float | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CanonicalGame":
        catalog_id = coerce_int(payload.get("external_catalog_id"))
        if catalog_id is None:
            raise ValueError("catalog payload is missing external_catalog_id")
        return cls(
            external_catalog_id=catalog_id,
            name=str(payload.get("name") or "").strip(),
            id=coerce_int(payload.get("id")),
            slug=payload.get("slug") or None,
            cover_url=payload.get("cover_url") or None,
            genres=frozenset(decode_name_list(payload.get("genres"))),
            platforms=frozenset(decode_name_list(payload.get("platforms"))),
            release_date=payload.get("release_date") or None,
            rating=payload.get("rating"),
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CanonicalGame":
        return cls.from_payload(row)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "externalCatalogId": self.external_catalog_id,
            "name": self.name,
            "slug": self.slug,
            "coverUrl": self.cover_url,
            "genres": sorted(self.genres),
            "platforms": sorted(self.platforms),
            "releaseDate": self.release_date,
            "rating": self.rating,
        }


class CatalogLookup:
    """Query the canonical catalog through a shared queueing limiter.

    Every call into ``source`` is admitted by ``limiter`` first so concurrent
    sync runs share one request budget.
    """

    def __init__(
        self,
        database: DatabaseEngine,
        source: CatalogSource,
        limiter: QueueingRateLimiter,
        *,
        batch_size: int = MAX_MULTIQUERY_SIZE,
    ) -> None:
        self._database = database
        self._source = source
        self._limiter = limiter
        self._batch_size = max(1, min(int(batch_size), MAX_MULTIQUERY_SIZE))

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def search_titles(self, titles: Iterable[str]) -> dict[str, list[CanonicalGame]]:
        """Return external candidates per distinct title.

        Titles are deduplicated case-insensitively and searched in sequential
        chunks of at most :attr:`batch_size`. A failing chunk is logged and its
        titles map to an empty list; :class:`CatalogUnavailableError` is raised
        only when every chunk failed.
        """

        unique_titles = _dedupe_preserve_order(titles)
        results: dict[str, list[CanonicalGame]] = {title: [] for title in unique_titles}
        if not unique_titles:
            return results

        chunks = list(iter_title_chunks(unique_titles, self._batch_size))
        failures = 0
        last_error: Exception | None = None
        for index, chunk in enumerate(chunks, start=1):
            try:
                payload = self._limiter.submit(self._source.search, chunk)
            except Exception as exc:
                failures += 1
                last_error = exc
                logger.warning(
                    "Catalog search batch %s/%s failed: %s", index, len(chunks), exc
                )
                continue
            for title in chunk:
                results[title] = self._to_games(payload.get(title) or [])

        if failures == len(chunks):
            raise CatalogUnavailableError(
                f"catalog search failed for every batch: {last_error}"
            ) from last_error
        logger.debug(
            "Searched %s titles in %s batches (%s failed)",
            len(unique_titles),
            len(chunks),
            failures,
        )
        return results

    def batch_search(self, titles: Iterable[str]) -> list[CanonicalGame]:
        """Return the distinct candidates found for ``titles``."""

        seen: set[int] = set()
        games: list[CanonicalGame] = []
        for candidates in self.search_titles(titles).values():
            for game in candidates:
                if game.external_catalog_id in seen:
                    continue
                seen.add(game.external_catalog_id)
                games.append(game)
        return games

    def alias_search(self, title: str) -> CanonicalGame | None:
        """Return the best alternate-name match for ``title`` or ``None``."""

        text = (title or "").strip()
        if not text:
            return None
        try:
            payload = self._limiter.submit(self._source.search_with_aliases, text)
        except Exception as exc:
            logger.warning("Alias search failed for %r: %s", text, exc)
            return None
        games = self._to_games(payload)
        return games[0] if games else None

    def search_local(self, titles: Iterable[str], *, limit: int = 25) -> dict[str, list[CanonicalGame]]:
        """Return cached games whose name contains each title, case-insensitively."""

        results: dict[str, list[CanonicalGame]] = {}
        table = schema.games
        with self._database.connect() as conn:
            for title in _dedupe_preserve_order(titles):
                pattern = f"%{_escape_like(title.lower())}%"
                rows = conn.execute(
                    select(table)
                    .where(func.lower(table.c.name).like(pattern, escape="\\"))
                    .order_by(table.c.id)
                    .limit(limit)
                ).mappings().all()
                results[title] = [CanonicalGame.from_row(row) for row in rows]
        return results

    def get_game(self, game_id: int) -> CanonicalGame | None:
        table = schema.games
        with self._database.connect() as conn:
            row = conn.execute(
                select(table).where(table.c.id == game_id)
            ).mappings().first()
        return CanonicalGame.from_row(row) if row is not None else None

    def get_by_catalog_id(self, catalog_id: int) -> CanonicalGame | None:
        table = schema.games
        with self._database.connect() as conn:
            row = conn.execute(
                select(table).where(table.c.external_catalog_id == catalog_id)
            ).mappings().first()
        return CanonicalGame.from_row(row) if row is not None else None

    def find_or_create(
        self,
        catalog_id: int,
        candidate: CanonicalGame | None = None,
    ) -> CanonicalGame:
        """Return the stored game for ``catalog_id``, inserting it when missing.

        An existing row is returned unchanged. Without ``candidate`` the
        attributes are fetched from the catalog source by id.
        """

        existing = self.get_by_catalog_id(catalog_id)
        if existing is not None:
            return existing

        if candidate is None or candidate.external_catalog_id != catalog_id:
            payload = self._limiter.submit(self._source.get_by_id, catalog_id)
            if not payload:
                raise CatalogGameNotFoundError(f"catalog game {catalog_id} not found")
            candidate = CanonicalGame.from_payload(payload)

        timestamp = now_utc()
        values = {
            "external_catalog_id": catalog_id,
            "name": candidate.name,
            "slug": candidate.slug,
            "cover_url": candidate.cover_url,
            "genres": encode_name_list(sorted(candidate.genres)),
            "platforms": encode_name_list(sorted(candidate.platforms)),
            "release_date": candidate.release_date,
            "rating": candidate.rating,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        try:
            with self._database.begin() as conn:
                conn.execute(insert(schema.games).values(**values))
        except IntegrityError:
            # Another run stored the same catalog id first.
            logger.debug("Catalog game %s inserted concurrently", catalog_id)

        stored = self.get_by_catalog_id(catalog_id)
        if stored is None:  # pragma: no cover - insert succeeded or raced
            raise CatalogError(f"failed to store catalog game {catalog_id}")
        logger.info("Cached catalog game %s (%s)", stored.name, catalog_id)
        return stored

    @staticmethod
    def _to_games(items: Iterable[Mapping[str, Any]]) -> list[CanonicalGame]:
        games: list[CanonicalGame] = []
        for item in items or []:
            try:
                game = CanonicalGame.from_payload(item)
            except ValueError:
                logger.warning("Skipping catalog candidate without id: %r", item)
                continue
            if game.name:
                games.append(game)
        return games


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


__all__ = [
    "CanonicalGame",
    "CatalogError",
    "CatalogGameNotFoundError",
    "CatalogLookup",
    "CatalogSource",
    "CatalogUnavailableError",
]
