"""Operator-curated overrides from a platform title to a canonical game."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping

from sqlalchemy import delete as sa_delete, func, insert, select
from sqlalchemy.exc import IntegrityError

from db import schema
from db.utils import DatabaseEngine
from helpers import coerce_datetime, coerce_int, now_utc
from matching.normalizer import normalize

logger = logging.getLogger(__name__)


class MappingError(RuntimeError):
    """Base class for title mapping failures."""


class MappingConflictError(MappingError):
    """Raised when a mapping already exists for ``(platform, original_title)``."""


class MappingNotFoundError(MappingError):
    """Raised when a mapping or its target game cannot be located."""


@dataclass(frozen=True)
class TitleMapping:
    id: int
    platform: str
    original_title: str
    normalized_title: str
    game_id: int
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TitleMapping":
        return cls(
            id=int(row["id"]),
            platform=str(row["platform"]),
            original_title=str(row["original_title"]),
            normalized_title=str(row["normalized_title"] or ""),
            game_id=int(row["game_id"]),
            created_at=coerce_datetime(row.get("created_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "platform": self.platform,
            "originalTitle": self.original_title,
            "normalizedTitle": self.normalized_title,
            "gameId": self.game_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def _clean_key(platform: str, original_title: str) -> tuple[str, str]:
    platform_key = (platform or "").strip().lower()
    title = (original_title or "").strip()
    if not platform_key:
        raise MappingError("platform is required")
    if not title:
        raise MappingError("original title is required")
    return platform_key, title


class TitleMappingStore:
    """Persistence for :class:`TitleMapping` rows.

    At most one mapping exists per ``(platform, original_title)``; the unique
    constraint on the table backs the check performed in :meth:`create`.
    """

    def __init__(
        self,
        database: DatabaseEngine,
        *,
        normalizer: Callable[[str], str] = normalize,
    ) -> None:
        self._database = database
        self._normalize = normalizer

    def get(self, platform: str, original_title: str) -> TitleMapping | None:
        """Return the mapping for ``(platform, original_title)`` or ``None``."""

        try:
            platform_key, title = _clean_key(platform, original_title)
        except MappingError:
            return None
        table = schema.title_mappings
        with self._database.connect() as conn:
            row = conn.execute(
                select(table).where(
                    table.c.platform == platform_key,
                    table.c.original_title == title,
                )
            ).mappings().first()
        return TitleMapping.from_row(row) if row is not None else None

    def list_mappings(
        self,
        *,
        platform: str | None = None,
        limit: int = 200,
        offset: int = 0,
    ) -> tuple[list[TitleMapping], int]:
        """Return mappings ordered by platform and title, plus the total count."""

        table = schema.title_mappings
        conditions = []
        if platform:
            conditions.append(table.c.platform == platform.strip().lower())
        with self._database.connect() as conn:
            total = conn.execute(
                select(func.count()).select_from(table).where(*conditions)
            ).scalar_one()
            rows = conn.execute(
                select(table)
                .where(*conditions)
                .order_by(table.c.platform, func.lower(table.c.original_title), table.c.id)
                .limit(max(limit, 0))
                .offset(max(offset, 0))
            ).mappings().all()
        return [TitleMapping.from_row(row) for row in rows], int(total or 0)

    def create(self, platform: str, original_title: str, game_id: Any) -> TitleMapping:
        """Store a new mapping; raise :class:`MappingConflictError` if one exists."""

        platform_key, title = _clean_key(platform, original_title)
        target_id = coerce_int(game_id)
        if target_id is None:
            raise MappingError("game id must be an integer")

        games = schema.games
        table = schema.title_mappings
        try:
            with self._database.begin() as conn:
                game_exists = conn.execute(
                    select(games.c.id).where(games.c.id == target_id)
                ).scalar_one_or_none()
                if game_exists is None:
                    raise MappingNotFoundError(f"game {target_id} not found")
                existing = conn.execute(
                    select(table.c.id).where(
                        table.c.platform == platform_key,
                        table.c.original_title == title,
                    )
                ).scalar_one_or_none()
                if existing is not None:
                    raise MappingConflictError(
                        f"mapping already exists for {platform_key!r} title {title!r}"
                    )
                conn.execute(
                    insert(table).values(
                        platform=platform_key,
                        original_title=title,
                        normalized_title=self._normalize(title),
                        game_id=target_id,
                        created_at=now_utc(),
                    )
                )
        except IntegrityError as exc:
            raise MappingConflictError(
                f"mapping already exists for {platform_key!r} title {title!r}"
            ) from exc

        mapping = self.get(platform_key, title)
        if mapping is None:  # pragma: no cover - inserted above
            raise MappingError("failed to store mapping")
        logger.info(
            "Created title mapping %s:%r -> game %s", platform_key, title, target_id
        )
        return mapping

    def delete(self, platform: str, original_title: str) -> None:
        """Remove the mapping; raise :class:`MappingNotFoundError` if missing."""

        platform_key, title = _clean_key(platform, original_title)
        table = schema.title_mappings
        with self._database.begin() as conn:
            result = conn.execute(
                sa_delete(table).where(
                    table.c.platform == platform_key,
                    table.c.original_title == title,
                )
            )
        if not result.rowcount:
            raise MappingNotFoundError(
                f"no mapping for {platform_key!r} title {title!r}"
            )
        logger.info("Deleted title mapping %s:%r", platform_key, title)


__all__ = [
    "MappingConflictError",
    "MappingError",
    "MappingNotFoundError",
    "TitleMapping",
    "TitleMappingStore",
]
