"""Idempotent merge of matched platform records into a user's library."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import delete as sa_delete, insert, select, update as sa_update
from sqlalchemy.exc import IntegrityError

from db import schema
from db.utils import DatabaseEngine
from helpers import coerce_datetime, now_utc
from sync.models import STATUS_OWNED, STATUS_PLAYING

logger = logging.getLogger(__name__)

MERGE_ADDED = "added"
MERGE_UPDATED = "updated"
MERGE_UNCHANGED = "unchanged"


@dataclass(frozen=True)
class LibraryEntry:
    id: int
    user_id: str
    game_id: int
    platform: str
    status: str
    playtime_minutes: int
    last_played_at: datetime | None
    favorite: bool

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "LibraryEntry":
        return cls(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            game_id=int(row["game_id"]),
            platform=str(row["platform"]),
            status=str(row["status"]),
            playtime_minutes=int(row["playtime_minutes"] or 0),
            last_played_at=coerce_datetime(row.get("last_played_at")),
            favorite=bool(row.get("favorite")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "gameId": self.game_id,
            "platform": self.platform,
            "status": self.status,
            "playtimeMinutes": self.playtime_minutes,
            "lastPlayedAt": self.last_played_at.isoformat() if self.last_played_at else None,
            "favorite": self.favorite,
        }


def initial_status(playtime_minutes: int) -> str:
    return STATUS_PLAYING if playtime_minutes > 0 else STATUS_OWNED


class LibraryStore:
    """Reads and writes ``library_entries`` rows.

    :meth:`merge` runs its read and conditional write inside one transaction
    so that concurrent runs resolving to the same game cannot lose updates.
    """

    def __init__(self, database: DatabaseEngine) -> None:
        self._database = database

    def get(self, user_id: str, game_id: int, platform: str) -> LibraryEntry | None:
        table = schema.library_entries
        with self._database.connect() as conn:
            row = conn.execute(
                select(table).where(
                    table.c.user_id == user_id,
                    table.c.game_id == game_id,
                    table.c.platform == platform,
                )
            ).mappings().first()
        return LibraryEntry.from_row(row) if row is not None else None

    def list_for_user(self, user_id: str, *, platform: str | None = None) -> list[LibraryEntry]:
        table = schema.library_entries
        conditions = [table.c.user_id == user_id]
        if platform:
            conditions.append(table.c.platform == platform)
        with self._database.connect() as conn:
            rows = conn.execute(
                select(table).where(*conditions).order_by(table.c.id)
            ).mappings().all()
        return [LibraryEntry.from_row(row) for row in rows]

    def merge(
        self,
        user_id: str,
        game_id: int,
        platform: str,
        *,
        playtime_minutes: int,
        last_played_at: datetime | None,
    ) -> str:
        """Create or advance the entry; return ``added``, ``updated`` or ``unchanged``.

        Playtime never decreases and ``last_played_at`` never moves backwards.
        """

        playtime = max(int(playtime_minutes or 0), 0)
        incoming_played = coerce_datetime(last_played_at)
        table = schema.library_entries
        timestamp = now_utc()
        try:
            with self._database.begin() as conn:
                row = conn.execute(
                    select(table).where(
                        table.c.user_id == user_id,
                        table.c.game_id == game_id,
                        table.c.platform == platform,
                    )
                ).mappings().first()
                if row is None:
                    conn.execute(
                        insert(table).values(
                            user_id=user_id,
                            game_id=game_id,
                            platform=platform,
                            status=initial_status(playtime),
                            playtime_minutes=playtime,
                            last_played_at=incoming_played,
                            favorite=False,
                            created_at=timestamp,
                            updated_at=timestamp,
                        )
                    )
                    return MERGE_ADDED
                return self._advance(conn, row, playtime, incoming_played, timestamp)
        except IntegrityError:
            # A concurrent run inserted the row first; merge into it instead.
            logger.debug(
                "Library entry for %s/%s/%s created concurrently", user_id, game_id, platform
            )
            with self._database.begin() as conn:
                row = conn.execute(
                    select(table).where(
                        table.c.user_id == user_id,
                        table.c.game_id == game_id,
                        table.c.platform == platform,
                    )
                ).mappings().one()
                return self._advance(conn, row, playtime, incoming_played, timestamp)

    @staticmethod
    def _advance(
        conn: Any,
        row: Mapping[str, Any],
        playtime: int,
        incoming_played: datetime | None,
        timestamp: datetime,
    ) -> str:
        stored_playtime = int(row["playtime_minutes"] or 0)
        stored_played = coerce_datetime(row["last_played_at"])
        changes: dict[str, Any] = {}
        if playtime > stored_playtime:
            changes["playtime_minutes"] = playtime
        if incoming_played is not None and (
            stored_played is None or incoming_played > stored_played
        ):
            changes["last_played_at"] = incoming_played
        if not changes:
            return MERGE_UNCHANGED
        changes["updated_at"] = timestamp
        table = schema.library_entries
        conn.execute(sa_update(table).where(table.c.id == row["id"]).values(**changes))
        return MERGE_UPDATED

    def delete_for_platform(self, user_id: str, platform: str) -> int:
        table = schema.library_entries
        with self._database.begin() as conn:
            result = conn.execute(
                sa_delete(table).where(
                    table.c.user_id == user_id,
                    table.c.platform == platform,
                )
            )
        return int(result.rowcount or 0)


__all__ = [
    "LibraryEntry",
    "LibraryStore",
    "MERGE_ADDED",
    "MERGE_UNCHANGED",
    "MERGE_UPDATED",
    "initial_status",
]
