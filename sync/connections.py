"""Per-user platform connections and their sync health."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import delete as sa_delete, insert, select, update as sa_update

from db import schema
from db.utils import DatabaseEngine
from helpers import coerce_datetime, now_utc
from platforms.base import PlatformCredentials

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 2000


class ConnectionNotFoundError(LookupError):
    """Raised when a user has not connected the requested platform."""

    def __init__(self, user_id: str, platform: str):
        self.user_id = user_id
        self.platform = platform
        super().__init__("Platform not connected")


@dataclass(frozen=True)
class PlatformConnection:
    id: int
    user_id: str
    platform: str
    platform_user_id: str | None
    platform_username: str | None
    access_token: str | None
    refresh_token: str | None
    token_expires_at: datetime | None
    last_sync_at: datetime | None
    last_sync_error: str | None
    is_active: bool
    created_at: datetime | None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PlatformConnection":
        return cls(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            platform=str(row["platform"]),
            platform_user_id=row.get("platform_user_id"),
            platform_username=row.get("platform_username"),
            access_token=row.get("access_token"),
            refresh_token=row.get("refresh_token"),
            token_expires_at=coerce_datetime(row.get("token_expires_at")),
            last_sync_at=coerce_datetime(row.get("last_sync_at")),
            last_sync_error=row.get("last_sync_error"),
            is_active=bool(row.get("is_active")),
            created_at=coerce_datetime(row.get("created_at")),
        )

    def credentials(self) -> PlatformCredentials:
        return PlatformCredentials(
            platform_user_id=self.platform_user_id or "",
            platform_username=self.platform_username,
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            token_expires_at=self.token_expires_at,
        )

    def to_status_dict(self) -> dict[str, Any]:
        """Return the public view; tokens are never exposed."""

        return {
            "platform": self.platform,
            "platformUsername": self.platform_username,
            "lastSyncAt": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "lastSyncError": self.last_sync_error,
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class ConnectionStore:
    def __init__(self, database: DatabaseEngine) -> None:
        self._database = database

    def get(self, user_id: str, platform: str) -> PlatformConnection | None:
        table = schema.platform_connections
        with self._database.connect() as conn:
            row = conn.execute(
                select(table).where(
                    table.c.user_id == user_id,
                    table.c.platform == platform,
                )
            ).mappings().first()
        return PlatformConnection.from_row(row) if row is not None else None

    def require(self, user_id: str, platform: str) -> PlatformConnection:
        connection = self.get(user_id, platform)
        if connection is None:
            raise ConnectionNotFoundError(user_id, platform)
        return connection

    def list_for_user(self, user_id: str) -> list[PlatformConnection]:
        table = schema.platform_connections
        with self._database.connect() as conn:
            rows = conn.execute(
                select(table).where(table.c.user_id == user_id).order_by(table.c.platform)
            ).mappings().all()
        return [PlatformConnection.from_row(row) for row in rows]

    def upsert(
        self,
        user_id: str,
        platform: str,
        credentials: PlatformCredentials,
    ) -> PlatformConnection:
        """Create the connection or refresh its credentials and reactivate it."""

        table = schema.platform_connections
        values = {
            "platform_user_id": credentials.platform_user_id,
            "platform_username": credentials.platform_username,
            "access_token": credentials.access_token,
            "refresh_token": credentials.refresh_token,
            "token_expires_at": credentials.token_expires_at,
            "is_active": True,
            "last_sync_error": None,
        }
        with self._database.begin() as conn:
            existing = conn.execute(
                select(table.c.id).where(
                    table.c.user_id == user_id,
                    table.c.platform == platform,
                )
            ).scalar_one_or_none()
            if existing is None:
                conn.execute(
                    insert(table).values(
                        user_id=user_id,
                        platform=platform,
                        created_at=now_utc(),
                        **values,
                    )
                )
            else:
                conn.execute(sa_update(table).where(table.c.id == existing).values(**values))
        logger.info("Connected %s for user %s", platform, user_id)
        return self.require(user_id, platform)

    def delete(self, user_id: str, platform: str) -> None:
        table = schema.platform_connections
        with self._database.begin() as conn:
            result = conn.execute(
                sa_delete(table).where(
                    table.c.user_id == user_id,
                    table.c.platform == platform,
                )
            )
        if not result.rowcount:
            raise ConnectionNotFoundError(user_id, platform)
        logger.info("Disconnected %s for user %s", platform, user_id)

    def record_success(self, user_id: str, platform: str, *, when: datetime | None = None) -> None:
        self._update(
            user_id,
            platform,
            last_sync_at=when or now_utc(),
            last_sync_error=None,
        )

    def record_failure(self, user_id: str, platform: str, message: str) -> None:
        text = (message or "sync failed").strip()[:_MAX_ERROR_LENGTH]
        self._update(user_id, platform, last_sync_error=text)

    def _update(self, user_id: str, platform: str, **values: Any) -> None:
        table = schema.platform_connections
        with self._database.begin() as conn:
            conn.execute(
                sa_update(table)
                .where(table.c.user_id == user_id, table.c.platform == platform)
                .values(**values)
            )


__all__ = ["ConnectionNotFoundError", "ConnectionStore", "PlatformConnection"]
