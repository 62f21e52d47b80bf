"""Table definitions for the library synchronization database."""

from __future__ import annotations

import logging

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

from db.utils import DatabaseEngine

logger = logging.getLogger(__name__)

metadata = MetaData()

GAMES_TABLE = "games"
TITLE_MAPPINGS_TABLE = "title_mappings"
LIBRARY_ENTRIES_TABLE = "library_entries"
PLATFORM_CONNECTIONS_TABLE = "platform_connections"

games = Table(
    GAMES_TABLE,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("external_catalog_id", BigInteger, nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("slug", String(255)),
    Column("cover_url", String(512)),
    Column("genres", Text),
    Column("platforms", Text),
    Column("release_date", String(32)),
    Column("rating", Float),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
)

title_mappings = Table(
    TITLE_MAPPINGS_TABLE,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("platform", String(32), nullable=False),
    Column("original_title", String(512), nullable=False),
    Column("normalized_title", String(512), nullable=False),
    Column("game_id", Integer, ForeignKey(f"{GAMES_TABLE}.id"), nullable=False),
    Column("created_at", DateTime(timezone=True)),
    UniqueConstraint("platform", "original_title", name="uq_title_mapping"),
)

library_entries = Table(
    LIBRARY_ENTRIES_TABLE,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False),
    Column("game_id", Integer, ForeignKey(f"{GAMES_TABLE}.id"), nullable=False),
    Column("platform", String(32), nullable=False),
    Column("status", String(32), nullable=False),
    Column("playtime_minutes", Integer, nullable=False, default=0),
    Column("last_played_at", DateTime(timezone=True)),
    Column("favorite", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
    UniqueConstraint("user_id", "game_id", "platform", name="uq_library_entry"),
)

platform_connections = Table(
    PLATFORM_CONNECTIONS_TABLE,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False),
    Column("platform", String(32), nullable=False),
    Column("platform_user_id", String(128)),
    Column("platform_username", String(128)),
    Column("access_token", Text),
    Column("refresh_token", Text),
    Column("token_expires_at", DateTime(timezone=True)),
    Column("last_sync_at", DateTime(timezone=True)),
    Column("last_sync_error", Text),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True)),
    UniqueConstraint("user_id", "platform", name="uq_platform_connection"),
)


def init_db(database: DatabaseEngine) -> None:
    """Create any missing tables."""

    metadata.create_all(database.engine)
    logger.debug("Database schema ensured on %s", database.dialect_name)


__all__ = [
    "GAMES_TABLE",
    "LIBRARY_ENTRIES_TABLE",
    "PLATFORM_CONNECTIONS_TABLE",
    "TITLE_MAPPINGS_TABLE",
    "games",
    "init_db",
    "library_entries",
    "metadata",
    "platform_connections",
    "title_mappings",
]
