"""Application startup orchestration helpers."""

from __future__ import annotations

import logging
from typing import Callable

from db import utils as db_utils

logger = logging.getLogger(__name__)


def initialize_app(
    *,
    ensure_dirs: Callable[[], None],
    init_db: Callable[[db_utils.DatabaseEngine], None],
    engine_factory: Callable[[], db_utils.DatabaseEngine],
    validate_credentials: Callable[[], bool] | None = None,
) -> db_utils.DatabaseEngine:
    """Perform the core startup tasks required for the application.

    The initializer ensures filesystem directories exist, builds the database
    engine and creates any missing tables. Catalog credentials are checked
    last; missing credentials are logged but do not prevent startup because
    local matching and mapping administration still work without them.

    Parameters are injected so that the orchestration stays testable and
    reusable from scripts.
    """

    ensure_dirs()

    database = engine_factory()

    try:
        init_db(database)
    except Exception:
        logger.exception("Failed to prepare the library database during startup")
        raise

    if validate_credentials is not None and not validate_credentials():
        logger.warning("Catalog searches will fail until IGDB credentials are configured")

    return database


__all__ = ["initialize_app"]
