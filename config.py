"""Application-wide configuration helpers and constants."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Final
from urllib.parse import quote_plus

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent

load_dotenv(BASE_DIR / ".env")


logger = logging.getLogger(__name__)


def _clean_text(value: str | None) -> str:
    """Return ``value`` stripped of surrounding whitespace."""

    if value is None:
        return ""
    return value.strip()


def _path_from(env_value: str | None, default: str | Path) -> Path:
    """Resolve a filesystem path using an environment override when provided."""

    text = _clean_text(env_value)
    candidate = Path(text) if text else Path(default)
    candidate = candidate.expanduser()
    if candidate.is_absolute():
        try:
            return candidate.resolve()
        except (OSError, RuntimeError):  # pragma: no cover - fallback for exotic paths
            return candidate
    return candidate


def _coerce_positive_float(value: str | None, default: float) -> float:
    """Return ``value`` coerced to a positive float or ``default`` when invalid."""

    text = _clean_text(value)
    if not text:
        return default
    try:
        numeric = float(text)
    except (TypeError, ValueError):
        return default
    return numeric if numeric > 0 else default


def _coerce_positive_int(value: str | None, default: int) -> int:
    """Return ``value`` coerced to a positive integer or ``default`` when invalid."""

    text = _clean_text(value)
    if not text:
        return default
    try:
        numeric = int(float(text))
    except (TypeError, ValueError):
        return default
    return numeric if numeric > 0 else default


def _coerce_truthy_env(value: str | None) -> bool:
    """Return ``True`` when ``value`` represents an affirmative flag."""

    if value is None:
        return False
    text = value.strip().lower()
    return text in {"1", "true", "yes", "on"}


def _coerce_ratio(value: str | None, default: float) -> float:
    """Return ``value`` as a float in ``(0, 1]`` or ``default`` when invalid."""

    numeric = _coerce_positive_float(value, default)
    return numeric if numeric <= 1 else default


def _split_csv(value: str | None) -> tuple[str, ...]:
    """Return the non-empty, lower-cased items of a comma separated value."""

    text = _clean_text(value)
    if not text:
        return ()
    return tuple(item.strip().lower() for item in text.split(",") if item.strip())


LOG_DIR_PATH: Final[Path] = _path_from(os.environ.get("LOG_DIR"), BASE_DIR / "logs")
LOG_DIR: Final[str] = os.fspath(LOG_DIR_PATH)
LOG_FILE_PATH: Final[Path] = _path_from(
    os.environ.get("LOG_FILE"), LOG_DIR_PATH / "app.log"
)
LOG_FILE: Final[str] = os.fspath(LOG_FILE_PATH)

DB_HOST: Final[str] = _clean_text(os.environ.get("DB_HOST")) or "localhost"
DB_PORT: Final[int] = _coerce_positive_int(os.environ.get("DB_PORT"), 3306)
DB_NAME: Final[str] = _clean_text(os.environ.get("DB_NAME")) or "library_sync"
DB_USER: Final[str] = _clean_text(os.environ.get("DB_USER"))
DB_PASSWORD: Final[str] = _clean_text(os.environ.get("DB_PASSWORD"))
DB_PATH: Final[Path] = _path_from(
    os.environ.get("DB_PATH"), BASE_DIR / "library_sync.db"
)


def _build_db_dsn() -> str:
    """Return a database DSN constructed from environment configuration."""

    maria_overrides = {
        key: _clean_text(os.environ.get(key))
        for key in ("DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD")
    }
    if any(value for value in maria_overrides.values()):
        auth = ""
        if DB_USER:
            password = quote_plus(DB_PASSWORD) if DB_PASSWORD else ""
            auth = DB_USER
            if password:
                auth = f"{auth}:{password}"
            auth = f"{auth}@"
        return f"mariadb://{auth}{DB_HOST}:{DB_PORT}/{DB_NAME}"

    sqlite_path = DB_PATH.resolve()
    return f"sqlite:///{sqlite_path.as_posix()}"


DB_DSN: Final[str] = _build_db_dsn()

DB_CONNECT_TIMEOUT_SECONDS: Final[float] = _coerce_positive_float(
    os.environ.get("DB_CONNECT_TIMEOUT"), 10.0
)

DEFAULT_IGDB_USER_AGENT: Final[str] = "library-sync/1.0 (support@example.com)"
IGDB_USER_AGENT: Final[str] = (
    _clean_text(os.environ.get("IGDB_USER_AGENT")) or DEFAULT_IGDB_USER_AGENT
)
TWITCH_CLIENT_ID: Final[str] = _clean_text(os.environ.get("TWITCH_CLIENT_ID"))
TWITCH_CLIENT_SECRET: Final[str] = _clean_text(os.environ.get("TWITCH_CLIENT_SECRET"))
IGDB_ENABLED: bool = True

IGDB_REQUESTS_PER_SECOND: Final[int] = _coerce_positive_int(
    os.environ.get("IGDB_REQUESTS_PER_SECOND"), 4
)
IGDB_SEARCH_BATCH_SIZE: Final[int] = min(
    _coerce_positive_int(os.environ.get("IGDB_SEARCH_BATCH_SIZE"), 10), 10
)
IGDB_MAX_RETRIES: Final[int] = _coerce_positive_int(
    os.environ.get("IGDB_MAX_RETRIES"), 3
)

XBOX_HOURLY_REQUEST_BUDGET: Final[int] = _coerce_positive_int(
    os.environ.get("XBOX_HOURLY_REQUEST_BUDGET"), 100
)
XBOX_BUDGET_WINDOW_SECONDS: Final[float] = _coerce_positive_float(
    os.environ.get("XBOX_BUDGET_WINDOW_SECONDS"), 3600.0
)

MATCH_FUZZY_THRESHOLD: Final[float] = _coerce_ratio(
    os.environ.get("MATCH_FUZZY_THRESHOLD"), 0.75
)
NORMALIZER_EXTRA_EDITION_SUFFIXES: Final[tuple[str, ...]] = _split_csv(
    os.environ.get("NORMALIZER_EXTRA_EDITION_SUFFIXES")
)
NORMALIZER_EXTRA_PLATFORM_TOKENS: Final[tuple[str, ...]] = _split_csv(
    os.environ.get("NORMALIZER_EXTRA_PLATFORM_TOKENS")
)

SYNC_PROGRESS_EVERY: Final[int] = _coerce_positive_int(
    os.environ.get("SYNC_PROGRESS_EVERY"), 10
)

STEAM_API_KEY: Final[str] = _clean_text(os.environ.get("STEAM_API_KEY"))
OPENXBL_API_KEY: Final[str] = _clean_text(os.environ.get("OPENXBL_API_KEY"))

APP_SECRET_KEY: Final[str] = _clean_text(os.environ.get("APP_SECRET_KEY")) or "dev-secret"

CELERY_DEFAULT_URL: Final[str] = "redis://localhost:6379/0"
CELERY_BROKER_URL: Final[str] = (
    _clean_text(os.environ.get("CELERY_BROKER_URL")) or CELERY_DEFAULT_URL
)
CELERY_RESULT_BACKEND: Final[str] = (
    _clean_text(os.environ.get("CELERY_RESULT_BACKEND")) or CELERY_BROKER_URL
)
CELERY_TASK_ALWAYS_EAGER: Final[bool] = _coerce_truthy_env(
    os.environ.get("CELERY_TASK_ALWAYS_EAGER")
)
JOB_REDIS_URL: Final[str] = (
    _clean_text(os.environ.get("JOB_REDIS_URL")) or CELERY_RESULT_BACKEND
)


def validate_igdb_credentials() -> bool:
    """Ensure IGDB credentials are configured and update ``IGDB_ENABLED``."""

    global IGDB_ENABLED

    missing = [
        name
        for name, value in (
            ("TWITCH_CLIENT_ID", TWITCH_CLIENT_ID),
            ("TWITCH_CLIENT_SECRET", TWITCH_CLIENT_SECRET),
        )
        if not value
    ]

    IGDB_ENABLED = not missing
    if missing:
        logger.error(
            "Missing required IGDB credentials; set %s.", " and ".join(missing)
        )

    return IGDB_ENABLED


def _validate_settings() -> None:
    """Sanity-check critical configuration values."""

    if not APP_SECRET_KEY:
        raise RuntimeError("APP_SECRET_KEY must not be empty")


_validate_settings()


__all__ = [
    "APP_SECRET_KEY",
    "BASE_DIR",
    "CELERY_BROKER_URL",
    "CELERY_DEFAULT_URL",
    "CELERY_RESULT_BACKEND",
    "CELERY_TASK_ALWAYS_EAGER",
    "DB_CONNECT_TIMEOUT_SECONDS",
    "DB_DSN",
    "DB_HOST",
    "DB_NAME",
    "DB_PASSWORD",
    "DB_PATH",
    "DB_PORT",
    "DB_USER",
    "DEFAULT_IGDB_USER_AGENT",
    "IGDB_ENABLED",
    "IGDB_MAX_RETRIES",
    "IGDB_REQUESTS_PER_SECOND",
    "IGDB_SEARCH_BATCH_SIZE",
    "IGDB_USER_AGENT",
    "JOB_REDIS_URL",
    "LOG_DIR",
    "LOG_DIR_PATH",
    "LOG_FILE",
    "LOG_FILE_PATH",
    "MATCH_FUZZY_THRESHOLD",
    "NORMALIZER_EXTRA_EDITION_SUFFIXES",
    "NORMALIZER_EXTRA_PLATFORM_TOKENS",
    "OPENXBL_API_KEY",
    "STEAM_API_KEY",
    "SYNC_PROGRESS_EVERY",
    "TWITCH_CLIENT_ID",
    "TWITCH_CLIENT_SECRET",
    "XBOX_BUDGET_WINDOW_SECONDS",
    "XBOX_HOURLY_REQUEST_BUDGET",
    "validate_igdb_credentials",
]
