import os
import re
import logging
import logging.config
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

from flask import Flask

import config as app_config
from config import (
    APP_SECRET_KEY,
    DB_CONNECT_TIMEOUT_SECONDS,
    DB_DSN,
    IGDB_MAX_RETRIES,
    IGDB_REQUESTS_PER_SECOND,
    IGDB_SEARCH_BATCH_SIZE,
    IGDB_USER_AGENT,
    LOG_FILE,
    MATCH_FUZZY_THRESHOLD,
    NORMALIZER_EXTRA_EDITION_SUFFIXES,
    NORMALIZER_EXTRA_PLATFORM_TOKENS,
    OPENXBL_API_KEY,
    STEAM_API_KEY,
    SYNC_PROGRESS_EVERY,
    TWITCH_CLIENT_ID,
    TWITCH_CLIENT_SECRET,
    XBOX_BUDGET_WINDOW_SECONDS,
    XBOX_HOURLY_REQUEST_BUDGET,
)
from catalog.mappings import TitleMappingStore
from catalog.service import CatalogLookup, CatalogSource
from db import utils as db_utils
from db.schema import init_db
from igdb.client import IGDBClient
from init import initialize_app
from jobs import manager as jobs_manager
from matching.normalizer import (
    DEFAULT_EDITION_SUFFIXES,
    DEFAULT_PLATFORM_TOKENS,
    TitleNormalizer,
    configure_default_normalizer,
)
from matching.resolver import MatchResolver
from platforms.base import PlatformAdapter
from platforms.registry import AdapterRegistry
from platforms.steam import SteamAdapter
from platforms.xbox import XboxAdapter
from ratelimit.queueing import QueueingRateLimiter
from ratelimit.windowed import WindowedBudgetLimiter
from routes import mappings as routes_mappings
from routes import sync as routes_sync
from sync.connections import ConnectionStore
from sync.library import LibraryStore
from sync.models import ProgressEvent
from sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


def _determine_log_level(flask_app: Flask) -> int:
    if flask_app.debug:
        return logging.DEBUG
    env_value = str(flask_app.config.get('ENV', '')).lower()
    if env_value == 'development':
        return logging.DEBUG
    if os.environ.get('FLASK_DEBUG', '').lower() in {'1', 'true', 'yes', 'on'}:
        return logging.DEBUG
    return logging.INFO


def _configure_logging(flask_app: Flask) -> None:
    log_level = _determine_log_level(flask_app)
    log_path = Path(LOG_FILE)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        pass

    for handler in list(flask_app.logger.handlers):
        flask_app.logger.removeHandler(handler)

    logging.config.dictConfig(
        {
            'version': 1,
            'disable_existing_loggers': False,
            'formatters': {
                'standard': {
                    'format': '%(asctime)s %(levelname)s [%(name)s] %(message)s',
                    'datefmt': '%Y-%m-%d %H:%M:%S',
                }
            },
            'handlers': {
                'console': {
                    'class': 'logging.StreamHandler',
                    'formatter': 'standard',
                    'level': log_level,
                    'stream': 'ext://sys.stdout',
                },
                'file': {
                    'class': 'logging.handlers.RotatingFileHandler',
                    'formatter': 'standard',
                    'level': logging.DEBUG,
                    'filename': os.fspath(log_path),
                    'maxBytes': 5 * 1024 * 1024,
                    'backupCount': 5,
                    'encoding': 'utf-8',
                },
            },
            'root': {
                'level': log_level,
                'handlers': ['console', 'file'],
            },
        }
    )

    flask_app.logger = logging.getLogger(flask_app.import_name)
    flask_app.logger.setLevel(log_level)
    logger.setLevel(log_level)


def build_normalizer(
    extra_platform_tokens: Iterable[str] = NORMALIZER_EXTRA_PLATFORM_TOKENS,
    extra_edition_suffixes: Iterable[str] = NORMALIZER_EXTRA_EDITION_SUFFIXES,
) -> TitleNormalizer:
    """Return the default normalizer extended with configured tokens."""

    # Configured platform tokens are literal text, the defaults are patterns.
    platform_tokens = DEFAULT_PLATFORM_TOKENS + tuple(
        re.escape(token) for token in extra_platform_tokens
    )
    edition_suffixes = DEFAULT_EDITION_SUFFIXES + tuple(extra_edition_suffixes)
    return TitleNormalizer(
        platform_tokens=platform_tokens,
        edition_suffixes=edition_suffixes,
    )


def _default_adapters(xbox_limiter: WindowedBudgetLimiter) -> list[PlatformAdapter]:
    return [
        SteamAdapter(STEAM_API_KEY),
        XboxAdapter(OPENXBL_API_KEY, xbox_limiter),
    ]


def build_services(
    database: db_utils.DatabaseEngine,
    *,
    catalog_source: Optional[CatalogSource] = None,
    adapters: Optional[Iterable[PlatformAdapter]] = None,
    job_manager: Optional[jobs_manager.BackgroundJobManager] = None,
) -> dict[str, Any]:
    """Wire the sync engine around ``database``.

    The returned mapping doubles as the blueprint context. Omitted
    collaborators fall back to the configured IGDB client, the Steam and
    Xbox adapters and the process-wide job manager.
    """

    catalog_limiter = QueueingRateLimiter(IGDB_REQUESTS_PER_SECOND)
    xbox_limiter = WindowedBudgetLimiter(
        XBOX_HOURLY_REQUEST_BUDGET,
        window_seconds=XBOX_BUDGET_WINDOW_SECONDS,
    )
    source = catalog_source or IGDBClient(
        client_id=TWITCH_CLIENT_ID,
        client_secret=TWITCH_CLIENT_SECRET,
        user_agent=IGDB_USER_AGENT,
        max_retries=IGDB_MAX_RETRIES,
    )
    catalog = CatalogLookup(
        database, source, catalog_limiter, batch_size=IGDB_SEARCH_BATCH_SIZE
    )
    mapping_store = TitleMappingStore(database)
    resolver = MatchResolver(mapping_store, catalog, threshold=MATCH_FUZZY_THRESHOLD)

    registry = AdapterRegistry()
    for adapter in adapters if adapters is not None else _default_adapters(xbox_limiter):
        registry.register(adapter)

    library = LibraryStore(database)
    connections = ConnectionStore(database)
    orchestrator = SyncOrchestrator(
        registry=registry,
        catalog=catalog,
        resolver=resolver,
        library=library,
        connections=connections,
        progress_every=SYNC_PROGRESS_EVERY,
    )

    return {
        'database': database,
        'catalog_limiter': catalog_limiter,
        'xbox_limiter': xbox_limiter,
        'catalog': catalog,
        'mapping_store': mapping_store,
        'resolver': resolver,
        'registry': registry,
        'library': library,
        'connections': connections,
        'orchestrator': orchestrator,
        'job_manager': job_manager or jobs_manager.get_job_manager(),
    }


def _ensure_dirs() -> None:
    Path(LOG_FILE).parent.mkdir(parents=True, exist_ok=True)


app = Flask(__name__)
app.secret_key = APP_SECRET_KEY
_configure_logging(app)

configure_default_normalizer(build_normalizer())

db = initialize_app(
    ensure_dirs=_ensure_dirs,
    init_db=init_db,
    engine_factory=lambda: db_utils.build_engine_from_dsn(
        DB_DSN, timeout=DB_CONNECT_TIMEOUT_SECONDS
    ),
    validate_credentials=app_config.validate_igdb_credentials,
)

services: dict[str, Any] = build_services(db)


def install_services(new_services: Mapping[str, Any], flask_app: Flask | None = None) -> None:
    """Swap the live services, e.g. for fakes, and refresh the blueprints."""

    services.clear()
    services.update(new_services)
    configure_blueprints(flask_app or app)


def _execute_sync_job(
    progress_callback: Callable[..., None],
    *,
    user_id: str,
    platform: str,
) -> dict[str, Any]:
    """Background job runner that relays sync progress to the job record."""

    def _relay(event: ProgressEvent) -> None:
        progress_callback(
            event.progress_percent,
            event.message,
            data={'state': event.state.value},
        )

    orchestrator: SyncOrchestrator = services['orchestrator']
    result = orchestrator.sync(user_id, platform, on_progress=_relay)
    return result.to_dict()


def configure_blueprints(flask_app: Flask) -> None:
    routes_sync.configure({
        'registry': services['registry'],
        'orchestrator': services['orchestrator'],
        'connections': services['connections'],
        'xbox_limiter': services['xbox_limiter'],
        'job_manager': services['job_manager'],
    })

    routes_mappings.configure({
        'mapping_store': services['mapping_store'],
    })

    if 'sync' not in flask_app.blueprints:
        flask_app.register_blueprint(routes_sync.sync_blueprint)
    if 'mappings' not in flask_app.blueprints:
        flask_app.register_blueprint(routes_mappings.mappings_blueprint)


from web.app_factory import create_app

app = create_app(app, configure_blueprints=configure_blueprints)


if __name__ == '__main__':
    app.run(debug=True)
