"""Drive one library sync for a ``(user, platform)`` pair.

A run moves through ``fetching -> searching -> resolving -> merging ->
finalizing`` and ends ``completed`` or ``failed``. Only failures while
fetching or searching abort the run; anything raised while resolving or
merging a single record is logged and counted against that record.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from catalog.service import CanonicalGame, CatalogLookup
from matching.normalizer import core_title, normalize, simplify_title
from matching.resolver import MatchResolver, MatchResult
from platforms.base import ExternalGameRecord
from platforms.registry import PLATFORM_CONFIG, AdapterRegistry
from sync.connections import ConnectionStore, PlatformConnection
from sync.library import MERGE_ADDED, MERGE_UPDATED, LibraryStore
from sync.locks import KeyedLocks
from sync.models import ProgressEvent, SyncRunResult, SyncState, UnrecognizedTitle

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]

FETCH_DONE_PERCENT = 10
SEARCH_DONE_PERCENT = 30
RESOLVE_DONE_PERCENT = 95


class _ProgressReporter:
    """Forward progress events with a never-decreasing percentage."""

    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback
        self._last = 0

    def emit(self, percent: int, message: str, state: SyncState) -> None:
        self._last = max(self._last, min(max(int(percent), 0), 100))
        if self._callback is None:
            return
        event = ProgressEvent(message=message, progress_percent=self._last, state=state)
        try:
            self._callback(event)
        except Exception:
            logger.warning("Progress callback failed", exc_info=True)


@dataclass
class _Candidates:
    """Candidate sets for one run, keyed by case-folded core title."""

    local: dict[str, list[CanonicalGame]] = field(default_factory=dict)
    external: dict[str, list[CanonicalGame]] = field(default_factory=dict)

    def for_core(self, core: str) -> tuple[list[CanonicalGame], list[CanonicalGame], bool]:
        key = core.casefold()
        searched = key in self.external
        return self.local.get(key, []), self.external.get(key, []), searched


class SyncOrchestrator:
    """Coordinates adapters, catalog lookup, matching and library merge."""

    def __init__(
        self,
        *,
        registry: AdapterRegistry,
        catalog: CatalogLookup,
        resolver: MatchResolver,
        library: LibraryStore,
        connections: ConnectionStore,
        locks: KeyedLocks | None = None,
        progress_every: int = 10,
        normalizer: Callable[[str], str] = normalize,
    ) -> None:
        self._registry = registry
        self._catalog = catalog
        self._resolver = resolver
        self._library = library
        self._connections = connections
        self._locks = locks or KeyedLocks()
        self._progress_every = max(1, int(progress_every))
        self._normalize = normalizer

    @property
    def locks(self) -> KeyedLocks:
        return self._locks

    def connect(self, user_id: str, platform: str, payload: Mapping[str, Any]) -> PlatformConnection:
        key = _platform_key(platform)
        adapter = self._registry.get(key)
        credentials = adapter.connect(payload or {})
        return self._connections.upsert(user_id, key, credentials)

    def disconnect(self, user_id: str, platform: str) -> int:
        """Remove the connection and every library entry it produced."""

        key = _platform_key(platform)
        self._connections.require(user_id, key)
        with self._locks.hold(user_id, key):
            removed = self._library.delete_for_platform(user_id, key)
            self._connections.delete(user_id, key)
        logger.info("Removed %s %s library entries for user %s", removed, key, user_id)
        return removed

    def status(self, user_id: str) -> list[dict[str, Any]]:
        statuses = []
        for connection in self._connections.list_for_user(user_id):
            payload = connection.to_status_dict()
            descriptor = PLATFORM_CONFIG.get(connection.platform)
            payload["name"] = descriptor.name if descriptor else connection.platform
            payload["syncInProgress"] = self._locks.is_held((user_id, connection.platform))
            statuses.append(payload)
        return statuses

    def sync(
        self,
        user_id: str,
        platform: str,
        on_progress: ProgressCallback | None = None,
    ) -> SyncRunResult:
        """Run one sync and return its counters.

        Raises :class:`sync.connections.ConnectionNotFoundError` when the
        platform is not connected and :class:`sync.locks.SyncInProgressError`
        when another run holds the same key. Fatal run errors are recorded on
        the connection and re-raised.
        """

        key = _platform_key(platform)
        connection = self._connections.require(user_id, key)
        with self._locks.hold(user_id, key):
            return self._run(connection, _ProgressReporter(on_progress))

    def sync_all(
        self,
        user_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> list[dict[str, Any]]:
        """Sync every active connection, reporting each outcome separately."""

        results: list[dict[str, Any]] = []
        for connection in self._connections.list_for_user(user_id):
            if not connection.is_active:
                continue
            try:
                result = self.sync(user_id, connection.platform, on_progress)
            except Exception as exc:
                logger.warning("Sync of %s failed for user %s: %s", connection.platform, user_id, exc)
                results.append(
                    {"platform": connection.platform, "success": False, "error": str(exc)}
                )
                continue
            results.append(result.to_dict())
        return results

    def _run(self, connection: PlatformConnection, reporter: _ProgressReporter) -> SyncRunResult:
        user_id = connection.user_id
        platform = connection.platform
        label = _platform_label(platform)
        try:
            reporter.emit(0, f"Fetching {label} library", SyncState.FETCHING)
            adapter = self._registry.get(platform)
            records = adapter.fetch_library(connection.credentials())
            reporter.emit(
                FETCH_DONE_PERCENT, f"Found {len(records)} games on {label}", SyncState.FETCHING
            )

            reporter.emit(FETCH_DONE_PERCENT, "Searching the game catalog", SyncState.SEARCHING)
            candidates = self._search(records)
            reporter.emit(SEARCH_DONE_PERCENT, "Catalog search complete", SyncState.SEARCHING)
        except Exception as exc:
            self._fail(user_id, platform, exc)
            raise

        result = SyncRunResult(platform=platform, total=len(records))
        self._resolve_all(user_id, platform, records, candidates, result, reporter)

        try:
            self._connections.record_success(user_id, platform)
        except Exception as exc:
            self._fail(user_id, platform, exc)
            raise
        reporter.emit(100, "Sync complete", SyncState.COMPLETED)
        logger.info(
            "Synced %s for user %s: %s added, %s updated, %s failed of %s",
            platform,
            user_id,
            result.added,
            result.updated,
            result.failed,
            result.total,
        )
        return result

    def _search(self, records: Sequence[ExternalGameRecord]) -> _Candidates:
        cores = _unique_cores(records)
        candidates = _Candidates()
        if not cores:
            return candidates

        for title, games in self._catalog.search_local(cores).items():
            candidates.local[title.casefold()] = games

        titles_by_core = _titles_by_core(records)
        remaining = [
            core
            for core in cores
            if not self._all_matched_locally(
                titles_by_core[core.casefold()], candidates.local.get(core.casefold(), [])
            )
        ]
        if remaining:
            for title, games in self._catalog.search_titles(remaining).items():
                candidates.external[title.casefold()] = games
        logger.debug(
            "%s distinct titles; %s answered locally, %s searched externally",
            len(cores),
            len(cores) - len(remaining),
            len(remaining),
        )
        return candidates

    def _all_matched_locally(self, titles: Sequence[str], games: Sequence[CanonicalGame]) -> bool:
        # Every record sharing the core needs a full-title hit, not just the core.
        if not games:
            return False
        names = {game.name for game in games}
        normalized = {self._normalize(game.name) for game in games}
        for title in titles:
            target = self._normalize(title)
            if title not in names and not (target and target in normalized):
                return False
        return True

    def _resolve_all(
        self,
        user_id: str,
        platform: str,
        records: Sequence[ExternalGameRecord],
        candidates: _Candidates,
        result: SyncRunResult,
        reporter: _ProgressReporter,
    ) -> None:
        total = len(records)
        step = min(self._progress_every, max(1, math.ceil(total * 0.05)))
        span = RESOLVE_DONE_PERCENT - SEARCH_DONE_PERCENT
        for index, record in enumerate(records, start=1):
            try:
                match = self._match(record, platform, candidates)
                if match is None:
                    result.failed += 1
                    result.not_recognized.append(
                        UnrecognizedTitle(
                            raw_title=record.name,
                            normalized_title=self._normalize(record.name),
                            platform=platform,
                            metadata=dict(record.metadata),
                        )
                    )
                    logger.info("No catalog match for %s title %r", platform, record.name)
                else:
                    outcome = self._merge(user_id, platform, record, match)
                    if outcome == MERGE_ADDED:
                        result.added += 1
                    elif outcome == MERGE_UPDATED:
                        result.updated += 1
            except Exception:
                result.failed += 1
                logger.exception("Failed to sync %s title %r", platform, record.name)
            if index % step == 0 or index == total:
                reporter.emit(
                    SEARCH_DONE_PERCENT + span * index // total,
                    f"Processed {index} of {total} games",
                    SyncState.RESOLVING,
                )

    def _match(
        self,
        record: ExternalGameRecord,
        platform: str,
        candidates: _Candidates,
    ) -> MatchResult | None:
        core = _core_of(record)
        local, external, searched = candidates.for_core(core)
        allow_alias = searched and not external
        match = self._resolver.resolve(
            record.name, platform, local, external, allow_alias=allow_alias
        )
        if match is not None:
            return match
        simplified = simplify_title(record.name)
        if not simplified or simplified == record.name.strip():
            return None
        logger.debug("Retrying %r as %r", record.name, simplified)
        return self._resolver.resolve(
            simplified, platform, local, external, allow_alias=allow_alias
        )

    def _merge(
        self,
        user_id: str,
        platform: str,
        record: ExternalGameRecord,
        match: MatchResult,
    ) -> str:
        game = match.game
        if game.id is None:
            game = self._catalog.find_or_create(game.external_catalog_id, game)
        logger.debug(
            "Matched %r to %r via %s (%s)", record.name, game.name, match.method, match.confidence
        )
        return self._library.merge(
            user_id,
            game.id,
            platform,
            playtime_minutes=record.playtime_minutes,
            last_played_at=record.last_played_at,
        )

    def _fail(self, user_id: str, platform: str, exc: Exception) -> None:
        logger.error("Sync of %s failed for user %s: %s", platform, user_id, exc)
        try:
            self._connections.record_failure(user_id, platform, str(exc) or type(exc).__name__)
        except Exception:
            logger.exception("Could not record sync failure for %s/%s", user_id, platform)


def _platform_key(platform: str) -> str:
    return (platform or "").strip().lower()


def _platform_label(platform: str) -> str:
    descriptor = PLATFORM_CONFIG.get(platform)
    return descriptor.name if descriptor else platform


def _core_of(record: ExternalGameRecord) -> str:
    return core_title(record.name) or (record.name or "").strip()


def _unique_cores(records: Sequence[ExternalGameRecord]) -> list[str]:
    seen: set[str] = set()
    cores: list[str] = []
    for record in records:
        core = _core_of(record)
        key = core.casefold()
        if not core or key in seen:
            continue
        seen.add(key)
        cores.append(core)
    return cores


def _titles_by_core(records: Sequence[ExternalGameRecord]) -> dict[str, list[str]]:
    grouped: dict[str, list[str]] = {}
    for record in records:
        core = _core_of(record)
        if core:
            grouped.setdefault(core.casefold(), []).append((record.name or "").strip())
    return grouped


__all__ = [
    "FETCH_DONE_PERCENT",
    "ProgressCallback",
    "RESOLVE_DONE_PERCENT",
    "SEARCH_DONE_PERCENT",
    "SyncOrchestrator",
]
