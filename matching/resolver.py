"""Cascading resolution of a platform title to a canonical game.

Layers are tried in order and the first one that yields a game wins:

``mapped`` (100)
    an operator mapping for ``(platform, raw title)``
``exact`` (100)
    case-insensitive equality with a candidate name
``normalized`` (95)
    equality after :func:`matching.normalizer.normalize`
``alias`` (90)
    alternate-name search, only when the external search found nothing
``fuzzy`` (similarity x 100)
    best normalized edit-distance similarity at or above the threshold
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Protocol, Sequence

from catalog.service import CanonicalGame
from matching.normalizer import normalize
from matching.similarity import similarity

logger = logging.getLogger(__name__)

METHOD_MAPPED = "mapped"
METHOD_EXACT = "exact"
METHOD_NORMALIZED = "normalized"
METHOD_ALIAS = "alias"
METHOD_FUZZY = "fuzzy"

MATCH_METHODS = (
    METHOD_MAPPED,
    METHOD_EXACT,
    METHOD_NORMALIZED,
    METHOD_ALIAS,
    METHOD_FUZZY,
)

DEFAULT_FUZZY_THRESHOLD = 0.75


class MappingLookup(Protocol):
    def get(self, platform: str, original_title: str) -> Any: ...


class GameLookup(Protocol):
    def get_game(self, game_id: int) -> CanonicalGame | None: ...

    def alias_search(self, title: str) -> CanonicalGame | None: ...


@dataclass(frozen=True)
class MatchResult:
    game: CanonicalGame
    confidence: int
    method: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "game": self.game.to_dict(),
            "confidence": self.confidence,
            "method": self.method,
        }


class MatchResolver:
    """Resolve raw platform titles against local and external candidates."""

    def __init__(
        self,
        mappings: MappingLookup,
        catalog: GameLookup,
        *,
        threshold: float = DEFAULT_FUZZY_THRESHOLD,
        normalizer: Callable[[str], str] = normalize,
    ) -> None:
        if not 0 < threshold <= 1:
            raise ValueError("threshold must be within (0, 1]")
        self._mappings = mappings
        self._catalog = catalog
        self._threshold = threshold
        self._normalize = normalizer

    @property
    def threshold(self) -> float:
        return self._threshold

    def resolve(
        self,
        raw_title: str,
        platform: str,
        local_cache: Sequence[CanonicalGame] = (),
        external_candidates: Sequence[CanonicalGame] = (),
        *,
        allow_alias: bool | None = None,
    ) -> MatchResult | None:
        """Return the first match produced by the cascade, or ``None``.

        Alias search runs only when ``external_candidates`` is empty; pass
        ``allow_alias=False`` for titles answered from the local cache that
        were never searched externally.
        """

        title = (raw_title or "").strip()
        if not title:
            return None

        mapped = self._match_mapping(title, platform)
        if mapped is not None:
            return mapped

        candidates = _unique_candidates(list(local_cache) + list(external_candidates))

        exact = self._match_exact(title, candidates)
        if exact is not None:
            return exact

        normalized_query = self._normalize(title)
        normalized_names = [self._normalize(game.name) for game in candidates]

        if normalized_query:
            for game, name in zip(candidates, normalized_names):
                if name == normalized_query:
                    return MatchResult(game, 95, METHOD_NORMALIZED)

        if not external_candidates and allow_alias is not False:
            alias = self._catalog.alias_search(title)
            if alias is not None:
                return MatchResult(alias, 90, METHOD_ALIAS)

        if not normalized_query:
            return None
        return self._match_fuzzy(normalized_query, candidates, normalized_names)

    def _match_mapping(self, title: str, platform: str) -> MatchResult | None:
        mapping = self._mappings.get(platform, title)
        if mapping is None:
            return None
        game = self._catalog.get_game(mapping.game_id)
        if game is None:
            logger.warning(
                "Mapping for %s:%r points at missing game %s",
                platform,
                title,
                mapping.game_id,
            )
            return None
        return MatchResult(game, 100, METHOD_MAPPED)

    @staticmethod
    def _match_exact(title: str, candidates: Iterable[CanonicalGame]) -> MatchResult | None:
        key = title.casefold()
        for game in candidates:
            if game.name.strip().casefold() == key:
                return MatchResult(game, 100, METHOD_EXACT)
        return None

    def _match_fuzzy(
        self,
        normalized_query: str,
        candidates: Sequence[CanonicalGame],
        normalized_names: Sequence[str],
    ) -> MatchResult | None:
        best_game: CanonicalGame | None = None
        best_score = -1.0
        for game, name in zip(candidates, normalized_names):
            if not name:
                continue
            score = similarity(normalized_query, name)
            # Strictly greater keeps the first candidate on ties.
            if score > best_score:
                best_game, best_score = game, score
        if best_game is None or best_score < self._threshold:
            return None
        return MatchResult(best_game, round(best_score * 100), METHOD_FUZZY)


def _unique_candidates(candidates: Iterable[CanonicalGame]) -> list[CanonicalGame]:
    seen: set[int] = set()
    unique: list[CanonicalGame] = []
    for game in candidates:
        if game.external_catalog_id in seen:
            continue
        seen.add(game.external_catalog_id)
        unique.append(game)
    return unique


__all__ = [
    "DEFAULT_FUZZY_THRESHOLD",
    "MATCH_METHODS",
    "METHOD_ALIAS",
    "METHOD_EXACT",
    "METHOD_FUZZY",
    "METHOD_MAPPED",
    "METHOD_NORMALIZED",
    "MatchResolver",
    "MatchResult",
]
