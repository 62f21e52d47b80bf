import pytest

from catalog.service import (
    CanonicalGame,
    CatalogGameNotFoundError,
    CatalogLookup,
    CatalogUnavailableError,
)
from ratelimit.queueing import QueueingRateLimiter
from tests.app_helpers import FakeCatalogSource, catalog_game, insert_game


class CountingLimiter(QueueingRateLimiter):
    def __init__(self):
        super().__init__(1000)
        self.calls = 0

    def acquire(self):
        self.calls += 1
        super().acquire()


def _lookup(database, source, limiter=None, batch_size=10):
    return CatalogLookup(database, source, limiter or CountingLimiter(), batch_size=batch_size)


def test_search_titles_dedupes_and_chunks(database):
    source = FakeCatalogSource([catalog_game(1, "Title 3")])
    limiter = CountingLimiter()
    lookup = _lookup(database, source, limiter)
    titles = [f"Title {index}" for index in range(23)] + ["title 3", " Title 4 "]

    results = lookup.search_titles(titles)

    assert [len(call) for call in source.search_calls] == [10, 10, 3]
    assert limiter.calls == 3
    assert len(results) == 23
    assert [game.external_catalog_id for game in results["Title 3"]] == [1]
    assert results["Title 5"] == []


def test_search_titles_skips_failed_batches(database):
    source = FakeCatalogSource([catalog_game(7, "Hades")])
    source.fail_titles = {"Broken"}
    lookup = _lookup(database, source, batch_size=2)

    results = lookup.search_titles(["Broken", "Other", "Hades"])

    assert results["Broken"] == []
    assert results["Other"] == []
    assert [game.name for game in results["Hades"]] == ["Hades"]


def test_search_titles_raises_when_every_batch_fails(database):
    source = FakeCatalogSource()
    source.fail_everything = True
    lookup = _lookup(database, source, batch_size=1)

    with pytest.raises(CatalogUnavailableError):
        lookup.search_titles(["Hades", "Celeste"])


def test_search_titles_without_titles_does_not_call_source(database):
    source = FakeCatalogSource()
    assert _lookup(database, source).search_titles(["", "  "]) == {}
    assert source.search_calls == []


def test_batch_search_flattens_distinct_candidates(database):
    source = FakeCatalogSource(
        [catalog_game(1, "Hades"), catalog_game(2, "Hades II")]
    )
    games = _lookup(database, source).batch_search(["Hades", "Hades II"])
    assert [game.external_catalog_id for game in games] == [1, 2]


def test_alias_search_returns_first_candidate(database):
    source = FakeCatalogSource(
        aliases={"pubg": [catalog_game(27789, "PUBG: Battlegrounds"), catalog_game(1, "Other")]}
    )
    game = _lookup(database, source).alias_search("PUBG")
    assert game is not None
    assert game.external_catalog_id == 27789
    assert _lookup(database, source).alias_search("unknown") is None


def test_alias_search_swallows_source_errors(database):
    class ExplodingSource(FakeCatalogSource):
        def search_with_aliases(self, title):
            raise RuntimeError("IGDB alias search failed: 500")

    assert _lookup(database, ExplodingSource()).alias_search("Hades") is None


def test_find_or_create_inserts_once(database):
    source = FakeCatalogSource()
    lookup = _lookup(database, source)
    candidate = CanonicalGame.from_payload(
        catalog_game(42, "Elden Ring", genres=["RPG", "Action"], rating=94.5)
    )

    created = lookup.find_or_create(42, candidate)
    again = lookup.find_or_create(42)

    assert created.id is not None
    assert again.id == created.id
    assert created.genres == frozenset({"RPG", "Action"})
    assert created.rating == pytest.approx(94.5)
    assert source.id_calls == []


def test_find_or_create_fetches_missing_game_by_id(database):
    source = FakeCatalogSource([catalog_game(99, "Celeste")])
    lookup = _lookup(database, source)

    game = lookup.find_or_create(99)

    assert source.id_calls == [99]
    assert game.name == "Celeste"
    assert lookup.get_game(game.id) == game


def test_find_or_create_raises_for_unknown_id(database):
    with pytest.raises(CatalogGameNotFoundError):
        _lookup(database, FakeCatalogSource()).find_or_create(5)


def test_search_local_matches_substrings_case_insensitively(database):
    insert_game(database, 1, "Elden Ring")
    insert_game(database, 2, "Elden Ring: Shadow of the Erdtree")
    insert_game(database, 3, "100% Orange Juice")
    lookup = _lookup(database, FakeCatalogSource())

    results = lookup.search_local(["elden RING", "100%", "50%"])

    assert [game.external_catalog_id for game in results["elden RING"]] == [1, 2]
    assert [game.external_catalog_id for game in results["100%"]] == [3]
    assert results["50%"] == []


def test_canonical_game_requires_catalog_id():
    with pytest.raises(ValueError):
        CanonicalGame.from_payload({"name": "No id"})
