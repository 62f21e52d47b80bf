import pytest

from matching.normalizer import (
    TitleNormalizer,
    configure_default_normalizer,
    core_title,
    normalize,
    simplify_title,
)


SAMPLE_TITLES = [
    "Game X™ (PlayStation®5)",
    "Game X - PS5",
    "Game X PS5",
    "The Witcher 3: Wild Hunt - Game of the Year Edition",
    "DOOM Eternal (PC) Deluxe Edition",
    "Forza Horizon 5 – Xbox Series X|S",
    "Halo Infinite (Xbox One & PC)",
    "Hollow Knight: Voidheart Edition",
    "Marvel's Spider-Man Remastered",
    "Sea of Thieves Closed Beta",
    "Apex Legends EU",
    "Baldur's Gate 3",
    "  ",
    "",
    "PS5",
    "Tom Clancy's Rainbow Six® Siege",
    "Cyberpunk 2077 & PS5 & PS4",
    "FINAL FANTASY VII REMAKE INTERGRADE (PS4 & PS5)",
]


@pytest.mark.parametrize("title", SAMPLE_TITLES)
def test_normalize_is_idempotent(title):
    once = normalize(title)
    assert normalize(once) == once


def test_platform_decorations_normalize_identically():
    expected = normalize("Game X")
    assert expected == "game x"
    assert normalize("Game X™ (PlayStation®5)") == expected
    assert normalize("Game X - PS5") == expected
    assert normalize("Game X PS5") == expected


def test_normalize_strips_edition_and_separators():
    assert normalize("The Witcher 3: Wild Hunt - Game of the Year Edition") == "the witcher 3 wild hunt"
    assert normalize("The Witcher 3: Wild Hunt - GOTY") == "the witcher 3 wild hunt"
    assert normalize("DOOM Eternal Deluxe Edition") == "doom eternal"


def test_normalize_strips_build_and_region_suffixes():
    assert normalize("Sea of Thieves Closed Beta") == "sea of thieves"
    assert normalize("Apex Legends EU") == "apex legends"
    assert normalize("Hades Early Access") == "hades"


def test_normalize_strips_trademarks_and_apostrophes():
    assert normalize("Tom Clancy's Rainbow Six® Siege") == "tom clancys rainbow six siege"


def test_normalize_keeps_non_platform_parentheticals():
    assert normalize("Prey (2017)") == "prey 2017"


def test_normalize_handles_empty_input():
    assert normalize("") == ""
    assert normalize(None) == ""


def test_configured_normalizer_extends_patterns():
    configure_default_normalizer(
        TitleNormalizer(edition_suffixes=("remastered",))
    )
    assert normalize("Marvel's Spider-Man Remastered") == "marvels spider man"


def test_simplify_title_keeps_text_before_colon():
    assert simplify_title("Game X: Director's Cut") == "Game X"
    assert simplify_title("Game X") == ""
    assert simplify_title(None) == ""


def test_core_title_drops_subtitles_and_platform_tokens():
    assert core_title("Elden Ring: Shadow of the Erdtree") == "Elden Ring"
    assert core_title("Game X™ (PlayStation®5)") == "Game X"
    assert core_title("Forza Horizon 5 - Xbox Series X|S") == "Forza Horizon 5"
    assert core_title("Celeste") == "Celeste"


@pytest.mark.parametrize("count", [1, 11, 40])
def test_normalize_removes_any_number_of_stacked_suffixes(count):
    title = "Game" + " demo" * count
    assert normalize(title) == "game"
    assert normalize(title + " Beta GOTY Edition" * count) == "game"


def test_strip_platform_parentheticals_keeps_other_groups():
    stripped = TitleNormalizer().strip_platform_parentheticals("Halo (Xbox One & PC) (Director's Cut)")
    assert "Xbox" not in stripped
    assert stripped.startswith("Halo")
    assert stripped.endswith("(Director's Cut)")
