import pytest

from catalog.mappings import (
    MappingConflictError,
    MappingError,
    MappingNotFoundError,
    TitleMappingStore,
)
from tests.app_helpers import insert_game


def test_create_and_get_mapping(database):
    game_id = insert_game(database, 1, "Halo: The Master Chief Collection")
    store = TitleMappingStore(database)

    mapping = store.create("Xbox", "  Halo MCC ", game_id)

    assert mapping.platform == "xbox"
    assert mapping.original_title == "Halo MCC"
    assert mapping.normalized_title == "halo mcc"
    assert mapping.game_id == game_id
    assert store.get("xbox", "Halo MCC") == mapping
    assert store.get("steam", "Halo MCC") is None
    assert mapping.to_dict()["originalTitle"] == "Halo MCC"


def test_duplicate_mapping_conflicts(database):
    game_id = insert_game(database, 1, "Hades")
    store = TitleMappingStore(database)
    store.create("steam", "Hades", game_id)

    with pytest.raises(MappingConflictError):
        store.create("STEAM", "Hades", game_id)


def test_mapping_requires_existing_game(database):
    store = TitleMappingStore(database)
    with pytest.raises(MappingNotFoundError):
        store.create("steam", "Hades", 404)


def test_mapping_rejects_blank_keys(database):
    store = TitleMappingStore(database)
    with pytest.raises(MappingError):
        store.create("", "Hades", 1)
    with pytest.raises(MappingError):
        store.create("steam", "   ", 1)
    with pytest.raises(MappingError):
        store.create("steam", "Hades", "not-a-number")


def test_list_mappings_filters_and_pages(database):
    game_id = insert_game(database, 1, "Hades")
    store = TitleMappingStore(database)
    store.create("steam", "b title", game_id)
    store.create("steam", "A title", game_id)
    store.create("xbox", "C title", game_id)

    items, total = store.list_mappings(platform="steam")
    assert total == 2
    assert [item.original_title for item in items] == ["A title", "b title"]

    items, total = store.list_mappings(limit=1, offset=1)
    assert total == 3
    assert [item.original_title for item in items] == ["b title"]


def test_delete_mapping(database):
    game_id = insert_game(database, 1, "Hades")
    store = TitleMappingStore(database)
    store.create("steam", "Hades", game_id)

    store.delete("steam", "Hades")

    assert store.get("steam", "Hades") is None
    with pytest.raises(MappingNotFoundError):
        store.delete("steam", "Hades")
