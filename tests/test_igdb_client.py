import io
from urllib.error import HTTPError

import pytest

from igdb.client import (
    IGDBClient,
    cover_url_from_cover,
    escape_query_text,
    iter_title_chunks,
)
from tests.app_helpers import FakeClock, FakeOpener

WITCHER_PAYLOAD = {
    "id": 1942,
    "name": " The Witcher 3: Wild Hunt ",
    "slug": "the-witcher-3-wild-hunt",
    "cover": {"image_id": "co1wyy"},
    "first_release_date": 1431993600,
    "genres": [{"name": "Role-playing (RPG)"}, {"name": "Adventure"}],
    "platforms": [{"name": "PC (Microsoft Windows)"}],
    "aggregated_rating": 92.5,
}


def _token(value="tok", expires_in=3600):
    return {"access_token": value, "expires_in": expires_in}


def _http_error(code, *, headers=None, body=b""):
    return HTTPError(
        "https://api.igdb.com/v4/games", code, "error", headers or {}, io.BytesIO(body)
    )


def _client(opener, clock=None):
    clock = clock or FakeClock(start=1000.0)
    return IGDBClient(
        client_id="client-id",
        client_secret="secret",
        opener=opener,
        clock=clock,
        sleep=clock.sleep,
        env={},
    )


def test_search_sends_multiquery_and_normalizes_results():
    opener = FakeOpener(
        _token(),
        [
            {"name": "0", "result": [WITCHER_PAYLOAD]},
            {"name": "1", "result": []},
        ],
    )
    client = _client(opener)

    results = client.search(["The Witcher 3", "Nothing Here"])

    token_request, search_request = opener.requests
    assert token_request.full_url == IGDBClient.TOKEN_URL
    assert search_request.full_url == "https://api.igdb.com/v4/multiquery"
    assert search_request.get_header("Authorization") == "Bearer tok"
    body = search_request.data.decode("utf-8")
    assert 'query games "0" { search "The Witcher 3";' in body
    assert 'query games "1" { search "Nothing Here";' in body
    assert results["Nothing Here"] == []
    assert results["The Witcher 3"] == [
        {
            "external_catalog_id": 1942,
            "name": "The Witcher 3: Wild Hunt",
            "slug": "the-witcher-3-wild-hunt",
            "cover_url": "https://images.igdb.com/igdb/image/upload/t_cover_big/co1wyy.jpg",
            "genres": ["Role-playing (RPG)", "Adventure"],
            "platforms": ["PC (Microsoft Windows)"],
            "release_date": "2015-05-19",
            "rating": 92.5,
        }
    ]


def test_access_token_is_cached_until_near_expiry():
    clock = FakeClock(start=1000.0)
    opener = FakeOpener(_token("first", expires_in=600), [], _token("second"), [])
    client = _client(opener, clock)

    assert client.get_by_id(1) is None
    clock.advance(299)
    assert client.access_token() == "first"
    clock.advance(2)
    assert client.get_by_id(1) is None

    urls = [request.full_url for request in opener.requests]
    assert urls == [
        IGDBClient.TOKEN_URL,
        "https://api.igdb.com/v4/games",
        IGDBClient.TOKEN_URL,
        "https://api.igdb.com/v4/games",
    ]
    assert opener.requests[-1].get_header("Authorization") == "Bearer second"


def test_throttled_request_is_retried_after_retry_after():
    clock = FakeClock(start=1000.0)
    opener = FakeOpener(
        _token(),
        _http_error(429, headers={"Retry-After": "2"}),
        [WITCHER_PAYLOAD],
    )
    client = _client(opener, clock)

    game = client.get_by_id(1942)

    assert game["external_catalog_id"] == 1942
    assert clock.sleeps == [2.0]


def test_unauthorized_response_discards_token():
    opener = FakeOpener(
        _token("stale"),
        _http_error(401, body=b'{"message":"Authorization Failure"}'),
        _token("fresh"),
        [],
    )
    client = _client(opener)

    with pytest.raises(RuntimeError) as excinfo:
        client.search_with_aliases("PUBG")
    assert str(excinfo.value).startswith("IGDB alias search failed: 401")
    assert "Authorization Failure" in str(excinfo.value)

    assert client.search_with_aliases("PUBG") == []
    assert opener.requests[2].full_url == IGDBClient.TOKEN_URL
    assert opener.requests[3].get_header("Authorization") == "Bearer fresh"


def test_alias_search_queries_alternative_names():
    opener = FakeOpener(_token(), [WITCHER_PAYLOAD])
    client = _client(opener)

    [game] = client.search_with_aliases('Witcher "3"')

    body = opener.requests[1].data.decode("utf-8")
    assert opener.requests[1].full_url == "https://api.igdb.com/v4/games"
    assert 'alternative_names.name ~ *"Witcher \\"3\\""*' in body
    assert game["name"] == "The Witcher 3: Wild Hunt"


def test_search_rejects_oversized_batches_without_requests():
    opener = FakeOpener()
    client = _client(opener)

    with pytest.raises(ValueError):
        client.search([f"Title {index}" for index in range(11)])
    assert client.search(["", ""]) == {}
    assert opener.requests == []


def test_missing_credentials_raise():
    client = IGDBClient(opener=FakeOpener(), env={})
    with pytest.raises(RuntimeError, match="missing twitch client credentials"):
        client.search(["Hades"])


def test_credentials_fall_back_to_environment():
    opener = FakeOpener(_token(), [])
    client = IGDBClient(
        opener=opener,
        env={"TWITCH_CLIENT_ID": "env-id", "TWITCH_CLIENT_SECRET": "env-secret"},
    )

    assert client.get_by_id(5) is None
    assert b"client_id=env-id" in opener.requests[0].data


def test_normalize_game_skips_invalid_entries():
    client = _client(FakeOpener())
    assert client.normalize_game({"id": "abc", "name": "Broken"}) is None
    assert client.normalize_game({"id": 5, "name": "  "}) is None
    normalized = client.normalize_game({"id": "7", "name": "Hades", "total_rating": "88.123"})
    assert normalized["external_catalog_id"] == 7
    assert normalized["rating"] == 88.12
    assert normalized["cover_url"] is None
    assert normalized["release_date"] is None


def test_query_helpers():
    assert escape_query_text('say "hi" \\ now') == 'say \\"hi\\" \\\\ now'
    assert cover_url_from_cover("abc", size="t_thumb") == (
        "https://images.igdb.com/igdb/image/upload/t_thumb/abc.jpg"
    )
    assert cover_url_from_cover({}) == ""
    chunks = list(iter_title_chunks([str(index) for index in range(12)], size=50))
    assert [len(chunk) for chunk in chunks] == [10, 2]
