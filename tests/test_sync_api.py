import pytest

from jobs import manager as jobs_manager
from jobs.manager import BackgroundJobManager
from platforms.base import AuthExpiredError
from ratelimit.windowed import RateLimitExceededError
from tests.app_helpers import (
    USER_HEADERS,
    FakeAdapter,
    FakeCatalogSource,
    FakeRedis,
    FakeTask,
    catalog_game,
    insert_game,
    install_fakes,
    load_app,
    parse_sse,
    record,
)


@pytest.fixture
def app_module(tmp_path):
    return load_app(tmp_path)


def _setup(app_module, *, records=(), games=(), error=None):
    adapter = FakeAdapter("steam", records, error=error)
    services = install_fakes(
        app_module,
        catalog_source=FakeCatalogSource(games),
        adapters=[adapter],
        job_manager=BackgroundJobManager(FakeRedis()),
    )
    return app_module.app.test_client(), services


def _connect(client, platform="steam", payload=None, headers=USER_HEADERS):
    return client.post(f"/api/sync/{platform}", json=payload or {}, headers=headers)


def test_platforms_lists_descriptors_and_availability(app_module):
    client, _ = _setup(app_module)

    response = client.get("/api/sync/platforms")

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["steam"]["available"] is True
    assert data["xbox"]["available"] is False
    assert data["psn"]["experimental"] is True
    assert data["psn"]["authType"] == "npsso"


def test_user_endpoints_require_authentication(app_module):
    client, _ = _setup(app_module)

    response = client.get("/api/sync/status")

    assert response.status_code == 401
    assert response.get_json() == {"error": "Authentication required."}


def test_connect_sync_and_status(app_module):
    client, services = _setup(
        app_module,
        records=[record("Elden Ring", 600)],
        games=[catalog_game(42, "Elden Ring")],
    )

    connected = _connect(client, payload={"accountId": "7656", "username": "tarnished"})
    assert connected.status_code == 200
    assert connected.get_json()["data"]["platformUsername"] == "tarnished"

    synced = client.post("/api/sync/steam/sync", headers=USER_HEADERS)
    assert synced.status_code == 200
    result = synced.get_json()["data"]
    assert (result["added"], result["updated"], result["failed"], result["total"]) == (1, 0, 0, 1)
    assert result["notRecognized"] == []

    [status] = client.get("/api/sync/status", headers=USER_HEADERS).get_json()["data"]
    assert status["platform"] == "steam"
    assert status["lastSyncAt"] is not None
    assert status["lastSyncError"] is None
    [entry] = services["library"].list_for_user("user-1")
    assert entry.playtime_minutes == 600


def test_sync_without_connection_is_not_found(app_module):
    client, _ = _setup(app_module)

    response = client.post("/api/sync/steam/sync", headers=USER_HEADERS)

    assert response.status_code == 404
    assert response.get_json() == {"error": "Platform not connected"}


def test_connecting_unimplemented_platform_is_bad_request(app_module):
    client, _ = _setup(app_module)

    response = _connect(client, platform="psn", payload={"npsso": "token"})

    assert response.status_code == 400
    assert response.get_json()["error"] == "psn sync not yet implemented"


def test_rate_limited_fetch_returns_quota(app_module):
    client, _ = _setup(app_module, error=RateLimitExceededError(0, 42, limit=100))
    _connect(client)

    response = client.post("/api/sync/steam/sync", headers=USER_HEADERS)

    assert response.status_code == 429
    body = response.get_json()
    assert body["remaining"] == 0
    assert body["minutesUntilReset"] == 42
    assert body["limit"] == 100


def test_expired_credentials_are_reported_as_upstream_error(app_module):
    client, services = _setup(app_module, error=AuthExpiredError("Steam rejected the stored credentials (401)"))
    _connect(client)

    response = client.post("/api/sync/steam/sync", headers=USER_HEADERS)

    assert response.status_code == 502
    assert response.get_json()["code"] == "auth_expired"
    connection = services["connections"].get("user-1", "steam")
    assert connection.last_sync_error == "Steam rejected the stored credentials (401)"


def test_running_sync_conflicts(app_module):
    client, services = _setup(app_module, records=[record("Hades")])
    _connect(client)

    with services["orchestrator"].locks.hold("user-1", "steam"):
        response = client.post("/api/sync/steam/sync", headers=USER_HEADERS)

    assert response.status_code == 409


def test_progress_stream_ends_with_complete_event(app_module):
    client, _ = _setup(
        app_module,
        records=[record("Hades", 5), record("Celeste")],
        games=[catalog_game(1, "Hades"), catalog_game(2, "Celeste")],
    )
    _connect(client)

    response = client.get("/api/sync/steam/progress", headers=USER_HEADERS)

    assert response.status_code == 200
    assert response.mimetype == "text/event-stream"
    events = parse_sse(response.get_data(as_text=True))
    assert events[0]["type"] == "progress"
    assert events[0]["progressPercent"] == 0
    progress = [event["progressPercent"] for event in events if event["type"] == "progress"]
    assert progress == sorted(progress)
    assert events[-1]["type"] == "complete"
    assert events[-1]["added"] == 2


def test_progress_stream_reports_errors(app_module):
    client, _ = _setup(app_module)

    response = client.get("/api/sync/steam/progress", headers=USER_HEADERS)

    events = parse_sse(response.get_data(as_text=True))
    assert events == [{"type": "error", "message": "Platform not connected"}]


def test_sync_all_reports_each_connection(app_module):
    client, _ = _setup(app_module, records=[record("Hades")], games=[catalog_game(1, "Hades")])
    _connect(client)

    response = client.post("/api/sync/all", headers=USER_HEADERS)

    [result] = response.get_json()["data"]
    assert result["platform"] == "steam"
    assert result["added"] == 1


def test_disconnect_removes_library_entries(app_module):
    client, services = _setup(app_module, records=[record("Hades")], games=[catalog_game(1, "Hades")])
    _connect(client)
    client.post("/api/sync/steam/sync", headers=USER_HEADERS)

    response = client.delete("/api/sync/disconnect/steam", headers=USER_HEADERS)

    assert response.status_code == 200
    assert response.get_json()["data"]["removedEntries"] == 1
    assert services["library"].list_for_user("user-1") == []
    assert client.post("/api/sync/steam/sync", headers=USER_HEADERS).status_code == 404
    assert client.delete("/api/sync/disconnect/steam", headers=USER_HEADERS).status_code == 404


def test_xbox_quota_reports_budget(app_module):
    client, services = _setup(app_module)
    services["xbox_limiter"].try_acquire()

    response = client.get("/api/sync/xbox/quota", headers=USER_HEADERS)

    data = response.get_json()["data"]
    assert data["limit"] == services["xbox_limiter"].limit
    assert data["remaining"] == data["limit"] - 1
    assert data["minutesUntilReset"] == 60


def test_mapping_crud(app_module):
    client, services = _setup(app_module)
    game_id = insert_game(services["database"], 1, "Halo: The Master Chief Collection")
    body = {"platform": "xbox", "originalTitle": "Halo MCC", "gameId": game_id}

    created = client.post("/api/sync/mappings", json=body, headers=USER_HEADERS)
    assert created.status_code == 201
    assert created.get_json()["data"]["normalizedTitle"] == "halo mcc"

    duplicate = client.post("/api/sync/mappings", json=body, headers=USER_HEADERS)
    assert duplicate.status_code == 409

    missing_game = client.post(
        "/api/sync/mappings",
        json={"platform": "xbox", "originalTitle": "Other", "gameId": 9999},
        headers=USER_HEADERS,
    )
    assert missing_game.status_code == 404

    listing = client.get("/api/sync/mappings?platform=xbox&limit=500", headers=USER_HEADERS)
    payload = listing.get_json()["data"]
    assert payload["total"] == 1
    assert payload["limit"] == 200
    assert payload["hasMore"] is False

    deleted = client.delete(
        "/api/sync/mappings",
        json={"platform": "xbox", "originalTitle": "Halo MCC"},
        headers=USER_HEADERS,
    )
    assert deleted.status_code == 200
    again = client.delete(
        "/api/sync/mappings",
        json={"platform": "xbox", "originalTitle": "Halo MCC"},
        headers=USER_HEADERS,
    )
    assert again.status_code == 404


def test_mapping_requires_json_body(app_module):
    client, _ = _setup(app_module)
    response = client.post("/api/sync/mappings", data="nope", headers=USER_HEADERS)
    assert response.status_code == 400


def test_mapped_title_is_used_during_sync(app_module):
    client, services = _setup(app_module, records=[record("Halo MCC")])
    game_id = insert_game(services["database"], 1, "Halo: The Master Chief Collection")
    services["mapping_store"].create("steam", "Halo MCC", game_id)
    _connect(client)

    result = client.post("/api/sync/steam/sync", headers=USER_HEADERS).get_json()["data"]

    assert result["added"] == 1
    assert services["library"].get("user-1", game_id, "steam") is not None


def test_sync_job_is_enqueued_once(app_module, monkeypatch):
    task = FakeTask()
    monkeypatch.setattr(jobs_manager, "run_background_job", task)
    client, _ = _setup(app_module)
    _connect(client)

    first = client.post("/api/sync/steam/jobs", headers=USER_HEADERS)
    second = client.post("/api/sync/steam/jobs", headers=USER_HEADERS)

    assert first.status_code == 202
    assert second.status_code == 200
    job = first.get_json()["data"]["job"]
    assert second.get_json()["data"]["job"]["id"] == job["id"]
    assert second.get_json()["data"]["created"] is False
    assert first.headers["Location"].endswith(f"/api/sync/jobs/{job['id']}")
    assert task.signatures == [
        {
            "job_id": job["id"],
            "job_type": "sync:user-1:steam",
            "runner_path": "app:_execute_sync_job",
            "runner_kwargs": {"user_id": "user-1", "platform": "steam"},
        }
    ]

    detail = client.get(f"/api/sync/jobs/{job['id']}", headers=USER_HEADERS)
    assert detail.status_code == 200
    assert detail.get_json()["data"]["status"] == "pending"

    other_user = client.get(f"/api/sync/jobs/{job['id']}", headers={"X-User-Id": "user-2"})
    assert other_user.status_code == 404


def test_sync_job_requires_connection(app_module, monkeypatch):
    monkeypatch.setattr(jobs_manager, "run_background_job", FakeTask())
    client, _ = _setup(app_module)

    response = client.post("/api/sync/steam/jobs", headers=USER_HEADERS)

    assert response.status_code == 404


def test_job_runner_relays_progress(app_module):
    _setup(app_module, records=[record("Hades", 5)], games=[catalog_game(1, "Hades")])
    app_module.services["orchestrator"].connect("user-1", "steam", {})
    calls = []

    def progress(percent, message, *, data=None):
        calls.append((percent, message, data))

    result = app_module._execute_sync_job(progress, user_id="user-1", platform="steam")

    assert result["added"] == 1
    assert calls[0][0] == 0
    assert calls[-1] == (100, "Sync complete", {"state": "completed"})


def test_unknown_api_route_returns_json_error(app_module):
    client, _ = _setup(app_module)

    response = client.get("/api/does-not-exist")

    assert response.status_code == 404
    assert "error" in response.get_json()
