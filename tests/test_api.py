import asyncio
import base64
import json

import pytest
from fastapi.testclient import TestClient

from fakes import HASH_A, FakeFactory
from fhirp2p.config import Settings
from fhirp2p.magnet import create_magnet_uri
from fhirp2p.records import SqliteRecordStore, TorrentRecord
from fhirp2p.web import create_app

BUNDLE = json.dumps({
    "resourceType": "Bundle",
    "type": "collection",
    "entry": [{"resource": {"resourceType": "Patient", "id": "p1"}}],
})


@pytest.fixture
def client(settings: Settings):
    app = create_app(settings, factory=FakeFactory())
    with TestClient(app) as client:
        yield client


def _add(client: TestClient, locator: str = HASH_A, **extra) -> dict:
    response = client.post("/api/v1/torrents", json={"locator": locator, **extra})
    assert response.status_code == 200, response.text
    return response.json()


def test_status(client: TestClient) -> None:
    response = client.get("/api/status")

    assert response.status_code == 200
    assert response.json()["engine_ready"] is True


def test_list_empty(client: TestClient) -> None:
    response = client.get("/api/v1/torrents")

    assert response.status_code == 200
    assert response.json() == {"torrents": [], "total": 0}


def test_add_and_get(client: TestClient) -> None:
    created = _add(client, create_magnet_uri(HASH_A, "cohort"), description="demo")

    assert created["info_hash"] == HASH_A
    assert created["name"] == "cohort"
    assert created["description"] == "demo"
    assert created["status"]["state"] == "downloading"

    by_hash = client.get(f"/api/v1/torrents/{HASH_A}").json()
    by_id = client.get(f"/api/v1/torrents/{created['id']}").json()
    assert by_hash["id"] == by_id["id"] == created["id"]

    listing = client.get("/api/v1/torrents").json()
    assert listing["total"] == 1


def test_add_rejected_locator(client: TestClient) -> None:
    response = client.post("/api/v1/torrents", json={"locator": "not-a-magnet"})

    assert response.status_code == 422
    assert "magnet" in response.json()["detail"]


def test_get_missing(client: TestClient) -> None:
    assert client.get("/api/v1/torrents/missing").status_code == 404
    assert client.get("/api/v1/torrents/missing/stream").status_code == 404


def test_create_from_upload(client: TestClient) -> None:
    response = client.post("/api/v1/torrents/create", json={
        "name": "upload",
        "files": [{"name": "bundle.json", "content": BUNDLE}],
    })

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["content_type"] == "bundle"
    assert body["meta"]["resource_count"] == 1
    assert body["status"]["state"] == "seeding"


def test_create_base64_upload_with_type_check(client: TestClient) -> None:
    encoded = base64.b64encode(BUNDLE.encode()).decode()
    response = client.post("/api/v1/torrents/create", json={
        "name": "typed",
        "content_type": "ndjson",
        "files": [{"name": "bundle.json", "content": encoded, "encoding": "base64"}],
    })

    assert response.status_code == 422


def test_create_invalid_base64(client: TestClient) -> None:
    response = client.post("/api/v1/torrents/create", json={
        "files": [{"name": "x.json", "content": "***", "encoding": "base64"}],
    })

    assert response.status_code == 400


def test_pause_resume_and_meta(client: TestClient) -> None:
    _add(client)

    assert client.post(f"/api/v1/torrents/{HASH_A}/pause").json()["status"] == "paused"
    assert client.get(f"/api/v1/torrents/{HASH_A}").json()["status"]["state"] == "paused"
    assert client.post(f"/api/v1/torrents/{HASH_A}/resume").status_code == 200

    response = client.patch(f"/api/v1/torrents/{HASH_A}/meta", json={
        "description": "edited",
        "content_type": "ndjson",
    })
    assert response.status_code == 200
    assert response.json()["description"] == "edited"
    assert response.json()["content_type"] == "ndjson"


def test_lifecycle_on_unknown_session(client: TestClient) -> None:
    assert client.post(f"/api/v1/torrents/{HASH_A}/pause").status_code == 404
    assert client.patch(f"/api/v1/torrents/{HASH_A}/meta", json={"description": "x"}).status_code == 404
    response = client.delete(f"/api/v1/torrents/{HASH_A}")
    assert response.status_code == 200
    assert response.json()["status"] == "not_active"


def test_delete(client: TestClient) -> None:
    _add(client)

    response = client.delete(f"/api/v1/torrents/{HASH_A}", params={"purge": "true"})

    assert response.json() == {"status": "removed", "info_hash": HASH_A}
    assert client.get(f"/api/v1/torrents/{HASH_A}").status_code == 404


def _insert_record(settings: Settings, record: TorrentRecord) -> None:
    """Write a record the running app has no session for."""

    async def insert() -> None:
        store = SqliteRecordStore(settings.resolved_database_path())
        await store.connect()
        try:
            await store.insert(record)
        finally:
            await store.close()

    asyncio.run(insert())


def test_delete_forget_inactive_record(client: TestClient, settings: Settings) -> None:
    _insert_record(settings, TorrentRecord(info_hash=HASH_A, name="orphan"))

    response = client.delete(f"/api/v1/torrents/{HASH_A}")
    assert response.json()["status"] == "not_active"
    assert client.get(f"/api/v1/torrents/{HASH_A}").status_code == 200

    response = client.delete(f"/api/v1/torrents/{HASH_A}", params={"forget": "true"})
    assert response.json() == {"status": "forgotten", "info_hash": HASH_A}
    assert client.get(f"/api/v1/torrents/{HASH_A}").status_code == 404

    assert client.delete(f"/api/v1/torrents/{HASH_A}", params={"forget": "true"}).status_code == 404


def test_file_contents(client: TestClient) -> None:
    created = client.post("/api/v1/torrents/create", json={
        "name": "upload",
        "files": [{"name": "bundle.json", "content": BUNDLE}],
    }).json()
    info_hash = created["info_hash"]

    response = client.get(f"/api/v1/torrents/{info_hash}/files")
    assert response.status_code == 200
    assert response.json() == {"info_hash": info_hash, "files": {"bundle.json": BUNDLE}}

    response = client.get(f"/api/v1/torrents/{info_hash}/files/bundle.json")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert response.text == BUNDLE

    assert client.get(f"/api/v1/torrents/{info_hash}/files/other.json").status_code == 404
    assert client.get(f"/api/v1/torrents/{HASH_A}/files").status_code == 404


def test_network_stats(client: TestClient) -> None:
    _add(client)

    stats = client.get("/api/v1/network").json()

    assert stats["ready"] is True
    assert stats["sessions"] == 1


def test_magnet_parse(client: TestClient) -> None:
    uri = create_magnet_uri("abc123", "N", ["udp://t"])

    response = client.get("/api/v1/magnet/parse", params={"uri": uri})
    assert response.json() == {"info_hash": "abc123", "name": "N", "trackers": ["udp://t"]}

    assert client.get("/api/v1/magnet/parse", params={"uri": "not-a-magnet"}).status_code == 400


def test_api_key_required(settings: Settings) -> None:
    settings.api_key = "secret"
    app = create_app(settings, factory=FakeFactory())

    with TestClient(app) as client:
        assert client.get("/api/v1/torrents").status_code == 401
        assert client.get("/api/v1/torrents", headers={"X-API-Key": "wrong"}).status_code == 403
        assert client.get("/api/v1/torrents", headers={"X-API-Key": "secret"}).status_code == 200
        assert client.get("/api/v1/torrents", params={"api_key": "secret"}).status_code == 200


def test_engine_unavailable_maps_to_503(settings: Settings) -> None:
    from fhirp2p.errors import EngineUnavailable

    app = create_app(settings, factory=FakeFactory(fail_with=EngineUnavailable("no engine")))

    with TestClient(app) as client:
        response = client.post("/api/v1/torrents", json={"locator": HASH_A})
        assert response.status_code == 503
        assert client.get("/api/status").json()["engine_ready"] is False
