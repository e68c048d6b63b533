"""
Tests for the HTTP API.

Tests cover:
- Listing, filtering and fetching models
- Download admission, status, history and statistics
- Error mapping to JSON responses
"""

import time

import pytest
from fastapi.testclient import TestClient

from modelkeeper import __version__
from modelkeeper.main import create_app
from modelkeeper.models.catalog import ModelCatalog
from modelkeeper.models.compatibility import CompatibilityChecker
from modelkeeper.models.manager import DownloadManager
from modelkeeper.models.sources import CatalogSource, StaticProvider

from .conftest import make_payload, make_record

GIB = 1024 * 1024 * 1024


@pytest.fixture
def catalog(store, coordinator, server):
    records = [
        make_record("hf:org/llama-7b/llama.Q4_K_M.gguf", name="llama-7b", size=5000, parameters="7B", tags=("featured",)),
        make_record("m2", name="mistral-7b", size=2000, parameters="7B"),
        make_record("m3", name="tiny", size=100),
    ]
    for record in records:
        server.serve(record.download_url, make_payload(record.size))
    checker = CompatibilityChecker(total_memory=64 * GIB, machine="x86_64")
    return ModelCatalog(
        CatalogSource([StaticProvider(records)]),
        store,
        DownloadManager(store, coordinator),
        checker=checker,
    )


@pytest.fixture
def client(catalog):
    with TestClient(create_app(catalog)) as client:
        yield client


def wait_for_history(client, count, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        history = client.get("/api/downloads/history").json()["history"]
        if len(history) >= count:
            return history
        time.sleep(0.02)
    raise AssertionError("download did not finish in time")


class TestHealth:
    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["version"] == __version__
        assert body["active_downloads"] == 0


class TestModels:
    def test_list(self, client):
        response = client.get("/api/models")

        assert response.status_code == 200
        names = [m["name"] for m in response.json()["models"]]
        assert names == ["llama-7b", "mistral-7b", "tiny"]

    def test_list_with_query_and_sort(self, client):
        response = client.get("/api/models", params={"q": "7b", "sort_by": "size"})
        ids = [m["id"] for m in response.json()["models"]]
        assert ids == ["m2", "hf:org/llama-7b/llama.Q4_K_M.gguf"]

    def test_list_by_category(self, client):
        response = client.get("/api/models", params={"category": "featured"})
        assert [m["name"] for m in response.json()["models"]] == ["llama-7b"]

    def test_list_with_tag_filter(self, client):
        response = client.get("/api/models", params={"tag": ["featured"]})
        assert len(response.json()["models"]) == 1

    def test_get_with_path_like_id(self, client):
        response = client.get("/api/models/hf:org/llama-7b/llama.Q4_K_M.gguf")

        assert response.status_code == 200
        model = response.json()["model"]
        assert model["name"] == "llama-7b"
        assert model["display_name"] == "llama-7b (7B)"
        assert model["can_download"] is True
        assert model["tags"] == ["featured"]

    def test_get_unknown(self, client):
        response = client.get("/api/models/nope")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"
        assert "nope" in response.json()["detail"]

    def test_compatibility(self, client):
        response = client.get("/api/models/m2/compatibility")

        assert response.status_code == 200
        body = response.json()
        assert body["compatibility"] == "fully_compatible"
        assert body["resources"]["minimum_memory"] == 4000

    def test_refresh(self, client):
        response = client.post("/api/models/refresh")

        assert response.status_code == 200
        assert response.json()["models"] == 3
        assert response.json()["remote_fetched_at"] is not None

    def test_delete_not_local(self, client):
        response = client.delete("/api/models/m2")
        assert response.status_code == 404

    def test_verify_not_local(self, client):
        response = client.post("/api/models/m2/verify")
        assert response.status_code == 404

    def test_repair_not_local(self, client):
        response = client.post("/api/models/m2/repair")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"


class TestDownloads:
    def test_download_flow(self, client, store):
        response = client.post("/api/models/m2/download")

        assert response.status_code == 200
        assert response.json()["status"] == "started"

        history = wait_for_history(client, 1)
        assert history[0]["status"] == "completed"
        assert store.get("m2").is_local

        model = client.get("/api/models/m2").json()["model"]
        assert model["is_local"] is True

        stats = client.get("/api/downloads/stats").json()
        assert stats["succeeded"] == 1
        assert stats["bytes_transferred"] == 2000

        verify = client.post("/api/models/m2/verify")
        assert verify.status_code == 200
        assert verify.json()["verification"]["is_valid"] is True

        again = client.post("/api/models/m2/download")
        assert again.status_code == 409
        assert again.json()["error"] == "already_local"

        deleted = client.delete("/api/models/m2")
        assert deleted.status_code == 200
        assert client.get("/api/models/m2").json()["model"]["is_local"] is False

    def test_single_flight_and_cancel(self, client, server):
        server.stall_after = 1000

        first = client.post("/api/models/m2/download")
        second = client.post("/api/models/m2/download")

        assert first.status_code == 200
        assert second.status_code == 409
        assert second.json()["error"] == "already_in_progress"
        active = client.get("/api/downloads").json()["downloads"]
        assert [d["model_id"] for d in active] == ["m2"]
        assert client.get("/api/downloads/m2").status_code == 200

        cancelled = client.post("/api/downloads/m2/cancel")
        assert cancelled.status_code == 200
        assert cancelled.json()["download"]["status"] == "cancelled"
        server.release.set()

        retry = client.post("/api/downloads/m2/retry")
        assert retry.status_code == 400
        assert retry.json()["error"] == "not_failed"

    def test_failed_download_can_be_retried(self, client, server):
        record = make_record("m2", name="mistral-7b", size=2000, parameters="7B")
        server.status_override[record.download_url] = 500

        client.post("/api/models/m2/download")
        history = wait_for_history(client, 1)
        assert history[0]["status"] == "failed"

        del server.status_override[record.download_url]
        retry = client.post("/api/downloads/m2/retry")
        assert retry.status_code == 200
        history = wait_for_history(client, 2)
        assert history[-1]["status"] == "completed"

    def test_status_unknown(self, client):
        assert client.get("/api/downloads/nope").status_code == 404
        assert client.post("/api/downloads/nope/cancel").status_code == 404

    def test_clear_history(self, client):
        client.post("/api/models/m2/download")
        wait_for_history(client, 1)

        assert client.delete("/api/downloads/history").status_code == 200
        assert client.get("/api/downloads/history").json()["history"] == []

    def test_repair_downloads_again(self, client, store):
        client.post("/api/models/m2/download")
        wait_for_history(client, 1)
        with open(store.get("m2").local_path, "wb") as f:
            f.write(b"\x01" * 10)

        response = client.post("/api/models/m2/repair")

        assert response.status_code == 200
        assert response.json()["verification"]["is_valid"] is True
        assert response.json()["model"]["is_local"] is True
        assert len(client.get("/api/downloads/history").json()["history"]) == 2
        with open(store.get("m2").local_path, "rb") as f:
            assert f.read() == make_payload(2000)


class TestLoading:
    def test_load_and_unload(self, client):
        client.post("/api/models/m2/download")
        wait_for_history(client, 1)

        loaded = client.post("/api/models/m2/load")

        assert loaded.status_code == 200
        assert loaded.json()["engine"] == "mock"
        assert client.get("/api/models/loaded").json()["models"] == ["m2"]
        assert client.get("/api/models/m2").json()["model"]["is_loaded"] is True
        assert client.get("/api/health").json()["loaded_models"] == 1

        unloaded = client.post("/api/models/m2/unload")

        assert unloaded.json()["was_loaded"] is True
        assert client.get("/api/models/m2").json()["model"]["is_loaded"] is False
        assert client.get("/api/models/loaded").json()["models"] == []

    def test_load_requires_download(self, client):
        assert client.post("/api/models/m2/load").status_code == 400
        assert client.post("/api/models/nope/load").status_code == 404
