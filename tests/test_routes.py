from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from mediarelay.config import settings
from mediarelay.main import app
from mediarelay.models.media import SourceKind
from mediarelay.services.media_service import MediaService
from mediarelay.utils.exceptions import AllProvidersFailedError, BackendUnavailableError

from conftest import FakeObjectStore, FakeProvider


HEADERS = {"X-API-Key": "test-key"}
CACHE_KEY = "yt:dQw4w9WgXcQ:audio:128"


@pytest.fixture
def wired(monkeypatch, delivery_cache, memory_store):
    monkeypatch.setattr(settings, "API_KEY", "test-key")

    def _wire(provider=None, object_store=None):
        provider = provider or FakeProvider(title="Never Gonna Give You Up")
        object_store = object_store or FakeObjectStore()
        service = MediaService({SourceKind.YOUTUBE: provider}, delivery_cache, object_store)
        app.state.context = SimpleNamespace(service=service)
        # No `with`: the lifespan (and its real service context) never runs
        return TestClient(app), provider, object_store

    return _wire


def test_wrong_api_key_is_rejected(wired) -> None:
    client, _, _ = wired()

    response = client.post("/api/resolve", json={"url": "dQw4w9WgXcQ"}, headers={"X-API-Key": "nope"})

    assert response.status_code == 401


def test_resolve_returns_cache_key(wired) -> None:
    client, _, _ = wired()

    response = client.post(
        "/api/resolve",
        json={"url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ", "kind": "audio", "quality": "128"},
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert response.json() == {
        "title": "Never Gonna Give You Up",
        "cache_key": CACHE_KEY,
        "source_kind": "youtube",
        "source_id": "dQw4w9WgXcQ",
    }


def test_resolve_invalid_link_is_400(wired) -> None:
    client, _, _ = wired()

    response = client.post("/api/resolve", json={"url": "https://example.com/x"}, headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "INVALID_SOURCE"


def test_deliver_returns_handle_and_url(wired) -> None:
    client, provider, _ = wired()

    first = client.post("/api/deliver", json={"cache_key": CACHE_KEY}, headers=HEADERS)
    second = client.post("/api/deliver", json={"cache_key": CACHE_KEY}, headers=HEADERS)

    assert first.status_code == 200
    assert first.json() == {
        "status": "success",
        "cache_key": CACHE_KEY,
        "handle": "handle-1",
        "url": "https://cdn.example/handle-1",
    }
    assert second.json()["handle"] == "handle-1"
    assert len(provider.downloads) == 1


def test_stale_handle_is_invalidated_and_answered_with_409(wired, memory_store) -> None:
    client, provider, _ = wired(object_store=FakeObjectStore(stale_handles={"handle-1"}))

    response = client.post("/api/deliver", json={"cache_key": CACHE_KEY}, headers=HEADERS)

    assert response.status_code == 409
    assert response.json()["detail"]["error_code"] == "STALE_HANDLE"
    assert memory_store.entries == {}

    retry = client.post("/api/deliver", json={"cache_key": CACHE_KEY}, headers=HEADERS)

    assert retry.status_code == 200
    assert retry.json()["handle"] == "handle-2"
    assert len(provider.downloads) == 2


def test_all_providers_failed_is_502(wired) -> None:
    failure = AllProvidersFailedError(BackendUnavailableError("yt-dlp down"), BackendUnavailableError("no mirror"))
    client, _, _ = wired(provider=FakeProvider(error=failure))

    response = client.post("/api/deliver", json={"cache_key": CACHE_KEY}, headers=HEADERS)

    assert response.status_code == 502
    detail = response.json()["detail"]
    assert detail["error_code"] == "ALL_PROVIDERS_FAILED"
    assert detail["retryable"] is True
    assert "yt-dlp down" in detail["message"] and "no mirror" in detail["message"]


def test_malformed_cache_key_is_400(wired) -> None:
    client, _, _ = wired()

    response = client.post("/api/deliver", json={"cache_key": "garbage"}, headers=HEADERS)

    assert response.status_code == 400


def test_failure_report_invalidates_entry(wired, memory_store) -> None:
    client, _, _ = wired()
    client.post("/api/deliver", json={"cache_key": CACHE_KEY}, headers=HEADERS)
    assert CACHE_KEY in memory_store.entries

    response = client.post("/api/deliver/failure", json={"cache_key": CACHE_KEY}, headers=HEADERS)

    assert response.status_code == 204
    assert memory_store.entries == {}
