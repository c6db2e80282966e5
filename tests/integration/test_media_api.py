from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterator, List

import pytest
from fastapi.testclient import TestClient
from rq.exceptions import InvalidJobOperation, NoSuchJobError

import mediastore.main as main_module
from mediastore.content_index import IndexedContentStore, build_scope_uri
from mediastore.worker import RESULT_SUCCESS, MediaIngestWorker


@pytest.fixture()
def client(store: IndexedContentStore) -> Iterator[TestClient]:
    main_module.app.dependency_overrides[main_module.get_content_index] = lambda: store
    try:
        yield TestClient(main_module.app)
    finally:
        main_module.app.dependency_overrides.clear()


def _job_input(path: Path, **overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "path": str(path),
        "name": path.name,
        "appFolder": "",
        "dirType": 1,
        "dirName": "Music",
    }
    payload.update(overrides)
    return payload


def test_health_reports_entry_counts(client: TestClient, store: IndexedContentStore) -> None:
    store.insert(
        build_scope_uri("external_primary", "audio"),
        {"display_name": "orphan.mp3", "relative_path": "Music", "is_pending": True},
    )
    resp = client.get("/health")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["status"] == "ok"
    assert payload["db"]["pending_entries"] == 1
    assert payload["db"]["visible_entries"] == 0


def test_list_media_shows_only_committed_entries(
    client: TestClient, store: IndexedContentStore, make_mp3
) -> None:
    store.insert(
        build_scope_uri("external_primary", "audio"),
        {"display_name": "half.mp3", "relative_path": "Music", "is_pending": True},
    )
    path = make_mp3("a.mp3")
    assert MediaIngestWorker(store).run(_job_input(path, appFolder="MyApp")) == RESULT_SUCCESS

    resp = client.get("/media/external_primary/audio")
    assert resp.status_code == 200
    items = resp.json()["items"]
    assert [(item["display_name"], item["relative_path"]) for item in items] == [
        ("a.mp3", "Music/MyApp/")
    ]

    filtered = client.get(
        "/media/external_primary/audio",
        params={"display_name": "a.mp3", "relative_path": "Music/MyApp"},
    )
    assert len(filtered.json()["items"]) == 1
    by_folder = client.get("/media/external_primary/audio", params={"relative_path": "Music"})
    assert by_folder.json()["items"] == []


def test_list_media_rejects_unknown_scope(client: TestClient) -> None:
    assert client.get("/media/external_primary/music").status_code == 404
    assert client.get("/media/usb9/audio").status_code == 404


def test_ingest_media_enqueues_job_input(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    enqueued: List[Dict[str, Any]] = []

    def _fake_enqueue(job_input: Dict[str, Any]) -> str:
        enqueued.append(job_input)
        return "job-123"

    monkeypatch.setattr(main_module, "enqueue_media_ingest", _fake_enqueue)
    resp = client.post(
        "/ingest/media",
        json={
            "path": "/stage/a.mp3",
            "name": "a.mp3",
            "appFolder": "",
            "dirType": 7,
            "dirName": "Download",
            "id3v2Tags": {"title": "T", "ignored": "x"},
        },
    )
    assert resp.status_code == 200
    assert resp.json()["job_id"] == "job-123"
    assert enqueued == [
        {
            "path": "/stage/a.mp3",
            "name": "a.mp3",
            "appFolder": "",
            "dirType": 3,
            "dirName": "Download",
            "id3v2Tags": {"title": "T"},
        }
    ]


def test_ingest_media_rejects_missing_name(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(main_module, "enqueue_media_ingest", lambda job_input: "unused")
    resp = client.post(
        "/ingest/media",
        json={"path": "/stage/a.mp3", "appFolder": "", "dirType": 1, "dirName": "Music"},
    )
    assert resp.status_code == 422


def test_ingest_job_status_and_cancel(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    cancelled: List[str] = []
    monkeypatch.setattr(
        main_module,
        "get_media_ingest_job",
        lambda job_id: {"job_id": job_id, "status": "finished", "result": "success"},
    )
    monkeypatch.setattr(main_module, "cancel_media_ingest", cancelled.append)

    resp = client.get("/ingest/media/job-1")
    assert resp.status_code == 200
    assert resp.json() == {"job_id": "job-1", "status": "finished", "result": "success"}

    resp = client.post("/ingest/media/job-1/cancel")
    assert resp.status_code == 200
    assert resp.json() == {"job_id": "job-1", "cancel_requested": True}
    assert cancelled == ["job-1"]


def test_unknown_ingest_job_is_404(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _missing(job_id: str) -> None:
        raise NoSuchJobError(job_id)

    monkeypatch.setattr(main_module, "get_media_ingest_job", _missing)
    monkeypatch.setattr(main_module, "cancel_media_ingest", _missing)

    assert client.get("/ingest/media/nope").status_code == 404
    assert client.post("/ingest/media/nope/cancel").status_code == 404


def test_cancelling_a_cancelled_job_is_a_conflict(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _already_cancelled(job_id: str) -> None:
        raise InvalidJobOperation(f"Cannot cancel already canceled job: {job_id}")

    monkeypatch.setattr(main_module, "cancel_media_ingest", _already_cancelled)

    resp = client.post("/ingest/media/job-1/cancel")
    assert resp.status_code == 409
    assert "already canceled" in resp.json()["detail"]
