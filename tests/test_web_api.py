from __future__ import annotations

import logging
from typing import Any, Dict

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from studyshelf.services.storage import StudyRepository
from studyshelf.web import create_app


PDF_BYTES = b"%PDF-1.4\n1 0 obj<<>>endobj\ntrailer<<>>\n%%EOF\n"
DOCX_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def _client(temp_config, root_path: str | None = None) -> TestClient:
    repository = StudyRepository(temp_config)
    app = create_app(repository, config=temp_config, root_path=root_path)
    return TestClient(app)


def _create_lesson(client: TestClient) -> Dict[str, Any]:
    folder = client.post("/api/folders", json={"name": "Spanish"}).json()["folder"]
    topic = client.post(
        "/api/topics", json={"folder_id": folder["id"], "name": "Grammar"}
    ).json()["topic"]
    lesson = client.post(
        "/api/lessons",
        json={"topic_id": topic["id"], "title": "Ser vs Estar", "date": "2024-03-01"},
    ).json()["lesson"]
    return {"folder": folder, "topic": topic, "lesson": lesson}


def _upload(client: TestClient, lesson_id: int, *files) -> Dict[str, Any]:
    response = client.post(
        f"/api/lessons/{lesson_id}/files",
        files=[("files", item) for item in files],
    )
    assert response.status_code == 201
    return response.json()


def test_dashboard_starts_empty(temp_config):
    client = _client(temp_config)

    response = client.get("/api/view")

    assert response.status_code == 200
    payload = response.json()
    assert payload["view"] == {"kind": "dashboard", "folders": []}
    assert payload["state"]["view"] == "dashboard"
    assert payload["sidebar"] == []
    assert payload["preview_url"] is None


def test_api_handles_configured_root_path(temp_config):
    client = _client(temp_config, root_path="/shelf")

    response = client.get("/shelf/api/folders")

    assert response.status_code == 200
    assert response.json() == {"folders": []}


def test_cors_preflight_is_supported(temp_config):
    client = _client(temp_config)

    response = client.options(
        "/api/folders",
        headers={
            "Origin": "https://example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "content-type",
        },
    )

    assert response.status_code == 200
    assert response.headers.get("access-control-allow-origin") == "*"
    assert "POST" in response.headers.get("access-control-allow-methods", "")


def test_create_hierarchy_and_navigate(temp_config):
    client = _client(temp_config)
    created = _create_lesson(client)
    assert created["folder"]["color"] == "#e63946"
    assert created["topic"]["order"] == 0

    response = client.post(
        "/api/navigation", json={"target": "lesson", "id": created["lesson"]["id"]}
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["view"]["kind"] == "lesson"
    assert payload["view"]["lesson"]["title"] == "Ser vs Estar"
    assert payload["state"]["current_folder_id"] == created["folder"]["id"]
    assert payload["sidebar"][0]["active"] is True
    assert payload["sidebar"][0]["topic_count"] == 1


def test_navigation_without_id_is_rejected(temp_config):
    client = _client(temp_config)

    response = client.post("/api/navigation", json={"target": "folder"})

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidInputError"


def test_upload_skips_unsupported_files(temp_config):
    client = _client(temp_config)
    lesson_id = _create_lesson(client)["lesson"]["id"]

    result = _upload(
        client,
        lesson_id,
        ("rules.pdf", PDF_BYTES, "application/pdf"),
        ("notes.txt", b"plain text", "text/plain"),
        ("essay.docx", b"PK\x03\x04", DOCX_TYPE),
    )

    assert [item["name"] for item in result["uploaded"]] == ["rules.pdf", "essay.docx"]
    assert all("payload" not in item for item in result["uploaded"])
    assert result["rejected"] == ["notes.txt"]

    notifications = client.get("/api/notifications").json()["notifications"]
    assert [item["level"] for item in notifications].count("error") == 1
    assert notifications[-1]["message"] == "2 files uploaded"


def test_preview_lifecycle(temp_config):
    client = _client(temp_config)
    lesson_id = _create_lesson(client)["lesson"]["id"]
    file_id = _upload(client, lesson_id, ("rules.pdf", PDF_BYTES, "application/pdf"))[
        "uploaded"
    ][0]["id"]

    opened = client.post("/api/preview", json={"file_id": file_id}).json()
    assert opened["state"]["preview_file_id"] == file_id
    preview_url = opened["preview_url"]
    assert preview_url.startswith("/api/previews/")

    preview = client.get(preview_url)
    assert preview.status_code == 200
    assert preview.content == PDF_BYTES
    assert preview.headers["cache-control"].startswith("no-store")

    assert client.delete(f"/api/files/{file_id}").status_code == 204

    view = client.get("/api/view").json()
    assert view["state"]["preview_file_id"] is None
    assert view["preview_url"] is None
    assert view["view"]["files"] == []
    assert client.get(preview_url).status_code == 404


def test_word_document_cannot_be_previewed(temp_config):
    client = _client(temp_config)
    lesson_id = _create_lesson(client)["lesson"]["id"]
    file_id = _upload(client, lesson_id, ("essay.docx", b"PK", DOCX_TYPE))["uploaded"][0]["id"]

    response = client.post("/api/preview", json={"file_id": file_id})

    assert response.status_code == 400


def test_download_serves_payload(temp_config):
    client = _client(temp_config)
    lesson_id = _create_lesson(client)["lesson"]["id"]
    file_id = _upload(client, lesson_id, ("rules.pdf", PDF_BYTES, "application/pdf"))[
        "uploaded"
    ][0]["id"]

    response = client.get(f"/api/files/{file_id}/download")

    assert response.status_code == 200
    assert response.content == PDF_BYTES
    assert "rules.pdf" in response.headers["content-disposition"]
    assert client.app.state.library.handles.active_handles() == []


def test_delete_folder_cascades(temp_config):
    client = _client(temp_config)
    created = _create_lesson(client)
    _upload(client, created["lesson"]["id"], ("rules.pdf", PDF_BYTES, "application/pdf"))

    response = client.delete(f"/api/folders/{created['folder']['id']}")

    assert response.status_code == 204
    repository = client.app.state.library.repository
    assert repository.topics.count() == 0
    assert repository.lessons.count() == 0
    assert repository.files.count() == 0
    assert client.get("/api/view").json()["view"]["folders"] == []

    again = client.delete(f"/api/folders/{created['folder']['id']}")
    assert again.status_code == 404
    assert again.json()["error"] == "NotFoundError"


def test_search_and_state_patch(temp_config):
    client = _client(temp_config)
    created = _create_lesson(client)
    client.post("/api/navigation", json={"target": "lesson", "id": created["lesson"]["id"]})

    searched = client.get("/api/search", params={"q": "gram"}).json()
    assert searched["view"]["kind"] == "search"
    assert [item["name"] for item in searched["view"]["topics"]] == ["Grammar"]
    assert searched["state"]["current_lesson_id"] is None

    patched = client.patch("/api/state", json={"field": "search_query", "value": ""}).json()
    assert patched["view"]["kind"] == "dashboard"

    state = client.patch(
        "/api/state", json={"field": "current_topic_id", "value": created["topic"]["id"]}
    ).json()["state"]
    assert state["view"] == "topic"
    assert client.get("/api/state").json() == state


def test_invalid_input_returns_400(temp_config):
    client = _client(temp_config)

    bad_colour = client.post("/api/folders", json={"name": "Art", "color": "red"})
    blank_name = client.post("/api/folders", json={"name": "   "})

    assert bad_colour.status_code == 400
    assert blank_name.status_code == 400
    assert client.get("/api/folders").json() == {"folders": []}


def test_update_and_reorder_folders(temp_config):
    client = _client(temp_config)
    first = client.post("/api/folders", json={"name": "A"}).json()["folder"]
    second = client.post("/api/folders", json={"name": "B"}).json()["folder"]

    renamed = client.put(f"/api/folders/{first['id']}", json={"name": "Alpha"})
    assert renamed.status_code == 200
    assert renamed.json()["folder"]["name"] == "Alpha"
    assert client.put("/api/folders/999", json={"name": "x"}).status_code == 404

    reordered = client.post(
        "/api/folders/reorder", json={"folder_ids": [second["id"], first["id"]]}
    ).json()["folders"]
    assert [item["name"] for item in reordered] == ["B", "Alpha"]


def test_links_endpoints(temp_config):
    client = _client(temp_config)
    lesson_id = _create_lesson(client)["lesson"]["id"]

    created = client.post(
        f"/api/lessons/{lesson_id}/links", json={"url": "https://www.rae.es", "title": "RAE"}
    )
    assert created.status_code == 201
    link_id = created.json()["link"]["id"]

    assert client.post(
        f"/api/lessons/{lesson_id}/links", json={"url": "ftp://example.org"}
    ).status_code == 400
    assert client.delete(f"/api/lessons/{lesson_id}/links/{link_id}").status_code == 204
    assert client.delete(f"/api/lessons/{lesson_id}/links/{link_id}").status_code == 404


def test_notifications_can_be_dismissed(temp_config):
    client = _client(temp_config)
    client.post("/api/folders", json={"name": "A"})

    payload = client.get("/api/notifications").json()
    assert payload["ttl_seconds"] == temp_config.notification_ttl_seconds
    [notification] = payload["notifications"]

    assert client.delete(f"/api/notifications/{notification['id']}").status_code == 204
    assert client.delete(f"/api/notifications/{notification['id']}").status_code == 404
    assert client.get("/api/notifications").json()["notifications"] == []


def test_debug_logs_capture_repository_events(temp_config, caplog):
    caplog.set_level(logging.DEBUG)
    client = _client(temp_config)
    client.post("/api/folders", json={"name": "A"})

    payload = client.get("/api/debug/logs").json()

    assert payload["next"] >= 1
    assert any(entry["event_type"] == "DB_QUERY" for entry in payload["logs"])
    later = client.get("/api/debug/logs", params={"after": payload["next"]}).json()
    assert all(entry["id"] > payload["next"] for entry in later["logs"])


def test_state_patch_rejects_bad_values(temp_config):
    client = _client(temp_config)
    lesson_id = _create_lesson(client)["lesson"]["id"]
    document_id = _upload(client, lesson_id, ("notes.docx", b"PK", DOCX_TYPE))["uploaded"][0]["id"]

    not_a_number = client.patch("/api/state", json={"field": "current_folder_id", "value": "abc"})
    word_preview = client.patch("/api/state", json={"field": "preview_file_id", "value": document_id})

    assert not_a_number.status_code == 400
    assert not_a_number.json()["error"] == "InvalidInputError"
    assert word_preview.status_code == 400
    assert client.get("/api/state").json()["preview_file_id"] is None
    assert client.app.state.library.handles.active_handles() == []
    levels = [item["level"] for item in client.get("/api/notifications").json()["notifications"]]
    assert levels[-2:] == ["error", "error"]


def test_repeated_downloads_keep_one_handle(temp_config):
    client = _client(temp_config)
    lesson_id = _create_lesson(client)["lesson"]["id"]
    file_id = _upload(client, lesson_id, ("rules.pdf", PDF_BYTES, "application/pdf"))[
        "uploaded"
    ][0]["id"]
    library = client.app.state.library

    for _ in range(3):
        library.open_download(file_id)

    assert len(library.handles.active_handles()) == 1
    assert client.get(f"/api/files/{file_id}/download").content == PDF_BYTES
    assert library.handles.active_handles() == []


def test_shutdown_releases_handles(temp_config):
    repository = StudyRepository(temp_config)
    app = create_app(repository, config=temp_config)

    with TestClient(app) as client:
        lesson_id = _create_lesson(client)["lesson"]["id"]
        file_id = _upload(client, lesson_id, ("rules.pdf", PDF_BYTES, "application/pdf"))[
            "uploaded"
        ][0]["id"]
        client.post("/api/preview", json={"file_id": file_id})
        handle = app.state.library.handles.handle_for("preview")
        assert handle is not None and handle.path.exists()

    assert app.state.library.handles.active_handles() == []
    assert not handle.path.exists()
    assert list(temp_config.previews_root.iterdir()) == []
