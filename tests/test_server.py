import json
import logging
import re

import pytest

from zettelcards.backend.errors import BackendUnavailableError
from zettelcards.backend.server import PAGE_TITLE, PRINT_PAGE_TITLE, _JsonFormatter, create_app
from zettelcards.backend.settings_store import default_settings


# --- Page server ---
def test_index_default_mode(client):
    resp = client.get("/")
    assert resp.status_code == 200
    body = resp.get_data(as_text=True)
    assert f"<title>{PAGE_TITLE}</title>" in body
    assert 'name="viewport"' in body
    assert resp.headers["Content-Security-Policy"] == "frame-ancestors *"
    assert "X-Frame-Options" not in resp.headers
    assert "X-Cards-Mode" not in resp.headers


def test_index_print_mode(client):
    resp = client.get("/?action=print")
    assert resp.status_code == 200
    assert f"<title>{PRINT_PAGE_TITLE}</title>" in resp.get_data(as_text=True)
    assert resp.headers["X-Cards-Mode"] == "print"
    assert resp.headers["Content-Security-Policy"] == "frame-ancestors *"


def test_print_mode_changes_only_the_title(client):
    default = client.get("/").get_data(as_text=True)
    printed = client.get("/?action=print").get_data(as_text=True)
    assert default != printed
    assert re.sub(r"<title>.*?</title>", "", default) == re.sub(r"<title>.*?</title>", "", printed)
    assert "window.print" not in printed


def test_health(client):
    resp = client.get("/health", headers={"X-Forwarded-User": "alice"})
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ok", "user": "alice", "folder": "Zettelkasten_Cards"}


def test_unknown_config_key_rejected(tmp_path):
    with pytest.raises(TypeError):
        create_app(data_dirr=tmp_path)


# --- Files ---
def test_save_list_view_download(client):
    resp = client.post("/api/files", json={"content": "hello", "mimeType": "text/plain", "nameTemplate": "note_{date}.txt"})
    assert resp.status_code == 201
    saved = resp.get_json()
    assert saved["success"] is True

    listed = client.get("/api/files").get_json()
    assert listed["success"] is True
    assert [f["id"] for f in listed["files"]] == [saved["fileId"]]
    assert listed["files"][0]["type"] == "text/plain"
    assert listed["files"][0]["size"] == 5

    view = client.get(saved["url"])
    assert view.status_code == 200
    assert view.data == b"hello"
    assert view.mimetype == "text/plain"

    download = client.get(saved["downloadUrl"])
    assert download.status_code == 200
    assert download.headers["Content-Disposition"].startswith("attachment")


def test_delete_file(client):
    saved = client.post("/api/files", json={"content": "x", "mimeType": "text/plain", "nameTemplate": "a.txt"}).get_json()
    resp = client.delete(f"/api/files/{saved['fileId']}")
    assert resp.status_code == 200
    assert resp.get_json() == {"success": True, "message": "Файл перемещен в корзину"}
    assert client.get("/api/files").get_json()["files"] == []
    assert client.get(saved["url"]).status_code == 404


def test_delete_unknown_file(client):
    resp = client.delete("/api/files/0123456789abcdef")
    assert resp.status_code == 404
    body = resp.get_json()
    assert body["success"] is False
    assert body["errorKind"] == "not_found"
    assert body["error"]


def test_view_unknown_file(client):
    assert client.get("/files/nope").status_code == 404


def test_view_file_backend_error_is_json(client, service, monkeypatch):
    def boom(file_id):
        raise BackendUnavailableError("Failed to read file metadata: disk gone")

    monkeypatch.setattr(service.files, "content_path", boom)
    for url in ("/files/0123456789abcdef", "/files/0123456789abcdef/download"):
        resp = client.get(url)
        assert resp.status_code == 503
        assert resp.get_json() == {
            "success": False,
            "error": "Failed to read file metadata: disk gone",
            "errorKind": "backend_unavailable",
        }


def test_view_file_with_missing_content(client, service):
    saved = client.post("/api/files", json={"content": "x", "mimeType": "text/plain", "nameTemplate": "a.txt"}).get_json()
    path, _meta = service.files.content_path(saved["fileId"])
    path.unlink()
    resp = client.get(saved["url"])
    assert resp.status_code == 404
    assert resp.get_json()["errorKind"] == "not_found"


def test_generate_pdf(client):
    resp = client.post("/api/pdf", json={"html": "<div class='card'><p>Idea</p></div>"})
    assert resp.status_code == 201
    result = resp.get_json()
    assert result["success"] is True
    assert result["fileName"].endswith(".pdf")
    pdf = client.get(result["viewUrl"])
    assert pdf.mimetype == "application/pdf"
    assert pdf.data.startswith(b"%PDF")


def test_generate_pdf_without_html(client):
    resp = client.post("/api/pdf", json={})
    assert resp.status_code == 400
    assert resp.get_json()["errorKind"] == "invalid_input"


def test_save_html_template(client):
    resp = client.post("/api/templates", json={"html": "<p>t</p>"})
    assert resp.status_code == 201
    assert resp.get_json()["fileName"].startswith("zettelkasten_template_")


# --- Settings ---
def test_settings_default_then_saved(client):
    headers = {"X-Forwarded-User": "alice"}
    first = client.get("/api/settings", headers=headers).get_json()
    assert first == {"success": True, "settings": default_settings()}

    custom = {"defaultCategory": "art", "cardsPerPage": 6}
    resp = client.put("/api/settings", json=custom, headers=headers)
    assert resp.get_json() == {"success": True, "message": "Настройки сохранены"}
    assert client.get("/api/settings", headers=headers).get_json()["settings"] == custom

    other = client.get("/api/settings", headers={"X-Forwarded-User": "bob"}).get_json()
    assert other["settings"] == default_settings()


def test_settings_must_be_object(client):
    resp = client.put("/api/settings", json=[1, 2])
    assert resp.status_code == 400
    assert resp.get_json()["errorKind"] == "invalid_input"


# --- Export / import ---
def test_export_import_round_trip(client):
    data = {"cards": [{"id": "2026.10.18.042", "text": "Заметка"}]}
    exported = client.post("/api/export", json={"data": data})
    assert exported.status_code == 201
    file_id = exported.get_json()["fileId"]

    imported = client.get(f"/api/import/{file_id}").get_json()
    assert imported == {"success": True, "data": data}


def test_export_requires_data(client):
    resp = client.post("/api/export", json={"cards": []})
    assert resp.status_code == 400
    assert resp.get_json()["success"] is False


def test_import_malformed_file(client):
    saved = client.post("/api/files", json={"content": "{oops", "mimeType": "application/json", "nameTemplate": "x.json"}).get_json()
    resp = client.get(f"/api/import/{saved['fileId']}")
    assert resp.status_code == 400
    assert resp.get_json()["errorKind"] == "invalid_input"


# --- Stats / maintenance / ids ---
def test_stats_empty(client):
    body = client.get("/api/stats").get_json()
    assert body["success"] is True
    assert body["stats"]["totalFiles"] == 0
    assert body["stats"]["lastCreatedFormatted"] == "Нет файлов"


def test_clean_old_files_nothing_to_do(client):
    client.post("/api/files", json={"content": "x", "mimeType": "text/plain", "nameTemplate": "a.txt"})
    body = client.post("/api/maintenance/clean").get_json()
    assert body == {"success": True, "deletedCount": 0, "message": "Удалено файлов: 0"}


def test_card_id(client):
    body = client.get("/api/card-id").get_json()
    assert body["success"] is True
    assert len(body["cardId"].split(".")) == 4


# --- Error boundary ---
def test_backend_error_maps_to_503(client, service, monkeypatch):
    def boom():
        raise BackendUnavailableError("disk gone")

    monkeypatch.setattr(service.files, "list_files", boom)
    resp = client.get("/api/files")
    assert resp.status_code == 503
    assert resp.get_json() == {"success": False, "error": "disk gone", "errorKind": "backend_unavailable"}


def test_unexpected_error_is_caught(client, service, monkeypatch):
    def boom():
        raise RuntimeError("kaboom")

    monkeypatch.setattr(service.files, "list_files", boom)
    resp = client.get("/api/stats")
    assert resp.status_code == 500
    body = resp.get_json()
    assert body["success"] is False
    assert body["error"] == "kaboom"


# --- Logging ---
def test_json_formatter_includes_event_and_extra():
    record = logging.LogRecord("zettelcards", logging.INFO, __file__, 1, "File saved", None, None)
    record.event = "file_saved"
    record.extra_data = {"file_id": "abc"}
    entry = json.loads(_JsonFormatter().format(record))
    assert entry["level"] == "INFO"
    assert entry["msg"] == "File saved"
    assert entry["event"] == "file_saved"
    assert entry["file_id"] == "abc"
    assert entry["ts"].endswith("Z")
