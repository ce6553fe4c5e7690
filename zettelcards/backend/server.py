from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict

from flask import Blueprint, Flask, current_app, jsonify, render_template, request, send_file


# --- Structured JSON logging ---
class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "msg": record.getMessage(),
        }
        if hasattr(record, "event"):
            entry["event"] = record.event  # type: ignore[attr-defined]
        if hasattr(record, "extra_data"):
            entry.update(record.extra_data)  # type: ignore[attr-defined]
        if record.exc_info and record.exc_info[1]:
            entry["error"] = str(record.exc_info[1])
        return json.dumps(entry, ensure_ascii=False)


def _setup_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.INFO)
    # Quiet noisy libraries
    logging.getLogger("werkzeug").setLevel(logging.WARNING)


_setup_logging()
log = logging.getLogger("zettelcards")

from .errors import CardsError, ErrorKind, fail, ok  # noqa: E402
from .service import CardService  # noqa: E402
from .settings_store import PropertyStore, SettingsRepository  # noqa: E402
from .storage import FileRepository, FolderLocator  # noqa: E402

FRONTEND_DIR = Path(__file__).resolve().parents[1] / "frontend"

# ---------- Config ----------
DATA_DIR = Path(os.environ.get("DATA_DIR", "/data"))
CONFIG_DIR = Path(os.environ.get("CONFIG_DIR", "/config"))
FOLDER_NAME = os.environ.get("FOLDER_NAME", "Zettelkasten_Cards")
RETENTION_DAYS = int(os.environ.get("RETENTION_DAYS", "30"))
USER_HEADER = os.environ.get("USER_HEADER", "X-Forwarded-User")
DEFAULT_USER = os.environ.get("DEFAULT_USER", "default")
PDF_FONT_PATH = os.environ.get("PDF_FONT_PATH", "")

PAGE_TITLE = "Zettelkasten Карточки"
PRINT_PAGE_TITLE = "Zettelkasten Cards - Print"

bp = Blueprint("cards", __name__)


def create_app(**overrides: Any) -> Flask:
    """Builds the app; keyword overrides replace the env-derived settings (tests)."""
    cfg: Dict[str, Any] = {
        "data_dir": DATA_DIR,
        "config_dir": CONFIG_DIR,
        "folder_name": FOLDER_NAME,
        "retention_days": RETENTION_DAYS,
        "user_header": USER_HEADER,
        "default_user": DEFAULT_USER,
        "pdf_font_path": PDF_FONT_PATH,
    }
    unknown = set(overrides) - set(cfg)
    if unknown:
        raise TypeError(f"Unknown config keys: {', '.join(sorted(unknown))}")
    cfg.update(overrides)

    app = Flask(
        __name__,
        static_folder=str(FRONTEND_DIR),
        static_url_path="/static",
        template_folder=str(FRONTEND_DIR),
    )
    app.config["CARDS"] = cfg

    config_dir = Path(cfg["config_dir"])
    locator = FolderLocator(Path(cfg["data_dir"]), config_dir / "storage.json")
    app.extensions["zettelcards"] = CardService(
        FileRepository(locator, cfg["folder_name"]),
        SettingsRepository(PropertyStore(config_dir / "users")),
        retention_days=int(cfg["retention_days"]),
        font_path=cfg["pdf_font_path"] or None,
    )
    app.register_blueprint(bp)
    return app


def _service() -> CardService:
    return current_app.extensions["zettelcards"]


def _current_user() -> str:
    cfg = current_app.config["CARDS"]
    user = (request.headers.get(cfg["user_header"]) or "").strip()
    return user or cfg["default_user"]


def _run(fn: Callable[..., Dict[str, Any]], *args: Any, status: int = 200):
    """Calls one service operation and converts the outcome into a result object."""
    try:
        payload = fn(*args)
    except CardsError as e:
        log.warning("Operation failed", extra={"event": "operation_failed", "extra_data": {"op": fn.__name__, "kind": e.kind, "error": e.message}})
        return jsonify(fail(e.message, e.kind)), e.http_status
    except Exception as e:
        log.exception("Operation crashed", extra={"event": "operation_crashed", "extra_data": {"op": fn.__name__}})
        return jsonify(fail(str(e))), 500
    return jsonify(ok(**payload)), status


def _json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


# ---------- Frontend ----------
@bp.route("/")
def index():
    print_mode = request.args.get("action") == "print"
    html = render_template(
        "index.html",
        title=PRINT_PAGE_TITLE if print_mode else PAGE_TITLE,
    )
    resp = current_app.make_response(html)
    # Page is embedded by the hosting shell; allow any frame ancestor.
    resp.headers["Content-Security-Policy"] = "frame-ancestors *"
    resp.headers.pop("X-Frame-Options", None)
    if print_mode:
        resp.headers["X-Cards-Mode"] = "print"
    return resp


# ---------- Health ----------
@bp.route("/health")
def health():
    service = _service()
    user = _current_user()
    try:
        folder = service.files.locator.get_or_create_folder(service.files.folder_name)[1]
        settings = service.get_user_settings(user)
    except CardsError as e:
        return jsonify({"status": "error", "error": e.message}), e.http_status
    log.info("Health check", extra={"event": "health", "extra_data": {"user": user, "categories": len(settings.get("categories") or {})}})
    return {"status": "ok", "user": user, "folder": folder.get("name")}


# ---------- Stored files ----------
def _send_stored(file_id: str, as_attachment: bool):
    try:
        path, meta = _service().files.content_path(file_id)
    except CardsError as e:
        return jsonify(fail(e.message, e.kind)), e.http_status
    if not path.is_file():
        return jsonify(fail(f"File content is missing: {file_id}", ErrorKind.NOT_FOUND)), 404
    return send_file(
        path,
        mimetype=meta.get("mime_type") or "application/octet-stream",
        as_attachment=as_attachment,
        download_name=meta.get("name") or path.name,
    )


@bp.route("/files/<file_id>", methods=["GET"])
def view_file(file_id: str):
    return _send_stored(file_id, as_attachment=False)


@bp.route("/files/<file_id>/download", methods=["GET"])
def download_file(file_id: str):
    return _send_stored(file_id, as_attachment=True)


# ---------- API ----------
@bp.route("/api/pdf", methods=["POST"])
def api_generate_pdf():
    body = _json_body()
    return _run(_service().generate_pdf, body.get("html"), status=201)


@bp.route("/api/templates", methods=["POST"])
def api_save_html_file():
    body = _json_body()
    return _run(_service().save_html_file, body.get("html"), status=201)


@bp.route("/api/files", methods=["POST"])
def api_save_file():
    body = _json_body()
    return _run(
        _service().save_file,
        body.get("content"),
        body.get("mimeType"),
        body.get("nameTemplate"),
        status=201,
    )


@bp.route("/api/files", methods=["GET"])
def api_list_files():
    service = _service()
    return _run(lambda: {"files": service.list_files()})


@bp.route("/api/files/<file_id>", methods=["DELETE"])
def api_delete_file(file_id: str):
    return _run(_service().delete_file, file_id)


@bp.route("/api/settings", methods=["GET"])
def api_get_settings():
    service = _service()
    user = _current_user()
    return _run(lambda: {"settings": service.get_user_settings(user)})


@bp.route("/api/settings", methods=["PUT"])
def api_save_settings():
    settings = request.get_json(silent=True)
    return _run(_service().save_user_settings, _current_user(), settings)


@bp.route("/api/export", methods=["POST"])
def api_export_cards():
    body = request.get_json(silent=True)
    if not isinstance(body, dict) or "data" not in body:
        return jsonify(fail("Missing 'data' in request body", ErrorKind.INVALID_INPUT)), 400
    return _run(_service().export_cards_data, body["data"], status=201)


@bp.route("/api/import/<file_id>", methods=["GET"])
def api_import_cards(file_id: str):
    return _run(_service().import_cards_data, file_id)


@bp.route("/api/stats", methods=["GET"])
def api_usage_stats():
    service = _service()
    return _run(lambda: {"stats": service.get_usage_stats()})


@bp.route("/api/maintenance/clean", methods=["POST"])
def api_clean_old_files():
    return _run(_service().clean_old_files)


@bp.route("/api/card-id", methods=["GET"])
def api_card_id():
    return _run(lambda: {"cardId": CardService.generate_card_id()})


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", "8060"))
    app.run(host="0.0.0.0", port=port)
