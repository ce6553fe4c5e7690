from __future__ import annotations

import json
import logging
import math
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .errors import BackendUnavailableError, InvalidInputError
from .pdf import html_to_pdf
from .settings_store import SettingsRepository
from .storage import FileRepository, parse_iso, to_iso, utc_now

log = logging.getLogger("zettelcards")

PDF_NAME = "zettelkasten_cards_{date}.pdf"
HTML_NAME = "zettelkasten_template_{date}.html"
DATA_NAME = "zettelkasten_data_{date}.json"

MIME_PDF = "application/pdf"
MIME_HTML = "text/html"
MIME_JSON = "application/json"

NO_FILES_PLACEHOLDER = "Нет файлов"

_SIZE_UNITS = ["Bytes", "KB", "MB", "GB"]


def format_file_size(size: int) -> str:
    if size == 0:
        return "0 Bytes"
    i = 0
    while i < len(_SIZE_UNITS) - 1 and size >= 1024 ** (i + 1):
        i += 1
    value = math.floor(size / 1024 ** i * 100 + 0.5) / 100
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {_SIZE_UNITS[i]}"


def format_short_date(dt: datetime) -> str:
    # ru-RU short date
    return dt.astimezone().strftime("%d.%m.%Y")


def render_name(template: str, now: Optional[datetime] = None) -> str:
    now = now or utc_now()
    return template.replace("{date}", now.strftime("%Y-%m-%d"))


def default_url_builder(file_id: str, download: bool = False) -> str:
    if download:
        return f"/files/{file_id}/download"
    return f"/files/{file_id}"


class CardService:
    """Operations the card generator front end calls.

    Every method either returns a JSON-ready payload or raises a ``CardsError``;
    turning those into result objects is left to the HTTP layer.
    """

    def __init__(
        self,
        files: FileRepository,
        settings: SettingsRepository,
        retention_days: int = 30,
        font_path: Optional[str] = None,
        url_builder: Callable[..., str] = default_url_builder,
    ):
        self.files = files
        self.settings = settings
        self.retention_days = retention_days
        self.font_path = font_path
        self.url_builder = url_builder

    # ---------- files ----------
    def save_file(self, content: Any, mime_type: str, name_template: str) -> Dict[str, Any]:
        if not name_template or not str(name_template).strip():
            raise InvalidInputError("File name template is empty")
        if not mime_type:
            raise InvalidInputError("MIME type is empty")
        if isinstance(content, str):
            data = content.encode("utf-8")
        elif isinstance(content, (bytes, bytearray)):
            data = bytes(content)
        else:
            raise InvalidInputError("Content must be text")
        name = render_name(str(name_template).strip())
        meta = self.files.create_file(data, mime_type, name)
        return {
            "fileName": meta["name"],
            "fileId": meta["id"],
            "url": self.url_builder(meta["id"]),
            "downloadUrl": self.url_builder(meta["id"], download=True),
        }

    def generate_pdf(self, html_content: str) -> Dict[str, Any]:
        if not isinstance(html_content, str) or not html_content.strip():
            raise InvalidInputError("HTML content is empty")
        name = render_name(PDF_NAME)
        try:
            pdf_bytes = html_to_pdf(html_content, font_path=self.font_path)
        except Exception as e:
            log.warning("PDF generation failed", extra={"event": "pdf_failed", "extra_data": {"error": str(e)}})
            raise BackendUnavailableError(f"PDF conversion failed: {e}") from e
        meta = self.files.create_file(pdf_bytes, MIME_PDF, name)
        log.info("PDF generated", extra={"event": "pdf_generated", "extra_data": {"file_id": meta["id"], "size": meta["size"]}})
        return {
            "fileName": name,
            "fileId": meta["id"],
            "downloadUrl": self.url_builder(meta["id"], download=True),
            "viewUrl": self.url_builder(meta["id"]),
        }

    def save_html_file(self, html_content: str) -> Dict[str, Any]:
        if not isinstance(html_content, str):
            raise InvalidInputError("HTML content must be text")
        saved = self.save_file(html_content, MIME_HTML, HTML_NAME)
        return {"fileName": saved["fileName"], "fileId": saved["fileId"], "url": saved["url"]}

    def _file_info(self, meta: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": meta["id"],
            "name": meta.get("name", ""),
            "type": meta.get("mime_type", ""),
            "created": meta.get("created", ""),
            "size": int(meta.get("size", 0)),
            "url": self.url_builder(meta["id"]),
            "downloadUrl": self.url_builder(meta["id"], download=True),
        }

    def list_files(self) -> List[Dict[str, Any]]:
        metas = sorted(self.files.list_files(), key=lambda m: parse_iso(m["created"]), reverse=True)
        return [self._file_info(m) for m in metas]

    def delete_file(self, file_id: str) -> Dict[str, Any]:
        self.files.trash_file(file_id)
        return {"message": "Файл перемещен в корзину"}

    # ---------- settings ----------
    def get_user_settings(self, user: str) -> Dict[str, Any]:
        return self.settings.load(user)

    def save_user_settings(self, user: str, settings: Any) -> Dict[str, Any]:
        self.settings.save(user, settings)
        return {"message": "Настройки сохранены"}

    # ---------- export / import ----------
    def export_cards_data(self, cards_data: Any) -> Dict[str, Any]:
        try:
            text = json.dumps(cards_data, ensure_ascii=False, indent=2)
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"Cards data is not JSON-serializable: {e}") from e
        saved = self.save_file(text, MIME_JSON, DATA_NAME)
        log.info("Cards exported", extra={"event": "cards_exported", "extra_data": {"file_id": saved["fileId"]}})
        return {"fileName": saved["fileName"], "fileId": saved["fileId"], "url": saved["url"]}

    def import_cards_data(self, file_id: str) -> Dict[str, Any]:
        content = self.files.read_text(file_id)
        try:
            data = json.loads(content)
        except ValueError as e:
            raise InvalidInputError(f"File is not valid JSON: {e}") from e
        log.info("Cards imported", extra={"event": "cards_imported", "extra_data": {"file_id": file_id}})
        return {"data": data}

    # ---------- stats / maintenance ----------
    def get_usage_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "totalFiles": 0,
            "pdfFiles": 0,
            "htmlFiles": 0,
            "jsonFiles": 0,
            "totalSize": 0,
            "lastCreated": None,
        }
        last: Optional[datetime] = None
        for meta in self.files.list_files():
            stats["totalFiles"] += 1
            stats["totalSize"] += int(meta.get("size", 0))
            mime_type = meta.get("mime_type")
            if mime_type == MIME_PDF:
                stats["pdfFiles"] += 1
            elif mime_type == MIME_HTML:
                stats["htmlFiles"] += 1
            elif mime_type == MIME_JSON:
                stats["jsonFiles"] += 1
            created = parse_iso(meta["created"])
            if last is None or created > last:
                last = created

        stats["lastCreated"] = to_iso(last) if last else None
        stats["totalSizeFormatted"] = format_file_size(stats["totalSize"])
        stats["lastCreatedFormatted"] = format_short_date(last) if last else NO_FILES_PLACEHOLDER
        return stats

    def clean_old_files(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        cutoff = now - timedelta(days=self.retention_days)
        deleted = 0
        for meta in self.files.list_files():
            if parse_iso(meta["created"]) < cutoff:
                self.files.trash_file(meta["id"])
                deleted += 1
        log.info("Old files cleaned", extra={"event": "old_files_cleaned", "extra_data": {"deleted": deleted, "cutoff": to_iso(cutoff)}})
        return {"deletedCount": deleted, "message": f"Удалено файлов: {deleted}"}

    @staticmethod
    def generate_card_id(now: Optional[datetime] = None) -> str:
        now = now or datetime.now()
        return f"{now:%Y.%m.%d}.{random.randint(0, 999):03d}"
