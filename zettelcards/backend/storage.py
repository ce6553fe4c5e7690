from __future__ import annotations

import json
import logging
import os
import re
import secrets
import shutil
import unicodedata
from datetime import datetime, timezone
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Dict, List, Optional, Tuple

from .errors import BackendUnavailableError, InvalidInputError, NotFoundError

log = logging.getLogger("zettelcards")

FOLDER_DESCRIPTION = "Папка для хранения карточек Zettelkasten и шаблонов"
FOLDER_META = "folder.json"
TRASH_SUBDIR = ".trash"
META_SUBDIR = ".meta"

SAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9._-]+")
FILE_ID_RE = re.compile(r"^[0-9a-f]{16}$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def gen_id(nbytes: int = 8) -> str:
    return secrets.token_hex(nbytes)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = None
    try:
        tmp = NamedTemporaryFile("wb", dir=str(path.parent), delete=False)
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp.close()
        os.replace(tmp.name, path)
    finally:
        if tmp is not None and os.path.exists(tmp.name):
            try:
                os.unlink(tmp.name)
            except OSError:
                pass


def atomic_write_text(path: Path, text: str) -> None:
    atomic_write_bytes(path, text.encode("utf-8"))


def load_json(p: Path) -> Dict[str, Any]:
    return json.loads(p.read_text(encoding="utf-8"))


def save_json(p: Path, obj: Dict[str, Any]) -> None:
    atomic_write_text(p, json.dumps(obj, ensure_ascii=False, indent=2) + "\n")


def safe_filename(name: str) -> str:
    """ASCII-only form of a display name, usable on any filesystem."""
    nfkd = unicodedata.normalize("NFKD", name.strip())
    ascii_name = "".join(ch for ch in nfkd if unicodedata.category(ch) != "Mn")
    return SAFE_NAME_RE.sub("-", ascii_name).strip("-.")[:80]


def mk_basename(file_id: str, name: str, created_dt: datetime) -> str:
    stamp = created_dt.strftime("%Y-%m-%d_%H-%M-%S-%f")
    slug = safe_filename(name)
    if slug:
        return f"{stamp}_{file_id}_{slug}"
    return f"{stamp}_{file_id}"


class FolderLocator:
    """Finds or creates the single storage folder.

    The folder id is written to a registry file on first creation and looked up
    there afterwards; name matching is only the fallback for a missing or stale
    registry entry.
    """

    def __init__(self, data_dir: Path, registry_path: Path):
        self.data_dir = Path(data_dir)
        self.registry_path = Path(registry_path)

    def _load_registry(self) -> Dict[str, str]:
        if not self.registry_path.exists():
            return {}
        try:
            data = load_json(self.registry_path)
        except (OSError, ValueError):
            return {}
        folders = data.get("folders") if isinstance(data, dict) else None
        return folders if isinstance(folders, dict) else {}

    def _record(self, name: str, folder_id: str) -> None:
        folders = self._load_registry()
        folders[name] = folder_id
        save_json(self.registry_path, {"version": 1, "folders": folders})

    def _folder_metas(self) -> List[Tuple[Path, Dict[str, Any]]]:
        if not self.data_dir.exists():
            return []
        out = []
        for meta_path in self.data_dir.glob(f"*/{FOLDER_META}"):
            try:
                meta = load_json(meta_path)
            except (OSError, ValueError):
                continue
            out.append((meta_path.parent, meta))
        out.sort(key=lambda item: item[1].get("created", ""))
        return out

    def find_by_id(self, folder_id: str) -> Optional[Tuple[Path, Dict[str, Any]]]:
        meta_path = self.data_dir / folder_id / FOLDER_META
        if not meta_path.exists():
            return None
        try:
            return meta_path.parent, load_json(meta_path)
        except (OSError, ValueError):
            return None

    def find_by_name(self, name: str) -> List[Tuple[Path, Dict[str, Any]]]:
        return [(p, m) for p, m in self._folder_metas() if m.get("name") == name]

    def get_or_create_folder(self, name: str) -> Tuple[Path, Dict[str, Any]]:
        try:
            recorded = self._load_registry().get(name)
            if recorded:
                found = self.find_by_id(recorded)
                if found and found[1].get("name") == name:
                    return found

            matches = self.find_by_name(name)
            if matches:
                path, meta = matches[0]
                self._record(name, meta["id"])
                return path, meta

            folder_id = gen_id()
            path = self.data_dir / folder_id
            path.mkdir(parents=True, exist_ok=False)
            (path / TRASH_SUBDIR).mkdir(exist_ok=True)
            meta = {
                "id": folder_id,
                "name": name,
                "description": FOLDER_DESCRIPTION,
                "created": to_iso(utc_now()),
            }
            save_json(path / FOLDER_META, meta)
            self._record(name, folder_id)
        except OSError as e:
            raise BackendUnavailableError(f"Storage folder unavailable: {e}") from e
        log.info("Folder created", extra={"event": "folder_created", "extra_data": {"folder_id": folder_id, "name": name}})
        return path, meta


class FileRepository:
    """Files inside one storage folder.

    Each file is a content blob in the folder plus a JSON sidecar of the same
    basename under ``.meta/``. Trashing moves both into the folder's
    ``.trash`` directory.
    """

    def __init__(self, locator: FolderLocator, folder_name: str):
        self.locator = locator
        self.folder_name = folder_name

    @property
    def folder(self) -> Path:
        path, _meta = self.locator.get_or_create_folder(self.folder_name)
        return path

    @property
    def trash_dir(self) -> Path:
        return self.folder / TRASH_SUBDIR

    def _iter_metas(self, base_dir: Path):
        for meta_path in sorted((base_dir / META_SUBDIR).glob("*.json")):
            try:
                meta = load_json(meta_path)
            except (OSError, ValueError):
                continue
            if not isinstance(meta, dict) or not meta.get("id"):
                continue
            yield meta_path, meta

    def _find(self, file_id: str) -> Tuple[Path, Dict[str, Any]]:
        if not isinstance(file_id, str) or not FILE_ID_RE.match(file_id):
            raise NotFoundError(f"No item with the given ID could be found: {file_id}")
        try:
            for meta_path in (self.folder / META_SUBDIR).glob(f"*_{file_id}*.json"):
                meta = load_json(meta_path)
                if isinstance(meta, dict) and meta.get("id") == file_id:
                    return meta_path, meta
        except (OSError, ValueError) as e:
            raise BackendUnavailableError(f"Failed to read file metadata: {e}") from e
        raise NotFoundError(f"No item with the given ID could be found: {file_id}")

    @staticmethod
    def _content_of(meta_path: Path, meta: Dict[str, Any]) -> Path:
        return meta_path.parent.parent / meta.get("filename", "")

    def create_file(self, data: bytes, mime_type: str, name: str,
                    created_dt: Optional[datetime] = None) -> Dict[str, Any]:
        created_dt = created_dt or utc_now()
        folder = self.folder
        ext = Path(name).suffix.lower()
        try:
            for _ in range(20):
                file_id = gen_id()
                basename = mk_basename(file_id, Path(name).stem, created_dt)
                content_path = folder / f"{basename}{ext or '.bin'}"
                meta_path = folder / META_SUBDIR / f"{basename}.json"
                if not content_path.exists() and not meta_path.exists():
                    break
            else:
                raise BackendUnavailableError("Failed to allocate file id")

            atomic_write_bytes(content_path, data)
            meta = {
                "id": file_id,
                "name": name,
                "mime_type": mime_type,
                "created": to_iso(created_dt),
                "size": len(data),
                "filename": content_path.name,
                "trashed": False,
            }
            save_json(meta_path, meta)
        except OSError as e:
            raise BackendUnavailableError(f"Failed to write file: {e}") from e
        log.info("File saved", extra={"event": "file_saved", "extra_data": {"file_id": file_id, "name": name, "mime_type": mime_type, "size": len(data)}})
        return meta

    def list_files(self) -> List[Dict[str, Any]]:
        try:
            return [meta for _path, meta in self._iter_metas(self.folder)]
        except OSError as e:
            raise BackendUnavailableError(f"Failed to list files: {e}") from e

    def get_file(self, file_id: str) -> Dict[str, Any]:
        _meta_path, meta = self._find(file_id)
        return meta

    def content_path(self, file_id: str) -> Tuple[Path, Dict[str, Any]]:
        meta_path, meta = self._find(file_id)
        return self._content_of(meta_path, meta), meta

    def read_bytes(self, file_id: str) -> bytes:
        path, _meta = self.content_path(file_id)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise NotFoundError(f"File content is missing: {file_id}") from e
        except OSError as e:
            raise BackendUnavailableError(f"Failed to read file: {e}") from e

    def read_text(self, file_id: str) -> str:
        try:
            return self.read_bytes(file_id).decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidInputError(f"File is not valid UTF-8 text: {e}") from e

    def trash_file(self, file_id: str) -> Dict[str, Any]:
        meta_path, meta = self._find(file_id)
        trash = self.trash_dir
        content_path = self._content_of(meta_path, meta)
        meta["trashed"] = True
        try:
            (trash / META_SUBDIR).mkdir(parents=True, exist_ok=True)
            if content_path.is_file():
                shutil.move(str(content_path), str(trash / content_path.name))
            target_meta = trash / META_SUBDIR / meta_path.name
            shutil.move(str(meta_path), str(target_meta))
            save_json(target_meta, meta)
        except OSError as e:
            raise BackendUnavailableError(f"Failed to trash file: {e}") from e
        log.info("File trashed", extra={"event": "file_trashed", "extra_data": {"file_id": file_id, "name": meta.get("name", "")}})
        return meta
