from __future__ import annotations

import copy
import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import BackendUnavailableError, InvalidInputError
from .storage import load_json, safe_filename, save_json

log = logging.getLogger("zettelcards")

SETTINGS_KEY = "zettelkasten_settings"

_DEFAULT_SETTINGS: Dict[str, Any] = {
    "defaultCategory": "tech",
    "cardsPerPage": 8,
    "showInstructions": True,
    "autoSave": False,
    "categories": {
        "tech": {
            "name": "Технические",
            "color": "#e3f2fd",
            "subcategories": ["Frontend", "Backend", "Arch", "DevOps"],
        },
        "biz": {
            "name": "Бизнес/Gambling",
            "color": "#fff3e0",
            "subcategories": ["Mexico", "Product", "UX", "Analytics"],
        },
        "art": {
            "name": "Искусство",
            "color": "#f3e5f5",
            "subcategories": ["Живопись", "Теория", "История"],
        },
        "lit": {
            "name": "Литература",
            "color": "#e8f5e9",
            "subcategories": ["Классика", "Современ", "Теория"],
        },
        "personal": {
            "name": "Личное",
            "color": "#fce4ec",
            "subcategories": ["Идея", "Синтез", "Проект"],
        },
    },
}


def default_settings() -> Dict[str, Any]:
    return copy.deepcopy(_DEFAULT_SETTINGS)


class PropertyStore:
    """Durable string properties, one JSON document per user."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    def _path(self, user: str) -> Path:
        # Hash suffix keeps distinct users apart after the name is made filesystem-safe.
        digest = hashlib.sha256(user.encode("utf-8")).hexdigest()[:12]
        slug = safe_filename(user) or "user"
        return self.base_dir / f"{slug}_{digest}.json"

    def _load(self, user: str) -> Dict[str, str]:
        path = self._path(user)
        if not path.exists():
            return {}
        try:
            data = load_json(path)
        except ValueError as e:
            raise BackendUnavailableError(f"Corrupt property store for user {user}: {e}") from e
        except OSError as e:
            raise BackendUnavailableError(f"Property store unavailable: {e}") from e
        return data if isinstance(data, dict) else {}

    def get_property(self, user: str, key: str) -> Optional[str]:
        value = self._load(user).get(key)
        return value if isinstance(value, str) else None

    def set_property(self, user: str, key: str, value: str) -> None:
        props = self._load(user)
        props[key] = value
        try:
            save_json(self._path(user), props)
        except OSError as e:
            raise BackendUnavailableError(f"Property store unavailable: {e}") from e


class SettingsRepository:
    def __init__(self, properties: PropertyStore, key: str = SETTINGS_KEY):
        self.properties = properties
        self.key = key

    def load(self, user: str) -> Dict[str, Any]:
        raw = self.properties.get_property(user, self.key)
        if not raw:
            return default_settings()
        try:
            return json.loads(raw)
        except ValueError as e:
            raise InvalidInputError(f"Stored settings are not valid JSON: {e}") from e

    def save(self, user: str, settings: Any) -> None:
        if not isinstance(settings, dict):
            raise InvalidInputError("Settings must be a JSON object")
        try:
            raw = json.dumps(settings, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"Settings are not JSON-serializable: {e}") from e
        self.properties.set_property(user, self.key, raw)
        log.info("Settings saved", extra={"event": "settings_saved", "extra_data": {"user": user}})
