"""Persisted key/value preferences backed by a JSON file."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Iterable

log = logging.getLogger(__name__)

# Display preferences survive a full data wipe.
DISPLAY_DEFAULTS: dict[str, Any] = {
    "preferred_language": "zh-Hans",
    "font_size": 16.0,
    "line_spacing": 1.2,
    "font_family": "System",
    "night_mode_enabled": False,
    "ai_model": "gpt-3.5-turbo",
    "cloud_sync_enabled": True,
}

# Keys removed by a full data wipe.
APP_SCOPED_KEYS = (
    "user_properties",
    "stored_events",
    "anonymous_user_id",
    "last_sync_date",
    "ai_cache",
    "reading_statistics",
)

EXPORTED_KEYS = (
    "preferred_language",
    "font_size",
    "line_spacing",
    "night_mode_enabled",
    "ai_model",
    "cloud_sync_enabled",
)


class Preferences:
    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._values: dict[str, Any] = self._load()

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("Ignoring unreadable preferences file %s: %s", self._path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(
            json.dumps(self._values, ensure_ascii=False, indent=2), encoding="utf-8"
        )
        tmp.replace(self._path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key in self._values:
                return self._values[key]
        return DISPLAY_DEFAULTS.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._values[key] = value
            self._save()

    def remove(self, keys: Iterable[str]) -> None:
        with self._lock:
            for key in keys:
                self._values.pop(key, None)
            self._save()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._values

    def snapshot(self, keys: Iterable[str] = EXPORTED_KEYS) -> dict[str, Any]:
        return {key: self.get(key) for key in keys}
