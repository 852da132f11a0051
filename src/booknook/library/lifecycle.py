"""Full wipe, export and scoped deletion of user data."""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
import zipfile
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from booknook.config import APP_VERSION, AppConfig
from booknook.errors import EntityNotFoundError
from booknook.events import LIBRARY_RESET, EventBus

from .database import Database
from .preferences import APP_SCOPED_KEYS, Preferences

if TYPE_CHECKING:
    from booknook.sync.engine import SyncEngine

log = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Cannot serialize {type(value).__name__}")


class DataLifecycleManager:
    def __init__(
        self,
        config: AppConfig,
        db: Database,
        sync: Optional["SyncEngine"] = None,
        preferences: Optional[Preferences] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self._config = config
        self._db = db
        self._sync = sync
        self._prefs = preferences or Preferences(config.prefs_path)
        self._events = events or EventBus()

    # ── Full wipe ──────────────────────────────────────────

    async def delete_all_user_data(self) -> None:
        """Remove every book, reading record and app-scoped setting.

        Remote deletion is attempted first; its failure is logged and the local
        wipe goes ahead. Display preferences are kept.
        """
        if self._sync is not None:
            try:
                await self._sync.delete_all_remote_data()
            except Exception as e:
                log.error("Remote data deletion failed: %s", e)

        self._db.delete_all()

        for directory in (
            self._config.books_dir,
            self._config.covers_dir,
            self._config.cache_dir,
        ):
            shutil.rmtree(directory, ignore_errors=True)

        self._prefs.remove(APP_SCOPED_KEYS)
        log.info("All user data deleted")
        self._events.publish(LIBRARY_RESET)

    # ── Export ─────────────────────────────────────────────

    def _collect(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "books": [asdict(b) for b in self._db.list_books("created_at ASC")],
            "library_items": [asdict(i) for i in self._db.list_library_items()],
            "reading_progress": [asdict(p) for p in self._db.list_progress()],
            "highlights": [asdict(h) for h in self._db.list_highlights()],
            "annotations": [asdict(a) for a in self._db.list_annotations()],
        }

    def export_user_data(self, destination: Optional[Path] = None) -> Path:
        """Write all records and a settings snapshot into one zip archive."""
        now = datetime.now(timezone.utc)
        if destination is None:
            self._config.exports_dir.mkdir(parents=True, exist_ok=True)
            destination = (
                self._config.exports_dir
                / f"booknook-export-{now.strftime('%Y%m%d-%H%M%S')}.zip"
            )
        destination.parent.mkdir(parents=True, exist_ok=True)

        settings = {
            "app_version": APP_VERSION,
            "export_date": now.isoformat(),
            "user_preferences": self._prefs.snapshot(),
        }

        with tempfile.TemporaryDirectory(prefix="booknook-export-") as tmp:
            staging = Path(tmp)
            files = {f"{name}.json": rows for name, rows in self._collect().items()}
            files["settings.json"] = settings
            for filename, payload in files.items():
                (staging / filename).write_text(
                    json.dumps(payload, ensure_ascii=False, indent=2, default=_json_default),
                    encoding="utf-8",
                )
            with zipfile.ZipFile(destination, "w", zipfile.ZIP_DEFLATED) as zf:
                for filename in files:
                    zf.write(staging / filename, arcname=filename)

        log.info("Exported user data to %s", destination)
        return destination

    # ── Scoped deletion ────────────────────────────────────

    async def delete_book(self, book_id: str) -> None:
        book = self._db.get_book(book_id)
        if book is None:
            raise EntityNotFoundError(f"Book {book_id} not found")

        remote_ids = self._db.remote_ids_for_book(book_id)
        self._db.delete_book(book_id)

        if book.file_path:
            staged_dir = Path(book.file_path).parent
            if staged_dir.parent == self._config.books_dir:
                shutil.rmtree(staged_dir, ignore_errors=True)
            else:
                Path(book.file_path).unlink(missing_ok=True)
        shutil.rmtree(self._config.covers_dir / book_id, ignore_errors=True)
        log.info("Deleted book %s", book_id)

        if self._sync is not None and any(remote_ids.values()):
            try:
                await self._sync.delete_remote_records(remote_ids)
            except Exception as e:
                log.warning("Remote deletion for book %s failed: %s", book_id, e)

    async def delete_reading_data(self, book_id: str) -> None:
        """Drop progress, highlights and annotations; keep the book."""
        if self._db.get_book(book_id) is None:
            raise EntityNotFoundError(f"Book {book_id} not found")
        remote_ids = self._db.remote_ids_for_book(book_id)
        remote_ids.pop("library_items", None)
        self._db.delete_reading_data(book_id)
        log.info("Deleted reading data for book %s", book_id)

        if self._sync is not None and any(remote_ids.values()):
            try:
                await self._sync.delete_remote_records(remote_ids)
            except Exception as e:
                log.warning("Remote deletion for book %s failed: %s", book_id, e)
