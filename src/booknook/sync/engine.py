"""Bidirectional sync of reading state with a remote record store.

Each syncable kind (library items, reading progress, highlights, annotations)
runs the same three stages: push local records that have no remote id, pull
every remote record newest-first, and reconcile each pulled record with its
local counterpart (matched by remote id, then by natural key).

Pushes upsert by natural key, so a push that succeeded remotely but whose
write-back failed locally is simply repeated on the next run without creating
a second remote record. Unless the policy lets local win, a push never
overwrites a remote copy with a newer ``updatedAt``; the pull stage applies
that copy instead. A pulled record older than its local counterpart marks the
local one pending again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar

from booknook.errors import (
    AccountUnavailableError,
    BooknookError,
    ConflictResolutionError,
    InvalidRecordError,
    RemoteStoreError,
    SyncError,
)
from booknook.events import SYNC_REMOTE_CHANGED, SYNC_STATUS, EventBus
from booknook.library.database import Database
from booknook.library.models import (
    Annotation,
    BookStatus,
    Chapter,
    Highlight,
    LibraryItem,
    ReadingProgress,
    new_id,
)
from booknook.library.preferences import Preferences

from .remote import AccountStatus, RemoteRecord, RemoteRecordStore

log = logging.getLogger(__name__)

T = TypeVar("T", LibraryItem, ReadingProgress, Highlight, Annotation)


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    ERROR = "error"
    DISABLED = "disabled"
    RESTRICTED = "restricted"


class ConflictPolicy(str, Enum):
    NEWEST_WINS = "newest_wins"
    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"

    def remote_wins(self, local_updated_at: float, remote_updated_at: Any) -> bool:
        if self is ConflictPolicy.REMOTE_WINS:
            return True
        if self is ConflictPolicy.LOCAL_WINS:
            return False
        if not isinstance(remote_updated_at, (int, float)):
            raise ConflictResolutionError("Remote record has no modification time")
        return remote_updated_at > local_updated_at


@dataclass
class KindReport:
    pushed: int = 0
    pulled: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    error: Optional[str] = None


@dataclass
class SyncReport:
    kinds: dict[str, KindReport] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def failed_kinds(self) -> list[str]:
        return [name for name, k in self.kinds.items() if k.error]


# ── Per-kind adapters ──────────────────────────────────


class SyncAdapter(ABC, Generic[T]):
    """Maps one local entity kind to remote records."""

    record_type: str = ""
    table: str = ""
    key_fields: tuple[str, ...] = ()

    def __init__(self, db: Database, user_id: str) -> None:
        self._db = db
        self._user_id = user_id

    def pending(self) -> list[T]:
        records: list[T] = []
        for record_id in self._db.pending_ids(self.table):
            entity = self.load(record_id)
            if entity is not None:
                records.append(entity)
        return records

    @abstractmethod
    def load(self, local_id: str) -> Optional[T]: ...

    @abstractmethod
    def to_fields(self, entity: T) -> dict[str, Any]: ...

    @abstractmethod
    def find_by_natural_key(self, fields: dict[str, Any]) -> Optional[T]: ...

    @abstractmethod
    def apply(self, entity: T, record: RemoteRecord) -> None:
        """Overwrite local fields from the remote record and save."""

    @abstractmethod
    def create(self, record: RemoteRecord) -> T:
        """Create a local record from a remote one or raise InvalidRecordError."""

    def merge_push_fields(
        self, fields: dict[str, Any], remote_fields: dict[str, Any]
    ) -> dict[str, Any]:
        """Fields to write over an existing, older remote record."""
        return fields

    def behind_remote(self, entity: T, fields: dict[str, Any]) -> bool:
        return False

    def ahead_of_remote(self, entity: T, fields: dict[str, Any]) -> bool:
        return False

    # helpers shared by the adapters

    @staticmethod
    def _require(fields: dict[str, Any], *names: str) -> None:
        missing = [n for n in names if fields.get(n) in (None, "")]
        if missing:
            raise InvalidRecordError(f"Remote record lacks {', '.join(missing)}")

    def _resolve_chapter(self, fields: dict[str, Any]) -> Optional[Chapter]:
        chapter_id = fields.get("chapterId") or fields.get("currentChapterId")
        book_id = fields.get("bookId")
        if chapter_id:
            chapter = self._db.get_chapter(chapter_id)
            if chapter is not None and (not book_id or chapter.book_id == book_id):
                return chapter
        number = fields.get("chapterNumber")
        if book_id and isinstance(number, int):
            return self._db.get_chapter_by_number(book_id, number)
        return None

    def _chapter_fields(self, chapter_id: Optional[str]) -> dict[str, Any]:
        chapter = self._db.get_chapter(chapter_id) if chapter_id else None
        if chapter is None:
            return {"bookId": None, "chapterNumber": None}
        return {"bookId": chapter.book_id, "chapterNumber": chapter.number}


class LibraryItemAdapter(SyncAdapter[LibraryItem]):
    record_type = "LibraryItem"
    table = "library_items"
    key_fields = ("bookId", "userId")

    def load(self, local_id: str) -> Optional[LibraryItem]:
        return self._db.get_library_item(local_id)

    def to_fields(self, item: LibraryItem) -> dict[str, Any]:
        return {
            "bookId": item.book_id,
            "userId": item.user_id,
            "status": BookStatus(item.status).value,
            "isFavorite": item.is_favorite,
            "tags": sorted(item.tags),
            "addedAt": item.added_at,
            "lastReadAt": item.last_read_at,
            "updatedAt": item.updated_at,
        }

    def find_by_natural_key(self, fields: dict[str, Any]) -> Optional[LibraryItem]:
        self._require(fields, "bookId")
        return self._db.get_library_item_for_book(fields["bookId"], self._user_id)

    def apply(self, item: LibraryItem, record: RemoteRecord) -> None:
        f = record.fields
        try:
            item.status = BookStatus(f.get("status", item.status))
        except ValueError as e:
            raise InvalidRecordError(f"Unknown status {f.get('status')!r}") from e
        item.is_favorite = bool(f.get("isFavorite", item.is_favorite))
        item.tags = set(f.get("tags") or [])
        item.last_read_at = f.get("lastReadAt", item.last_read_at)
        item.updated_at = f.get("updatedAt") or item.updated_at
        item.remote_record_id = record.record_id
        self._db.save_library_item(item)

    def create(self, record: RemoteRecord) -> LibraryItem:
        self._require(record.fields, "bookId")
        book_id = record.fields["bookId"]
        if self._db.get_book(book_id) is None:
            raise InvalidRecordError(f"Book {book_id} is not in the local library")
        item = LibraryItem(
            id=new_id(),
            book_id=book_id,
            user_id=self._user_id,
            added_at=record.fields.get("addedAt") or time.time(),
        )
        self.apply(item, record)
        return item


class ReadingProgressAdapter(SyncAdapter[ReadingProgress]):
    record_type = "ReadingProgress"
    table = "reading_progress"
    key_fields = ("bookId", "userId")

    def load(self, local_id: str) -> Optional[ReadingProgress]:
        return self._db.get_progress(local_id)

    def to_fields(self, progress: ReadingProgress) -> dict[str, Any]:
        item = self._db.get_library_item(progress.library_item_id)
        if item is None:
            raise InvalidRecordError(f"Progress {progress.id} has no library item")
        chapter = (
            self._db.get_chapter(progress.current_chapter_id)
            if progress.current_chapter_id
            else None
        )
        return {
            "bookId": item.book_id,
            "userId": item.user_id,
            "currentChapterId": progress.current_chapter_id,
            "chapterNumber": chapter.number if chapter else None,
            "currentPosition": progress.current_position,
            "totalReadingTime": progress.total_reading_time,
            "lastReadAt": progress.last_read_at,
            "updatedAt": progress.updated_at,
        }

    def find_by_natural_key(self, fields: dict[str, Any]) -> Optional[ReadingProgress]:
        self._require(fields, "bookId")
        item = self._db.get_library_item_for_book(fields["bookId"], self._user_id)
        return self._db.get_progress_for_item(item.id) if item else None

    def apply(self, progress: ReadingProgress, record: RemoteRecord) -> None:
        f = record.fields
        position = f.get("currentPosition")
        if isinstance(position, (int, float)):
            progress.current_position = min(1.0, max(0.0, float(position)))
        chapter = self._resolve_chapter(f)
        if chapter is not None:
            progress.current_chapter_id = chapter.id
        remote_time = f.get("totalReadingTime")
        if isinstance(remote_time, (int, float)):
            progress.total_reading_time = max(progress.total_reading_time, int(remote_time))
        progress.last_read_at = f.get("lastReadAt") or progress.last_read_at
        progress.updated_at = f.get("updatedAt") or progress.updated_at
        progress.remote_record_id = record.record_id
        self._db.save_progress(progress)

    def create(self, record: RemoteRecord) -> ReadingProgress:
        self._require(record.fields, "bookId")
        book_id = record.fields["bookId"]
        if self._db.get_book(book_id) is None:
            raise InvalidRecordError(f"Book {book_id} is not in the local library")
        with self._db.transaction():
            item = self._db.get_library_item_for_book(book_id, self._user_id)
            if item is None:
                # Placeholder; updated_at=0 lets any remote library item win.
                item = LibraryItem(
                    id=new_id(), book_id=book_id, user_id=self._user_id, updated_at=0.0
                )
                self._db.save_library_item(item)
            progress = ReadingProgress(id=new_id(), library_item_id=item.id)
            self.apply(progress, record)
        return progress

    # Reading time only grows, whichever side wins the rest of the record.

    @staticmethod
    def _remote_time(fields: dict[str, Any]) -> Optional[int]:
        value = fields.get("totalReadingTime")
        return int(value) if isinstance(value, (int, float)) else None

    def merge_push_fields(
        self, fields: dict[str, Any], remote_fields: dict[str, Any]
    ) -> dict[str, Any]:
        remote_time = self._remote_time(remote_fields)
        if remote_time is not None and remote_time > fields["totalReadingTime"]:
            return {**fields, "totalReadingTime": remote_time}
        return fields

    def behind_remote(self, progress: ReadingProgress, fields: dict[str, Any]) -> bool:
        remote_time = self._remote_time(fields)
        return remote_time is not None and progress.total_reading_time < remote_time

    def ahead_of_remote(self, progress: ReadingProgress, fields: dict[str, Any]) -> bool:
        remote_time = self._remote_time(fields)
        return remote_time is not None and progress.total_reading_time > remote_time


class HighlightAdapter(SyncAdapter[Highlight]):
    record_type = "Highlight"
    table = "highlights"
    key_fields = ("localId",)

    def load(self, local_id: str) -> Optional[Highlight]:
        return self._db.get_highlight(local_id)

    def to_fields(self, hl: Highlight) -> dict[str, Any]:
        return {
            "localId": hl.id,
            "userId": hl.user_id,
            "chapterId": hl.chapter_id,
            **self._chapter_fields(hl.chapter_id),
            "text": hl.text,
            "note": hl.note,
            "color": hl.color,
            "rangeStart": hl.range_start,
            "rangeEnd": hl.range_end,
            "createdAt": hl.created_at,
            "updatedAt": hl.updated_at,
        }

    def find_by_natural_key(self, fields: dict[str, Any]) -> Optional[Highlight]:
        self._require(fields, "localId")
        return self._db.get_highlight(fields["localId"])

    def apply(self, hl: Highlight, record: RemoteRecord) -> None:
        f = record.fields
        start = f.get("rangeStart", hl.range_start)
        end = f.get("rangeEnd", hl.range_end)
        if not isinstance(start, int) or not isinstance(end, int) or start >= end:
            raise InvalidRecordError("Highlight range is invalid")
        hl.text = f.get("text", hl.text)
        hl.note = f.get("note") or ""
        hl.color = f.get("color") or hl.color
        hl.range_start, hl.range_end = start, end
        hl.updated_at = f.get("updatedAt") or hl.updated_at
        hl.remote_record_id = record.record_id
        self._db.save_highlight(hl)

    def create(self, record: RemoteRecord) -> Highlight:
        self._require(record.fields, "localId", "text", "rangeStart", "rangeEnd")
        chapter = self._resolve_chapter(record.fields)
        if chapter is None:
            raise InvalidRecordError("Highlight refers to a chapter that is not local")
        hl = Highlight(
            id=record.fields["localId"],
            chapter_id=chapter.id,
            user_id=self._user_id,
            text=record.fields["text"],
            range_start=record.fields["rangeStart"],
            range_end=record.fields["rangeEnd"],
            created_at=record.fields.get("createdAt") or time.time(),
        )
        self.apply(hl, record)
        return hl


class AnnotationAdapter(SyncAdapter[Annotation]):
    record_type = "Annotation"
    table = "annotations"
    key_fields = ("localId",)

    def load(self, local_id: str) -> Optional[Annotation]:
        return self._db.get_annotation(local_id)

    def to_fields(self, ann: Annotation) -> dict[str, Any]:
        return {
            "localId": ann.id,
            "userId": ann.user_id,
            "chapterId": ann.chapter_id,
            **self._chapter_fields(ann.chapter_id),
            "content": ann.content,
            "rangeStart": ann.range_start,
            "rangeEnd": ann.range_end,
            "createdAt": ann.created_at,
            "updatedAt": ann.updated_at,
        }

    def find_by_natural_key(self, fields: dict[str, Any]) -> Optional[Annotation]:
        self._require(fields, "localId")
        return self._db.get_annotation(fields["localId"])

    def apply(self, ann: Annotation, record: RemoteRecord) -> None:
        f = record.fields
        start = f.get("rangeStart", ann.range_start)
        end = f.get("rangeEnd", ann.range_end)
        if not isinstance(start, int) or not isinstance(end, int) or start >= end:
            raise InvalidRecordError("Annotation range is invalid")
        ann.content = f.get("content", ann.content)
        ann.range_start, ann.range_end = start, end
        ann.updated_at = f.get("updatedAt") or ann.updated_at
        ann.remote_record_id = record.record_id
        self._db.save_annotation(ann)

    def create(self, record: RemoteRecord) -> Annotation:
        self._require(record.fields, "localId", "content", "rangeStart", "rangeEnd")
        chapter = self._resolve_chapter(record.fields)
        if chapter is None:
            raise InvalidRecordError("Annotation refers to a chapter that is not local")
        ann = Annotation(
            id=record.fields["localId"],
            chapter_id=chapter.id,
            user_id=self._user_id,
            content=record.fields["content"],
            range_start=record.fields["rangeStart"],
            range_end=record.fields["rangeEnd"],
            created_at=record.fields.get("createdAt") or time.time(),
        )
        self.apply(ann, record)
        return ann


# Library items first: pulled progress may need the item to exist.
ADAPTERS: tuple[type[SyncAdapter], ...] = (
    LibraryItemAdapter,
    ReadingProgressAdapter,
    HighlightAdapter,
    AnnotationAdapter,
)


# ── Engine ─────────────────────────────────────────────


class SyncEngine:
    def __init__(
        self,
        db: Database,
        remote: RemoteRecordStore,
        events: Optional[EventBus] = None,
        user_id: str = "default_user",
        policy: ConflictPolicy = ConflictPolicy.NEWEST_WINS,
        preferences: Optional[Preferences] = None,
    ) -> None:
        self._db = db
        self._remote = remote
        self._events = events or EventBus()
        self._user_id = user_id
        self._policy = ConflictPolicy(policy)
        self._prefs = preferences
        self._adapters: list[SyncAdapter] = [cls(db, user_id) for cls in ADAPTERS]
        self._status = SyncStatus.IDLE
        self._last_error: Optional[BooknookError] = None
        self._last_sync_at: Optional[float] = None
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def last_error(self) -> Optional[BooknookError]:
        return self._last_error

    @property
    def last_sync_at(self) -> Optional[float]:
        return self._last_sync_at

    def _set_status(self, status: SyncStatus, error: Optional[BooknookError] = None) -> None:
        self._status = status
        self._last_error = error
        self._events.publish(
            SYNC_STATUS,
            {"status": status.value, "error": error.message if error else None},
        )

    # ── Account ────────────────────────────────────────

    async def _check_account(self) -> bool:
        """Set the status for an unusable account and return False."""
        try:
            account = await self._remote.account_status()
        except Exception as e:
            log.error("Account status check failed: %s", e)
            self._set_status(SyncStatus.ERROR, RemoteStoreError(str(e)))
            return False

        if account is AccountStatus.AVAILABLE:
            return True
        if account is AccountStatus.NO_ACCOUNT:
            log.info("No sync account; sync disabled")
            self._set_status(SyncStatus.DISABLED)
        elif account is AccountStatus.RESTRICTED:
            log.info("Sync account restricted")
            self._set_status(SyncStatus.RESTRICTED)
        else:
            log.warning("Sync account unavailable: %s", account.value)
            self._set_status(
                SyncStatus.ERROR, AccountUnavailableError(f"Account {account.value}")
            )
        return False

    async def initialize(self) -> SyncStatus:
        """Check the account, subscribe to remote changes and run a first sync."""
        if await self._check_account():
            self._subscribe()
            await self.sync()
        return self._status

    def _subscribe(self) -> None:
        if self._unsubscribers:
            return
        for adapter in self._adapters:
            self._unsubscribers.append(
                self._remote.subscribe(adapter.record_type, self._on_remote_change)
            )

    def _on_remote_change(self, record_type: str, record_id: str, change: str) -> None:
        self._events.publish(
            SYNC_REMOTE_CHANGED,
            {"record_type": record_type, "record_id": record_id, "change": change},
        )

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    # ── Sync run ───────────────────────────────────────

    async def sync(self) -> Optional[SyncReport]:
        """Run a full sync. Returns None when a run is already in flight."""
        if self._status is SyncStatus.SYNCING:
            log.info("Sync already in progress; ignoring request")
            return None
        self._set_status(SyncStatus.SYNCING)
        try:
            return await self._run()
        except asyncio.CancelledError:
            log.info("Sync cancelled")
            self._set_status(SyncStatus.IDLE)
            raise
        except Exception as e:
            log.exception("Sync aborted")
            self._set_status(SyncStatus.ERROR, SyncError(f"Sync aborted: {e}"))
            raise

    async def _run(self) -> SyncReport:
        report = SyncReport()
        if not await self._check_account():
            report.finished_at = time.time()
            return report

        for adapter in self._adapters:
            kind = KindReport()
            report.kinds[adapter.record_type] = kind
            try:
                await self._sync_kind(adapter, kind)
            except Exception as e:
                log.error("Sync of %s failed: %s", adapter.record_type, e)
                kind.error = str(e)

        report.finished_at = time.time()
        failed = report.failed_kinds
        if failed and len(failed) == len(report.kinds):
            self._set_status(SyncStatus.ERROR, SyncError("All record kinds failed to sync"))
            return report

        self._last_sync_at = report.finished_at
        if self._prefs is not None:
            self._prefs.set(
                "last_sync_date",
                datetime.fromtimestamp(report.finished_at, tz=timezone.utc).isoformat(),
            )
        error = SyncError(f"Failed to sync: {', '.join(failed)}") if failed else None
        self._set_status(SyncStatus.COMPLETED, error)
        log.info("Sync completed (%s)", self._summary(report))
        return report

    @staticmethod
    def _summary(report: SyncReport) -> str:
        return ", ".join(
            f"{name}: +{k.pushed}/-{k.pulled} new {k.created} failed {k.failed}"
            for name, k in report.kinds.items()
        )

    async def _sync_kind(self, adapter: SyncAdapter, kind: KindReport) -> None:
        for entity in adapter.pending():
            try:
                pushed = await self._push(adapter, entity)
            except BooknookError as e:
                log.warning("Push of %s %s failed: %s", adapter.record_type, entity.id, e)
                kind.failed += 1
                continue
            if pushed:
                kind.pushed += 1
            else:
                kind.skipped += 1

        records = await self._remote.query(
            adapter.record_type, where={"userId": self._user_id}
        )
        for record in records:
            try:
                outcome = self._pull(adapter, record)
            except (BooknookError, KeyError, TypeError, ValueError) as e:
                log.warning(
                    "Skipping remote %s %s: %s", adapter.record_type, record.record_id, e
                )
                kind.failed += 1
                continue
            if outcome == "created":
                kind.created += 1
            elif outcome == "pulled":
                kind.pulled += 1
            else:
                kind.skipped += 1

    async def _push(self, adapter: SyncAdapter, entity: Any) -> bool:
        """Upsert one pending record. Returns False when the remote copy is newer."""
        fields = adapter.to_fields(entity)
        record = RemoteRecord(record_type=adapter.record_type, fields=fields)
        existing = await self._find_remote(adapter, fields)
        if existing is not None:
            remote_updated = existing.fields.get("updatedAt")
            if (
                self._policy is not ConflictPolicy.LOCAL_WINS
                and isinstance(remote_updated, (int, float))
                and remote_updated > entity.updated_at
            ):
                # left pending; the pull stage applies the newer remote copy
                log.info(
                    "Remote %s %s is newer; not pushing", adapter.record_type, entity.id
                )
                return False
            record = RemoteRecord(
                record_type=adapter.record_type,
                fields=adapter.merge_push_fields(fields, existing.fields),
                record_id=existing.record_id,
            )

        saved = await self._remote.save(record, adapter.key_fields)
        if not saved.record_id:
            raise InvalidRecordError("Remote store returned no record id")
        if not self._db.mark_synced(adapter.table, entity.id, saved.record_id, entity.updated_at):
            log.info(
                "%s %s changed during push; it stays pending", adapter.record_type, entity.id
            )
        return True

    async def _find_remote(
        self, adapter: SyncAdapter, fields: dict[str, Any]
    ) -> Optional[RemoteRecord]:
        where = {name: fields.get(name) for name in adapter.key_fields}
        if any(value in (None, "") for value in where.values()):
            return None
        records = await self._remote.query(adapter.record_type, where=where)
        return records[0] if records else None

    def _pull(self, adapter: SyncAdapter, record: RemoteRecord) -> str:
        local_id = self._db.find_id_by_remote_id(adapter.table, record.record_id)
        entity = adapter.load(local_id) if local_id else None
        if entity is None:
            entity = adapter.find_by_natural_key(record.fields)
        if entity is None:
            adapter.create(record)
            return "created"

        remote_updated = record.fields.get("updatedAt")
        if self._policy.remote_wins(entity.updated_at, remote_updated):
            adapter.apply(entity, record)
            if adapter.ahead_of_remote(entity, record.fields):
                self._db.mark_pending(adapter.table, entity.id)
            return "pulled"

        if remote_updated == entity.updated_at:
            if adapter.behind_remote(entity, record.fields):
                adapter.apply(entity, record)
                return "pulled"
            # Same content already on both sides: just link the records.
            if not entity.remote_record_id:
                self._db.mark_synced(
                    adapter.table, entity.id, record.record_id, entity.updated_at
                )
            return "skipped"

        # The local copy is newer than what the remote holds; push it next run.
        if (
            entity.remote_record_id
            and isinstance(remote_updated, (int, float))
            and remote_updated < entity.updated_at
        ):
            self._db.mark_pending(adapter.table, entity.id)
        return "skipped"

    # ── Remote deletion ────────────────────────────────

    async def delete_all_remote_data(self) -> int:
        """Delete this user's remote records of every syncable kind."""
        deleted = 0
        for adapter in self._adapters:
            records = await self._remote.query(
                adapter.record_type, where={"userId": self._user_id}
            )
            if records:
                deleted += await self._remote.delete(
                    adapter.record_type, [r.record_id for r in records]
                )
        log.info("Deleted %d remote records", deleted)
        return deleted

    async def delete_remote_records(self, record_ids_by_table: dict[str, list[str]]) -> int:
        deleted = 0
        for adapter in self._adapters:
            ids = record_ids_by_table.get(adapter.table)
            if ids:
                deleted += await self._remote.delete(adapter.record_type, ids)
        return deleted
