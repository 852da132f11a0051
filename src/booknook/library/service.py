"""Library operations: status, reading progress, highlights and annotations."""

from __future__ import annotations

import time
from typing import Iterable, Optional

from booknook.errors import EntityNotFoundError, InvalidDataError

from .database import Database
from .models import (
    Annotation,
    Book,
    BookStatus,
    Chapter,
    Highlight,
    LibraryItem,
    ReadingProgress,
    new_id,
)


class BookService:
    """Mutations of syncable records bump ``updated_at`` and clear the remote id,
    which queues them for the next sync push."""

    def __init__(self, db: Database, user_id: str = "default_user") -> None:
        self._db = db
        self._user_id = user_id

    @property
    def user_id(self) -> str:
        return self._user_id

    # ── Books ──────────────────────────────────────────────

    def get_book(self, book_id: str) -> Book:
        book = self._db.get_book(book_id)
        if book is None:
            raise EntityNotFoundError(f"Book {book_id} not found")
        return book

    def list_books(self, order_by: str = "updated_at DESC") -> list[Book]:
        return self._db.list_books(order_by)

    def search_books(self, query: str) -> list[Book]:
        if not query.strip():
            return self._db.list_books("title ASC")
        return self._db.search_books(query.strip())

    def books_with_status(self, status: BookStatus) -> list[Book]:
        return self._db.books_with_status(status, self._user_id)

    def list_chapters(self, book_id: str) -> list[Chapter]:
        return self._db.list_chapters(book_id)

    def update_cover(self, book_id: str, cover_path: Optional[str]) -> Book:
        book = self.get_book(book_id)
        book.cover_image_path = cover_path
        self._db.update_book(book)
        return book

    # ── Library items ──────────────────────────────────────

    def get_library_item(self, book_id: str) -> Optional[LibraryItem]:
        return self._db.get_library_item_for_book(book_id, self._user_id)

    def _ensure_library_item(self, book_id: str) -> LibraryItem:
        self.get_book(book_id)
        item = self._db.get_library_item_for_book(book_id, self._user_id)
        if item is None:
            item = LibraryItem(id=new_id(), book_id=book_id, user_id=self._user_id)
        return item

    def _touch(self, item: LibraryItem) -> None:
        item.updated_at = time.time()
        item.remote_record_id = None
        self._db.save_library_item(item)

    def update_status(self, book_id: str, status: BookStatus) -> LibraryItem:
        with self._db.transaction():
            item = self._ensure_library_item(book_id)
            item.status = BookStatus(status)
            item.last_read_at = time.time()
            self._touch(item)
        return item

    def set_favorite(self, book_id: str, favorite: bool) -> LibraryItem:
        with self._db.transaction():
            item = self._ensure_library_item(book_id)
            item.is_favorite = favorite
            self._touch(item)
        return item

    def set_tags(self, book_id: str, tags: Iterable[str]) -> LibraryItem:
        with self._db.transaction():
            item = self._ensure_library_item(book_id)
            item.tags = {t.strip() for t in tags if t.strip()}
            self._touch(item)
        return item

    # ── Reading progress ───────────────────────────────────

    def get_progress(self, book_id: str) -> Optional[ReadingProgress]:
        item = self.get_library_item(book_id)
        return self._db.get_progress_for_item(item.id) if item else None

    def update_reading_progress(
        self,
        book_id: str,
        position: float,
        chapter_id: Optional[str] = None,
        reading_time: int = 0,
    ) -> ReadingProgress:
        """Record a reading session. ``reading_time`` is a delta in seconds."""
        if reading_time < 0:
            raise InvalidDataError("Reading time cannot be negative")
        if chapter_id is not None:
            chapter = self._db.get_chapter(chapter_id)
            if chapter is None or chapter.book_id != book_id:
                raise EntityNotFoundError(f"Chapter {chapter_id} not found in book")

        now = time.time()
        with self._db.transaction():
            item = self._ensure_library_item(book_id)
            item.last_read_at = now
            self._touch(item)

            progress = self._db.get_progress_for_item(item.id)
            if progress is None:
                progress = ReadingProgress(id=new_id(), library_item_id=item.id)
            progress.current_position = min(1.0, max(0.0, float(position)))
            if chapter_id is not None:
                progress.current_chapter_id = chapter_id
            progress.total_reading_time += int(reading_time)
            progress.last_read_at = now
            progress.updated_at = now
            progress.remote_record_id = None
            self._db.save_progress(progress)
        return progress

    # ── Highlights / annotations ───────────────────────────

    def _check_range(self, chapter_id: str, range_start: int, range_end: int) -> None:
        if self._db.get_chapter(chapter_id) is None:
            raise EntityNotFoundError(f"Chapter {chapter_id} not found")
        if range_start < 0 or range_start >= range_end:
            raise InvalidDataError("Range start must be before range end")

    def add_highlight(
        self,
        chapter_id: str,
        text: str,
        range_start: int,
        range_end: int,
        color: str = "yellow",
        note: str = "",
    ) -> Highlight:
        self._check_range(chapter_id, range_start, range_end)
        hl = Highlight(
            id=new_id(),
            chapter_id=chapter_id,
            user_id=self._user_id,
            text=text,
            range_start=range_start,
            range_end=range_end,
            color=color,
            note=note,
        )
        self._db.save_highlight(hl)
        return hl

    def add_annotation(
        self, chapter_id: str, content: str, range_start: int, range_end: int
    ) -> Annotation:
        self._check_range(chapter_id, range_start, range_end)
        ann = Annotation(
            id=new_id(),
            chapter_id=chapter_id,
            user_id=self._user_id,
            content=content,
            range_start=range_start,
            range_end=range_end,
        )
        self._db.save_annotation(ann)
        return ann
