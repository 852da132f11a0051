"""SQLite record store for books, chapters, library items and reading state."""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from booknook.errors import EntityNotFoundError, PersistenceError

from .models import (
    Annotation,
    Book,
    BookStatus,
    Chapter,
    Highlight,
    LibraryItem,
    ReadingProgress,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS books (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    authors TEXT NOT NULL DEFAULT '[]',
    language TEXT DEFAULT 'en',
    source TEXT DEFAULT 'local',
    file_path TEXT,
    file_format TEXT DEFAULT '',
    file_checksum TEXT,
    file_size INTEGER DEFAULT 0,
    cover_image_path TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    CHECK ((file_path IS NULL) = (file_checksum IS NULL))
);

CREATE INDEX IF NOT EXISTS idx_books_checksum ON books(file_checksum);

CREATE TABLE IF NOT EXISTS chapters (
    id TEXT PRIMARY KEY,
    book_id TEXT NOT NULL REFERENCES books(id) ON DELETE CASCADE,
    number INTEGER NOT NULL,
    title TEXT NOT NULL,
    content TEXT DEFAULT '',
    UNIQUE (book_id, number)
);

CREATE TABLE IF NOT EXISTS library_items (
    id TEXT PRIMARY KEY,
    book_id TEXT NOT NULL REFERENCES books(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'want_to_read',
    added_at REAL NOT NULL,
    last_read_at REAL,
    is_favorite INTEGER DEFAULT 0,
    tags TEXT DEFAULT '[]',
    updated_at REAL NOT NULL,
    remote_record_id TEXT,
    UNIQUE (book_id, user_id)
);

CREATE TABLE IF NOT EXISTS reading_progress (
    id TEXT PRIMARY KEY,
    library_item_id TEXT UNIQUE NOT NULL REFERENCES library_items(id) ON DELETE CASCADE,
    current_position REAL DEFAULT 0.0,
    current_chapter_id TEXT,
    total_reading_time INTEGER DEFAULT 0,
    last_read_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    remote_record_id TEXT
);

CREATE TABLE IF NOT EXISTS highlights (
    id TEXT PRIMARY KEY,
    chapter_id TEXT NOT NULL REFERENCES chapters(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    text TEXT NOT NULL,
    note TEXT DEFAULT '',
    color TEXT DEFAULT 'yellow',
    range_start INTEGER NOT NULL,
    range_end INTEGER NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    remote_record_id TEXT,
    CHECK (range_start < range_end)
);

CREATE TABLE IF NOT EXISTS annotations (
    id TEXT PRIMARY KEY,
    chapter_id TEXT NOT NULL REFERENCES chapters(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    content TEXT NOT NULL,
    range_start INTEGER NOT NULL,
    range_end INTEGER NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    remote_record_id TEXT,
    CHECK (range_start < range_end)
);
"""

# Leaf entities first.
DELETION_ORDER = (
    "reading_progress",
    "highlights",
    "annotations",
    "library_items",
    "chapters",
    "books",
)

SYNCED_TABLES = ("reading_progress", "highlights", "annotations", "library_items")

_PENDING = "(remote_record_id IS NULL OR remote_record_id = '')"


class Database:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._lock = threading.RLock()
        self._depth = 0
        self._conn = sqlite3.connect(
            str(db_path), check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized unit of work. Nested calls join the outer transaction."""
        with self._lock:
            outer = self._depth == 0
            if outer:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self._conn
            except sqlite3.Error as e:
                self._depth -= 1
                if outer:
                    self._conn.execute("ROLLBACK")
                raise PersistenceError(f"Database error: {e}") from e
            except BaseException:
                self._depth -= 1
                if outer:
                    self._conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if outer:
                    self._conn.execute("COMMIT")

    def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"Fetch failed: {e}") from e

    def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        rows = self._fetchall(sql, params)
        return rows[0] if rows else None

    def count(self, table: str) -> int:
        if table not in DELETION_ORDER:
            raise ValueError(f"Unknown table: {table}")
        row = self._fetchone(f"SELECT COUNT(*) AS n FROM {table}")
        return row["n"] if row else 0

    # ── Books ──────────────────────────────────────────────

    def add_book(self, book: Book, chapters: Iterable[Chapter] = ()) -> None:
        """Insert a book and its chapters atomically."""
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO books
                   (id, title, authors, language, source, file_path, file_format,
                    file_checksum, file_size, cover_image_path, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    book.id,
                    book.title,
                    json.dumps(book.authors, ensure_ascii=False),
                    book.language,
                    book.source,
                    book.file_path,
                    book.file_format,
                    book.file_checksum,
                    book.file_size,
                    book.cover_image_path,
                    book.created_at,
                    book.updated_at,
                ),
            )
            self.add_chapters(chapters)

    def update_book(self, book: Book) -> None:
        book.updated_at = time.time()
        with self.transaction() as conn:
            cur = conn.execute(
                """UPDATE books SET title = ?, authors = ?, language = ?, source = ?,
                   file_path = ?, file_format = ?, file_checksum = ?, file_size = ?,
                   cover_image_path = ?, updated_at = ?
                   WHERE id = ?""",
                (
                    book.title,
                    json.dumps(book.authors, ensure_ascii=False),
                    book.language,
                    book.source,
                    book.file_path,
                    book.file_format,
                    book.file_checksum,
                    book.file_size,
                    book.cover_image_path,
                    book.updated_at,
                    book.id,
                ),
            )
            if cur.rowcount == 0:
                raise EntityNotFoundError(f"Book {book.id} not found")

    def get_book(self, book_id: str) -> Optional[Book]:
        row = self._fetchone("SELECT * FROM books WHERE id = ?", (book_id,))
        return self._row_to_book(row) if row else None

    def find_books_by_checksum(self, checksum: str) -> list[Book]:
        rows = self._fetchall(
            "SELECT * FROM books WHERE file_checksum = ? ORDER BY created_at",
            (checksum,),
        )
        return [self._row_to_book(r) for r in rows]

    def list_books(self, order_by: str = "updated_at DESC") -> list[Book]:
        allowed = {
            "updated_at DESC",
            "updated_at ASC",
            "title ASC",
            "title DESC",
            "created_at DESC",
            "created_at ASC",
        }
        if order_by not in allowed:
            order_by = "updated_at DESC"
        rows = self._fetchall(f"SELECT * FROM books ORDER BY {order_by}")
        return [self._row_to_book(r) for r in rows]

    def search_books(self, query: str) -> list[Book]:
        q = f"%{query}%"
        rows = self._fetchall(
            "SELECT * FROM books WHERE title LIKE ? OR authors LIKE ? ORDER BY title ASC",
            (q, q),
        )
        return [self._row_to_book(r) for r in rows]

    def books_with_status(self, status: BookStatus, user_id: str) -> list[Book]:
        rows = self._fetchall(
            """SELECT b.* FROM books b JOIN library_items li ON li.book_id = b.id
               WHERE li.status = ? AND li.user_id = ?
               ORDER BY li.last_read_at DESC NULLS LAST""",
            (status.value, user_id),
        )
        return [self._row_to_book(r) for r in rows]

    @staticmethod
    def _row_to_book(row: sqlite3.Row) -> Book:
        return Book(
            id=row["id"],
            title=row["title"],
            authors=json.loads(row["authors"] or "[]"),
            language=row["language"],
            source=row["source"],
            file_path=row["file_path"],
            file_format=row["file_format"],
            file_checksum=row["file_checksum"],
            file_size=row["file_size"],
            cover_image_path=row["cover_image_path"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ── Chapters ───────────────────────────────────────────

    def add_chapters(self, chapters: Iterable[Chapter]) -> None:
        with self.transaction() as conn:
            conn.executemany(
                "INSERT INTO chapters (id, book_id, number, title, content) VALUES (?, ?, ?, ?, ?)",
                [(c.id, c.book_id, c.number, c.title, c.content) for c in chapters],
            )

    def list_chapters(self, book_id: str) -> list[Chapter]:
        rows = self._fetchall(
            "SELECT * FROM chapters WHERE book_id = ? ORDER BY number", (book_id,)
        )
        return [self._row_to_chapter(r) for r in rows]

    def get_chapter(self, chapter_id: str) -> Optional[Chapter]:
        row = self._fetchone("SELECT * FROM chapters WHERE id = ?", (chapter_id,))
        return self._row_to_chapter(row) if row else None

    def get_chapter_by_number(self, book_id: str, number: int) -> Optional[Chapter]:
        row = self._fetchone(
            "SELECT * FROM chapters WHERE book_id = ? AND number = ?", (book_id, number)
        )
        return self._row_to_chapter(row) if row else None

    @staticmethod
    def _row_to_chapter(row: sqlite3.Row) -> Chapter:
        return Chapter(
            id=row["id"],
            book_id=row["book_id"],
            number=row["number"],
            title=row["title"],
            content=row["content"],
        )

    # ── Library items ──────────────────────────────────────

    def save_library_item(self, item: LibraryItem) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO library_items
                   (id, book_id, user_id, status, added_at, last_read_at, is_favorite,
                    tags, updated_at, remote_record_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status, last_read_at = excluded.last_read_at,
                    is_favorite = excluded.is_favorite, tags = excluded.tags,
                    updated_at = excluded.updated_at,
                    remote_record_id = excluded.remote_record_id""",
                (
                    item.id,
                    item.book_id,
                    item.user_id,
                    BookStatus(item.status).value,
                    item.added_at,
                    item.last_read_at,
                    int(item.is_favorite),
                    json.dumps(sorted(item.tags), ensure_ascii=False),
                    item.updated_at,
                    item.remote_record_id,
                ),
            )

    def get_library_item(self, item_id: str) -> Optional[LibraryItem]:
        row = self._fetchone("SELECT * FROM library_items WHERE id = ?", (item_id,))
        return self._row_to_library_item(row) if row else None

    def get_library_item_for_book(
        self, book_id: str, user_id: str
    ) -> Optional[LibraryItem]:
        row = self._fetchone(
            "SELECT * FROM library_items WHERE book_id = ? AND user_id = ?",
            (book_id, user_id),
        )
        return self._row_to_library_item(row) if row else None

    def list_library_items(self) -> list[LibraryItem]:
        rows = self._fetchall("SELECT * FROM library_items ORDER BY added_at")
        return [self._row_to_library_item(r) for r in rows]

    @staticmethod
    def _row_to_library_item(row: sqlite3.Row) -> LibraryItem:
        return LibraryItem(
            id=row["id"],
            book_id=row["book_id"],
            user_id=row["user_id"],
            status=BookStatus(row["status"]),
            added_at=row["added_at"],
            last_read_at=row["last_read_at"],
            is_favorite=bool(row["is_favorite"]),
            tags=set(json.loads(row["tags"] or "[]")),
            updated_at=row["updated_at"],
            remote_record_id=row["remote_record_id"],
        )

    # ── Reading Progress ───────────────────────────────────

    def save_progress(self, progress: ReadingProgress) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO reading_progress
                   (id, library_item_id, current_position, current_chapter_id,
                    total_reading_time, last_read_at, updated_at, remote_record_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                    current_position = excluded.current_position,
                    current_chapter_id = excluded.current_chapter_id,
                    total_reading_time = MAX(reading_progress.total_reading_time,
                                             excluded.total_reading_time),
                    last_read_at = excluded.last_read_at,
                    updated_at = excluded.updated_at,
                    remote_record_id = excluded.remote_record_id""",
                (
                    progress.id,
                    progress.library_item_id,
                    progress.current_position,
                    progress.current_chapter_id,
                    progress.total_reading_time,
                    progress.last_read_at,
                    progress.updated_at,
                    progress.remote_record_id,
                ),
            )

    def get_progress(self, progress_id: str) -> Optional[ReadingProgress]:
        row = self._fetchone("SELECT * FROM reading_progress WHERE id = ?", (progress_id,))
        return self._row_to_progress(row) if row else None

    def get_progress_for_item(self, library_item_id: str) -> Optional[ReadingProgress]:
        row = self._fetchone(
            "SELECT * FROM reading_progress WHERE library_item_id = ?",
            (library_item_id,),
        )
        return self._row_to_progress(row) if row else None

    def list_progress(self) -> list[ReadingProgress]:
        rows = self._fetchall("SELECT * FROM reading_progress ORDER BY last_read_at DESC")
        return [self._row_to_progress(r) for r in rows]

    @staticmethod
    def _row_to_progress(row: sqlite3.Row) -> ReadingProgress:
        return ReadingProgress(
            id=row["id"],
            library_item_id=row["library_item_id"],
            current_position=row["current_position"],
            current_chapter_id=row["current_chapter_id"],
            total_reading_time=row["total_reading_time"],
            last_read_at=row["last_read_at"],
            updated_at=row["updated_at"],
            remote_record_id=row["remote_record_id"],
        )

    # ── Highlights / Annotations ───────────────────────────

    def save_highlight(self, hl: Highlight) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO highlights
                   (id, chapter_id, user_id, text, note, color, range_start, range_end,
                    created_at, updated_at, remote_record_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                    text = excluded.text, note = excluded.note, color = excluded.color,
                    range_start = excluded.range_start, range_end = excluded.range_end,
                    updated_at = excluded.updated_at,
                    remote_record_id = excluded.remote_record_id""",
                (
                    hl.id,
                    hl.chapter_id,
                    hl.user_id,
                    hl.text,
                    hl.note,
                    hl.color,
                    hl.range_start,
                    hl.range_end,
                    hl.created_at,
                    hl.updated_at,
                    hl.remote_record_id,
                ),
            )

    def get_highlight(self, highlight_id: str) -> Optional[Highlight]:
        row = self._fetchone("SELECT * FROM highlights WHERE id = ?", (highlight_id,))
        return self._row_to_highlight(row) if row else None

    def list_highlights(self, book_id: Optional[str] = None) -> list[Highlight]:
        if book_id is None:
            rows = self._fetchall("SELECT * FROM highlights ORDER BY created_at")
        else:
            rows = self._fetchall(
                """SELECT h.* FROM highlights h JOIN chapters c ON c.id = h.chapter_id
                   WHERE c.book_id = ? ORDER BY c.number, h.range_start""",
                (book_id,),
            )
        return [self._row_to_highlight(r) for r in rows]

    @staticmethod
    def _row_to_highlight(row: sqlite3.Row) -> Highlight:
        return Highlight(
            id=row["id"],
            chapter_id=row["chapter_id"],
            user_id=row["user_id"],
            text=row["text"],
            note=row["note"],
            color=row["color"],
            range_start=row["range_start"],
            range_end=row["range_end"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            remote_record_id=row["remote_record_id"],
        )

    def save_annotation(self, ann: Annotation) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO annotations
                   (id, chapter_id, user_id, content, range_start, range_end,
                    created_at, updated_at, remote_record_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                    content = excluded.content,
                    range_start = excluded.range_start, range_end = excluded.range_end,
                    updated_at = excluded.updated_at,
                    remote_record_id = excluded.remote_record_id""",
                (
                    ann.id,
                    ann.chapter_id,
                    ann.user_id,
                    ann.content,
                    ann.range_start,
                    ann.range_end,
                    ann.created_at,
                    ann.updated_at,
                    ann.remote_record_id,
                ),
            )

    def get_annotation(self, annotation_id: str) -> Optional[Annotation]:
        row = self._fetchone("SELECT * FROM annotations WHERE id = ?", (annotation_id,))
        return self._row_to_annotation(row) if row else None

    def list_annotations(self, book_id: Optional[str] = None) -> list[Annotation]:
        if book_id is None:
            rows = self._fetchall("SELECT * FROM annotations ORDER BY created_at")
        else:
            rows = self._fetchall(
                """SELECT a.* FROM annotations a JOIN chapters c ON c.id = a.chapter_id
                   WHERE c.book_id = ? ORDER BY c.number, a.range_start""",
                (book_id,),
            )
        return [self._row_to_annotation(r) for r in rows]

    @staticmethod
    def _row_to_annotation(row: sqlite3.Row) -> Annotation:
        return Annotation(
            id=row["id"],
            chapter_id=row["chapter_id"],
            user_id=row["user_id"],
            content=row["content"],
            range_start=row["range_start"],
            range_end=row["range_end"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            remote_record_id=row["remote_record_id"],
        )

    # ── Sync bookkeeping ───────────────────────────────────

    def pending_ids(self, table: str) -> list[str]:
        """Ids of records never pushed (no remote record id)."""
        self._check_synced(table)
        rows = self._fetchall(
            f"SELECT id FROM {table} WHERE {_PENDING} ORDER BY updated_at"
        )
        return [r["id"] for r in rows]

    def find_id_by_remote_id(self, table: str, remote_record_id: str) -> Optional[str]:
        self._check_synced(table)
        row = self._fetchone(
            f"SELECT id FROM {table} WHERE remote_record_id = ?", (remote_record_id,)
        )
        return row["id"] if row else None

    def mark_synced(
        self, table: str, record_id: str, remote_record_id: str, updated_at: float
    ) -> bool:
        """Store the remote id unless the record changed since it was pushed."""
        self._check_synced(table)
        with self.transaction() as conn:
            cur = conn.execute(
                f"UPDATE {table} SET remote_record_id = ? WHERE id = ? AND updated_at = ?",
                (remote_record_id, record_id, updated_at),
            )
            return cur.rowcount == 1

    def mark_pending(self, table: str, record_id: str) -> None:
        """Forget the remote id so the record is pushed again."""
        self._check_synced(table)
        with self.transaction() as conn:
            conn.execute(
                f"UPDATE {table} SET remote_record_id = NULL WHERE id = ?", (record_id,)
            )

    def remote_ids_for_book(self, book_id: str) -> dict[str, list[str]]:
        queries = {
            "reading_progress": """SELECT rp.remote_record_id AS rid FROM reading_progress rp
                JOIN library_items li ON li.id = rp.library_item_id WHERE li.book_id = ?""",
            "highlights": """SELECT h.remote_record_id AS rid FROM highlights h
                JOIN chapters c ON c.id = h.chapter_id WHERE c.book_id = ?""",
            "annotations": """SELECT a.remote_record_id AS rid FROM annotations a
                JOIN chapters c ON c.id = a.chapter_id WHERE c.book_id = ?""",
            "library_items": "SELECT remote_record_id AS rid FROM library_items WHERE book_id = ?",
        }
        result: dict[str, list[str]] = {}
        for table, sql in queries.items():
            result[table] = [r["rid"] for r in self._fetchall(sql, (book_id,)) if r["rid"]]
        return result

    @staticmethod
    def _check_synced(table: str) -> None:
        if table not in SYNCED_TABLES:
            raise ValueError(f"Not a synced table: {table}")

    # ── Deletion ───────────────────────────────────────────

    def delete_all(self) -> None:
        """Delete every record, leaf entities first, as one transaction."""
        with self.transaction() as conn:
            for table in DELETION_ORDER:
                conn.execute(f"DELETE FROM {table}")

    def delete_book(self, book_id: str) -> None:
        with self.transaction() as conn:
            self._delete_reading_data(conn, book_id)
            conn.execute("DELETE FROM library_items WHERE book_id = ?", (book_id,))
            conn.execute("DELETE FROM chapters WHERE book_id = ?", (book_id,))
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))

    def delete_reading_data(self, book_id: str) -> None:
        with self.transaction() as conn:
            self._delete_reading_data(conn, book_id)

    @staticmethod
    def _delete_reading_data(conn: sqlite3.Connection, book_id: str) -> None:
        conn.execute(
            """DELETE FROM reading_progress WHERE library_item_id IN
               (SELECT id FROM library_items WHERE book_id = ?)""",
            (book_id,),
        )
        for table in ("highlights", "annotations"):
            conn.execute(
                f"""DELETE FROM {table} WHERE chapter_id IN
                    (SELECT id FROM chapters WHERE book_id = ?)""",
                (book_id,),
            )
